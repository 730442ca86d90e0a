from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storefront.coupons import apply_coupon_to_order, get_coupon_by_code, record_coupon_usage, validate_coupon
from storefront.errors import InvalidState, ValidationFailed
from storefront.models import Coupon, CouponUsage, Order

from conftest import make_category, make_coupon, make_order, make_product, make_user, reload


def _now():
    return datetime.now(timezone.utc)


async def test_valid_percentage_coupon(session, user):
    coupon = await make_coupon(session, value="10", max_discount=Decimal("50"))
    result = await validate_coupon(session, "WELCOME10", Decimal("200"), user.id)
    assert result.is_valid
    assert result.coupon_id == coupon.id
    assert result.discount_amount == Decimal("20.00")
    assert result.error_message is None


async def test_code_lookup_is_case_insensitive(session, user):
    await make_coupon(session, code="SAVE5", type="fixed", value="5")
    result = await validate_coupon(session, "  save5 ", 40, user.id)
    assert result.is_valid
    assert result.discount_amount == Decimal("5.00")


async def test_unknown_coupon(session, user):
    result = await validate_coupon(session, "NOPE", 100, user.id)
    assert not result.is_valid
    assert result.error_message == "Coupon not found"


@pytest.mark.parametrize("code,subtotal,user_id,message", [
    ("", 100, 1, "Coupon code is required"),
    ("WELCOME10", 100, None, "Sign in to use a coupon"),
    ("WELCOME10", -1, 1, "Subtotal cannot be negative"),
])
async def test_bad_input_is_reported_not_raised(session, code, subtotal, user_id, message):
    result = await validate_coupon(session, code, subtotal, user_id)
    assert not result.is_valid
    assert result.error_message == message


async def test_inactive_coupon(session, user):
    await make_coupon(session, is_active=False)
    result = await validate_coupon(session, "WELCOME10", 100, user.id)
    assert result.error_message == "Coupon is not active"


async def test_coupon_not_started(session, user):
    await make_coupon(session, starts_at=_now() + timedelta(days=1))
    result = await validate_coupon(session, "WELCOME10", 100, user.id)
    assert result.error_message == "Coupon is not valid yet"


async def test_expired_coupon(session, user):
    await make_coupon(session, expires_at=_now() - timedelta(minutes=1))
    result = await validate_coupon(session, "WELCOME10", 100, user.id)
    assert result.error_message == "Coupon has expired"


async def test_exhausted_coupon(session, user):
    await make_coupon(session, usage_limit=3, used_count=3)
    result = await validate_coupon(session, "WELCOME10", 100, user.id)
    assert result.error_message == "Coupon usage limit has been reached"


async def test_already_used_by_user(session, user):
    coupon = await make_coupon(session)
    order = await make_order(session, user)
    session.add(CouponUsage(coupon_id=coupon.id, user_id=user.id, order_id=order.id))
    await session.commit()

    result = await validate_coupon(session, "WELCOME10", 100, user.id)
    assert result.error_message == "You have already used this coupon"

    other = await make_user(session)
    assert (await validate_coupon(session, "WELCOME10", 100, other.id)).is_valid


async def test_below_minimum_purchase(session, user):
    await make_coupon(session, min_purchase=Decimal("100"))
    result = await validate_coupon(session, "WELCOME10", Decimal("99.99"), user.id)
    assert not result.is_valid
    assert "100.00" in result.error_message


async def test_category_restriction(session, user):
    shoes = await make_category(session, slug="shoes", name="Shoes")
    hats = await make_category(session, slug="hats", name="Hats")
    await make_coupon(session, category_id=shoes.id)

    wrong = await validate_coupon(session, "WELCOME10", 100, user.id, category_id=hats.id)
    assert wrong.error_message == "Coupon is not valid for this category"
    missing = await validate_coupon(session, "WELCOME10", 100, user.id)
    assert not missing.is_valid
    assert (await validate_coupon(session, "WELCOME10", 100, user.id, category_id=shoes.id)).is_valid


async def test_get_coupon_by_code(session):
    coupon = await make_coupon(session)
    await make_coupon(session, code="OLD", is_active=False)
    assert (await get_coupon_by_code(session, "welcome10")).id == coupon.id
    assert await get_coupon_by_code(session, "OLD") is None
    assert await get_coupon_by_code(session, "") is None


async def test_record_usage_increments_counter(session, user):
    coupon = await make_coupon(session, usage_limit=5)
    order = await make_order(session, user)

    assert await record_coupon_usage(session, coupon.id, user.id, order.id)
    assert (await reload(session, Coupon, coupon.id)).used_count == 1


async def test_record_usage_refuses_when_cap_reached(session, user):
    coupon_id = (await make_coupon(session, usage_limit=1, used_count=1)).id
    order_id = (await make_order(session, user)).id
    user_id = user.id

    assert not await record_coupon_usage(session, coupon_id, user_id, order_id)
    assert (await reload(session, Coupon, coupon_id)).used_count == 1
    assert (await session.execute(CouponUsage.__table__.select())).all() == []


async def test_record_usage_twice_for_same_order(session, user):
    coupon_id = (await make_coupon(session)).id
    order_id = (await make_order(session, user)).id
    user_id = user.id

    assert await record_coupon_usage(session, coupon_id, user_id, order_id)
    # the failed insert rolls back and expires every loaded row
    assert not await record_coupon_usage(session, coupon_id, user_id, order_id)
    assert (await reload(session, Coupon, coupon_id)).used_count == 1


async def test_unlimited_coupon_keeps_counting(session, user):
    coupon = await make_coupon(session, usage_limit=None, per_user_limit=10)
    for _ in range(3):
        order = await make_order(session, user)
        assert await record_coupon_usage(session, coupon.id, user.id, order.id)
    assert (await reload(session, Coupon, coupon.id)).used_count == 3


async def test_apply_coupon_to_order(session, user):
    category = await make_category(session)
    product = await make_product(session, price="50.00", category=category)
    order = await make_order(session, user, [(product, 2)], shipping_cost="10.00")
    coupon = await make_coupon(session, code="TENOFF", type="fixed", value="10", category_id=category.id)

    updated = await apply_coupon_to_order(session, order.id, user.id, "tenoff")
    assert updated.coupon_id == coupon.id
    assert updated.discount == Decimal("10.00")
    assert updated.total == Decimal("100.00")
    assert (await reload(session, Coupon, coupon.id)).used_count == 1


async def test_apply_coupon_mixed_categories_cannot_use_category_coupon(session, user):
    shoes = await make_category(session, slug="shoes", name="Shoes")
    hats = await make_category(session, slug="hats", name="Hats")
    order = await make_order(session, user, [
        (await make_product(session, category=shoes), 1),
        (await make_product(session, category=hats), 1),
    ])
    await make_coupon(session, category_id=shoes.id)

    with pytest.raises(ValidationFailed):
        await apply_coupon_to_order(session, order.id, user.id, "WELCOME10")


async def test_apply_coupon_requires_pending_order(session, user):
    product = await make_product(session)
    order = await make_order(session, user, [(product, 1)], status="paid")
    await make_coupon(session)

    with pytest.raises(InvalidState):
        await apply_coupon_to_order(session, order.id, user.id, "WELCOME10")
    assert (await reload(session, Order, order.id)).coupon_id is None

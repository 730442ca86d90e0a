"""
Database operations shared by the route handlers and services.

Nothing in here commits: callers own the transaction. Operations that must
happen exactly once (payment finalization, coupon usage counting) are
single conditional UPDATE statements so concurrent callers cannot both win.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, NamedTuple, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from . import order_status
from .models import Coupon, CouponUsage, Notification, Order, OrderItem, Payment, Product, User
from .pricing import calculate_discount, money, to_decimal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# 📦 Заказы
async def get_order(session: AsyncSession, order_id: int, fresh: bool = False) -> Optional[Order]:
    """``fresh`` reloads attributes after bulk UPDATEs that bypassed the session."""
    query = select(Order).where(Order.id == order_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    res = await session.execute(query)
    return res.scalar_one_or_none()


async def get_user_order(session: AsyncSession, order_id: int, user_id: int) -> Optional[Order]:
    res = await session.execute(select(Order).where(Order.id == order_id, Order.user_id == user_id))
    return res.scalar_one_or_none()


async def list_user_orders(
    session: AsyncSession,
    user_id: int,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 10,
) -> Tuple[List[Order], int]:
    query = select(Order).where(Order.user_id == user_id)
    count_query = select(func.count()).select_from(Order).where(Order.user_id == user_id)
    if status:
        query = query.where(Order.status == status)
        count_query = count_query.where(Order.status == status)

    total = (await session.execute(count_query)).scalar_one()
    res = await session.execute(
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(res.scalars().all()), total


async def order_status_counts(session: AsyncSession, user_id: int) -> dict:
    res = await session.execute(
        select(Order.status, func.count(Order.id)).where(Order.user_id == user_id).group_by(Order.status)
    )
    return {status: count for status, count in res.all()}


async def find_expired_pending_orders(session: AsyncSession, cutoff: datetime) -> List[Order]:
    res = await session.execute(
        select(Order).where(Order.status == order_status.PENDING, Order.created_at < cutoff).order_by(Order.id)
    )
    return list(res.scalars().all())


async def restore_stock(session: AsyncSession, product_id: int, quantity: int) -> Optional[Product]:
    await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=Product.stock_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(
        select(Product).where(Product.id == product_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


# 💳 Платежи
async def get_payment_by_order(session: AsyncSession, order_id: int) -> Optional[Payment]:
    res = await session.execute(select(Payment).where(Payment.order_id == order_id))
    return res.scalar_one_or_none()


async def upsert_payment(
    session: AsyncSession,
    order: Order,
    method: str,
    ttl_minutes: int = 30,
) -> Payment:
    """Create the order's payment record, or reset the existing one for a new attempt."""
    payment = await get_payment_by_order(session, order.id)
    if payment is None:
        payment = Payment(order_id=order.id)
        session.add(payment)

    payment.method = method
    payment.gateway = "stripe"
    payment.amount = order.total
    payment.currency = order.currency
    payment.status = "pending"
    payment.gateway_checkout_id = None
    payment.expires_at = utcnow() + timedelta(minutes=ttl_minutes)
    await session.flush()
    return payment


async def attach_checkout_session(session: AsyncSession, payment: Payment, checkout_id: str) -> None:
    payment.gateway_checkout_id = checkout_id
    await session.flush()


# payment states a paid checkout may still move out of
UNSETTLED_PAYMENT_STATUSES = ("pending", "processing", "failed", "expired")


class PaidOutcome(NamedTuple):
    payment_updated: bool
    order_updated: bool


async def mark_order_paid(
    session: AsyncSession,
    order_id: int,
    payment_intent_id: Optional[str] = None,
    checkout_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaidOutcome:
    """
    Finalize payment for an order exactly once.

    Both statements are compare-and-set: the payment only moves while it is
    unsettled (never back from paid or refunded), the order only while it is
    still pending. ``order_updated`` is True for exactly one caller; everyone
    else has written nothing to the order.
    """
    now = now or utcnow()
    payment = await session.execute(
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status.in_(UNSETTLED_PAYMENT_STATUSES))
        .values(
            status="paid",
            paid_at=now,
            gateway_payment_intent_id=payment_intent_id,
            gateway_transaction_id=payment_intent_id,
            # a payment left without its session id by checkout gets it back here
            gateway_checkout_id=func.coalesce(Payment.gateway_checkout_id, checkout_id),
        )
        .execution_options(synchronize_session=False)
    )
    order = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == order_status.PENDING)
        .values(status=order_status.PAID, paid_at=now)
        .execution_options(synchronize_session=False)
    )
    return PaidOutcome(payment_updated=payment.rowcount == 1, order_updated=order.rowcount == 1)


async def update_order_status(session: AsyncSession, order_id: int, expected_status: str, values: dict) -> bool:
    """Write ``values`` only if the order still has the status the caller read."""
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_payment_failed(session: AsyncSession, order_id: int) -> bool:
    result = await session.execute(
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status.in_(("pending", "processing")))
        .values(status="failed")
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_payment_by_transaction(session: AsyncSession, transaction_id: str) -> Optional[Payment]:
    res = await session.execute(select(Payment).where(Payment.gateway_transaction_id == transaction_id))
    return res.scalar_one_or_none()


# 🎟️ Купоны
async def get_active_coupon(session: AsyncSession, code: str) -> Optional[Coupon]:
    res = await session.execute(
        select(Coupon).where(Coupon.code == code.strip().upper(), Coupon.is_active.is_(True))
    )
    return res.scalar_one_or_none()


def _invalid(message: str) -> dict:
    return {"is_valid": False, "coupon_id": None, "discount_amount": None, "error_message": message}


async def validate_coupon(
    session: AsyncSession,
    code: str,
    subtotal,
    user_id: int,
    category_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Evaluate every eligibility rule for a coupon in one place.

    The coupon row is locked for the rest of the caller's transaction so the
    usage counters read here cannot change underneath it.
    """
    now = now or utcnow()
    subtotal = to_decimal(subtotal)

    res = await session.execute(
        select(Coupon).where(Coupon.code == code.strip().upper()).with_for_update()
    )
    coupon = res.scalar_one_or_none()
    if coupon is None:
        return _invalid("Coupon not found")
    if not coupon.is_active:
        return _invalid("Coupon is not active")
    if coupon.starts_at is not None and as_aware(coupon.starts_at) > now:
        return _invalid("Coupon is not valid yet")
    if coupon.expires_at is not None and as_aware(coupon.expires_at) <= now:
        return _invalid("Coupon has expired")
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return _invalid("Coupon usage limit has been reached")

    used_by_user = (await session.execute(
        select(func.count()).select_from(CouponUsage)
        .where(CouponUsage.coupon_id == coupon.id, CouponUsage.user_id == user_id)
    )).scalar_one()
    if coupon.per_user_limit is not None and used_by_user >= coupon.per_user_limit:
        return _invalid("You have already used this coupon")

    min_purchase = to_decimal(coupon.min_purchase)
    if subtotal < min_purchase:
        return _invalid(f"Minimum purchase of {money(min_purchase)} required for this coupon")
    if coupon.category_id is not None and coupon.category_id != category_id:
        return _invalid("Coupon is not valid for this category")

    return {
        "is_valid": True,
        "coupon_id": coupon.id,
        "discount_amount": calculate_discount(coupon, subtotal),
        "error_message": None,
    }


async def increment_coupon_usage(session: AsyncSession, coupon_id: int) -> bool:
    """Atomic compare-and-increment; False when the usage cap is already reached."""
    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            (Coupon.usage_limit.is_(None)) | (Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def insert_coupon_usage(session: AsyncSession, coupon_id: int, user_id: int, order_id: int) -> CouponUsage:
    usage = CouponUsage(coupon_id=coupon_id, user_id=user_id, order_id=order_id)
    session.add(usage)
    await session.flush()
    return usage


async def order_category_id(session: AsyncSession, order_id: int) -> Optional[int]:
    """The single category shared by every item of the order, else None."""
    res = await session.execute(
        select(Product.category_id)
        .join(OrderItem, OrderItem.product_id == Product.id)
        .where(OrderItem.order_id == order_id)
        .distinct()
    )
    categories = [c for c in res.scalars().all()]
    if len(categories) == 1:
        return categories[0]
    return None


# 🔔 Уведомления
async def create_notification(
    session: AsyncSession,
    user_id: int,
    type: str,
    title: str,
    message: str,
    data: Optional[dict] = None,
) -> Notification:
    notification = Notification(user_id=user_id, type=type, title=title, message=message, data=data)
    session.add(notification)
    await session.flush()
    return notification


async def admin_user_ids(session: AsyncSession) -> List[int]:
    res = await session.execute(select(User.id).where(User.role == "admin").order_by(User.id))
    return list(res.scalars().all())


def decimal_or_zero(value) -> Decimal:
    return to_decimal(value) if value is not None else Decimal("0")


async def reserve_stock(session: AsyncSession, product_id: int, quantity: int) -> bool:
    """Take ``quantity`` units off the shelf; False when there are not enough left."""
    result = await session.execute(
        update(Product)
        .where(Product.id == product_id, Product.is_available.is_(True), Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_product(session: AsyncSession, product_id: int, fresh: bool = False) -> Optional[Product]:
    query = select(Product).where(Product.id == product_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    res = await session.execute(query)
    return res.scalar_one_or_none()

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, order_status
from .auth import get_current_user
from .database import get_session
from .errors import InvalidState, NotFound, ValidationFailed
from .logger import log
from .models import Coupon, Order, User
from .pricing import order_total, to_decimal
from .schemas import CouponValidateRequest, CouponValidationResult

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


def _invalid(message: str) -> CouponValidationResult:
    return CouponValidationResult(is_valid=False, error_message=message)


async def validate_coupon(
    session: AsyncSession,
    code: str,
    subtotal,
    user_id: Optional[int],
    category_id: Optional[int] = None,
) -> CouponValidationResult:
    """Check a coupon for a cart. Never raises: problems come back as an invalid result."""
    if not code or not code.strip():
        return _invalid("Coupon code is required")
    if user_id is None:
        return _invalid("Sign in to use a coupon")
    if to_decimal(subtotal) < 0:
        return _invalid("Subtotal cannot be negative")

    try:
        result = await crud.validate_coupon(session, code, subtotal, user_id, category_id)
    except SQLAlchemyError as e:
        log.error(f"validate_coupon: database error: {e}")
        return _invalid("Unable to validate coupon, try again later")
    return CouponValidationResult(**result)


async def get_coupon_by_code(session: AsyncSession, code: str) -> Optional[Coupon]:
    if not code or not code.strip():
        return None
    try:
        return await crud.get_active_coupon(session, code)
    except SQLAlchemyError as e:
        log.error(f"get_coupon_by_code: database error: {e}")
        return None


async def record_coupon_usage(
    session: AsyncSession,
    coupon_id: int,
    user_id: int,
    order_id: int,
    commit: bool = True,
) -> bool:
    """
    Insert the usage row and bump ``used_count`` in the current transaction.

    Returns False (after rolling the transaction back) when the order already
    used this coupon or the cap was reached by a concurrent checkout.
    """
    try:
        await crud.insert_coupon_usage(session, coupon_id, user_id, order_id)
        counted = await crud.increment_coupon_usage(session, coupon_id)
    except IntegrityError:
        await session.rollback()
        log.warning(f"coupon {coupon_id}: usage for order {order_id} already recorded")
        return False

    if not counted:
        await session.rollback()
        log.warning(f"coupon {coupon_id}: usage limit reached, order {order_id} not counted")
        return False

    if commit:
        await session.commit()
    log.info(f"coupon {coupon_id}: used by user {user_id} on order {order_id}")
    return True


async def apply_coupon_to_order(session: AsyncSession, order_id: int, user_id: int, code: str) -> Order:
    order = await crud.get_user_order(session, order_id, user_id)
    if order is None:
        raise NotFound("Order not found")
    if order.status != order_status.PENDING:
        raise InvalidState("Coupons can only be applied to unpaid orders")
    if order.coupon_id is not None:
        raise InvalidState("A coupon is already applied to this order")

    category_id = await crud.order_category_id(session, order.id)
    result = await validate_coupon(session, code, order.subtotal, user_id, category_id)
    if not result.is_valid:
        raise ValidationFailed(result.error_message or "Invalid coupon")

    if not await record_coupon_usage(session, result.coupon_id, user_id, order_id, commit=False):
        raise InvalidState("Coupon usage limit has been reached")

    order.coupon_id = result.coupon_id
    order.discount = result.discount_amount
    order.total = order_total(order.subtotal, order.shipping_cost, order.discount)
    await session.commit()
    await session.refresh(order)
    return order


# ✅ Проверка купона для корзины
@router.post("/validate", response_model=CouponValidationResult)
async def validate_coupon_route(
    payload: CouponValidateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await validate_coupon(session, payload.code, payload.subtotal, current_user.id, payload.category_id)

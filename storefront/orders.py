# storefront/orders.py
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, order_status
from .auth import get_current_user
from .config import settings
from .coupons import apply_coupon_to_order
from .database import get_session
from .errors import InvalidState, NotFound, StorefrontError, ValidationFailed
from .logger import log
from .models import Order, OrderItem, Product, User
from .pricing import money, order_total
from .realtime import ChangeFeed, INSERT, get_feed, publish_order, publish_stock
from .schemas import (
    ApplyCouponRequest, OrderCancelRequest, OrderCreate, OrderOut, OrderProgress,
    OrderStats, OrderStatusUpdate, OrderSummary,
)

router = APIRouter(prefix="/api/orders", tags=["orders"])
admin_router = APIRouter(prefix="/api/admin/orders", tags=["admin"])

PAYMENT_TIMEOUT_REASON = "payment_timeout"


def generate_order_number() -> str:
    return f"SF{crud.utcnow():%Y%m%d}{secrets.token_hex(3).upper()}"


async def _release_stock(session: AsyncSession, order: Order) -> List[Product]:
    restored = []
    for item in order.items:
        if item.product_id is None:
            continue
        product = await crud.restore_stock(session, item.product_id, item.quantity)
        if product is not None:
            restored.append(product)
    return restored


async def create_order(session: AsyncSession, user: User, payload: OrderCreate) -> Order:
    """Snapshot the products into a pending order and reserve their stock."""
    order = Order(
        order_number=generate_order_number(),
        user_id=user.id,
        status=order_status.PENDING,
        currency=(payload.currency or settings.DEFAULT_CURRENCY).upper(),
        shipping_cost=money(payload.shipping_cost),
        shipping_courier=payload.shipping_courier,
        shipping_service=payload.shipping_service,
    )
    session.add(order)
    await session.flush()

    subtotal = Decimal("0")
    for line in payload.items:
        res = await session.execute(select(Product).where(Product.id == line.product_id))
        product = res.scalar_one_or_none()
        if product is None:
            await session.rollback()
            raise ValidationFailed(f"Product {line.product_id} not found")
        name = product.name
        if not await crud.reserve_stock(session, product.id, line.quantity):
            await session.rollback()
            raise ValidationFailed(f"Not enough stock for {name}")

        line_total = money(product.price * line.quantity)
        session.add(OrderItem(
            order_id=order.id,
            product_id=product.id,
            product_title=product.name,
            product_image=product.image_url,
            price=product.price,
            quantity=line.quantity,
            subtotal=line_total,
        ))
        subtotal += line_total

    order.subtotal = money(subtotal)
    order.discount = money(0)
    order.total = order_total(order.subtotal, order.shipping_cost, order.discount)
    await crud.create_notification(
        session, user.id, "order_created", "Order placed",
        f"Order {order.order_number} has been placed. Please complete the payment.",
        {"order_id": order.id, "order_number": order.order_number},
    )
    await session.commit()
    log.info(f"orders: {order.order_number} created for user {user.id}, total {order.total}")
    return await crud.get_order(session, order.id, fresh=True)


async def transition_order(session: AsyncSession, order: Order, target: str,
                           reason: Optional[str] = None, **extra) -> Order:
    """
    Move ``order`` to ``target`` unless its status changed since it was loaded.

    The write is a conditional UPDATE on the loaded status, so a payment or
    another operator landing in between makes this raise InvalidState instead
    of being overwritten. Nothing is committed here.
    """
    values = order_status.transition_values(order, target, reason=reason)
    values.update(extra)
    order_id, number, loaded = order.id, order.order_number, order.status
    if not await crud.update_order_status(session, order_id, loaded, values):
        await session.rollback()
        raise InvalidState(f"Order {number} is no longer {loaded}, reload and try again")
    return await crud.get_order(session, order_id, fresh=True)


async def cancel_order(session: AsyncSession, order: Order, reason: str,
                       feed: Optional[ChangeFeed] = None) -> Order:
    """Cancel and put the reserved stock back unless the parcel already left."""
    shipped = order.status == order_status.SHIPPED
    order = await transition_order(session, order, order_status.CANCELLED, reason=reason)
    restored = [] if shipped else await _release_stock(session, order)
    await session.commit()
    log.info(f"orders: {order.order_number} cancelled ({reason})")

    await publish_order(feed, order)
    for product in restored:
        await publish_stock(feed, product)
    return order


async def cancel_expired_orders(
    session: AsyncSession,
    older_than_hours: Optional[int] = None,
    feed: Optional[ChangeFeed] = None,
) -> dict:
    """
    Cancel pending orders that were never paid.

    Each order is handled in its own transaction so one failure does not undo
    the rest; failures are reported per order number. An order paid while the
    sweep runs is skipped.
    """
    hours = older_than_hours if older_than_hours is not None else settings.ORDER_PAYMENT_TIMEOUT_HOURS
    cutoff = crud.utcnow() - timedelta(hours=hours)
    expired = [(o.id, o.order_number) for o in await crud.find_expired_pending_orders(session, cutoff)]
    log.info(f"expiry: {len(expired)} pending order(s) older than {cutoff.isoformat()}")

    cancelled, errors = [], []
    for order_id, number in expired:
        try:
            # a rollback expires everything, so each order is reloaded
            order = await crud.get_order(session, order_id, fresh=True)
            if order is None or order.status != order_status.PENDING:
                continue
            order = await transition_order(session, order, order_status.CANCELLED, reason=PAYMENT_TIMEOUT_REASON)
            restored = await _release_stock(session, order)
            await crud.create_notification(
                session, order.user_id, "order_cancelled", "Order cancelled",
                f"Order {number} was cancelled because payment was not received within {hours} hours.",
                {"order_id": order_id, "order_number": number, "reason": PAYMENT_TIMEOUT_REASON},
            )
            await session.commit()
        except InvalidState:
            log.info(f"expiry: {number} changed status during the sweep, skipped")
            continue
        except (SQLAlchemyError, StorefrontError) as e:
            await session.rollback()
            log.error(f"expiry: failed to cancel {number}: {e}")
            errors.append(f"{number}: {e}")
            continue

        cancelled.append(number)
        await publish_order(feed, order)
        for product in restored:
            await publish_stock(feed, product)

    return {"cancelled": len(cancelled), "orders": cancelled, "errors": errors}


def _summary(order: Order) -> OrderSummary:
    return OrderSummary(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        total=order.total,
        currency=order.currency,
        created_at=order.created_at,
        items_count=len(order.items),
    )


async def _owned_order(session: AsyncSession, order_id: int, user: User) -> Order:
    order = await crud.get_user_order(session, order_id, user.id)
    if order is None:
        raise NotFound("Order not found")
    return order


# ✅ Создание заказа
@router.post("", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
async def create_order_route(
    payload: OrderCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    order = await create_order(session, current_user, payload)
    await publish_order(feed, order, INSERT)
    for item in order.items:
        product = await crud.get_product(session, item.product_id, fresh=True)
        if product is not None:
            await publish_stock(feed, product)
    return order


# 🧾 История заказов текущего пользователя
@router.get("", response_model=List[OrderSummary])
async def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100, alias="pageSize"),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    orders, _ = await crud.list_user_orders(session, current_user.id, status_filter, page, page_size)
    return [_summary(o) for o in orders]


@router.get("/stats", response_model=OrderStats)
async def order_stats(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    counts = await crud.order_status_counts(session, current_user.id)
    in_progress = (order_status.PAID, order_status.CONFIRMED, order_status.PROCESSING, order_status.SHIPPED)
    return OrderStats(
        total=sum(counts.values()),
        pending=counts.get(order_status.PENDING, 0),
        processing=sum(counts.get(s, 0) for s in in_progress),
        completed=counts.get(order_status.DELIVERED, 0) + counts.get(order_status.COMPLETED, 0),
    )


# 📦 Детали одного заказа
@router.get("/{order_id}", response_model=OrderOut)
async def order_detail(
    order_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return await _owned_order(session, order_id, current_user)


@router.get("/{order_id}/progress", response_model=OrderProgress)
async def order_progress(
    order_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order = await _owned_order(session, order_id, current_user)
    return order_status.render_progress(order)


@router.post("/{order_id}/cancel", response_model=OrderOut)
async def cancel_order_route(
    order_id: int,
    payload: OrderCancelRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    order = await _owned_order(session, order_id, current_user)
    # customers may only cancel before paying; later cancellations go through support
    if order.status != order_status.PENDING:
        raise InvalidState("Only pending orders can be cancelled")
    return await cancel_order(session, order, payload.reason, feed)


@router.post("/{order_id}/coupon", response_model=OrderOut)
async def apply_coupon_route(
    order_id: int,
    payload: ApplyCouponRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    order = await apply_coupon_to_order(session, order_id, current_user.id, payload.code)
    await publish_order(feed, order)
    return order


# 🛠️ Смена статуса оператором
@admin_router.patch("/{order_id}/status", response_model=OrderOut)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    order = await crud.get_order(session, order_id)
    if order is None:
        raise NotFound("Order not found")

    if payload.status == order_status.CANCELLED:
        order = await cancel_order(session, order, payload.reason or "", feed)
    else:
        extra = {"tracking_number": payload.tracking_number} if payload.tracking_number else {}
        order = await transition_order(session, order, payload.status, reason=payload.reason, **extra)
        await session.commit()
        await publish_order(feed, order)

    await crud.create_notification(
        session, order.user_id, "order_status", "Order updated",
        f"Order {order.order_number} is now {order.status}.",
        {"order_id": order.id, "order_number": order.order_number, "status": order.status},
    )
    await session.commit()
    log.info(f"orders: {order.order_number} -> {order.status} by user {current_user.id}")
    return order

"""
Checkout orchestration and payment finalization.

``initiate_checkout`` turns a pending order into a hosted gateway session
and records one Payment for it. ``verify_payment`` (success-page redirect)
and the webhook both finalize through ``finalize_session``; whichever gets
there first writes, the other sees nothing left to do.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, order_status
from .auth import get_current_user
from .config import settings
from .database import get_session
from .errors import InvalidState, NotFound, UpstreamFailure, ValidationFailed
from .gateway import GatewayError, PaymentGateway, get_gateway
from .logger import log
from .models import Order, User
from .pricing import money, to_decimal
from .realtime import ChangeFeed, get_feed, publish_order
from .schemas import CheckoutRequest, CheckoutResponse, VerifyResponse

router = APIRouter(tags=["checkout"])

PAYMENT_METHOD = "stripe_card"


@dataclass
class CheckoutSession:
    session_id: str
    url: str


@dataclass
class VerifyResult:
    success: bool
    order_id: Optional[int] = None


def build_line_items(order: Order) -> list:
    items = [
        {
            "name": item.product_title,
            "amount": item.price,
            "quantity": item.quantity,
            "image": item.product_image,
        }
        for item in order.items
    ]
    if to_decimal(order.shipping_cost) > 0:
        items.append({"name": "Shipping", "amount": order.shipping_cost, "quantity": 1})

    if to_decimal(order.discount) > 0:
        # the hosted page has no discount line, so charge the order total as one item
        return [{
            "name": f"Order {order.order_number}",
            "description": f"{len(order.items)} item(s), discount {money(order.discount)} applied",
            "amount": order.total,
            "quantity": 1,
        }]
    return items


async def initiate_checkout(
    session: AsyncSession,
    gateway: PaymentGateway,
    order_id: int,
    user: User,
    base_url: str,
) -> CheckoutSession:
    order = await crud.get_user_order(session, order_id, user.id)
    if order is None:
        raise NotFound("Order not found")
    if order.status != order_status.PENDING:
        raise InvalidState("Order is not pending payment")

    base_url = base_url.rstrip("/")
    gateway_session = await gateway.create_checkout_session(
        line_items=build_line_items(order),
        currency=order.currency or settings.DEFAULT_CURRENCY,
        success_url=f"{base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/checkout/cancel?order={order.order_number}",
        metadata={"order_id": str(order.id), "order_number": order.order_number},
        customer_email=user.email,
        expires_in_minutes=settings.CHECKOUT_SESSION_TTL_MINUTES,
        idempotency_key=f"checkout-{order.id}-{uuid.uuid4().hex}",
    )
    session_id, url = gateway_session["id"], gateway_session["url"]

    try:
        payment = await crud.upsert_payment(session, order, PAYMENT_METHOD, settings.CHECKOUT_SESSION_TTL_MINUTES)
        await crud.attach_checkout_session(session, payment, session_id)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        # the gateway session expires on its own; verification re-attaches it if paid
        log.error(f"checkout: order {order_id}: failed to store payment for session {session_id}: {e}")
        raise UpstreamFailure("Failed to record payment")

    log.info(f"checkout: order {order.order_number} -> session {session_id}")
    return CheckoutSession(session_id=session_id, url=url)


async def finalize_session(session: AsyncSession, gateway_session: dict,
                           feed: Optional[ChangeFeed] = None) -> Optional[int]:
    """
    Mark the order of a paid gateway session as paid.

    Returns the order id when the order is paid (whether or not this call did
    the writing). Returns None when there is nothing to finalize, or when the
    money arrived for an order that was closed before it could be paid; the
    latter is flagged to the operators for a refund.
    """
    metadata = gateway_session.get("metadata") or {}
    order_id = metadata.get("order_id")
    if gateway_session.get("payment_status") != "paid" or not order_id:
        return None
    order_id = int(order_id)

    outcome = await crud.mark_order_paid(
        session,
        order_id,
        payment_intent_id=gateway_session.get("payment_intent"),
        checkout_id=gateway_session.get("id"),
    )
    order = await crud.get_order(session, order_id, fresh=True)
    if not outcome.order_updated:
        if order is not None and order.paid_at is not None:
            await session.commit()
            log.debug(f"payment: order {order_id} already finalized")
            return order_id
        if outcome.payment_updated:
            await _flag_paid_closed_order(session, order_id, order, gateway_session)
        await session.commit()
        return None

    await crud.create_notification(
        session,
        order.user_id,
        "order_paid",
        "Payment successful",
        f"Payment for order {order.order_number} was successful. Your order is being processed.",
        {"order_id": order.id, "order_number": order.order_number},
    )
    await session.commit()
    log.info(f"payment: order {order.order_number} marked as paid")
    await publish_order(feed, order)
    return order_id


async def _flag_paid_closed_order(session: AsyncSession, order_id: int, order: Optional[Order],
                                  gateway_session: dict) -> None:
    number = order.order_number if order is not None else str(order_id)
    state = order.status if order is not None else "missing"
    log.error(
        f"payment: session {gateway_session.get('id')} paid for order {number} "
        f"which is {state}; refund needed"
    )
    data = {
        "order_id": order_id,
        "order_number": number,
        "order_status": state,
        "checkout_id": gateway_session.get("id"),
        "payment_intent": gateway_session.get("payment_intent"),
    }
    for admin_id in await crud.admin_user_ids(session):
        await crud.create_notification(
            session, admin_id, "payment_needs_refund", "Payment on a closed order",
            f"Order {number} was paid while {state}. Refund the payment.", data,
        )


async def verify_payment(session: AsyncSession, gateway: PaymentGateway, session_id: str,
                         feed: Optional[ChangeFeed] = None) -> VerifyResult:
    try:
        gateway_session = await gateway.retrieve_session(session_id)
    except GatewayError as e:
        log.warning(f"verify: session {session_id}: {e.message}")
        return VerifyResult(success=False)

    order_id = await finalize_session(session, gateway_session, feed)
    if order_id is None:
        return VerifyResult(success=False)
    return VerifyResult(success=True, order_id=order_id)


# 🔔 Вебхуки шлюза
async def handle_payment_failed(session: AsyncSession, intent: dict) -> None:
    order_id = (intent.get("metadata") or {}).get("order_id")
    if not order_id:
        log.error("webhook: payment_intent without order_id metadata")
        return
    order_id = int(order_id)

    await crud.mark_payment_failed(session, order_id)
    order = await crud.get_order(session, order_id)
    if order is not None:
        await crud.create_notification(
            session,
            order.user_id,
            "payment_failed",
            "Payment failed",
            f"Payment for order {order.order_number} failed. Please try again.",
            {"order_id": order.id, "order_number": order.order_number},
        )
    await session.commit()
    log.info(f"webhook: payment failed for order {order_id}")


async def handle_refund(session: AsyncSession, charge: dict, feed: Optional[ChangeFeed] = None) -> None:
    payment = await crud.get_payment_by_transaction(session, charge.get("payment_intent") or "")
    if payment is None:
        log.error(f"webhook: no payment found for refunded charge {charge.get('id')}")
        return

    full_refund = bool(charge.get("refunded"))
    now = crud.utcnow()
    payment.status = "refunded" if full_refund else "partially_refunded"
    payment.refund_amount = money(to_decimal(charge.get("amount_refunded", 0)) / 100)
    payment.refunded_at = now

    order = None
    if full_refund:
        order = await crud.get_order(session, payment.order_id, fresh=True)
        if order is not None and order_status.can_transition(order.status, order_status.REFUNDED):
            values = order_status.transition_values(order, order_status.REFUNDED, now=now)
            if await crud.update_order_status(session, order.id, order.status, values):
                order = await crud.get_order(session, order.id, fresh=True)
            else:
                order = None
        else:
            order = None
    await session.commit()
    log.info(f"webhook: refund processed for order {payment.order_id} (full={full_refund})")
    if order is not None:
        await publish_order(feed, order)


async def handle_event(session: AsyncSession, event: dict, feed: Optional[ChangeFeed] = None) -> None:
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        if await finalize_session(session, obj, feed) is None:
            log.warning(f"webhook: session {obj.get('id')} completed without a paid order")
    elif event_type == "payment_intent.payment_failed":
        await handle_payment_failed(session, obj)
    elif event_type == "charge.refunded":
        await handle_refund(session, obj, feed)
    else:
        log.info(f"webhook: unhandled event type {event_type}")


# 💳 Маршруты
@router.post("/api/checkout", response_model=CheckoutResponse)
async def checkout(
    payload: CheckoutRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
):
    if not payload.orderId:
        raise ValidationFailed("Order ID is required")
    base_url = request.headers.get("origin") or settings.APP_URL
    result = await initiate_checkout(session, gateway, payload.orderId, current_user, base_url)
    return CheckoutResponse(sessionId=result.session_id, url=result.url)


@router.get("/api/checkout/verify", response_model=VerifyResponse)
async def verify_checkout(
    session_id: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    if not session_id:
        raise ValidationFailed("No session ID")
    try:
        result = await verify_payment(session, gateway, session_id, feed)
    except SQLAlchemyError as e:
        log.error(f"verify: session {session_id}: database error: {e}")
        raise UpstreamFailure("Verification failed")
    return VerifyResponse(success=result.success, orderId=result.order_id)


@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
    feed: Optional[ChangeFeed] = Depends(get_feed),
):
    body = await request.body()
    event = gateway.construct_event(body, request.headers.get("stripe-signature"))
    log.info(f"webhook: received {event.get('type')} ({event.get('id')})")
    try:
        await handle_event(session, event, feed)
    except SQLAlchemyError as e:
        log.error(f"webhook: handler failed for {event.get('type')}: {e}")
        raise UpstreamFailure("Webhook handler failed")
    return {"received": True}

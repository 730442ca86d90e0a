"""
Order lifecycle.

    pending -> confirmed (paid) -> processing -> shipped -> delivered -> completed

``paid`` is the status written by payment finalization and sits at the
``confirmed`` position. ``cancelled`` is reachable from any pre-delivery state
and needs a reason; ``refunded`` is reachable from any state at or after
payment. Both are terminal. Status never moves backwards and every transition
timestamp is written once.
"""
from datetime import datetime, timezone
from typing import Optional

from .errors import InvalidState, ValidationFailed

PENDING = "pending"
PAID = "paid"
CONFIRMED = "confirmed"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
COMPLETED = "completed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

LIFECYCLE = (PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, COMPLETED)
TERMINAL = (CANCELLED, REFUNDED)
ALL_STATUSES = LIFECYCLE + (PAID,) + TERMINAL

ALIASES = {PAID: CONFIRMED}

CANCELLABLE = (PENDING, PAID, CONFIRMED, PROCESSING, SHIPPED)

# status -> timestamp column stamped when the order enters it
TIMESTAMP_FIELDS = {
    PAID: "paid_at",
    CONFIRMED: "paid_at",
    PROCESSING: "processing_at",
    SHIPPED: "shipped_at",
    DELIVERED: "delivered_at",
    COMPLETED: "completed_at",
    CANCELLED: "cancelled_at",
    REFUNDED: "refunded_at",
}

# (key, label, description) rendered by the progress indicator
STEPS = (
    (PENDING, "Order placed", "Waiting for payment"),
    (CONFIRMED, "Payment confirmed", "Payment has been received"),
    (PROCESSING, "Processing", "Your order is being packed"),
    (SHIPPED, "Shipped", "Your order is on its way"),
    (DELIVERED, "Delivered", "Your order has arrived"),
)

STEP_TIMESTAMPS = {
    PENDING: "created_at",
    CONFIRMED: "paid_at",
    PROCESSING: "processing_at",
    SHIPPED: "shipped_at",
    DELIVERED: "delivered_at",
}


def position(status: str) -> int:
    """Index in the lifecycle, -1 for terminal or unknown statuses."""
    status = ALIASES.get(status, status)
    try:
        return LIFECYCLE.index(status)
    except ValueError:
        return -1


def can_transition(current: str, target: str) -> bool:
    if current in TERMINAL or current == target:
        return False
    if target == CANCELLED:
        return current in CANCELLABLE
    if target == REFUNDED:
        return position(current) >= position(CONFIRMED)
    current_pos, target_pos = position(current), position(target)
    if current_pos < 0 or target_pos < 0:
        return False
    return target_pos == current_pos + 1


def transition_values(order, target: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """
    Column values that move ``order`` to ``target``; raises InvalidState when
    not allowed. ``order`` is only read: callers write the values with a
    conditional UPDATE on the status they read.
    """
    if target not in ALL_STATUSES:
        raise ValidationFailed(f"Unknown order status: {target}")
    if target == CANCELLED and not (reason and reason.strip()):
        raise ValidationFailed("A cancellation reason is required")
    if not can_transition(order.status, target):
        raise InvalidState(f"Order cannot move from {order.status} to {target}")

    values = {"status": target}
    field = TIMESTAMP_FIELDS.get(target)
    if field and getattr(order, field, None) is None:
        values[field] = now or datetime.now(timezone.utc)
    if target == CANCELLED:
        values["cancel_reason"] = reason.strip()
    return values


def step_state(step_key: str, current_status: str) -> str:
    if current_status == CANCELLED:
        return CANCELLED

    current_index = position(current_status)
    step_index = position(step_key)
    if step_index < current_index:
        return "completed"
    if step_index == current_index:
        return "current"
    return "upcoming"


def render_progress(order) -> dict:
    """
    Progress indicator data for an order.

    Cancelled and refunded orders get a terminal view with no steps; otherwise
    every step carries its visual state and, only if that step has actually
    happened, its timestamp.
    """
    current = order.status or PENDING
    if current in TERMINAL:
        return {
            "status": current,
            "terminal": current,
            "terminal_at": getattr(order, TIMESTAMP_FIELDS[current], None),
            "cancel_reason": order.cancel_reason if current == CANCELLED else None,
            "steps": [],
        }

    steps = []
    for key, label, description in STEPS:
        state = step_state(key, current)
        timestamp = None
        if state != "upcoming":
            timestamp = getattr(order, STEP_TIMESTAMPS[key], None)
        steps.append({
            "key": key,
            "label": label,
            "description": description,
            "state": state,
            "timestamp": timestamp,
        })
    return {"status": current, "terminal": None, "terminal_at": None, "cancel_reason": None, "steps": steps}

"""Pure pricing helpers: coupon discounts and order totals."""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional, Union

Number = Union[int, float, Decimal, str]

CENTS = Decimal("0.01")


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def _field(coupon: Any, name: str):
    if isinstance(coupon, Mapping):
        return coupon.get(name)
    return getattr(coupon, name, None)


def calculate_discount(coupon: Any, subtotal: Number) -> Decimal:
    """
    Discount for a coupon (model or mapping with type/value/max_discount).

    fixed      -> min(value, subtotal)
    percentage -> subtotal * value / 100, capped by max_discount, then by subtotal
    """
    subtotal = to_decimal(subtotal)
    if subtotal <= 0:
        return money(0)

    value = to_decimal(_field(coupon, "value"))
    if value <= 0:
        return money(0)

    if _field(coupon, "type") == "fixed":
        return money(min(value, subtotal))

    discount = subtotal * value / Decimal(100)
    max_discount = _field(coupon, "max_discount")
    if max_discount is not None and to_decimal(max_discount) > 0:
        discount = min(discount, to_decimal(max_discount))
    return money(min(discount, subtotal))


def order_total(subtotal: Number, shipping_cost: Number, discount: Number) -> Decimal:
    total = to_decimal(subtotal) + to_decimal(shipping_cost) - to_decimal(discount)
    return money(max(total, Decimal("0")))

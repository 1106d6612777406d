"""
Money arithmetic for order totals and discounts.

Amounts are stored as floats in dollars; every intermediate discount is
rounded to cents so the persisted numbers always add up.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Tuple

CENT = Decimal("0.01")


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def referral_discount(subtotal: float, discount_type: str, discount_value: float) -> float:
    """Discount granted by a referral program, never more than the subtotal."""
    value = float(discount_value or 0)
    if discount_type == "percent":
        pct = max(0.0, min(100.0, value))
        discount = subtotal * pct / 100
    else:
        discount = max(0.0, value)
    return min(subtotal, round_money(discount))


def stack_coupons(subtotal: float, prior_discount: float, coupon_values: Iterable[float]) -> Tuple[List[float], float]:
    """
    Apply fixed-value coupons one after another.

    Each coupon covers at most what is left of the subtotal after every
    discount before it. Returns the per-coupon amounts and their sum.
    """
    applied: List[float] = []
    running = prior_discount
    coupon_total = 0.0
    for value in coupon_values:
        remaining = max(0.0, round_money(subtotal - running))
        amount = round_money(max(0.0, min(remaining, float(value))))
        applied.append(amount)
        coupon_total = round_money(coupon_total + amount)
        running = round_money(running + amount)
    return applied, coupon_total


def order_total(subtotal: float, discount_amount: float) -> float:
    return max(0.0, round_money(subtotal - discount_amount))

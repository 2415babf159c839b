"""Pricing and discount calculation.

Everything here is pure: no database access and no coupon state changes.
Recording coupon usage is the checkout coordinator's job.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from records import CartLineRecord, CouponRecord, CouponType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    discount: Decimal
    total: Decimal


def compute_subtotal(lines: Iterable[CartLineRecord]) -> Decimal:
    """Sum of quantity x unit price captured when each line was added to the cart."""
    return quantize_money(sum((line.price * line.quantity for line in lines), ZERO))


def compute_discount(subtotal: Decimal, coupon: Optional[CouponRecord]) -> Decimal:
    """
    Discount granted by a coupon on a given subtotal.

    Percentage coupons are capped by `max_discount` when it is set. Fixed
    coupons never discount more than the subtotal. The result is always in
    [0, subtotal].
    """
    if coupon is None or subtotal <= ZERO:
        return ZERO

    if coupon.type == CouponType.PERCENTAGE:
        amount = subtotal * coupon.value / Decimal(100)
        if coupon.max_discount is not None:
            amount = min(amount, coupon.max_discount)
    else:
        amount = min(coupon.value, subtotal)

    amount = quantize_money(amount)
    return max(ZERO, min(amount, subtotal))


def compute_totals(lines: Iterable[CartLineRecord], coupon: Optional[CouponRecord] = None) -> PriceBreakdown:
    subtotal = compute_subtotal(lines)
    discount = compute_discount(subtotal, coupon)
    return PriceBreakdown(subtotal=subtotal, discount=discount, total=subtotal - discount)

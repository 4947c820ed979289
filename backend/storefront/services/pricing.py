# Overview: Shared fixed-point discount arithmetic for sales, promo codes and checkout.

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Flat VAT, carved out of the order total (never added on top)
VAT_RATE = Decimal("0.10")

DISCOUNT_PERCENTAGE = "percentage"  # Sale
DISCOUNT_PERCENT = "percent"        # PromoCode
DISCOUNT_FIXED = "fixed"


def to_money(value) -> Decimal:
    """Quantize any numeric input to 2 decimal places (half-up)."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent) -> Decimal:
    return to_money(to_money(amount) * Decimal(str(percent)) / HUNDRED)


def apply_percentage(price, percent, cap=None) -> Decimal:
    """
    price - min(price * percent / 100, cap), clamped at 0.

    A cap of None means uncapped.
    """
    price = to_money(price)
    discount = percent_of(price, percent)
    if cap is not None and discount > to_money(cap):
        discount = to_money(cap)
    return max(ZERO, price - discount)


def apply_fixed(price, value) -> Decimal:
    """price - value, clamped at 0."""
    return max(ZERO, to_money(price) - to_money(value))


def vat_of(total) -> Decimal:
    return to_money(to_money(total) * VAT_RATE)

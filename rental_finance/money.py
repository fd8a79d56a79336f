"""
Decimal helpers shared by the pricing, P&L and payout services.

All arithmetic keeps full Decimal precision; money() is applied only where a value
is persisted or presented.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    """Convert Numeric/float/str/None to Decimal safely."""
    if value is None or value == "":
        return Decimal("0.00")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(x) -> Decimal:
    return to_decimal(x).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def percent_of(amount, percent) -> Decimal:
    """amount * percent / 100, unrounded."""
    return to_decimal(amount) * to_decimal(percent) / HUNDRED


def ratio_percent(part, whole) -> Decimal:
    """part / whole as a percentage; 0 when whole is 0."""
    whole = to_decimal(whole)
    if whole == 0:
        return Decimal("0")
    return to_decimal(part) / whole * HUNDRED

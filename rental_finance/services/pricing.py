"""
rental_finance/services/pricing.py

Invoice pricing rules. Pure functions: no database access, no global settings lookup.

Line-item sign convention:
- rental charge and ad-hoc charges (fines, penalties, government/traffic fees): positive
- discounts and collected deposits: negative

Tax rule:
- taxable_base = sum of items whose label does not mention "deposit"
- tax          = max(0, taxable_base * vat_percent / 100)
- subtotal     = sum of all items (deposits included)
- total        = max(0, subtotal + tax)

So a deposit lowers the amount due but never the tax base; a discount lowers both.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from ..errors import ValidationError
from ..money import ZERO, money, percent_of, to_decimal

FINE_LABEL_KEYWORDS = ("fine", "penalty", "government", "traffic")
DEPOSIT_LABEL_KEYWORD = "deposit"

DISCOUNT_LABEL = "Discount"
DEPOSIT_LABEL = "Deposit Paid"

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class PricingConfig:
    """Tenant settings the pricing depends on, passed in explicitly."""

    vat_percent: Decimal = Decimal("5")
    currency: str = "AED"


@dataclass(frozen=True)
class LineItem:
    label: str
    amount: Decimal

    def to_dict(self) -> dict:
        return {"label": self.label, "amount": money(self.amount)}


@dataclass(frozen=True)
class InvoiceTotals:
    taxable_base: Decimal
    tax: Decimal
    subtotal: Decimal
    total: Decimal


# ---------------------------------------------------------------------
# Label classification
# ---------------------------------------------------------------------
def is_fine_item(item) -> bool:
    """
    Fine / penalty / government or traffic fee charge.

    Label-substring heuristic, case-insensitive, positive amounts only.
    Every caller goes through this predicate.
    """
    label = (getattr(item, "label", "") or "").lower()
    if to_decimal(getattr(item, "amount", None)) <= 0:
        return False
    return any(keyword in label for keyword in FINE_LABEL_KEYWORDS)


def is_deposit_item(item) -> bool:
    label = (getattr(item, "label", "") or "").lower()
    return DEPOSIT_LABEL_KEYWORD in label


def fine_labels(items: Iterable) -> set[str]:
    return {item.label for item in items if is_fine_item(item)}


def fines_amount(items: Iterable) -> Decimal:
    return sum((to_decimal(item.amount) for item in items if is_fine_item(item)), ZERO)


# ---------------------------------------------------------------------
# Booking -> line items
# ---------------------------------------------------------------------
def rental_days(start: datetime, end: Optional[datetime]) -> int:
    """max(1, ceil((end - start) / 1 day)); a booking without an end is billed one day."""
    if end is None:
        return 1
    if end < start:
        raise ValidationError("Booking end must be after its start.", code="INVALID_DATE_RANGE")
    seconds = (end - start).total_seconds()
    return max(1, math.ceil(seconds / SECONDS_PER_DAY))


def daily_rate_for(vehicle, rental_type: str) -> Decimal:
    """
    Daily rate by rental type:
    - DAILY   -> daily_rate
    - WEEKLY  -> weekly_rate / 7   (daily_rate when no weekly rate)
    - MONTHLY -> monthly_rate / 30 (daily_rate when no monthly rate)
    """
    daily = to_decimal(vehicle.daily_rate)
    weekly = to_decimal(vehicle.weekly_rate)
    monthly = to_decimal(vehicle.monthly_rate)

    if rental_type == "WEEKLY" and weekly > 0:
        return weekly / Decimal("7")
    if rental_type == "MONTHLY" and monthly > 0:
        return monthly / Decimal("30")
    return daily


def _validate_booking(booking) -> None:
    if booking is None:
        raise ValidationError("Booking is required.", code="BOOKING_REQUIRED")
    if getattr(booking, "vehicle", None) is None:
        raise ValidationError("Booking has no vehicle.", code="VEHICLE_REQUIRED")
    if getattr(booking, "start_datetime", None) is None:
        raise ValidationError("Booking has no start date.", code="START_REQUIRED")
    if to_decimal(booking.discounts) < 0:
        raise ValidationError("Booking discount cannot be negative.", code="INVALID_DISCOUNT")
    if to_decimal(booking.deposit_amount) < 0:
        raise ValidationError("Booking deposit cannot be negative.", code="INVALID_DEPOSIT")


def price_booking(
    booking,
    rate_override=None,
    charges: Optional[Sequence[LineItem]] = None,
    currency: str = "AED",
) -> List[LineItem]:
    """
    Build the signed line-item ledger for a booking.

    Order: rental charge, discount, deposit, then ad-hoc charges in the order given.
    Amounts are rounded to cents per item; the totals are sums of these items.
    """
    _validate_booking(booking)
    vehicle = booking.vehicle
    rental_type = (booking.rental_type or "DAILY").upper()

    days = rental_days(booking.start_datetime, booking.end_datetime)

    if rate_override is not None:
        rate = to_decimal(rate_override)
    else:
        rate = daily_rate_for(vehicle, rental_type)
    if rate < 0:
        raise ValidationError("Daily rate cannot be negative.", code="INVALID_RATE")

    vehicle_name = f"{vehicle.brand or ''} {vehicle.model or ''}".strip()
    day_word = "day" if days == 1 else "days"
    items = [
        LineItem(
            label=f"Rental - {vehicle_name} ({rental_type}) - {days} {day_word} @ {money(rate)} {currency}/day",
            amount=money(rate * days),
        )
    ]

    discount = to_decimal(booking.discounts)
    if discount > 0:
        items.append(LineItem(label=DISCOUNT_LABEL, amount=-money(discount)))

    deposit = to_decimal(booking.deposit_amount)
    if deposit > 0:
        items.append(LineItem(label=DEPOSIT_LABEL, amount=-money(deposit)))

    for charge in charges or ():
        amount = to_decimal(charge.amount)
        if amount <= 0:
            raise ValidationError(f"Charge '{charge.label}' must be positive.", code="INVALID_CHARGE")
        items.append(LineItem(label=charge.label, amount=money(amount)))

    return items


# ---------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------
def compute_totals(items: Iterable, vat_percent) -> InvoiceTotals:
    items = list(items)
    taxable_base = sum(
        (to_decimal(item.amount) for item in items if not is_deposit_item(item)),
        ZERO,
    )
    tax = max(ZERO, money(percent_of(taxable_base, vat_percent)))
    subtotal = sum((to_decimal(item.amount) for item in items), ZERO)
    total = max(ZERO, subtotal + tax)
    return InvoiceTotals(taxable_base=taxable_base, tax=tax, subtotal=subtotal, total=total)


def normalize_items(raw_items) -> List[LineItem]:
    """
    Validate caller-supplied items (dicts or LineItem) into LineItem.

    - At least one item.
    - Label required.
    - Amount must parse as a number; sign is preserved.
    """
    if not raw_items:
        raise ValidationError("At least one item is required.", code="ITEMS_REQUIRED")

    items: List[LineItem] = []
    for idx, raw in enumerate(raw_items, start=1):
        if isinstance(raw, LineItem):
            label, amount = raw.label, raw.amount
        else:
            label = (raw.get("label") or "").strip() if isinstance(raw, dict) else ""
            amount = raw.get("amount") if isinstance(raw, dict) else None
        label = (label or "").strip()
        if not label:
            raise ValidationError(f"Item {idx}: label is required.", code="ITEM_LABEL_REQUIRED")
        if amount is None or isinstance(amount, bool):
            raise ValidationError(f"Item {idx}: amount is required.", code="ITEM_AMOUNT_REQUIRED")
        try:
            value = to_decimal(amount)
        except ArithmeticError:
            raise ValidationError(f"Item {idx}: invalid amount.", code="ITEM_AMOUNT_INVALID")
        if not value.is_finite():
            raise ValidationError(f"Item {idx}: invalid amount.", code="ITEM_AMOUNT_INVALID")
        items.append(LineItem(label=label, amount=money(value)))
    return items

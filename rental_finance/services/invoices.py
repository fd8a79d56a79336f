"""
rental_finance/services/invoices.py

Invoice lifecycle on top of the pure pricing rules.

- One invoice per booking (unique booking_id).
- Numbers are INV-YYYYMMDD-NNNN: daily sequence, highest existing + 1.
- Items/totals change only while DRAFT or ISSUED; PAID and VOID are terminal.
- Every newly added fine label creates one FINES expense (dated at the issue date,
  tagged with the booking's pickup branch) in the same transaction as the invoice write.
- Invoice.version is checked on every write; a caller holding an older version
  gets a StateConflictError and must re-read.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable, List, Optional, Sequence

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..audit import log_action, serialize_model
from ..errors import InvalidStateError, NotFoundError, StateConflictError, ValidationError
from ..extensions import db
from ..models import (
    CODE_FINES,
    INVOICE_DRAFT,
    INVOICE_ISSUED,
    INVOICE_PAID,
    INVOICE_STATUSES,
    INVOICE_TERMINAL_STATUSES,
    INVOICE_VOID,
    Booking,
    Invoice,
    InvoiceItem,
)
from ..money import money
from . import pricing
from .expenses import add_expense, get_category
from .pricing import LineItem, PricingConfig

logger = logging.getLogger(__name__)

INVOICE_NUMBER_ATTEMPTS = 3

# Allowed status moves through update_invoice_status
STATUS_TRANSITIONS = {
    INVOICE_DRAFT: {INVOICE_ISSUED, INVOICE_PAID, INVOICE_VOID},
    INVOICE_ISSUED: {INVOICE_PAID, INVOICE_VOID},
}


# ---------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------
def invoice_number_prefix(issue_date: date) -> str:
    return f"INV-{issue_date.strftime('%Y%m%d')}"


def generate_invoice_number(issue_date: date) -> str:
    """Next INV-YYYYMMDD-NNNN for the issue date."""
    prefix = invoice_number_prefix(issue_date)
    last = (
        Invoice.query.filter(Invoice.invoice_number.like(f"{prefix}-%"))
        .order_by(Invoice.invoice_number.desc())
        .first()
    )

    sequence = 1
    if last is not None:
        tail = last.invoice_number.rsplit("-", 1)[-1]
        sequence = (int(tail) if tail.isdigit() else 0) + 1

    return f"{prefix}-{sequence:04d}"


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found.", code="INVOICE_NOT_FOUND")
    return invoice


def get_booking(booking_id: int) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found.", code="BOOKING_NOT_FOUND")
    return booking


def _apply_items(invoice: Invoice, items: Sequence[LineItem], config: PricingConfig) -> None:
    """Replace the item list and recompute subtotal/tax/total together."""
    totals = pricing.compute_totals(items, config.vat_percent)

    invoice.items = [
        InvoiceItem(position=idx, label=item.label, amount=money(item.amount))
        for idx, item in enumerate(items)
    ]
    invoice.vat_percent = money(config.vat_percent)
    invoice.subtotal = money(totals.subtotal)
    invoice.tax_amount = money(totals.tax)
    invoice.total = money(totals.total)


def _record_new_fines(
    invoice: Invoice,
    items: Iterable[LineItem],
    previous_fine_labels: set[str],
    actor=None,
) -> int:
    """Create one FINES expense per fine label that was not on the invoice before."""
    new_fines = [
        item for item in items
        if pricing.is_fine_item(item) and item.label not in previous_fine_labels
    ]
    if not new_fines:
        return 0

    category = get_category(CODE_FINES)
    branch = invoice.booking.pickup_branch if invoice.booking else None

    seen: set[str] = set()
    for item in new_fines:
        if item.label in seen:
            continue
        seen.add(item.label)
        add_expense(
            category=category,
            description=f"Fine - {item.label} - Invoice {invoice.invoice_number}",
            amount=item.amount,
            currency=invoice.currency,
            date_incurred=invoice.issue_date,
            branch_id=branch,
            actor=actor,
        )

    logger.info("Invoice %s: recorded %d fine expense(s)", invoice.invoice_number, len(seen))
    return len(seen)


def _check_version(invoice: Invoice, expected_version: Optional[int]) -> None:
    if expected_version is not None and int(expected_version) != invoice.version:
        raise StateConflictError(
            "Invoice was modified by someone else; reload and try again.",
            code="VERSION_CONFLICT",
            current_state=str(invoice.version),
        )


def _persist_new_invoice(
    booking: Booking,
    items: List[LineItem],
    config: PricingConfig,
    issue_date: date,
    due_date: Optional[date],
    status: str,
    actor=None,
) -> Invoice:
    due_days = current_app.config.get("INVOICE_DUE_DAYS", 30)

    for attempt in range(1, INVOICE_NUMBER_ATTEMPTS + 1):
        invoice = Invoice(
            booking_id=booking.id,
            invoice_number=generate_invoice_number(issue_date),
            issue_date=issue_date,
            due_date=due_date or issue_date + timedelta(days=due_days),
            currency=config.currency,
            status=status,
        )
        invoice.booking = booking
        _apply_items(invoice, items, config)
        db.session.add(invoice)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            if Invoice.query.filter_by(booking_id=booking.id).first() is not None:
                raise StateConflictError(
                    "Invoice already exists for this booking.",
                    code="INVOICE_EXISTS",
                )
            logger.warning("Invoice number collision on attempt %d for %s", attempt, issue_date)
            continue

        _record_new_fines(invoice, items, set(), actor=actor)
        log_action(invoice, "CREATE", after=serialize_model(invoice), actor=actor)
        db.session.commit()
        logger.info("Created invoice %s for booking %s", invoice.invoice_number, booking.id)
        return invoice

    raise StateConflictError("Could not allocate an invoice number; retry.", code="INVOICE_NUMBER_CONFLICT")


# ---------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------
def create_invoice_from_booking(
    booking: Booking,
    config: PricingConfig,
    *,
    rate_override=None,
    charges: Optional[Sequence[LineItem]] = None,
    issue_date: Optional[date] = None,
    actor=None,
) -> Invoice:
    """
    Price the booking and issue its invoice.

    Returns the existing invoice unchanged when the booking already has one.
    """
    existing = Invoice.query.filter_by(booking_id=booking.id).first()
    if existing is not None:
        return existing

    items = pricing.price_booking(booking, rate_override, charges=charges, currency=config.currency)
    return _persist_new_invoice(
        booking,
        items,
        config,
        issue_date or date.today(),
        None,
        INVOICE_ISSUED,
        actor=actor,
    )


def create_custom_invoice(
    booking: Booking,
    raw_items,
    config: PricingConfig,
    *,
    issue_date: Optional[date] = None,
    due_date: Optional[date] = None,
    status: str = INVOICE_ISSUED,
    actor=None,
) -> Invoice:
    """Invoice with caller-supplied items. A second invoice for the booking is rejected."""
    items = pricing.normalize_items(raw_items)

    if status not in (INVOICE_DRAFT, INVOICE_ISSUED):
        raise ValidationError("New invoices must be DRAFT or ISSUED.", code="INVALID_STATUS")

    issue_date = issue_date or date.today()
    if due_date is not None and due_date < issue_date:
        raise ValidationError("Due date cannot be before the issue date.", code="INVALID_DATE_RANGE")

    if Invoice.query.filter_by(booking_id=booking.id).first() is not None:
        raise StateConflictError("Invoice already exists for this booking.", code="INVOICE_EXISTS")

    return _persist_new_invoice(booking, items, config, issue_date, due_date, status, actor=actor)


def _status_changes(invoice: Invoice, status: str) -> bool:
    """Validate a requested status; True when it differs from the current one."""
    if status == invoice.status:
        return False
    if status not in STATUS_TRANSITIONS.get(invoice.status, set()):
        raise StateConflictError(
            f"Cannot move invoice from {invoice.status} to {status}.",
            code="INVALID_TRANSITION",
            current_state=invoice.status,
        )
    return True


def update_invoice(
    invoice: Invoice,
    config: Optional[PricingConfig] = None,
    *,
    raw_items=None,
    status: Optional[str] = None,
    expected_version: Optional[int] = None,
    actor=None,
) -> Invoice:
    """
    Reprice and/or change the status of an invoice in one transaction.

    - Every check runs before the first change: a rejected status leaves the
      items untouched and rejected items leave the status untouched.
    - PAID / VOID -> InvalidStateError, nothing changes.
    - Stale expected_version -> StateConflictError.
    - Fine labels that were not on the stored invoice produce FINES expenses.
    - Any accepted write moves `version`, item-only changes included.
    """
    if raw_items is None and status is None:
        raise ValidationError("Nothing to update: send items and/or status.", code="EMPTY_UPDATE")
    if status is not None and status not in INVOICE_STATUSES:
        raise ValidationError(f"Unknown invoice status {status!r}.", code="INVALID_STATUS")
    if invoice.status in INVOICE_TERMINAL_STATUSES:
        raise InvalidStateError(
            f"Invoice is already {invoice.status} and cannot be updated.",
            current_state=invoice.status,
        )
    change_status = status is not None and _status_changes(invoice, status)
    _check_version(invoice, expected_version)
    items = pricing.normalize_items(raw_items) if raw_items is not None else None
    if items is not None and config is None:
        raise ValueError("config is required to reprice an invoice")

    if items is None and not change_status:
        return invoice

    before = serialize_model(invoice)
    if items is not None:
        previous_fine_labels = pricing.fine_labels(invoice.items)
        _apply_items(invoice, items, config)
    if change_status:
        invoice.status = status
    invoice.bump_version()

    try:
        db.session.flush()
        if items is not None:
            _record_new_fines(invoice, items, previous_fine_labels, actor=actor)
        action = "REPRICE" if items is not None else "UPDATE"
        log_action(invoice, action, before=before, after=serialize_model(invoice), actor=actor)
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise StateConflictError(
            "Invoice was modified concurrently; reload and try again.",
            code="VERSION_CONFLICT",
        )

    if change_status:
        logger.info("Invoice %s status %s -> %s", invoice.invoice_number, before["status"], status)
    return invoice


def reprice_invoice(
    invoice: Invoice,
    raw_items,
    config: PricingConfig,
    *,
    expected_version: Optional[int] = None,
    actor=None,
) -> Invoice:
    """Replace an invoice's items and recompute its totals."""
    return update_invoice(
        invoice,
        config,
        raw_items=raw_items if raw_items is not None else [],
        expected_version=expected_version,
        actor=actor,
    )


def update_invoice_status(
    invoice: Invoice,
    status: str,
    *,
    expected_version: Optional[int] = None,
    actor=None,
) -> Invoice:
    return update_invoice(invoice, status=status, expected_version=expected_version, actor=actor)


def invoice_to_dict(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "booking_id": invoice.booking_id,
        "invoice_number": invoice.invoice_number,
        "issue_date": invoice.issue_date.isoformat(),
        "due_date": invoice.due_date.isoformat(),
        "currency": invoice.currency,
        "vat_percent": money(invoice.vat_percent),
        "items": [{"label": item.label, "amount": money(item.amount)} for item in invoice.items],
        "subtotal": money(invoice.subtotal),
        "tax_amount": money(invoice.tax_amount),
        "total": money(invoice.total),
        "status": invoice.status,
        "version": invoice.version,
    }

"""
rental_finance/services/payouts.py

Investor payouts: preview, creation (payout + expense + optional payment),
status/period updates and investor-scoped reads.

IMPORTANT:
- Totals are snapshotted on the payout at creation / period change; reads never recompute.
- One payout <-> exactly one INVESTOR_PAYOUTS expense <-> at most one payment.
- Creation runs as PayoutCreationSaga: each step commits, a failing step triggers
  compensation (delete what was created, newest first). If compensation also fails
  the caller gets PartialFailure with the payout id.
- Cancelling soft-deletes the expense and leaves the payment alone (payment history is kept).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import false, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..audit import log_action, serialize_model
from ..errors import (
    InvalidStateError,
    NotFoundError,
    PartialFailure,
    StateConflictError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    BILLABLE_BOOKING_STATUSES,
    CODE_INVESTOR_PAYOUTS,
    PAYMENT_METHODS,
    PAYMENT_PENDING,
    PAYMENT_STATUSES,
    PAYMENT_SUCCESS,
    PAYOUT_APPROVED,
    PAYOUT_CANCELLED,
    PAYOUT_DRAFT,
    PAYOUT_PAID,
    PAYOUT_STATUSES,
    REVENUE_INVOICE_STATUSES,
    ROLE_INVESTOR,
    Booking,
    Expense,
    InvestorPayout,
    InvestorProfile,
    Invoice,
    Payment,
    PayoutVehicleLine,
    Vehicle,
)
from ..money import ZERO, HUNDRED, money, percent_of, to_decimal
from .expenses import add_expense, get_category, soft_delete_linked
from .settings import default_commission_percent

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    PAYOUT_DRAFT: {PAYOUT_APPROVED, PAYOUT_CANCELLED},
    PAYOUT_APPROVED: {PAYOUT_PAID, PAYOUT_CANCELLED},
    PAYOUT_PAID: set(),
    PAYOUT_CANCELLED: set(),
}
PERIOD_EDITABLE_STATUSES = (PAYOUT_DRAFT, PAYOUT_APPROVED)


# ---------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------
@dataclass
class VehicleRevenue:
    vehicle_id: int
    plate_number: str
    brand: str
    model: str
    category: str
    bookings_count: int = 0
    revenue: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "vehicleId": self.vehicle_id,
            "plateNumber": self.plate_number,
            "brand": self.brand,
            "model": self.model,
            "category": self.category,
            "bookingsCount": self.bookings_count,
            "revenue": money(self.revenue),
        }


@dataclass
class PayoutPreview:
    investor_id: int
    investor_name: str
    period_from: date
    period_to: date
    branch_id: Optional[str]
    total_revenue: Decimal
    commission_percent: Decimal
    commission_amount: Decimal
    net_payout: Decimal
    breakdown: List[VehicleRevenue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "investorId": self.investor_id,
            "investorName": self.investor_name,
            "periodFrom": self.period_from.isoformat(),
            "periodTo": self.period_to.isoformat(),
            "branchId": self.branch_id,
            "totalRevenue": money(self.total_revenue),
            "commissionPercent": money(self.commission_percent),
            "commissionAmount": money(self.commission_amount),
            "netPayout": money(self.net_payout),
            "breakdown": [line.to_dict() for line in self.breakdown],
        }


def get_investor(investor_id: int) -> InvestorProfile:
    investor = db.session.get(InvestorProfile, investor_id)
    if investor is None:
        raise NotFoundError("Investor profile not found.", code="INVESTOR_NOT_FOUND")
    return investor


def _validate_period(period_from: date, period_to: date) -> None:
    if period_from is None or period_to is None:
        raise ValidationError("Period from and to dates are required.", code="INVALID_DATE_RANGE")
    if period_from > period_to:
        raise ValidationError(
            "Period from date must be before or equal to period to date.",
            code="INVALID_DATE_RANGE",
        )


def resolve_commission_percent(investor: InvestorProfile, override=None) -> Decimal:
    """Override, else the investor's profile, else the configured default."""
    if override is not None:
        percent = to_decimal(override)
    elif investor.commission_percent is not None:
        percent = to_decimal(investor.commission_percent)
    else:
        percent = default_commission_percent()
    if percent < 0 or percent > HUNDRED:
        raise ValidationError("Commission percent must be between 0 and 100.", code="INVALID_COMMISSION")
    return percent


def _booking_revenue(bookings: List[Booking]) -> Dict[int, Decimal]:
    """Revenue per booking: ISSUED/PAID invoice totals, else the booking's own total."""
    if not bookings:
        return {}
    invoiced: Dict[int, Decimal] = {}
    rows = (
        Invoice.query.filter(Invoice.booking_id.in_([b.id for b in bookings]))
        .filter(Invoice.status.in_(REVENUE_INVOICE_STATUSES))
        .all()
    )
    for invoice in rows:
        invoiced[invoice.booking_id] = invoiced.get(invoice.booking_id, ZERO) + to_decimal(invoice.total)

    return {
        booking.id: invoiced.get(booking.id, to_decimal(booking.total_amount))
        for booking in bookings
    }


def preview_payout(
    investor_id: int,
    period_from: date,
    period_to: date,
    branch_id: Optional[str] = None,
    commission_percent=None,
) -> PayoutPreview:
    """Compute payout totals for the period without writing anything."""
    _validate_period(period_from, period_to)
    investor = get_investor(investor_id)
    percent = resolve_commission_percent(investor, commission_percent)
    branch_id = (branch_id or "").strip() or None

    vehicle_query = Vehicle.query.filter_by(investor_id=investor.id, ownership_type="INVESTOR")
    if branch_id:
        vehicle_query = vehicle_query.filter(Vehicle.current_branch == branch_id)
    vehicles = vehicle_query.order_by(Vehicle.id.asc()).all()

    lines = {
        v.id: VehicleRevenue(
            vehicle_id=v.id,
            plate_number=v.plate_number,
            brand=v.brand,
            model=v.model,
            category=v.category,
        )
        for v in vehicles
    }

    bookings: List[Booking] = []
    if vehicles:
        # overlap: starts before the period ends, ends (or starts, if open) after it begins
        period_start = datetime.combine(period_from, time.min)
        period_end = datetime.combine(period_to, time.max)
        bookings = (
            Booking.query.filter(Booking.vehicle_id.in_(list(lines)))
            .filter(Booking.status.in_(BILLABLE_BOOKING_STATUSES))
            .filter(Booking.start_datetime <= period_end)
            .filter(func.coalesce(Booking.end_datetime, Booking.start_datetime) >= period_start)
            .order_by(Booking.id.asc())
            .all()
        )

    revenue_by_booking = _booking_revenue(bookings)
    for booking in bookings:
        line = lines[booking.vehicle_id]
        line.bookings_count += 1
        line.revenue += revenue_by_booking[booking.id]

    breakdown = sorted(lines.values(), key=lambda line: (-line.revenue, line.plate_number))

    total_revenue = money(sum((line.revenue for line in breakdown), ZERO))
    commission_amount = money(percent_of(total_revenue, percent))
    net_payout = total_revenue - commission_amount

    logger.info(
        "Payout preview investor=%s %s..%s vehicles=%d bookings=%d revenue=%s net=%s",
        investor.id,
        period_from,
        period_to,
        len(vehicles),
        len(bookings),
        total_revenue,
        net_payout,
    )

    return PayoutPreview(
        investor_id=investor.id,
        investor_name=investor.display_name,
        period_from=period_from,
        period_to=period_to,
        branch_id=branch_id,
        total_revenue=total_revenue,
        commission_percent=percent,
        commission_amount=commission_amount,
        net_payout=net_payout,
        breakdown=breakdown,
    )


def _snapshot_lines(preview: PayoutPreview) -> List[PayoutVehicleLine]:
    return [
        PayoutVehicleLine(
            position=idx,
            vehicle_id=line.vehicle_id,
            plate_number=line.plate_number,
            brand=line.brand,
            model=line.model,
            category=line.category,
            bookings_count=line.bookings_count,
            revenue=money(line.revenue),
        )
        for idx, line in enumerate(preview.breakdown)
    ]


def _apply_snapshot(payout: InvestorPayout, preview: PayoutPreview) -> None:
    payout.period_from = preview.period_from
    payout.period_to = preview.period_to
    payout.total_revenue = money(preview.total_revenue)
    payout.commission_percent = money(preview.commission_percent)
    payout.commission_amount = money(preview.commission_amount)
    payout.net_payout = money(preview.net_payout)
    payout.lines = _snapshot_lines(preview)


def expense_description(investor_name: str, period_from: date, period_to: date) -> str:
    return f"Investor Payout - {investor_name} - {period_from:%b %Y} - {period_to:%b %Y}"


# ---------------------------------------------------------------------
# Creation saga
# ---------------------------------------------------------------------
class PayoutCreationSaga:
    """
    payout -> expense -> payment, each step committed.

    state: PENDING -> PAYOUT_CREATED -> EXPENSE_CREATED -> PAYMENT_CREATED -> COMPLETED
    On failure: COMPENSATED (everything removed) or PARTIAL (removal failed too).
    """

    PENDING = "PENDING"
    PAYOUT_CREATED = "PAYOUT_CREATED"
    EXPENSE_CREATED = "EXPENSE_CREATED"
    PAYMENT_CREATED = "PAYMENT_CREATED"
    COMPLETED = "COMPLETED"
    COMPENSATED = "COMPENSATED"
    PARTIAL = "PARTIAL"

    def __init__(
        self,
        preview: PayoutPreview,
        *,
        create_payment: bool = False,
        payment_method: str = "BANK_TRANSFER",
        payment_status: str = PAYMENT_PENDING,
        notes: Optional[str] = None,
        actor=None,
    ):
        self.preview = preview
        self.create_payment = create_payment
        self.payment_method = payment_method
        self.payment_status = payment_status
        self.notes = notes
        self.actor = actor

        self.state = self.PENDING
        self.payout_id: Optional[int] = None
        self.expense_id: Optional[int] = None
        self.payment_id: Optional[int] = None

    # -- steps --------------------------------------------------------
    def _create_payout(self) -> None:
        preview = self.preview
        paid_now = self.create_payment and self.payment_status == PAYMENT_SUCCESS
        payout = InvestorPayout(
            investor_id=preview.investor_id,
            branch_id=preview.branch_id,
            status=PAYOUT_PAID if paid_now else PAYOUT_DRAFT,
            notes=self.notes,
            created_by_id=getattr(self.actor, "id", None),
        )
        _apply_snapshot(payout, preview)
        db.session.add(payout)
        db.session.flush()
        log_action(payout, "CREATE", after=serialize_model(payout), actor=self.actor)
        db.session.commit()

        self.payout_id = payout.id
        self.state = self.PAYOUT_CREATED

    def _create_expense(self) -> None:
        preview = self.preview
        expense = add_expense(
            category=get_category(CODE_INVESTOR_PAYOUTS),
            description=expense_description(preview.investor_name, preview.period_from, preview.period_to),
            amount=preview.net_payout,
            date_incurred=preview.period_to,
            branch_id=preview.branch_id,
            actor=self.actor,
            investor_payout_id=self.payout_id,
            investor_id=preview.investor_id,
        )
        db.session.commit()

        self.expense_id = expense.id
        self.state = self.EXPENSE_CREATED

    def _create_payment(self) -> None:
        payment = Payment(
            amount=money(self.preview.net_payout),
            method=self.payment_method,
            status=self.payment_status,
            paid_at=datetime.utcnow() if self.payment_status == PAYMENT_SUCCESS else None,
        )
        db.session.add(payment)
        db.session.flush()

        payout = db.session.get(InvestorPayout, self.payout_id)
        payout.payment_id = payment.id
        payout.bump_version()
        db.session.flush()
        log_action(payment, "CREATE", after=serialize_model(payment), actor=self.actor)
        db.session.commit()

        self.payment_id = payment.id
        self.state = self.PAYMENT_CREATED

    # -- compensation -------------------------------------------------
    def _undo(self) -> None:
        """Delete created records newest first, in one commit."""
        payout = db.session.get(InvestorPayout, self.payout_id)
        if payout is not None and payout.payment_id is not None:
            payout.payment_id = None
            payout.bump_version()
            db.session.flush()

        for model, record_id in (
            (Payment, self.payment_id),
            (Expense, self.expense_id),
            (InvestorPayout, self.payout_id),
        ):
            if record_id is None:
                continue
            record = db.session.get(model, record_id)
            if record is None:
                continue
            log_action(record, "DELETE", before=serialize_model(record), actor=self.actor)
            db.session.delete(record)
        db.session.commit()

    def _compensate(self, failed_step: str, error: Exception) -> None:
        if self.payout_id is None:
            return
        logger.warning(
            "Payout saga failed at %s for payout %s (%s); compensating",
            failed_step,
            self.payout_id,
            error,
        )
        try:
            self._undo()
        except SQLAlchemyError as undo_error:
            db.session.rollback()
            self.state = self.PARTIAL
            logger.error("Payout %s compensation failed: %s", self.payout_id, undo_error)
            raise PartialFailure(
                "Payout was created but its linked records could not be completed or removed.",
                self.payout_id,
                failed_step=failed_step,
            ) from error
        self.state = self.COMPENSATED

    # -- run ----------------------------------------------------------
    def run(self) -> InvestorPayout:
        steps = [("PAYOUT", self._create_payout), ("EXPENSE", self._create_expense)]
        if self.create_payment:
            steps.append(("PAYMENT", self._create_payment))

        for name, step in steps:
            try:
                step()
            except Exception as exc:
                db.session.rollback()
                self._compensate(name, exc)
                raise

        self.state = self.COMPLETED
        payout = db.session.get(InvestorPayout, self.payout_id)
        logger.info(
            "Created payout %s for investor %s net=%s payment=%s",
            payout.id,
            payout.investor_id,
            payout.net_payout,
            payout.payment_id,
        )
        return payout


def create_payout_with_expense_and_payment(
    investor_id: int,
    period_from: date,
    period_to: date,
    *,
    branch_id: Optional[str] = None,
    commission_percent=None,
    notes: Optional[str] = None,
    create_payment: bool = False,
    payment_method: str = "BANK_TRANSFER",
    payment_status: str = PAYMENT_PENDING,
    actor=None,
) -> InvestorPayout:
    """Validate, preview, then run the creation saga."""
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method {payment_method!r}.", code="INVALID_PAYMENT_METHOD")
    if payment_status not in (PAYMENT_PENDING, PAYMENT_SUCCESS):
        raise ValidationError("Payment status must be PENDING or SUCCESS.", code="INVALID_PAYMENT_STATUS")

    preview = preview_payout(investor_id, period_from, period_to, branch_id, commission_percent)
    if preview.net_payout <= 0:
        raise ValidationError("Net payout must be greater than zero.", code="NET_PAYOUT_NOT_POSITIVE")

    saga = PayoutCreationSaga(
        preview,
        create_payment=create_payment,
        payment_method=payment_method,
        payment_status=payment_status,
        notes=(notes or "").strip() or None,
        actor=actor,
    )
    return saga.run()


# ---------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------
def _check_version(payout: InvestorPayout, expected_version: Optional[int]) -> None:
    if expected_version is not None and int(expected_version) != payout.version:
        raise StateConflictError(
            "Payout was modified by someone else; reload and try again.",
            code="VERSION_CONFLICT",
            current_state=str(payout.version),
        )


def _validate_payment_info(info: Dict[str, Any]) -> None:
    if info.get("status") and info["status"] not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status {info['status']!r}.", code="INVALID_PAYMENT_STATUS")
    if info.get("method") and info["method"] not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method {info['method']!r}.", code="INVALID_PAYMENT_METHOD")


def _apply_payment_info(payment: Payment, info: Dict[str, Any]) -> None:
    if info.get("status"):
        payment.status = info["status"]
    if info.get("method"):
        payment.method = info["method"]
    if "transaction_id" in info:
        payment.transaction_id = (info["transaction_id"] or "").strip() or None
    if "paid_at" in info:
        payment.paid_at = info["paid_at"]


def _change_period(payout: InvestorPayout, period_from: date, period_to: date) -> None:
    """Re-snapshot totals for the new period and move expense/payment with them."""
    if payout.status not in PERIOD_EDITABLE_STATUSES:
        raise InvalidStateError(
            f"Payout period cannot be changed once {payout.status}.",
            current_state=payout.status,
        )

    preview = preview_payout(
        payout.investor_id,
        period_from,
        period_to,
        payout.branch_id,
        payout.commission_percent,
    )
    if preview.net_payout <= 0:
        raise ValidationError("Net payout must be greater than zero.", code="NET_PAYOUT_NOT_POSITIVE")

    _apply_snapshot(payout, preview)

    expense = payout.expense
    if expense is not None and not expense.is_deleted:
        expense.amount = money(preview.net_payout)
        expense.date_incurred = preview.period_to
        expense.description = expense_description(preview.investor_name, preview.period_from, preview.period_to)

    payment = payout.payment
    if payment is not None and payment.status == PAYMENT_PENDING:
        payment.amount = money(preview.net_payout)


def update_payout(
    payout: InvestorPayout,
    *,
    status: Optional[str] = None,
    period_from: Optional[date] = None,
    period_to: Optional[date] = None,
    notes: Optional[str] = None,
    payment_info: Optional[Dict[str, Any]] = None,
    expected_version: Optional[int] = None,
    actor=None,
) -> InvestorPayout:
    """
    Edit a payout and keep its expense/payment in step.

    - status: DRAFT -> APPROVED -> PAID, DRAFT/APPROVED -> CANCELLED.
    - period (DRAFT/APPROVED only): recompute totals, move expense amount+date together,
      and a still-PENDING payment amount.
    - PAID marks the payment SUCCESS; CANCELLED soft-deletes the expense only.
    """
    if payout.status == PAYOUT_CANCELLED:
        raise InvalidStateError("Payout is cancelled and cannot be updated.", current_state=payout.status)
    if status is not None and status not in PAYOUT_STATUSES:
        raise ValidationError(f"Unknown payout status {status!r}.", code="INVALID_STATUS")
    if status is not None and status != payout.status and status not in STATUS_TRANSITIONS[payout.status]:
        raise StateConflictError(
            f"Cannot move payout from {payout.status} to {status}.",
            code="INVALID_TRANSITION",
            current_state=payout.status,
        )
    _check_version(payout, expected_version)
    if payment_info:
        _validate_payment_info(payment_info)

    before = serialize_model(payout)

    if period_from is not None or period_to is not None:
        new_from = period_from or payout.period_from
        new_to = period_to or payout.period_to
        if (new_from, new_to) != (payout.period_from, payout.period_to):
            _change_period(payout, new_from, new_to)

    if notes is not None:
        payout.notes = notes.strip() or None

    if payment_info and payout.payment is not None:
        _apply_payment_info(payout.payment, payment_info)

    if status is not None and status != payout.status:
        payout.status = status
        if status == PAYOUT_PAID and payout.payment is not None:
            if payout.payment.status != PAYMENT_SUCCESS:
                payout.payment.status = PAYMENT_SUCCESS
                payout.payment.paid_at = (payment_info or {}).get("paid_at") or datetime.utcnow()
        if status == PAYOUT_CANCELLED:
            # payment history is kept for audit
            soft_delete_linked(payout.expense, actor=actor)

    payout.bump_version()
    try:
        db.session.flush()
        log_action(payout, "UPDATE", before=before, after=serialize_model(payout), actor=actor)
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise StateConflictError(
            "Payout was modified concurrently; reload and try again.",
            code="VERSION_CONFLICT",
        )

    logger.info("Payout %s updated (status=%s)", payout.id, payout.status)
    return payout


def cancel_payout(payout: InvestorPayout, actor=None, expected_version: Optional[int] = None) -> InvestorPayout:
    return update_payout(payout, status=PAYOUT_CANCELLED, expected_version=expected_version, actor=actor)


# ---------------------------------------------------------------------
# Investor-scoped reads
# ---------------------------------------------------------------------
def payouts_visible_to(user, investor_id: Optional[int] = None, status: Optional[str] = None):
    """Query of payouts the user may read; INVESTOR users get only their own."""
    query = InvestorPayout.query
    if user.role == ROLE_INVESTOR:
        profile = user.investor_profile
        if profile is None:
            return query.filter(false())
        query = query.filter(InvestorPayout.investor_id == profile.id)
    elif investor_id is not None:
        query = query.filter(InvestorPayout.investor_id == investor_id)

    if status:
        query = query.filter(InvestorPayout.status == status)
    return query.order_by(InvestorPayout.period_from.desc(), InvestorPayout.id.desc())


def get_payout_for(user, payout_id: int) -> InvestorPayout:
    payout = payouts_visible_to(user).filter(InvestorPayout.id == payout_id).first()
    if payout is None:
        raise NotFoundError("Investor payout not found.", code="PAYOUT_NOT_FOUND")
    return payout


def payout_to_dict(payout: InvestorPayout) -> dict:
    expense = payout.expense
    payment = payout.payment
    return {
        "id": payout.id,
        "investorId": payout.investor_id,
        "investorName": payout.investor.display_name if payout.investor else None,
        "periodFrom": payout.period_from.isoformat(),
        "periodTo": payout.period_to.isoformat(),
        "branchId": payout.branch_id,
        "totals": {
            "totalRevenue": money(payout.total_revenue),
            "commissionPercent": money(payout.commission_percent),
            "commissionAmount": money(payout.commission_amount),
            "netPayout": money(payout.net_payout),
            "breakdown": [
                {
                    "vehicleId": line.vehicle_id,
                    "plateNumber": line.plate_number,
                    "brand": line.brand,
                    "model": line.model,
                    "category": line.category,
                    "bookingsCount": line.bookings_count,
                    "revenue": money(line.revenue),
                }
                for line in payout.lines
            ],
        },
        "status": payout.status,
        "expense": {
            "id": expense.id,
            "amount": money(expense.amount),
            "dateIncurred": expense.date_incurred.isoformat(),
            "description": expense.description,
            "isDeleted": expense.is_deleted,
        } if expense is not None else None,
        "payment": {
            "id": payment.id,
            "amount": money(payment.amount),
            "method": payment.method,
            "status": payment.status,
            "transactionId": payment.transaction_id,
            "paidAt": payment.paid_at.isoformat() if payment.paid_at else None,
        } if payment is not None else None,
        "notes": payout.notes,
        "version": payout.version,
    }

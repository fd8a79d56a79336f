from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from rental_finance.errors import (
    InvalidStateError,
    NotFoundError,
    PartialFailure,
    StateConflictError,
    ValidationError,
)
from rental_finance.extensions import db
from rental_finance.models import Expense, InvestorPayout, Payment
from rental_finance.services import invoices as invoice_service
from rental_finance.services import payments as payment_service
from rental_finance.services import payouts as payout_service
from rental_finance.services.payouts import PayoutCreationSaga
from rental_finance.services.pricing import PricingConfig

CONFIG = PricingConfig(vat_percent=Decimal("5"), currency="AED")
JAN_FROM = date(2024, 1, 1)
JAN_TO = date(2024, 1, 31)


@pytest.fixture
def fleet(investors, make_vehicle, make_booking):
    """
    Investor fleet for January 2024:
    - A 111: invoiced booking (1050) plus cancelled, pending and February bookings
    - B 222: uninvoiced booking with total_amount 500
    - company car: ignored
    """
    investor = investors["investor"]
    first = make_vehicle("A 111", investor=investor)
    second = make_vehicle("B 222", investor=investor, brand="Nissan", model="Sunny")
    company = make_vehicle("C 333")

    invoiced = make_booking(first, datetime(2024, 1, 5, 10), datetime(2024, 1, 8, 10), total_amount="600")
    invoice_service.create_custom_invoice(
        invoiced, [{"label": "Rental", "amount": 1000}], CONFIG, issue_date=date(2024, 1, 8)
    )
    make_booking(second, datetime(2024, 1, 10, 10), datetime(2024, 1, 12, 10), status="CHECKED_IN", total_amount="500")
    make_booking(first, datetime(2024, 1, 15, 10), datetime(2024, 1, 16, 10), status="CANCELLED", total_amount="300")
    make_booking(first, datetime(2024, 1, 18, 10), datetime(2024, 1, 19, 10), status="PENDING", total_amount="300")
    make_booking(first, datetime(2024, 2, 3, 10), datetime(2024, 2, 4, 10), total_amount="300")
    make_booking(company, datetime(2024, 1, 5, 10), datetime(2024, 1, 6, 10), total_amount="900")
    return investor


def _create(investor, **kwargs):
    return payout_service.create_payout_with_expense_and_payment(investor.id, JAN_FROM, JAN_TO, **kwargs)


def test_preview(fleet):
    preview = payout_service.preview_payout(fleet.id, JAN_FROM, JAN_TO)

    assert preview.total_revenue == Decimal("1550.00")
    assert preview.commission_percent == Decimal("20")
    assert preview.commission_amount == Decimal("310.00")
    assert preview.net_payout == Decimal("1240.00")
    assert preview.net_payout + preview.commission_amount == preview.total_revenue

    assert [(line.plate_number, line.bookings_count, line.revenue) for line in preview.breakdown] == [
        ("A 111", 1, Decimal("1050.00")),
        ("B 222", 1, Decimal("500.00")),
    ]
    assert preview.to_dict()["netPayout"] == Decimal("1240.00")


def test_preview_commission_override(fleet):
    preview = payout_service.preview_payout(fleet.id, JAN_FROM, JAN_TO, commission_percent="12.5")

    assert preview.commission_amount == Decimal("193.75")
    assert preview.net_payout == Decimal("1356.25")

    with pytest.raises(ValidationError):
        payout_service.preview_payout(fleet.id, JAN_FROM, JAN_TO, commission_percent="101")


def test_preview_rejects_inverted_period(fleet):
    with pytest.raises(ValidationError) as excinfo:
        payout_service.preview_payout(fleet.id, JAN_TO, JAN_FROM)
    assert excinfo.value.code == "INVALID_DATE_RANGE"


def test_unknown_investor(app):
    with pytest.raises(NotFoundError):
        payout_service.preview_payout(9999, JAN_FROM, JAN_TO)


def test_create_payout_with_expense(fleet, users):
    payout = _create(fleet, notes=" January ", actor=users["finance"])

    assert payout.status == "DRAFT"
    assert payout.net_payout == Decimal("1240.00")
    assert payout.notes == "January"
    assert payout.payment_id is None
    assert [line.plate_number for line in payout.lines] == ["A 111", "B 222"]

    expense = payout.expense
    assert expense.amount == Decimal("1240.00")
    assert expense.date_incurred == JAN_TO
    assert expense.category.code == "INVESTOR_PAYOUTS"
    assert expense.investor_id == fleet.id
    assert expense.description == "Investor Payout - Ivy Investor - Jan 2024 - Jan 2024"
    assert expense.is_system_managed


def test_create_payout_with_payment(fleet):
    payout = _create(fleet, create_payment=True, payment_method="CASH")

    assert payout.status == "DRAFT"
    assert payout.payment.amount == Decimal("1240.00")
    assert payout.payment.status == "PENDING"
    assert payout.payment.method == "CASH"


def test_successful_payment_marks_payout_paid(fleet):
    payout = _create(fleet, create_payment=True, payment_status="SUCCESS")

    assert payout.status == "PAID"
    assert payout.payment.status == "SUCCESS"
    assert payout.payment.paid_at is not None


def test_net_payout_must_be_positive(investors):
    with pytest.raises(ValidationError) as excinfo:
        _create(investors["investor"])
    assert excinfo.value.code == "NET_PAYOUT_NOT_POSITIVE"
    assert InvestorPayout.query.count() == 0
    assert Expense.query.count() == 0


def test_invalid_payment_method(fleet):
    with pytest.raises(ValidationError):
        _create(fleet, create_payment=True, payment_method="CHEQUE")


def test_failed_expense_step_removes_payout(fleet, monkeypatch):
    def broken_expense(**kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(payout_service, "add_expense", broken_expense)

    with pytest.raises(RuntimeError):
        _create(fleet)

    assert InvestorPayout.query.count() == 0


def test_failed_payment_step_removes_payout_and_expense(fleet, monkeypatch):
    def broken_payment(self):
        raise RuntimeError("gateway down")

    monkeypatch.setattr(PayoutCreationSaga, "_create_payment", broken_payment)

    with pytest.raises(RuntimeError):
        _create(fleet, create_payment=True)

    assert InvestorPayout.query.count() == 0
    assert Expense.query.filter(Expense.investor_payout_id.isnot(None)).count() == 0
    assert Payment.query.count() == 0


def test_failed_compensation_reports_partial_failure(fleet, monkeypatch):
    def broken_expense(**kwargs):
        raise RuntimeError("ledger unavailable")

    def broken_undo(self):
        raise SQLAlchemyError("database gone")

    monkeypatch.setattr(payout_service, "add_expense", broken_expense)
    monkeypatch.setattr(PayoutCreationSaga, "_undo", broken_undo)

    with pytest.raises(PartialFailure) as excinfo:
        _create(fleet)

    error = excinfo.value
    assert error.failed_step == "EXPENSE"
    assert error.parent_id is not None
    assert db.session.get(InvestorPayout, error.parent_id) is not None
    assert error.to_dict()["parent_id"] == error.parent_id


def test_status_flow_to_paid(fleet):
    payout = _create(fleet, create_payment=True)

    payout_service.update_payout(payout, status="APPROVED", expected_version=payout.version)
    payout_service.update_payout(payout, status="PAID")

    assert payout.status == "PAID"
    assert payout.payment.status == "SUCCESS"
    assert payout.payment.paid_at is not None


def test_invalid_transition(fleet):
    payout = _create(fleet)

    with pytest.raises(StateConflictError) as excinfo:
        payout_service.update_payout(payout, status="PAID")
    assert excinfo.value.code == "INVALID_TRANSITION"


def test_stale_version(fleet):
    payout = _create(fleet)

    with pytest.raises(StateConflictError) as excinfo:
        payout_service.update_payout(payout, notes="late", expected_version=payout.version - 1)
    assert excinfo.value.code == "VERSION_CONFLICT"


def test_period_change_moves_expense_and_payment(fleet):
    payout = _create(fleet, create_payment=True)

    payout_service.update_payout(payout, period_to=date(2024, 1, 9))

    assert payout.total_revenue == Decimal("1050.00")
    assert payout.commission_amount == Decimal("210.00")
    assert payout.net_payout == Decimal("840.00")
    assert [line.plate_number for line in payout.lines] == ["A 111", "B 222"]
    assert payout.expense.amount == Decimal("840.00")
    assert payout.expense.date_incurred == date(2024, 1, 9)
    assert payout.payment.amount == Decimal("840.00")


def test_period_is_frozen_once_paid(fleet):
    payout = _create(fleet, create_payment=True, payment_status="SUCCESS")

    with pytest.raises(InvalidStateError):
        payout_service.update_payout(payout, period_to=date(2024, 1, 9))

    payout_service.update_payout(payout, notes="settled")
    assert payout.notes == "settled"


def test_cancel_keeps_payment(fleet):
    payout = _create(fleet, create_payment=True)
    payment_id = payout.payment_id

    with pytest.raises(StateConflictError) as excinfo:
        payment_service.delete_payment(payment_id)
    assert excinfo.value.code == "PAYMENT_LINKED_TO_PAYOUT"

    payout_service.cancel_payout(payout)

    assert payout.status == "CANCELLED"
    assert payout.expense.is_deleted
    assert db.session.get(Payment, payment_id).status == "PENDING"

    with pytest.raises(InvalidStateError):
        payout_service.update_payout(payout, notes="again")

    # still history once cancelled
    with pytest.raises(StateConflictError) as excinfo:
        payment_service.delete_payment(payment_id)
    assert excinfo.value.current_state == "CANCELLED"

    db.session.expire_all()
    assert db.session.get(Payment, payment_id).amount == Decimal("1240.00")
    assert db.session.get(InvestorPayout, payout.id).payment_id == payment_id


def test_unlinked_payment_can_be_deleted(app):
    payment = Payment(amount=Decimal("75.00"), method="CASH")
    db.session.add(payment)
    db.session.commit()

    payment_service.delete_payment(payment.id)

    assert Payment.query.count() == 0


def test_payment_only_update_moves_version(fleet):
    payout = _create(fleet, create_payment=True)
    stale = payout.version

    payout_service.update_payout(payout, payment_info={"transaction_id": "TX-1"}, expected_version=stale)
    assert payout.version == stale + 1
    assert payout.payment.transaction_id == "TX-1"

    with pytest.raises(StateConflictError) as excinfo:
        payout_service.update_payout(payout, payment_info={"transaction_id": "TX-2"}, expected_version=stale)
    assert excinfo.value.code == "VERSION_CONFLICT"
    assert payout.payment.transaction_id == "TX-1"


def test_investor_sees_only_own_payouts(fleet, investors, users, make_vehicle, make_booking):
    other = investors["other_investor"]
    car = make_vehicle("D 444", investor=other)
    make_booking(car, datetime(2024, 1, 3, 10), datetime(2024, 1, 4, 10), total_amount="400")

    mine = _create(fleet)
    theirs = _create(other)
    assert theirs.commission_percent == Decimal("25.00")

    visible = payout_service.payouts_visible_to(users["investor"]).all()
    assert [payout.id for payout in visible] == [mine.id]

    with pytest.raises(NotFoundError):
        payout_service.get_payout_for(users["investor"], theirs.id)

    assert {p.id for p in payout_service.payouts_visible_to(users["finance"]).all()} == {mine.id, theirs.id}
    assert payout_service.payouts_visible_to(users["finance"], investor_id=other.id).one().id == theirs.id

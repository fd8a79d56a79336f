from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from rental_finance.errors import InvalidStateError, StateConflictError, ValidationError
from rental_finance.extensions import db
from rental_finance.models import AuditLog, Expense, ExpenseCategory, Invoice
from rental_finance.services import invoices as invoice_service
from rental_finance.services.pricing import PricingConfig
from rental_finance.services.settings import load_pricing_config

CONFIG = PricingConfig(vat_percent=Decimal("5"), currency="AED")
ISSUED_ON = date(2024, 1, 5)


def _fine_expenses():
    return (
        Expense.query.join(ExpenseCategory, Expense.category_id == ExpenseCategory.id)
        .filter(ExpenseCategory.code == "FINES")
        .order_by(Expense.id.asc())
        .all()
    )


def test_invoice_from_booking(booking, users):
    invoice = invoice_service.create_invoice_from_booking(
        booking, CONFIG, issue_date=ISSUED_ON, actor=users["finance"]
    )

    assert invoice.invoice_number == "INV-20240105-0001"
    assert invoice.status == "ISSUED"
    assert invoice.due_date == ISSUED_ON + timedelta(days=30)
    assert [item.amount for item in invoice.items] == [Decimal("600.00"), Decimal("-50.00"), Decimal("-300.00")]
    assert invoice.subtotal == Decimal("250.00")
    assert invoice.tax_amount == Decimal("27.50")
    assert invoice.total == Decimal("277.50")
    assert invoice.subtotal == sum(item.amount for item in invoice.items)

    entry = AuditLog.query.filter_by(entity_type="Invoice", entity_id=invoice.id).one()
    assert entry.action == "CREATE"
    assert entry.username_snapshot == "finance"


def test_invoice_numbers_increase_per_day(booking, make_vehicle, make_booking):
    second = make_booking(make_vehicle("DXB 1002"), datetime(2024, 1, 2, 9), datetime(2024, 1, 3, 9))
    other_day = make_booking(make_vehicle("DXB 1003"), datetime(2024, 1, 2, 9), datetime(2024, 1, 3, 9))

    first = invoice_service.create_invoice_from_booking(booking, CONFIG, issue_date=ISSUED_ON)
    next_one = invoice_service.create_invoice_from_booking(second, CONFIG, issue_date=ISSUED_ON)
    later = invoice_service.create_invoice_from_booking(other_day, CONFIG, issue_date=date(2024, 1, 6))

    assert first.invoice_number == "INV-20240105-0001"
    assert next_one.invoice_number == "INV-20240105-0002"
    assert later.invoice_number == "INV-20240106-0001"


def test_existing_invoice_is_returned(booking):
    first = invoice_service.create_invoice_from_booking(booking, CONFIG, issue_date=ISSUED_ON)
    again = invoice_service.create_invoice_from_booking(booking, CONFIG, rate_override="999")

    assert again.id == first.id
    assert again.total == Decimal("277.50")
    assert Invoice.query.count() == 1


def test_vat_comes_from_settings(booking):
    config = load_pricing_config()
    assert config.vat_percent == Decimal("5")
    assert config.currency == "AED"


def test_custom_invoice_rejects_duplicates(booking):
    invoice_service.create_custom_invoice(booking, [{"label": "Rental", "amount": 100}], CONFIG, issue_date=ISSUED_ON)

    with pytest.raises(StateConflictError) as excinfo:
        invoice_service.create_custom_invoice(booking, [{"label": "Rental", "amount": 100}], CONFIG)
    assert excinfo.value.code == "INVOICE_EXISTS"


def test_custom_invoice_validates_due_date(booking):
    with pytest.raises(ValidationError):
        invoice_service.create_custom_invoice(
            booking,
            [{"label": "Rental", "amount": 100}],
            CONFIG,
            issue_date=ISSUED_ON,
            due_date=ISSUED_ON - timedelta(days=1),
        )
    assert Invoice.query.count() == 0


def test_fine_items_create_one_expense_each(booking):
    invoice = invoice_service.create_custom_invoice(
        booking,
        [{"label": "Rental", "amount": 600}, {"label": "Traffic Fine", "amount": 200}],
        CONFIG,
        issue_date=ISSUED_ON,
    )

    fines = _fine_expenses()
    assert len(fines) == 1
    assert fines[0].amount == Decimal("200.00")
    assert fines[0].date_incurred == ISSUED_ON
    assert fines[0].branch_id == "DXB"
    assert fines[0].description == f"Fine - Traffic Fine - Invoice {invoice.invoice_number}"

    # same fine again: no new expense
    invoice_service.reprice_invoice(
        invoice,
        [{"label": "Rental", "amount": 650}, {"label": "Traffic Fine", "amount": 200}],
        CONFIG,
        expected_version=invoice.version,
    )
    assert len(_fine_expenses()) == 1

    invoice_service.reprice_invoice(
        invoice,
        [
            {"label": "Rental", "amount": 650},
            {"label": "Traffic Fine", "amount": 200},
            {"label": "Parking penalty", "amount": 150},
        ],
        CONFIG,
    )
    fines = _fine_expenses()
    assert [expense.amount for expense in fines] == [Decimal("200.00"), Decimal("150.00")]


def test_reprice_recomputes_totals(booking):
    invoice = invoice_service.create_invoice_from_booking(booking, CONFIG, issue_date=ISSUED_ON)
    version = invoice.version

    invoice_service.reprice_invoice(
        invoice,
        [{"label": "Rental", "amount": "1000"}, {"label": "Discount", "amount": "-100"}],
        CONFIG,
        expected_version=version,
    )

    db.session.expire_all()
    stored = db.session.get(Invoice, invoice.id)
    assert stored.subtotal == Decimal("900.00")
    assert stored.tax_amount == Decimal("45.00")
    assert stored.total == Decimal("945.00")
    assert stored.version > version
    assert [item.label for item in stored.items] == ["Rental", "Discount"]


def test_paid_invoice_cannot_be_repriced(booking):
    invoice = invoice_service.create_invoice_from_booking(booking, CONFIG, issue_date=ISSUED_ON)
    invoice_service.update_invoice_status(invoice, "PAID")

    with pytest.raises(InvalidStateError) as excinfo:
        invoice_service.reprice_invoice(invoice, [{"label": "Rental", "amount": 1}], CONFIG)
    assert excinfo.value.current_state == "PAID"

    db.session.expire_all()
    stored = db.session.get(Invoice, invoice.id)
    assert stored.total == Decimal("277.50")
    assert len(stored.items) == 3


def test_stale_version_is_rejected(booking):
    invoice = invoice_service.create_invoice_from_booking(booking, CONFIG, issue_date=ISSUED_ON)

    with pytest.raises(StateConflictError) as excinfo:
        invoice_service.reprice_invoice(
            invoice,
            [{"label": "Rental", "amount": 1}],
            CONFIG,
            expected_version=invoice.version - 1,
        )
    assert excinfo.value.code == "VERSION_CONFLICT"


def test_label_only_reprice_moves_version(booking):
    invoice = invoice_service.create_custom_invoice(
        booking,
        [{"label": "Rental", "amount": 600}, {"label": "Traffic fine A", "amount": 200}],
        CONFIG,
        issue_date=ISSUED_ON,
    )
    first = invoice.version

    invoice_service.reprice_invoice(
        invoice,
        [{"label": "Rental", "amount": 600}, {"label": "Traffic fine B", "amount": 200}],
        CONFIG,
        expected_version=first,
    )

    db.session.expire_all()
    stored = db.session.get(Invoice, invoice.id)
    assert stored.version == first + 1
    assert stored.total == Decimal("840.00")

    with pytest.raises(StateConflictError) as excinfo:
        invoice_service.reprice_invoice(
            stored,
            [{"label": "Rental", "amount": 600}, {"label": "Traffic fine C", "amount": 200}],
            CONFIG,
            expected_version=first,
        )
    assert excinfo.value.code == "VERSION_CONFLICT"
    assert [item.label for item in stored.items] == ["Rental", "Traffic fine B"]


def test_items_and_status_change_together(booking):
    invoice = invoice_service.create_custom_invoice(
        booking, [{"label": "Rental", "amount": 600}], CONFIG, issue_date=ISSUED_ON
    )

    invoice_service.update_invoice(
        invoice,
        CONFIG,
        raw_items=[{"label": "Rental", "amount": 700}],
        status="PAID",
        expected_version=invoice.version,
    )

    assert invoice.status == "PAID"
    assert invoice.subtotal == Decimal("700.00")
    assert invoice.version == 2
    assert AuditLog.query.filter_by(entity_type="Invoice", action="REPRICE").count() == 1


def test_rejected_status_leaves_items_untouched(booking):
    invoice = invoice_service.create_custom_invoice(
        booking, [{"label": "Rental", "amount": 600}], CONFIG, issue_date=ISSUED_ON
    )

    with pytest.raises(StateConflictError) as excinfo:
        invoice_service.update_invoice(
            invoice, CONFIG, raw_items=[{"label": "Rental", "amount": 1}], status="DRAFT"
        )
    assert excinfo.value.code == "INVALID_TRANSITION"

    db.session.expire_all()
    stored = db.session.get(Invoice, invoice.id)
    assert stored.subtotal == Decimal("600.00")
    assert stored.status == "ISSUED"
    assert stored.version == 1


def test_empty_update_is_rejected(booking):
    invoice = invoice_service.create_invoice_from_booking(booking, CONFIG, issue_date=ISSUED_ON)

    with pytest.raises(ValidationError) as excinfo:
        invoice_service.update_invoice(invoice)
    assert excinfo.value.code == "EMPTY_UPDATE"


def test_status_transitions(booking):
    invoice = invoice_service.create_custom_invoice(
        booking, [{"label": "Rental", "amount": 100}], CONFIG, issue_date=ISSUED_ON, status="DRAFT"
    )

    invoice_service.update_invoice_status(invoice, "ISSUED")
    assert invoice.status == "ISSUED"

    with pytest.raises(StateConflictError) as excinfo:
        invoice_service.update_invoice_status(invoice, "DRAFT")
    assert excinfo.value.code == "INVALID_TRANSITION"

    invoice_service.update_invoice_status(invoice, "VOID")
    with pytest.raises(InvalidStateError):
        invoice_service.update_invoice_status(invoice, "PAID")

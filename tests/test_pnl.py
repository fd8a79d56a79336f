import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from rental_finance.errors import ValidationError
from rental_finance.extensions import db
from rental_finance.models import Expense, ExpenseCategory, MaintenanceRecord
from rental_finance.services import invoices as invoice_service
from rental_finance.services import pnl
from rental_finance.services.expenses import add_expense, get_category
from rental_finance.services.pnl import DateWindow, ExpenseRow, InvoiceRow, MaintenanceRow
from rental_finance.services.pricing import PricingConfig
from rental_finance.services.salaries import create_salary

CONFIG = PricingConfig(vat_percent=Decimal("5"), currency="AED")
JANUARY = DateWindow(date(2024, 1, 1), date(2024, 1, 31))


def _expense(code, amount, day, branch=None, deleted=False):
    expense = add_expense(
        category=get_category(code),
        description=f"{code} {amount}",
        amount=Decimal(amount),
        date_incurred=day,
        branch_id=branch,
    )
    expense.is_deleted = deleted
    db.session.commit()
    return expense


@pytest.fixture
def ledger(users, make_vehicle, make_booking):
    """
    January 2024:
    - revenue 1050 (DXB) + 735 - 200 fine (SHJ) = 1585; a DRAFT invoice is ignored
    - COGS: fuel 100, fine 200, uncategorized 50, legacy purchase category 1000 = 1350
    - OPEX: salary 3000, rent 2000, utilities 300, marketing 150 = 5450
    - maintenance 400 + 250 = 650
    December 2023: revenue 1050 only.
    """
    vehicle = make_vehicle("DXB 2001")

    def invoice(branch, day, items, status="ISSUED"):
        booking = make_booking(vehicle, datetime(day.year, day.month, day.day, 9), pickup_branch=branch)
        return invoice_service.create_custom_invoice(booking, items, CONFIG, issue_date=day, status=status)

    invoice("DXB", date(2024, 1, 10), [{"label": "Rental", "amount": 1000}])
    invoice(
        "SHJ",
        date(2024, 1, 20),
        [{"label": "Rental", "amount": 500}, {"label": "Traffic Fine", "amount": 200}],
    )
    invoice("DXB", date(2024, 1, 15), [{"label": "Rental", "amount": 300}], status="DRAFT")
    invoice("DXB", date(2023, 12, 12), [{"label": "Rental", "amount": 1000}])

    _expense("FUEL", "100", date(2024, 1, 5), branch="DXB")
    _expense("RENT", "2000", date(2024, 1, 31), branch="DXB")
    _expense("UTILITIES", "300", date(2024, 1, 31))
    _expense("MARKETING", "150", date(2024, 1, 12))
    _expense("MARKETING", "999", date(2024, 1, 12), deleted=True)
    _expense("MARKETING", "777", date(2024, 2, 1))

    legacy = ExpenseCategory(code="VEH_PURCHASE", name="Vehicle Purchase Price", type="OPEX")
    db.session.add(legacy)
    db.session.add(
        Expense(category=legacy, description="Vehicle purchase", amount=Decimal("1000"), date_incurred=date(2024, 1, 3))
    )
    db.session.add(Expense(description="Unfiled receipt", amount=Decimal("50"), date_incurred=date(2024, 1, 9)))

    db.session.add_all(
        [
            MaintenanceRecord(vehicle_id=vehicle.id, type="SERVICE", status="COMPLETED",
                              completed_date=date(2024, 1, 8), cost=Decimal("400")),
            MaintenanceRecord(vehicle_id=vehicle.id, type="REPAIR", status="IN_PROGRESS",
                              scheduled_date=date(2024, 1, 25), cost=Decimal("250")),
            MaintenanceRecord(vehicle_id=vehicle.id, type="REPAIR", status="OPEN",
                              scheduled_date=date(2024, 1, 26), cost=Decimal("999")),
            MaintenanceRecord(vehicle_id=vehicle.id, type="ACCIDENT", status="COMPLETED",
                              scheduled_date=date(2024, 1, 30), completed_date=date(2024, 2, 2),
                              cost=Decimal("888")),
        ]
    )
    db.session.commit()

    create_salary(staff_user_id=users["staff"].id, month=1, year=2024, gross_salary=Decimal("3000"))


def test_month_report_totals(ledger):
    report = pnl.compute_profit_and_loss(JANUARY)
    result = report.result

    assert result.revenue == Decimal("1585.00")
    assert result.cogs_total == Decimal("1350.00")
    assert result.opex_total == Decimal("5450.00")
    assert result.maintenance_total == Decimal("650.00")
    assert result.maintenance_by_type == {"SERVICE": Decimal("400.00"), "REPAIR": Decimal("250.00")}

    summary = report.summary
    assert summary.gross_profit == Decimal("235.00")
    assert summary.net_profit == Decimal("-5215.00")


def test_cost_partition_is_exclusive(ledger):
    result = pnl.compute_profit_and_loss(JANUARY).result

    assert sum(line.amount for line in result.cogs_by_category) == result.cogs_total
    assert sum(line.amount for line in result.opex_by_category) == result.opex_total
    assert result.fixed_costs.total == result.opex_total

    expenses = pnl.fetch_expense_rows(JANUARY)
    assert result.cogs_total + result.opex_total == sum(row.amount for row in expenses)

    cogs_codes = [line.category_code for line in result.cogs_by_category]
    assert cogs_codes == ["VEH_PURCHASE", "FINES", "FUEL", "OTHER"]
    assert result.cogs_by_category[-1].category_name == "Uncategorized"


def test_fixed_costs(ledger):
    fixed = pnl.compute_profit_and_loss(JANUARY).result.fixed_costs

    assert fixed.salaries == Decimal("3000.00")
    assert fixed.rent == Decimal("2000.00")
    assert fixed.utilities == Decimal("300.00")
    assert fixed.other == Decimal("150.00")


def test_branch_filter(ledger):
    result = pnl.compute_profit_and_loss(JANUARY, branch_id="DXB").result

    assert result.revenue == Decimal("1050.00")
    assert result.cogs_total == Decimal("100.00")
    assert result.opex_total == Decimal("2000.00")
    assert result.maintenance_total == Decimal("0")


def test_report_dict_shape(ledger):
    report = pnl.compute_profit_and_loss(JANUARY, comparison="PREVIOUS_PERIOD").to_dict()

    assert report["period"]["label"] == "January 2024"
    assert report["revenue"]["breakdown"] == [{"period": "2024-01", "amount": Decimal("1585.00")}]
    assert report["cogs"]["total"] == Decimal("1350.00")
    assert report["cogs"]["maintenance"]["total"] == Decimal("650.00")
    assert report["profit"]["grossProfit"] == Decimal("235.00")


@pytest.mark.parametrize(
    "period, comparison",
    [
        ("MONTH", None),
        ("WEEK", "PREVIOUS_PERIOD"),
        ("DAY", "YEAR_OVER_YEAR"),
    ],
)
def test_repeated_reports_are_identical(ledger, period, comparison):
    def render():
        report = pnl.compute_profit_and_loss(JANUARY, period=period, comparison=comparison)
        return json.dumps(report.to_dict(), sort_keys=True, default=str)

    first = render()
    db.session.expire_all()
    second = render()

    assert first == second


def test_previous_period_comparison(ledger):
    report = pnl.compute_profit_and_loss(JANUARY, comparison="PREVIOUS_PERIOD")
    comparison = report.comparison

    assert comparison.window == DateWindow(date(2023, 12, 1), date(2023, 12, 31))
    assert comparison.previous.revenue == Decimal("1050.00")

    change = comparison.change_dict()
    assert change["revenue"] == Decimal("535.00")
    assert change["revenuePercent"] == Decimal("50.95")
    assert change["cogs"] == Decimal("1350.00")
    assert change["cogsPercent"] is None


def test_unknown_period_is_rejected():
    with pytest.raises(ValidationError):
        pnl.normalize_period("FORTNIGHT")
    with pytest.raises(ValidationError):
        pnl.normalize_comparison("LAST_DECADE")


def test_inverted_window_is_rejected():
    with pytest.raises(ValidationError) as excinfo:
        DateWindow(date(2024, 2, 1), date(2024, 1, 1))
    assert excinfo.value.code == "INVALID_DATE_RANGE"


def test_comparison_windows():
    window = DateWindow(date(2024, 3, 10), date(2024, 3, 16))
    assert pnl.comparison_window(window, "PREVIOUS_PERIOD") == DateWindow(date(2024, 3, 3), date(2024, 3, 9))

    leap = DateWindow(date(2024, 2, 1), date(2024, 2, 29))
    assert pnl.comparison_window(leap, "YEAR_OVER_YEAR") == DateWindow(date(2023, 2, 1), date(2023, 2, 28))


@pytest.mark.parametrize(
    "period, expected",
    [
        ("DAY", "2024-01-10"),
        ("WEEK", "2024-01-07"),
        ("MONTH", "2024-01"),
        ("QUARTER", "2024-Q1"),
        ("YEAR", "2024"),
    ],
)
def test_period_keys(period, expected):
    assert pnl.period_key(date(2024, 1, 10), period) == expected


def test_week_starts_on_sunday():
    assert pnl.week_start(date(2024, 1, 7)) == date(2024, 1, 7)
    assert pnl.week_start(date(2024, 1, 13)) == date(2024, 1, 7)


def test_percent_change():
    assert pnl.percent_change(Decimal("150"), Decimal("100")) == Decimal("50")
    assert pnl.percent_change(Decimal("50"), Decimal("-100")) == Decimal("150")
    assert pnl.percent_change(Decimal("10"), Decimal("0")) is None


def test_aggregate_without_rows():
    result = pnl.aggregate([], [], [])

    assert result.revenue == Decimal("0")
    assert result.summary.gross_margin == Decimal("0")
    assert result.summary.net_margin == Decimal("0")
    assert result.cogs_by_category == []


def test_aggregate_classification_rules():
    expenses = [
        ExpenseRow(Decimal("10"), 1, "Fuel", "FUEL", "COGS", False),
        ExpenseRow(Decimal("20"), 2, "Legacy", "LEGACY", None, False),
        ExpenseRow(Decimal("30"), 3, "Office Utilities", "OFFICE", "OPEX", False),
        ExpenseRow(Decimal("40"), 4, "Bonus", "BONUS", "OPEX", True),
        ExpenseRow(Decimal("50"), 5, "Cost of Goods Sold", "OLD", "OPEX", False),
    ]
    result = pnl.aggregate(
        [InvoiceRow(date(2024, 1, 1), Decimal("500"), Decimal("100"))],
        expenses,
        [MaintenanceRow("SERVICE", Decimal("70"))],
    )

    assert result.revenue == Decimal("400")
    assert result.cogs_total == Decimal("80")
    assert result.opex_total == Decimal("70")
    assert result.fixed_costs.utilities == Decimal("30")
    assert result.fixed_costs.salaries == Decimal("40")
    assert result.summary.cogs == Decimal("80")

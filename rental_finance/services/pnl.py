"""
rental_finance/services/pnl.py

Profit & loss aggregation (read-only).

Three independent reads (invoices, expenses, maintenance) are turned into plain
row tuples by the fetch_* functions; aggregate() is a pure function over those rows.
compute_profit_and_loss() wires them together and, when asked, repeats the whole
aggregation for a comparison window.

Rules:
- Revenue = sum(invoice.total - fines on that invoice), ISSUED/PAID invoices only,
  branch taken from the owning booking's pickup branch.
- Every in-window, non-deleted expense is either COGS or OPEX, never both.
- Maintenance cost is reported next to COGS, not added into cogs.total.
- Fixed-cost buckets split OPEX exclusively: salaries, then rent, then utilities, then other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, NamedTuple, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.orm import joinedload, selectinload

from ..errors import ValidationError
from ..extensions import db
from ..models import (
    CATEGORY_COGS,
    CODE_RENT,
    CODE_SALARIES,
    CODE_UTILITIES,
    MAINTENANCE_COSTED_STATUSES,
    REVENUE_INVOICE_STATUSES,
    Expense,
    ExpenseCategory,
    Invoice,
    MaintenanceRecord,
)
from ..money import ZERO, HUNDRED, money, ratio_percent, to_decimal
from . import pricing

logger = logging.getLogger(__name__)

PERIOD_DAY = "DAY"
PERIOD_WEEK = "WEEK"
PERIOD_MONTH = "MONTH"
PERIOD_QUARTER = "QUARTER"
PERIOD_YEAR = "YEAR"
PERIOD_TYPES = (PERIOD_DAY, PERIOD_WEEK, PERIOD_MONTH, PERIOD_QUARTER, PERIOD_YEAR)

COMPARE_PREVIOUS_PERIOD = "PREVIOUS_PERIOD"
COMPARE_YEAR_OVER_YEAR = "YEAR_OVER_YEAR"
COMPARISON_TYPES = (COMPARE_PREVIOUS_PERIOD, COMPARE_YEAR_OVER_YEAR)

# Legacy category names that mark a mis-typed category as cost of goods
COGS_NAME_MARKERS = ("(COGS)", "COGS", "COST OF GOODS", "PURCHASE PRICE")

UNCATEGORIZED_ID = "UNCATEGORIZED"
UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_CODE = "OTHER"


# ---------------------------------------------------------------------
# Windows & period keys
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class DateWindow:
    """Inclusive [date_from, date_to] range."""

    date_from: date
    date_to: date

    def __post_init__(self):
        if self.date_from is None or self.date_to is None:
            raise ValidationError("Both dateFrom and dateTo are required.", code="INVALID_DATE_RANGE")
        if self.date_to < self.date_from:
            raise ValidationError("dateTo must not be before dateFrom.", code="INVALID_DATE_RANGE")

    @property
    def days(self) -> int:
        return (self.date_to - self.date_from).days + 1

    def to_dict(self) -> dict:
        return {"from": self.date_from.isoformat(), "to": self.date_to.isoformat()}


def normalize_period(period: Optional[str]) -> str:
    period = (period or PERIOD_MONTH).upper()
    if period not in PERIOD_TYPES:
        raise ValidationError(f"Unknown period type {period!r}.", code="INVALID_PERIOD")
    return period


def normalize_comparison(comparison: Optional[str]) -> Optional[str]:
    if not comparison:
        return None
    comparison = comparison.upper()
    if comparison not in COMPARISON_TYPES:
        raise ValidationError(f"Unknown comparison {comparison!r}.", code="INVALID_COMPARISON")
    return comparison


def week_start(day: date) -> date:
    """Sunday on or before `day`."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def period_key(day: date, period: str) -> str:
    if period == PERIOD_DAY:
        return day.isoformat()
    if period == PERIOD_WEEK:
        return week_start(day).isoformat()
    if period == PERIOD_MONTH:
        return day.strftime("%Y-%m")
    if period == PERIOD_QUARTER:
        return f"{day.year}-Q{(day.month - 1) // 3 + 1}"
    return str(day.year)


def period_label(day: date, period: str) -> str:
    if period in (PERIOD_DAY, PERIOD_WEEK):
        return day.strftime("%b %d, %Y")
    if period == PERIOD_MONTH:
        return day.strftime("%B %Y")
    if period == PERIOD_QUARTER:
        return f"Q{(day.month - 1) // 3 + 1} {day.year}"
    return str(day.year)


def comparison_window(window: DateWindow, comparison: str) -> DateWindow:
    """
    PREVIOUS_PERIOD: same length, ending the day before window.date_from.
    YEAR_OVER_YEAR:  same dates one year earlier (Feb 29 -> Feb 28).
    """
    if comparison == COMPARE_YEAR_OVER_YEAR:
        return DateWindow(
            window.date_from - relativedelta(years=1),
            window.date_to - relativedelta(years=1),
        )
    prev_to = window.date_from - timedelta(days=1)
    return DateWindow(prev_to - (window.date_to - window.date_from), prev_to)


# ---------------------------------------------------------------------
# Fetched rows (plain data, no ORM objects past this point)
# ---------------------------------------------------------------------
class InvoiceRow(NamedTuple):
    issue_date: date
    total: Decimal
    fines: Decimal


class ExpenseRow(NamedTuple):
    amount: Decimal
    category_id: Optional[int]
    category_name: Optional[str]
    category_code: Optional[str]
    category_type: Optional[str]
    salary_linked: bool


class MaintenanceRow(NamedTuple):
    type: str
    cost: Decimal


def fetch_invoice_rows(window: DateWindow, branch_id: Optional[str] = None) -> List[InvoiceRow]:
    query = (
        Invoice.query.options(selectinload(Invoice.items), joinedload(Invoice.booking))
        .filter(Invoice.issue_date >= window.date_from)
        .filter(Invoice.issue_date <= window.date_to)
        .filter(Invoice.status.in_(REVENUE_INVOICE_STATUSES))
        .order_by(Invoice.issue_date.asc(), Invoice.id.asc())
    )

    rows = []
    for invoice in query.all():
        # Branch lives on the booking; filtered after the query
        if branch_id and (invoice.booking is None or invoice.booking.pickup_branch != branch_id):
            continue
        rows.append(
            InvoiceRow(
                issue_date=invoice.issue_date,
                total=to_decimal(invoice.total),
                fines=pricing.fines_amount(invoice.items),
            )
        )
    return rows


def fetch_expense_rows(window: DateWindow, branch_id: Optional[str] = None) -> List[ExpenseRow]:
    query = (
        db.session.query(Expense, ExpenseCategory)
        .outerjoin(ExpenseCategory, Expense.category_id == ExpenseCategory.id)
        .filter(Expense.date_incurred >= window.date_from)
        .filter(Expense.date_incurred <= window.date_to)
        .filter(Expense.is_deleted.is_(False))
        .order_by(Expense.date_incurred.asc(), Expense.id.asc())
    )
    if branch_id:
        query = query.filter(Expense.branch_id == branch_id)

    return [
        ExpenseRow(
            amount=to_decimal(expense.amount),
            category_id=category.id if category else None,
            category_name=category.name if category else None,
            category_code=category.code if category else None,
            category_type=category.type if category else None,
            salary_linked=expense.salary_record_id is not None,
        )
        for expense, category in query.all()
    ]


def fetch_maintenance_rows(window: DateWindow, branch_id: Optional[str] = None) -> List[MaintenanceRow]:
    cost_date = func.coalesce(MaintenanceRecord.completed_date, MaintenanceRecord.scheduled_date)
    query = (
        MaintenanceRecord.query.filter(MaintenanceRecord.status.in_(MAINTENANCE_COSTED_STATUSES))
        .filter(cost_date >= window.date_from)
        .filter(cost_date <= window.date_to)
        .order_by(MaintenanceRecord.id.asc())
    )
    if branch_id:
        query = query.filter(MaintenanceRecord.branch_id == branch_id)

    return [MaintenanceRow(type=record.type or "OTHER", cost=to_decimal(record.cost)) for record in query.all()]


# ---------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------
def is_cogs_expense(row: ExpenseRow) -> bool:
    """Missing category, missing type, COGS type, or a legacy COGS-looking name."""
    if row.category_id is None:
        return True
    if not row.category_type or row.category_type == CATEGORY_COGS:
        return True
    name = (row.category_name or "").upper()
    return any(marker in name for marker in COGS_NAME_MARKERS)


def fixed_cost_bucket(row: ExpenseRow) -> str:
    """Exclusive OPEX bucket, first match wins."""
    code = row.category_code or ""
    if code == CODE_SALARIES or row.salary_linked:
        return "salaries"
    if code == CODE_RENT:
        return "rent"
    if code == CODE_UTILITIES or "utilit" in (row.category_name or "").lower():
        return "utilities"
    return "other"


# ---------------------------------------------------------------------
# Report value objects
# ---------------------------------------------------------------------
@dataclass
class CostLine:
    category_id: str
    category_name: str
    category_code: str
    amount: Decimal = ZERO
    percentage: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "categoryId": self.category_id,
            "categoryName": self.category_name,
            "categoryCode": self.category_code,
            "amount": money(self.amount),
            "percentage": money(self.percentage),
        }


@dataclass
class FixedCosts:
    salaries: Decimal = ZERO
    rent: Decimal = ZERO
    utilities: Decimal = ZERO
    other: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.salaries + self.rent + self.utilities + self.other

    def to_dict(self) -> dict:
        return {
            "salaries": money(self.salaries),
            "rent": money(self.rent),
            "utilities": money(self.utilities),
            "other": money(self.other),
            "total": money(self.total),
        }


@dataclass
class Summary:
    revenue: Decimal
    cogs: Decimal
    opex: Decimal

    @property
    def gross_profit(self) -> Decimal:
        return self.revenue - self.cogs

    @property
    def net_profit(self) -> Decimal:
        return self.revenue - self.cogs - self.opex

    @property
    def gross_margin(self) -> Decimal:
        return ratio_percent(self.gross_profit, self.revenue)

    @property
    def net_margin(self) -> Decimal:
        return ratio_percent(self.net_profit, self.revenue)

    def to_dict(self) -> dict:
        return {
            "revenue": money(self.revenue),
            "cogs": money(self.cogs),
            "opex": money(self.opex),
            "grossProfit": money(self.gross_profit),
            "netProfit": money(self.net_profit),
            "grossMargin": money(self.gross_margin),
            "netMargin": money(self.net_margin),
        }


@dataclass
class Aggregation:
    revenue: Decimal = ZERO
    revenue_by_period: Dict[str, Decimal] = field(default_factory=dict)
    cogs_by_category: List[CostLine] = field(default_factory=list)
    opex_by_category: List[CostLine] = field(default_factory=list)
    cogs_total: Decimal = ZERO
    opex_total: Decimal = ZERO
    maintenance_by_type: Dict[str, Decimal] = field(default_factory=dict)
    fixed_costs: FixedCosts = field(default_factory=FixedCosts)

    @property
    def maintenance_total(self) -> Decimal:
        return sum(self.maintenance_by_type.values(), ZERO)

    @property
    def summary(self) -> Summary:
        return Summary(revenue=self.revenue, cogs=self.cogs_total, opex=self.opex_total)


def percent_change(current: Decimal, previous: Decimal) -> Optional[Decimal]:
    """(current - previous) / |previous| * 100; None when previous is 0."""
    if previous == 0:
        return None
    return (current - previous) / abs(previous) * HUNDRED


def _rounded_or_none(value: Optional[Decimal]) -> Optional[Decimal]:
    return money(value) if value is not None else None


@dataclass
class Comparison:
    mode: str
    window: DateWindow
    current: Summary
    previous: Summary

    def change_dict(self) -> dict:
        change = {}
        for key, current, previous in (
            ("revenue", self.current.revenue, self.previous.revenue),
            ("cogs", self.current.cogs, self.previous.cogs),
            ("opex", self.current.opex, self.previous.opex),
            ("grossProfit", self.current.gross_profit, self.previous.gross_profit),
            ("netProfit", self.current.net_profit, self.previous.net_profit),
        ):
            change[key] = money(current - previous)
            change[f"{key}Percent"] = _rounded_or_none(percent_change(current, previous))
        # margins change in percentage points
        change["grossMargin"] = money(self.current.gross_margin - self.previous.gross_margin)
        change["netMargin"] = money(self.current.net_margin - self.previous.net_margin)
        return change

    def to_dict(self) -> dict:
        return {
            "type": self.mode,
            "window": self.window.to_dict(),
            "current": self.current.to_dict(),
            "previous": self.previous.to_dict(),
            "change": self.change_dict(),
        }


@dataclass
class PnLReport:
    window: DateWindow
    period: str
    branch_id: Optional[str]
    result: Aggregation
    comparison: Optional[Comparison] = None

    @property
    def label(self) -> str:
        return period_label(self.window.date_to, self.period)

    @property
    def summary(self) -> Summary:
        return self.result.summary

    def to_dict(self) -> dict:
        result = self.result
        summary = result.summary
        return {
            "period": {
                "from": self.window.date_from.isoformat(),
                "to": self.window.date_to.isoformat(),
                "type": self.period,
                "label": self.label,
                "branchId": self.branch_id,
            },
            "revenue": {
                "total": money(result.revenue),
                "breakdown": [
                    {"period": key, "amount": money(amount)}
                    for key, amount in sorted(result.revenue_by_period.items())
                ],
            },
            "cogs": {
                "total": money(result.cogs_total),
                "byCategory": [line.to_dict() for line in result.cogs_by_category],
                "maintenance": {
                    "total": money(result.maintenance_total),
                    "byType": [
                        {"type": type_, "amount": money(amount)}
                        for type_, amount in sorted(result.maintenance_by_type.items())
                    ],
                },
            },
            "opex": {
                "total": money(result.opex_total),
                "byCategory": [line.to_dict() for line in result.opex_by_category],
                "fixedCosts": result.fixed_costs.to_dict(),
            },
            "profit": {
                "grossProfit": money(summary.gross_profit),
                "netProfit": money(summary.net_profit),
                "grossMargin": money(summary.gross_margin),
                "netMargin": money(summary.net_margin),
            },
            "comparison": self.comparison.to_dict() if self.comparison else None,
        }


# ---------------------------------------------------------------------
# Aggregation (pure)
# ---------------------------------------------------------------------
def _cost_lines(buckets: Dict[str, CostLine], total: Decimal) -> List[CostLine]:
    lines = list(buckets.values())
    for line in lines:
        line.percentage = ratio_percent(line.amount, total)
    # amount desc, then code/id for a stable order on ties
    lines.sort(key=lambda line: (-line.amount, line.category_code, line.category_id))
    return lines


def _add_to_bucket(buckets: Dict[str, CostLine], row: ExpenseRow) -> None:
    if row.category_id is None:
        key, name, code = UNCATEGORIZED_ID, UNCATEGORIZED_NAME, UNCATEGORIZED_CODE
    else:
        key = str(row.category_id)
        name = row.category_name or UNCATEGORIZED_NAME
        code = row.category_code or UNCATEGORIZED_CODE
    line = buckets.get(key)
    if line is None:
        line = buckets[key] = CostLine(category_id=key, category_name=name, category_code=code)
    line.amount += row.amount


def aggregate(
    invoices: Iterable[InvoiceRow],
    expenses: Iterable[ExpenseRow],
    maintenance: Iterable[MaintenanceRow],
    period: str = PERIOD_MONTH,
) -> Aggregation:
    result = Aggregation()

    for row in invoices:
        amount = row.total - row.fines
        result.revenue += amount
        key = period_key(row.issue_date, period)
        result.revenue_by_period[key] = result.revenue_by_period.get(key, ZERO) + amount

    cogs_buckets: Dict[str, CostLine] = {}
    opex_buckets: Dict[str, CostLine] = {}
    for row in expenses:
        if is_cogs_expense(row):
            result.cogs_total += row.amount
            _add_to_bucket(cogs_buckets, row)
            continue
        result.opex_total += row.amount
        _add_to_bucket(opex_buckets, row)
        bucket = fixed_cost_bucket(row)
        setattr(result.fixed_costs, bucket, getattr(result.fixed_costs, bucket) + row.amount)

    result.cogs_by_category = _cost_lines(cogs_buckets, result.cogs_total)
    result.opex_by_category = _cost_lines(opex_buckets, result.opex_total)

    for row in maintenance:
        result.maintenance_by_type[row.type] = result.maintenance_by_type.get(row.type, ZERO) + row.cost

    return result


def aggregate_window(window: DateWindow, period: str, branch_id: Optional[str] = None) -> Aggregation:
    invoices = fetch_invoice_rows(window, branch_id)
    expenses = fetch_expense_rows(window, branch_id)
    maintenance = fetch_maintenance_rows(window, branch_id)
    return aggregate(invoices, expenses, maintenance, period)


# ---------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------
def compute_profit_and_loss(
    window: DateWindow,
    period: str = PERIOD_MONTH,
    branch_id: Optional[str] = None,
    comparison: Optional[str] = None,
) -> PnLReport:
    """Aggregate the window; with `comparison`, aggregate the shifted window the same way."""
    period = normalize_period(period)
    comparison = normalize_comparison(comparison)
    branch_id = (branch_id or "").strip() or None

    result = aggregate_window(window, period, branch_id)
    report = PnLReport(window=window, period=period, branch_id=branch_id, result=result)

    if comparison:
        other_window = comparison_window(window, comparison)
        previous = aggregate_window(other_window, period, branch_id)
        report.comparison = Comparison(
            mode=comparison,
            window=other_window,
            current=result.summary,
            previous=previous.summary,
        )

    logger.debug(
        "P&L %s..%s period=%s branch=%s revenue=%s",
        window.date_from,
        window.date_to,
        period,
        branch_id,
        money(result.revenue),
    )
    return report

"""
Salary records and their SALARIES expense.

Each salary record owns exactly one expense:
- amount = net salary, dated on the last day of the salary month
- description "Salary - <staff name> - <month>/<year>"
Both are written in the same transaction; deleting a salary soft-deletes both.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError

from ..audit import log_action, serialize_model
from ..errors import NotFoundError, StateConflictError, ValidationError
from ..extensions import db
from ..models import CODE_SALARIES, SalaryRecord, User
from ..money import ZERO, money, to_decimal
from .expenses import add_expense, get_category, soft_delete_linked

logger = logging.getLogger(__name__)

SALARY_STATUSES = ("PENDING", "PAID")
AMOUNT_FIELDS = ("gross_salary", "allowances", "deductions")


def month_end(year: int, month: int) -> date:
    return date(year, month, 1) + relativedelta(day=31)


def salary_description(staff: User, month: int, year: int) -> str:
    return f"Salary - {staff.name} - {month}/{year}"


def _validate_month(month, year) -> None:
    if not isinstance(month, int) or not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12.", code="INVALID_MONTH")
    if not isinstance(year, int) or year < 2000:
        raise ValidationError("Invalid year.", code="INVALID_YEAR")


def _staff(user_id: int) -> User:
    staff = db.session.get(User, user_id)
    if staff is None:
        raise NotFoundError("Staff user not found.", code="STAFF_NOT_FOUND")
    return staff


def _net(record: SalaryRecord):
    net = to_decimal(record.gross_salary) + to_decimal(record.allowances) - to_decimal(record.deductions)
    if net < 0:
        raise ValidationError("Net salary cannot be negative.", code="NEGATIVE_NET_SALARY")
    return money(net)


def _flush_unique() -> None:
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise StateConflictError(
            "A salary record already exists for this staff member and month.",
            code="SALARY_EXISTS",
        )


def create_salary(
    *,
    staff_user_id: int,
    month: int,
    year: int,
    gross_salary,
    allowances=ZERO,
    deductions=ZERO,
    status: str = "PENDING",
    notes: str = None,
    branch_id: str = None,
    actor=None,
) -> SalaryRecord:
    _validate_month(month, year)
    if status not in SALARY_STATUSES:
        raise ValidationError(f"Unknown salary status {status!r}.", code="INVALID_STATUS")
    staff = _staff(staff_user_id)

    record = SalaryRecord(
        staff_user_id=staff.id,
        month=month,
        year=year,
        gross_salary=money(gross_salary),
        allowances=money(allowances),
        deductions=money(deductions),
        status=status,
        paid_at=datetime.utcnow() if status == "PAID" else None,
        notes=notes,
        branch_id=branch_id,
    )
    record.net_salary = _net(record)
    category = get_category(CODE_SALARIES)

    db.session.add(record)
    _flush_unique()
    log_action(record, "CREATE", after=serialize_model(record), actor=actor)

    add_expense(
        category=category,
        description=salary_description(staff, month, year),
        amount=record.net_salary,
        date_incurred=month_end(year, month),
        branch_id=branch_id,
        actor=actor,
        salary_record_id=record.id,
    )
    db.session.commit()
    logger.info("Salary %s created for user %s (%s/%s)", record.id, staff.id, month, year)
    return record


def _load(salary_id: int) -> SalaryRecord:
    record = db.session.get(SalaryRecord, salary_id)
    if record is None or record.is_deleted:
        raise NotFoundError("Salary record not found.", code="SALARY_NOT_FOUND")
    return record


def update_salary(salary_id: int, changes: Dict[str, Any], actor=None) -> SalaryRecord:
    """Apply changes and move the linked expense (amount, month-end date, description) with them."""
    record = _load(salary_id)
    before = serialize_model(record)

    month = changes.get("month", record.month)
    year = changes.get("year", record.year)
    _validate_month(month, year)
    record.month, record.year = month, year

    for name in AMOUNT_FIELDS:
        if name in changes:
            setattr(record, name, money(changes[name]))
    record.net_salary = _net(record)

    if "status" in changes:
        if changes["status"] not in SALARY_STATUSES:
            raise ValidationError(f"Unknown salary status {changes['status']!r}.", code="INVALID_STATUS")
        record.status = changes["status"]
        if record.status == "PAID" and record.paid_at is None:
            record.paid_at = datetime.utcnow()
    if "notes" in changes:
        record.notes = changes["notes"]
    if "branch_id" in changes:
        record.branch_id = changes["branch_id"]

    _flush_unique()
    staff = _staff(record.staff_user_id)

    expense = record.expense
    if expense is None:
        add_expense(
            category=get_category(CODE_SALARIES),
            description=salary_description(staff, record.month, record.year),
            amount=record.net_salary,
            date_incurred=month_end(record.year, record.month),
            branch_id=record.branch_id,
            actor=actor,
            salary_record_id=record.id,
        )
    elif not expense.is_deleted:
        expense_before = serialize_model(expense)
        expense.amount = record.net_salary
        expense.date_incurred = month_end(record.year, record.month)
        expense.description = salary_description(staff, record.month, record.year)
        if "branch_id" in changes:
            expense.branch_id = record.branch_id
        db.session.flush()
        log_action(expense, "UPDATE", before=expense_before, after=serialize_model(expense), actor=actor)

    log_action(record, "UPDATE", before=before, after=serialize_model(record), actor=actor)
    db.session.commit()
    return record


def delete_salary(salary_id: int, actor=None) -> SalaryRecord:
    record = _load(salary_id)
    before = serialize_model(record)

    soft_delete_linked(record.expense, actor=actor)
    record.is_deleted = True
    db.session.flush()
    log_action(record, "DELETE", before=before, after=serialize_model(record), actor=actor)
    db.session.commit()
    logger.info("Salary %s and its expense soft-deleted", record.id)
    return record

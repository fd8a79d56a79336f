"""
rental_finance/blueprints/expenses/routes.py

Ledger endpoints guarding system-managed records.

- PATCH  /api/expenses/<id>    generic edit (protected fields rejected on system-managed rows)
- DELETE /api/expenses/<id>    soft delete
- DELETE /api/payments/<id>    refused while linked to an active payout
- POST   /api/salaries         salary + SALARIES expense
- PATCH  /api/salaries/<id>
- DELETE /api/salaries/<id>    soft-deletes salary and its expense
"""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import current_user

from ...errors import ValidationError
from ...models import Expense, SalaryRecord
from ...money import money
from ...security import finance_required
from ...services import expenses as expense_service
from ...services import payments as payment_service
from ...services import salaries as salary_service
from ..parsing import json_body, optional_decimal, parse_date, parse_optional_int, require_int

expenses_bp = Blueprint("expenses", __name__, url_prefix="/api")


# ---------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------
def _expense_dict(expense: Expense) -> dict:
    return {
        "id": expense.id,
        "categoryId": expense.category_id,
        "categoryCode": expense.category.code if expense.category else None,
        "description": expense.description,
        "amount": money(expense.amount),
        "currency": expense.currency,
        "dateIncurred": expense.date_incurred.isoformat(),
        "branchId": expense.branch_id,
        "salaryRecordId": expense.salary_record_id,
        "investorPayoutId": expense.investor_payout_id,
        "isDeleted": expense.is_deleted,
        "systemManaged": expense.is_system_managed,
    }


def _salary_dict(record: SalaryRecord) -> dict:
    return {
        "id": record.id,
        "staffUserId": record.staff_user_id,
        "month": record.month,
        "year": record.year,
        "grossSalary": money(record.gross_salary),
        "allowances": money(record.allowances),
        "deductions": money(record.deductions),
        "netSalary": money(record.net_salary),
        "status": record.status,
        "branchId": record.branch_id,
        "isDeleted": record.is_deleted,
        "expense": _expense_dict(record.expense) if record.expense else None,
    }


# ---------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------
@expenses_bp.route("/expenses/<int:expense_id>", methods=["PATCH"])
@finance_required
def update_expense(expense_id: int):
    data = json_body()
    changes = {}
    if "description" in data:
        changes["description"] = data.get("description")
    if "branchId" in data:
        changes["branch_id"] = data.get("branchId")
    if "amount" in data:
        amount = optional_decimal(data, "amount")
        if amount is None:
            raise ValidationError("amount is required.", code="INVALID_NUMBER")
        changes["amount"] = amount
    if "categoryId" in data:
        changes["category_id"] = require_int(data, "categoryId")
    if "dateIncurred" in data:
        parsed = parse_date(data.get("dateIncurred"))
        if parsed is None:
            raise ValidationError("dateIncurred must be YYYY-MM-DD.", code="INVALID_DATE")
        changes["date_incurred"] = parsed

    if not changes:
        raise ValidationError("Nothing to update.", code="EMPTY_UPDATE")

    expense = expense_service.update_expense(expense_id, changes, actor=current_user)
    return jsonify({"expense": _expense_dict(expense)})


@expenses_bp.route("/expenses/<int:expense_id>", methods=["DELETE"])
@finance_required
def delete_expense(expense_id: int):
    expense_service.delete_expense(expense_id, actor=current_user)
    return jsonify({"success": True})


# ---------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------
@expenses_bp.route("/payments/<int:payment_id>", methods=["DELETE"])
@finance_required
def delete_payment(payment_id: int):
    payment_service.delete_payment(payment_id, actor=current_user)
    return jsonify({"success": True})


# ---------------------------------------------------------------------
# Salaries
# ---------------------------------------------------------------------
def _salary_changes(data: dict) -> dict:
    changes = {}
    for key, name in (("month", "month"), ("year", "year")):
        if key in data:
            changes[name] = parse_optional_int(data.get(key))
    for key, name in (("grossSalary", "gross_salary"), ("allowances", "allowances"), ("deductions", "deductions")):
        if key in data:
            value = optional_decimal(data, key)
            if value is None:
                raise ValidationError(f"{key} must be a number.", code="INVALID_NUMBER")
            changes[name] = value
    if "status" in data:
        changes["status"] = str(data.get("status") or "").upper()
    if "notes" in data:
        changes["notes"] = data.get("notes")
    if "branchId" in data:
        changes["branch_id"] = data.get("branchId")
    return changes


@expenses_bp.route("/salaries", methods=["POST"])
@finance_required
def create_salary():
    data = json_body()
    gross = optional_decimal(data, "grossSalary")
    if gross is None:
        raise ValidationError("grossSalary is required.", code="INVALID_NUMBER")

    record = salary_service.create_salary(
        staff_user_id=require_int(data, "staffUserId"),
        month=require_int(data, "month"),
        year=require_int(data, "year"),
        gross_salary=gross,
        allowances=optional_decimal(data, "allowances") or 0,
        deductions=optional_decimal(data, "deductions") or 0,
        status=str(data.get("status") or "PENDING").upper(),
        notes=data.get("notes"),
        branch_id=data.get("branchId"),
        actor=current_user,
    )
    return jsonify({"salary": _salary_dict(record)}), 201


@expenses_bp.route("/salaries/<int:salary_id>", methods=["PATCH"])
@finance_required
def update_salary(salary_id: int):
    changes = _salary_changes(json_body())
    if not changes:
        raise ValidationError("Nothing to update.", code="EMPTY_UPDATE")
    record = salary_service.update_salary(salary_id, changes, actor=current_user)
    return jsonify({"salary": _salary_dict(record)})


@expenses_bp.route("/salaries/<int:salary_id>", methods=["DELETE"])
@finance_required
def delete_salary(salary_id: int):
    salary_service.delete_salary(salary_id, actor=current_user)
    return jsonify({"success": True})

"""
rental_finance/services/expenses.py

Expense ledger rules shared by the pricing, payout and salary services.

- Default categories are seeded idempotently (matched by code, then by name).
- System-managed expenses (SALARIES / INVESTOR_PAYOUTS category, or carrying a salary or
  payout back-reference) cannot have amount, category or date edited, nor be deleted,
  through the generic interface. Only the owning service changes them.
- Deletes are soft (is_deleted flag).
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Optional

from ..audit import log_action, serialize_model
from ..errors import NotFoundError, StateConflictError, ValidationError
from ..extensions import db
from ..models import (
    CATEGORY_COGS,
    CATEGORY_OPEX,
    CODE_FINES,
    CODE_INVESTOR_PAYOUTS,
    CODE_RENT,
    CODE_SALARIES,
    CODE_UTILITIES,
    Expense,
    ExpenseCategory,
)
from ..money import money, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    # code, name, type
    (CODE_SALARIES, "Salaries", CATEGORY_OPEX),
    (CODE_RENT, "Rent", CATEGORY_OPEX),
    (CODE_UTILITIES, "Utilities", CATEGORY_OPEX),
    ("FUEL", "Fuel", CATEGORY_COGS),
    ("MAINTENANCE", "Maintenance", CATEGORY_COGS),
    ("MARKETING", "Marketing", CATEGORY_OPEX),
    ("SOFTWARE", "Software", CATEGORY_OPEX),
    (CODE_INVESTOR_PAYOUTS, "Investor Payouts", CATEGORY_COGS),
    (CODE_FINES, "Fines & Government Fees", CATEGORY_COGS),
]

PROTECTED_FIELDS = ("amount", "category_id", "date_incurred")


def ensure_default_categories() -> None:
    """
    Create or repair the default categories.

    Idempotent behavior:
    - Match by code first; keep name/type in sync.
    - Otherwise adopt a category with the same name and give it the code.
    - Otherwise create it.
    """
    for code, name, type_ in DEFAULT_CATEGORIES:
        category = ExpenseCategory.query.filter_by(code=code).first()
        if category is None:
            category = ExpenseCategory.query.filter_by(name=name).first()
            if category is not None:
                logger.info("Adopting expense category %r as %s", name, code)
                category.code = code
        if category is None:
            db.session.add(ExpenseCategory(code=code, name=name, type=type_, is_active=True))
            continue
        category.name = name
        category.type = type_
        category.is_active = True
    db.session.flush()


def get_category(code: str) -> ExpenseCategory:
    """Category by code, seeding the defaults once if it is missing."""
    category = ExpenseCategory.query.filter_by(code=code).first()
    if category is None:
        ensure_default_categories()
        category = ExpenseCategory.query.filter_by(code=code).first()
    if category is None:
        raise NotFoundError(f"Expense category {code} not found.", code="CATEGORY_NOT_FOUND")
    return category


def add_expense(
    *,
    category: ExpenseCategory,
    description: str,
    amount,
    date_incurred: date,
    currency: str = "AED",
    branch_id: Optional[str] = None,
    actor=None,
    **links: Any,
) -> Expense:
    """Add an expense to the session (no commit). `links` are back-reference columns."""
    expense = Expense(
        category_id=category.id,
        description=description,
        amount=money(amount),
        currency=currency,
        date_incurred=date_incurred,
        branch_id=branch_id,
        created_by_id=getattr(actor, "id", None),
        is_deleted=False,
        **links,
    )
    db.session.add(expense)
    db.session.flush()
    log_action(expense, "CREATE", after=serialize_model(expense), actor=actor)
    return expense


def _load_active(expense_id: int) -> Expense:
    expense = db.session.get(Expense, expense_id)
    if expense is None or expense.is_deleted:
        raise NotFoundError("Expense not found.", code="EXPENSE_NOT_FOUND")
    return expense


def update_expense(expense_id: int, changes: Dict[str, Any], actor=None) -> Expense:
    """
    Generic expense edit.

    System-managed expenses accept only description/branch changes.
    """
    expense = _load_active(expense_id)

    if expense.is_system_managed:
        blocked = [field for field in PROTECTED_FIELDS if field in changes]
        if blocked:
            owner = "salary record" if expense.salary_record_id or (
                expense.category and expense.category.code == CODE_SALARIES
            ) else "investor payout"
            raise StateConflictError(
                f"This expense is linked to a {owner}; edit {', '.join(blocked)} through that module instead.",
                code="SYSTEM_MANAGED_EXPENSE",
                current_state="SYSTEM_MANAGED",
            )

    before = serialize_model(expense)

    if "description" in changes:
        description = (changes["description"] or "").strip()
        if not description:
            raise ValidationError("Description is required.", code="DESCRIPTION_REQUIRED")
        expense.description = description
    if "branch_id" in changes:
        expense.branch_id = (changes["branch_id"] or "").strip() or None
    if "amount" in changes:
        expense.amount = money(to_decimal(changes["amount"]))
    if "date_incurred" in changes:
        if not isinstance(changes["date_incurred"], date):
            raise ValidationError("Invalid date incurred.", code="INVALID_DATE")
        expense.date_incurred = changes["date_incurred"]
    if "category_id" in changes:
        category = db.session.get(ExpenseCategory, changes["category_id"])
        if category is None or not category.is_active:
            raise NotFoundError("Expense category not found.", code="CATEGORY_NOT_FOUND")
        if category.code in (CODE_SALARIES, CODE_INVESTOR_PAYOUTS):
            raise StateConflictError(
                f"Category {category.code} is reserved for system-generated expenses.",
                code="RESERVED_CATEGORY",
            )
        expense.category_id = category.id

    db.session.flush()
    log_action(expense, "UPDATE", before=before, after=serialize_model(expense), actor=actor)
    db.session.commit()
    return expense


def delete_expense(expense_id: int, actor=None) -> Expense:
    """Soft delete; system-managed expenses are rejected."""
    expense = _load_active(expense_id)
    if expense.is_system_managed:
        raise StateConflictError(
            "System-managed expenses can only be removed through their owning record.",
            code="SYSTEM_MANAGED_EXPENSE",
            current_state="SYSTEM_MANAGED",
        )

    before = serialize_model(expense)
    expense.is_deleted = True
    db.session.flush()
    log_action(expense, "DELETE", before=before, after=serialize_model(expense), actor=actor)
    db.session.commit()
    logger.info("Expense %s soft-deleted", expense.id)
    return expense


def soft_delete_linked(expense: Expense, actor=None) -> None:
    """Soft delete performed by an owning subsystem (no commit)."""
    if expense is None or expense.is_deleted:
        return
    before = serialize_model(expense)
    expense.is_deleted = True
    db.session.flush()
    log_action(expense, "DELETE", before=before, after=serialize_model(expense), actor=actor)

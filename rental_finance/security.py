"""
rental_finance/security.py

Access control helpers for the financial API.

Key rules:
- All permission checks are server-side.
- Mutations of invoices, payouts, expenses and payments: SUPER_ADMIN / ADMIN / FINANCE.
- INVESTOR users may read only their own payouts (scoping lives in services.payouts).

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import abort
from flask_login import current_user

from .models import FINANCE_ROLES


def has_any_role(*roles: str) -> bool:
    """Return True if current user is authenticated, active and holds one of the roles."""
    if not current_user.is_authenticated:
        return False
    return bool(current_user.is_active and current_user.role in roles)


def roles_required(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator factory: 401 when anonymous, 403 when the role is not allowed.

    Usage:
        @roles_required("SUPER_ADMIN", "ADMIN")
        def view(): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            if not current_user.is_authenticated:
                abort(401)
            if not has_any_role(*roles):
                abort(403)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def finance_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: internal finance staff only."""
    return roles_required(*FINANCE_ROLES)(view_func)

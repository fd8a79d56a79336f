"""
Ledger blueprint package (expenses, payments, salaries).
"""

from .routes import expenses_bp  # noqa: F401

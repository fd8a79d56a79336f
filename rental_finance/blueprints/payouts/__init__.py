"""
rental_finance/blueprints/payouts/__init__.py

Blueprint package export.
"""

from __future__ import annotations

from .routes import payouts_bp  # noqa: F401

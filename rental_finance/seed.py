"""
rental_finance/seed.py

Seed master data the financial core relies on.

Rules:
- Safe to run multiple times (idempotent).
- Seeds the default expense categories (matched by code, then name).
- Ensures the single Settings row exists with the configured VAT / currency defaults.
- Optionally bootstraps the first SUPER_ADMIN user.
"""

from __future__ import annotations

import logging
from typing import Optional

from .extensions import db
from .models import ROLE_SUPER_ADMIN, User
from .services.expenses import ensure_default_categories
from .services.settings import get_settings

logger = logging.getLogger(__name__)


def seed_defaults() -> None:
    """Create or repair default categories and the settings row, then commit."""
    ensure_default_categories()
    get_settings()
    db.session.commit()
    logger.info("Default expense categories and settings seeded")


def create_admin(username: str, password: str, name: Optional[str] = None) -> Optional[User]:
    """
    Bootstrap the FIRST admin of the system.

    Returns None (and creates nothing) if any user already exists.
    """
    if User.query.count() > 0:
        return None

    user = User(
        username=username.strip(),
        name=(name or "System Administrator").strip(),
        role=ROLE_SUPER_ADMIN,
        is_active=True,
    )
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    logger.info("Bootstrap admin %s created", user.username)
    return user

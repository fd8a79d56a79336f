"""
Tenant settings lookup.

The pricing functions never read settings themselves; callers load a PricingConfig
once per request here and pass it in.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Settings
from ..money import to_decimal
from .pricing import PricingConfig


def get_settings() -> Settings:
    """Return the settings row, creating it with defaults if missing."""
    settings = Settings.query.order_by(Settings.id.asc()).first()
    if settings is None:
        settings = Settings(
            default_currency=current_app.config.get("DEFAULT_CURRENCY", "AED"),
            default_tax_percent=current_app.config.get("DEFAULT_TAX_PERCENT", Decimal("5")),
        )
        db.session.add(settings)
        db.session.flush()
    return settings


def load_pricing_config() -> PricingConfig:
    """VAT percent and currency from Settings; configured fallbacks (5 % / AED) otherwise."""
    fallback_vat = to_decimal(current_app.config.get("DEFAULT_TAX_PERCENT", Decimal("5")))
    fallback_currency = current_app.config.get("DEFAULT_CURRENCY", "AED")

    settings = Settings.query.order_by(Settings.id.asc()).first()
    if settings is None:
        return PricingConfig(vat_percent=fallback_vat, currency=fallback_currency)

    vat = settings.default_tax_percent
    vat_percent = to_decimal(vat) if vat is not None else fallback_vat
    return PricingConfig(
        vat_percent=vat_percent,
        currency=(settings.default_currency or fallback_currency).upper(),
    )


def default_commission_percent() -> Decimal:
    return to_decimal(current_app.config.get("DEFAULT_COMMISSION_PERCENT", Decimal("20")))

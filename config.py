"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, secret key,
default financial settings and logging level. It uses environment variables for sensitive information and defaults for
development. In production, make sure to set the appropriate environment variables and secure the secret key.
"""

import os
from decimal import Decimal
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'rental_finance.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection for forms (JSON API blueprints are exempted in create_app)
    WTF_CSRF_ENABLED = True

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")

    # Fallbacks used when the Settings row is missing or incomplete
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "AED")
    DEFAULT_TAX_PERCENT = Decimal(os.environ.get("DEFAULT_TAX_PERCENT", "5"))
    DEFAULT_COMMISSION_PERCENT = Decimal(os.environ.get("DEFAULT_COMMISSION_PERCENT", "20"))

    # Payment terms for generated invoices
    INVOICE_DUE_DAYS = 30

    APP_NAME = "Rental Finance"


class TestConfig(Config):
    """In-memory database, no CSRF. Used by the pytest fixtures."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "WARNING"

"""
rental_finance/__init__.py

Flask application factory for the car-rental financial core.

Requirements:
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev and tests.
- JSON API only; server-side access control on every route.
- Domain errors (rental_finance.errors) become JSON bodies with a machine code.
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify
from flask_login import current_user
from werkzeug.exceptions import HTTPException

from .errors import FinanceError
from .extensions import csrf, db, login_manager, migrate
from .logging_config import configure_logging
from .models import User

logger = logging.getLogger(__name__)


def create_app(config_object: str = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        try:
            return db.session.get(User, int(user_id))
        except ValueError:
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required.", "code": "UNAUTHORIZED"}), 401

    # ----------------------------------------------------------------------
    # Blueprints (JSON API: exempt from form CSRF, session auth via Flask-Login)
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.expenses import expenses_bp
    from .blueprints.invoices import invoices_bp
    from .blueprints.payouts import payouts_bp
    from .blueprints.reports import reports_bp

    for blueprint in (auth_bp, invoices_bp, reports_bp, payouts_bp, expenses_bp):
        csrf.exempt(blueprint)
        app.register_blueprint(blueprint)

    # ----------------------------------------------------------------------
    # Error handling
    # ----------------------------------------------------------------------
    @app.errorhandler(FinanceError)
    def handle_finance_error(error: FinanceError):
        # nothing half-written survives a rejected request
        db.session.rollback()
        if error.status_code >= 500:
            logger.error("%s: %s", error.__class__.__name__, error.to_dict())
        else:
            logger.info("%s: %s (%s)", error.__class__.__name__, error.message, error.code)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"error": error.description, "code": error.name.upper().replace(" ", "_")}), error.code

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("seed-defaults")
    def seed_defaults_command():
        """Seed default expense categories and the settings row."""
        from .seed import seed_defaults

        seed_defaults()
        click.echo("Default expense categories and settings seeded.")

    @app.cli.command("create-admin")
    @click.argument("username")
    @click.password_option()
    def create_admin_command(username: str, password: str):
        """Create the first SUPER_ADMIN user."""
        from .seed import create_admin

        if create_admin(username, password) is None:
            click.echo("Users already exist; nothing created.")
            return
        click.echo(f"Admin {username} created.")

    # ----------------------------------------------------------------------
    # Home
    # ----------------------------------------------------------------------
    @app.route("/")
    def index():
        """Service info and current user."""
        return jsonify(
            {
                "app": app.config.get("APP_NAME", "Rental Finance"),
                "user": current_user.username if current_user.is_authenticated else None,
            }
        )

    return app

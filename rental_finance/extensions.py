"""
Flask extension singletons for the rental finance app.

Bound to the app in create_app(); services and models import them from here so
nothing imports the app factory.

IMPORTANT:
- Constraint names are deterministic (naming convention below) so Flask-Migrate
  can alter the unique keys on invoices, payouts and salary records on SQLite
  and PostgreSQL alike.
"""

from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect
from sqlalchemy import MetaData

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

db = SQLAlchemy(metadata=MetaData(naming_convention=NAMING_CONVENTION))
migrate = Migrate(render_as_batch=True)

login_manager = LoginManager()
# JSON API: no login page to redirect to; create_app installs a 401 handler
login_manager.login_view = None
login_manager.session_protection = "strong"

csrf = CSRFProtect()

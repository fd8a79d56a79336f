"""
Authentication routes (JSON).

Provides:
- POST /auth/login   {"username", "password"}
- POST /auth/logout

Rules:
- Only active users may log in.
- Credentials validated via password hash.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from ...models import User
from ..parsing import json_body

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "name": user.name,
        "role": user.role,
        "investorProfileId": user.investor_profile.id if user.investor_profile else None,
    }


# ============================================================
# LOGIN
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Authenticate a user and start a session."""
    if current_user.is_authenticated:
        return jsonify({"user": _user_dict(current_user)})

    data = json_body() or request.form
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""

    user = User.query.filter_by(username=username).first()

    if not user or not user.check_password(password):
        logger.info("Failed login for %r", username)
        return jsonify({"error": "Invalid username or password.", "code": "INVALID_CREDENTIALS"}), 401

    if not user.is_active:
        return jsonify({"error": "Account is inactive.", "code": "ACCOUNT_INACTIVE"}), 403

    login_user(user)
    return jsonify({"user": _user_dict(user)})


# ============================================================
# LOGOUT
# ============================================================

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({"success": True})

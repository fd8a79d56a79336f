"""
rental_finance/audit.py

Audit logging helper utilities.

Goals:
- Capture WHO did WHAT to WHICH financial record, with BEFORE/AFTER snapshots.
- Store username snapshot to preserve identity even if username changes later.
- Store IP address for traceability when running inside a request.

IMPORTANT:
- This helper ADDS AuditLog entries to the current SQLAlchemy session.
  The calling service controls transaction boundaries (commit/rollback).
- Services run both inside requests and from CLI/tests, so the actor may be passed
  explicitly; otherwise flask_login.current_user is used when a request is active.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from flask import has_request_context, request
from flask_login import current_user

from .extensions import db
from .models import AuditLog


def _safe_str(value: Any) -> Optional[str]:
    """
    Convert a value to a stable string representation suitable for JSON and DB storage.

    - For Decimal/date/datetime: str(value) is stable.
    - For None: return None.
    """
    if value is None:
        return None
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """
    Convert a SQLAlchemy model instance to a dict snapshot based on table columns.

    NOTES:
    - Captures only scalar column values (not relationships).
    - Values are converted to string for JSON safety.
    """
    data: Dict[str, Optional[str]] = {}
    for column in instance.__table__.columns:
        data[column.name] = _safe_str(getattr(instance, column.name))
    return data


def _resolve_actor(actor: Any):
    if actor is not None:
        return actor
    if has_request_context() and current_user.is_authenticated:
        return current_user
    return None


def log_action(
    entity: Any,
    action: str,
    *,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    actor: Any = None,
) -> None:
    """
    Add an AuditLog entry to the current db session.

    Parameters:
        entity: SQLAlchemy model instance with .id (flush first)
        action: CREATE / UPDATE / DELETE / CANCEL / REPRICE ...
        before: dict snapshot (optional)
        after: dict snapshot (optional)
        actor: User performing the change (defaults to current_user in a request)
    """
    entity_id = getattr(entity, "id", None)
    if entity_id is None:
        raise ValueError("log_action entity must have an 'id' attribute (after flush).")

    user = _resolve_actor(actor)

    entry = AuditLog(
        user_id=getattr(user, "id", None),
        username_snapshot=getattr(user, "username", None),
        entity_type=entity.__class__.__name__,
        entity_id=int(entity_id),
        action=str(action),
        before_data=json.dumps(before, ensure_ascii=False) if before else None,
        after_data=json.dumps(after, ensure_ascii=False) if after else None,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)

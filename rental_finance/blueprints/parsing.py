"""
rental_finance/blueprints/parsing.py

Request parsing helpers shared by the JSON blueprints.

IMPORTANT:
- Optional values parse to None when empty; required values raise ValidationError,
  which the app factory turns into a 400 JSON response.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from flask import request

from ..errors import ValidationError


def json_body() -> Dict[str, Any]:
    """Request JSON object ({} when the body is empty)."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.", code="INVALID_BODY")
    return data


def parse_decimal(value: Any) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot)."""
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).strip().replace(",", ".")
    if raw == "":
        return None
    try:
        parsed = Decimal(raw)
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def parse_optional_int(value: Any) -> int | None:
    """Parse optional int from JSON/query."""
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_date(value: Any) -> date | None:
    """Accept YYYY-MM-DD or an ISO datetime; None when empty or invalid."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        if "T" in raw:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
        return date.fromisoformat(raw)
    except ValueError:
        return None


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    # stored naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def require_date(data: Dict[str, Any], key: str) -> date:
    parsed = parse_date(data.get(key))
    if parsed is None:
        raise ValidationError(f"{key} is required (YYYY-MM-DD).", code="INVALID_DATE")
    return parsed


def require_int(data: Dict[str, Any], key: str) -> int:
    parsed = parse_optional_int(data.get(key))
    if parsed is None:
        raise ValidationError(f"{key} is required.", code="INVALID_ID")
    return parsed


def optional_int(data: Dict[str, Any], key: str) -> int | None:
    """None when absent; ValidationError when present but not an integer."""
    if data.get(key) in (None, ""):
        return None
    parsed = parse_optional_int(data.get(key))
    if parsed is None:
        raise ValidationError(f"{key} must be an integer.", code="INVALID_NUMBER")
    return parsed


def optional_decimal(data: Dict[str, Any], key: str) -> Decimal | None:
    """None when absent; ValidationError when present but not a number."""
    if data.get(key) in (None, ""):
        return None
    parsed = parse_decimal(data.get(key))
    if parsed is None:
        raise ValidationError(f"{key} must be a number.", code="INVALID_NUMBER")
    return parsed


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}

"""
rental_finance/errors.py

Error taxonomy of the financial core.

Every service raises one of these; the app factory turns them into a JSON body
with a human-readable message and a machine code:

- ValidationError     -> 400  (malformed input, rejected before any write)
- NotFoundError       -> 404  (referenced booking/investor/category absent)
- StateConflictError  -> 409  (terminal state, system-managed record, stale version)
- PartialFailure      -> 500  (a parent record was persisted but a dependent write failed
                               and could not be unwound; carries the parent id)
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FinanceError(Exception):
    """Base class for all domain errors raised by the services."""

    status_code = 400
    default_code = "FINANCE_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(FinanceError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(FinanceError):
    status_code = 404
    default_code = "NOT_FOUND"


class StateConflictError(FinanceError):
    """Operation not allowed in the record's current state."""

    status_code = 409
    default_code = "STATE_CONFLICT"

    def __init__(self, message: str, code: str | None = None, current_state: Optional[str] = None):
        super().__init__(message, code)
        self.current_state = current_state

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.current_state is not None:
            data["current_state"] = self.current_state
        return data


class InvalidStateError(StateConflictError):
    """Editing a PAID/VOID invoice (or another terminal record)."""

    default_code = "INVALID_STATE"


class PartialFailure(FinanceError):
    """
    A parent record exists but one of its dependent writes failed and could not be
    compensated. Requires operator attention; never retried automatically.
    """

    status_code = 500
    default_code = "PARTIAL_FAILURE"

    def __init__(
        self,
        message: str,
        parent_id: int | None,
        *,
        parent_type: str = "InvestorPayout",
        failed_step: str | None = None,
        code: str | None = None,
    ):
        super().__init__(message, code)
        self.parent_id = parent_id
        self.parent_type = parent_type
        self.failed_step = failed_step

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["parent_type"] = self.parent_type
        data["parent_id"] = self.parent_id
        if self.failed_step:
            data["failed_step"] = self.failed_step
        return data

# gearflow/errors.py
"""
Error taxonomy for the booking engine.

Every error carries an HTTP status, a human message and an optional
structured ``data`` payload; the API renders them as ``{error, data}``.
"""
from __future__ import annotations
from typing import Any, Optional

from sqlalchemy.exc import DBAPIError


class EngineError(Exception):
    status_code: int = 400

    def __init__(self, message: str, data: Optional[Any] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.data = data
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> dict:
        body: dict = {"error": self.message}
        if self.data is not None:
            body["data"] = self.data
        return body


class ValidationError(EngineError):
    status_code = 400


class IncompleteScanError(ValidationError):
    """Completion attempted while declared items are still unscanned."""

    def __init__(self, missing_serialized, missing_bulk):
        super().__init__(
            "Scan requirements not met",
            {
                "missingSerialized": list(missing_serialized),
                "missingBulk": list(missing_bulk),
                "overrideUsed": False,
            },
        )


class UnauthorizedError(EngineError):
    status_code = 401


class ForbiddenError(EngineError):
    status_code = 403


class NotFoundError(EngineError):
    status_code = 404


class ConflictError(EngineError):
    status_code = 409


class StockConflictError(ConflictError):
    pass


# ============================================================================
# Database error classification
# ============================================================================

ALLOCATION_GUARD = "asset_allocations_no_overlap"

# PostgreSQL SQLSTATEs that mean "another transaction won"
_CONFLICT_SQLSTATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "23P01",  # exclusion_violation
    "23505",  # unique_violation
}


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_concurrency_conflict(exc: BaseException) -> bool:
    """True when a DB error means a competing write got there first."""
    if not isinstance(exc, DBAPIError):
        return False
    if _sqlstate(exc) in _CONFLICT_SQLSTATES:
        return True
    message = str(getattr(exc, "orig", None) or exc).lower()
    return (
        ALLOCATION_GUARD in message
        or "unique constraint failed" in message
        or "database is locked" in message
    )

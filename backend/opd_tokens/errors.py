"""
Error catalogue for the token engine.

Every failure surfaced by the engine is an AppError carrying a code from
the catalogue below, its category, the HTTP status the API layer maps it
to, a details dict and zero or more suggested actions.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError


class ErrorCategory:
    VALIDATION = "validation"
    BUSINESS = "business"
    CONCURRENCY = "concurrency"
    SYSTEM = "system"
    EXTERNAL = "external"


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SLOT_CAPACITY_EXCEEDED = "SLOT_CAPACITY_EXCEEDED"
    SLOT_NOT_AVAILABLE = "SLOT_NOT_AVAILABLE"
    SLOT_NOT_FOUND = "SLOT_NOT_FOUND"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_ALREADY_PROCESSED = "TOKEN_ALREADY_PROCESSED"
    INVALID_TOKEN_STATUS = "INVALID_TOKEN_STATUS"
    SCHEDULING_CONFLICT = "SCHEDULING_CONFLICT"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


# code -> (category, http status, default message, default suggestions)
ERROR_CATALOGUE = {
    ErrorCode.VALIDATION_ERROR: (
        ErrorCategory.VALIDATION, 400,
        "Request validation failed",
        ["Check the request fields and try again"],
    ),
    ErrorCode.SLOT_CAPACITY_EXCEEDED: (
        ErrorCategory.BUSINESS, 409,
        "Slot has reached maximum capacity",
        ["Try a different time slot", "Consider booking for another day"],
    ),
    ErrorCode.SLOT_NOT_AVAILABLE: (
        ErrorCategory.BUSINESS, 409,
        "Slot is not available for booking",
        ["Choose an active slot on or after today"],
    ),
    ErrorCode.SLOT_NOT_FOUND: (
        ErrorCategory.BUSINESS, 404,
        "Slot not found",
        ["Check the slot id"],
    ),
    ErrorCode.TOKEN_NOT_FOUND: (
        ErrorCategory.BUSINESS, 404,
        "Token not found",
        ["Check the token id"],
    ),
    ErrorCode.TOKEN_ALREADY_PROCESSED: (
        ErrorCategory.BUSINESS, 409,
        "Token has already been processed",
        [],
    ),
    ErrorCode.INVALID_TOKEN_STATUS: (
        ErrorCategory.BUSINESS, 409,
        "Token status does not allow this operation",
        [],
    ),
    ErrorCode.SCHEDULING_CONFLICT: (
        ErrorCategory.BUSINESS, 409,
        "Scheduling conflict",
        ["Check existing bookings for this patient"],
    ),
    ErrorCode.CONCURRENT_MODIFICATION: (
        ErrorCategory.CONCURRENCY, 409,
        "Resource was modified by another request",
        ["Retry the request"],
    ),
    ErrorCode.OPERATION_IN_PROGRESS: (
        ErrorCategory.CONCURRENCY, 409,
        "An identical operation is already in progress",
        ["Wait for the running request to finish"],
    ),
    ErrorCode.MAX_RETRIES_EXCEEDED: (
        ErrorCategory.CONCURRENCY, 503,
        "Operation failed after retrying",
        ["Retry the request later"],
    ),
    ErrorCode.SERVICE_UNAVAILABLE: (
        ErrorCategory.SYSTEM, 503,
        "Service temporarily unavailable",
        ["Retry the request later"],
    ),
    ErrorCode.INTERNAL_SERVER_ERROR: (
        ErrorCategory.SYSTEM, 500,
        "Internal server error",
        [],
    ),
}


class AppError(Exception):
    """Engine error with a catalogue code."""

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        category, status, default_message, default_suggestions = ERROR_CATALOGUE.get(
            code, ERROR_CATALOGUE[ErrorCode.INTERNAL_SERVER_ERROR]
        )
        self.code = code
        self.category = category
        self.http_status = status
        self.message = message or default_message
        self.details = details or {}
        self.suggestions = list(suggestions) if suggestions is not None else list(default_suggestions)
        super().__init__(f"{code}: {self.message}")

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "details": self.details,
            "suggestions": self.suggestions,
        }


_TRANSIENT_DB_MARKERS = (
    "deadlock",
    "could not serialize",
    "serialization failure",
    "lock timeout",
    "lock wait timeout",
    "database is locked",
    "database table is locked",
    "connection",
)

TOKEN_NUMBER_CONSTRAINT = "uq_tokens_slot_token_number"


def is_transient(exc: BaseException) -> bool:
    """True when the error is a version/write conflict worth retrying."""
    if isinstance(exc, AppError):
        return exc.code == ErrorCode.CONCURRENT_MODIFICATION
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, IntegrityError):
        text = str(exc.orig).lower()
        # Two writers raced for the same token number
        return TOKEN_NUMBER_CONSTRAINT in text or (
            "tokens.slot_id" in text and "tokens.token_number" in text
        )
    if isinstance(exc, OperationalError):
        text = str(exc.orig).lower()
        return any(marker in text for marker in _TRANSIENT_DB_MARKERS)
    return False


def is_concurrency_error(exc: BaseException) -> bool:
    """Transient errors caused by competing writers rather than the store being down."""
    if isinstance(exc, AppError):
        return exc.category == ErrorCategory.CONCURRENCY
    if isinstance(exc, (StaleDataError, IntegrityError)):
        return True
    if isinstance(exc, OperationalError):
        text = str(exc.orig).lower()
        return any(m in text for m in ("deadlock", "serialize", "serialization", "locked"))
    return False

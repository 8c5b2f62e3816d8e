"""
Error taxonomy and response envelope helpers.

Services raise :class:`ServiceError` subclasses for invalid input and
missing entities; expected negative outcomes (rate-limited ingestion,
dispatch cooldown) are ordinary return values instead. The FastAPI
exception handlers in ``chargewatch.main`` translate everything that
escapes a route into the ``{"ok": false, "error": {...}}`` envelope.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Machine-readable error codes returned in the error envelope."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    UNAUTHORIZED = "UNAUTHORIZED"
    RPC_ERROR = "RPC_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """Base class for errors that map onto an error envelope.

    Args:
        message: Human-readable description of the failure.
        code: Error code for the envelope.
        status_code: HTTP status code for the response.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(ServiceError):
    """Malformed or missing input; never retried, nothing mutated."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class NotFound(ServiceError):
    """A referenced station or subscription does not exist."""

    code = ErrorCode.NOT_FOUND
    status_code = 404


def ok(data: Any) -> dict[str, Any]:
    """Wrap *data* in the success envelope."""
    return {"ok": True, "data": data}


def error_body(code: ErrorCode, message: str) -> dict[str, Any]:
    """Build the failure envelope for *code* and *message*."""
    return {"ok": False, "error": {"code": str(code), "message": message}}

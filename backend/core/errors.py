"""
Error taxonomy for the trolley core.

Every failure a caller can act on has its own kind so API clients (and batch
reports) can tell them apart without parsing messages:

  - validation_error: malformed coordinates / missing or out-of-range field
  - not_found:        trolley, assignment or loyalty card absent
  - conflict:         trolley already checked out
  - invalid_state:    trolley has no anchor store, card inactive, ...
  - internal_error:   storage / ledger failure (message is opaque)
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    INTERNAL = "internal_error"


class TrolleyOpsError(Exception):
    """Base class for all domain errors raised by the core."""

    kind: ErrorKind = ErrorKind.INTERNAL
    http_status: int = 500

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind.value.upper()
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        """Standardized error envelope for REST responses and batch reports."""
        body: dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(TrolleyOpsError):
    kind = ErrorKind.VALIDATION
    http_status = 422


class NotFoundError(TrolleyOpsError):
    kind = ErrorKind.NOT_FOUND
    http_status = 404

    @classmethod
    def for_resource(cls, resource: str, ref: Any) -> "NotFoundError":
        return cls(f"{resource} not found", code=f"{resource.upper().replace(' ', '_')}_NOT_FOUND", details={"ref": str(ref)})


class ConflictError(TrolleyOpsError):
    kind = ErrorKind.CONFLICT
    http_status = 409


class InvalidStateError(TrolleyOpsError):
    """
    The entity exists but is in a state that forbids the operation.

    For blocked loyalty cards the message is the card's own blocked_reason,
    passed through unmodified so the kiosk can show it verbatim.
    """

    kind = ErrorKind.INVALID_STATE
    http_status = 400


class InternalError(TrolleyOpsError):
    kind = ErrorKind.INTERNAL
    http_status = 500

    def __init__(self, message: str = "An unexpected error occurred", code: str | None = None):
        super().__init__(message, code=code)

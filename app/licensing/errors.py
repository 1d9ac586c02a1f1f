"""
Error taxonomy for the licensing engine.

Every error carries a human-readable message (shown as-is by the calling layer),
an optional details dict, and the HTTP status the JSON endpoints answer with.
"""
from __future__ import annotations

from typing import Any


class LicensingError(Exception):
    """Base class for all workflow and accounting errors."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class ValidationError(LicensingError):
    """Malformed or out-of-range input."""

    status_code = 400


class PreconditionError(LicensingError):
    """A required upstream entity is not in the needed state."""

    status_code = 409


class QuotaExceededError(PreconditionError):
    """Debit would take the importer past its allowance (block policy only)."""


class InvalidStateError(LicensingError):
    """Requested transition is illegal from the entity's current state."""

    status_code = 409


class NotFoundError(LicensingError):
    """Referenced id does not exist."""

    status_code = 404


class ConcurrencyConflictError(LicensingError):
    """
    Optimistic check failed. Retry the whole operation from fresh state,
    not just the final write.
    """

    status_code = 409

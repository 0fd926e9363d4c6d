"""Error taxonomy shared by the reconciliation and alerting services.

Services raise these; the HTTP layer (``subsentry.main``) maps each ``code``
onto a status code. Nothing here is retried internally.
"""

from __future__ import annotations


class SubsentryError(Exception):
    code = "error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        out = {"error": self.code, "message": self.message}
        if self.context:
            out["context"] = {k: str(v) for k, v in self.context.items()}
        return out


class ValidationError(SubsentryError):
    """Malformed candidate data (negative price, bad currency code, ...)."""

    code = "validation"


class NotFoundError(SubsentryError):
    code = "not_found"


class InvalidStateError(SubsentryError):
    """Illegal state transition for a subscription or an alert."""

    code = "invalid_state"


class ConcurrencyError(SubsentryError):
    """Optimistic-concurrency conflict; re-fetch and retry the whole operation."""

    code = "concurrency"


class OperationCancelled(SubsentryError):
    code = "cancelled"


__all__ = [
    "SubsentryError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "ConcurrencyError",
    "OperationCancelled",
]

"""Errors raised by the queue engine.

Every refusal carries a human readable ``message`` and the HTTP status the
API layer should answer with.  The FastAPI app installs a single handler
for :class:`QueueError`, so components simply raise.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class QueueError(Exception):
    status_code = 500
    kind = "internal"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(QueueError):
    """Malformed or out-of-policy input."""

    status_code = 400
    kind = "validation_error"


class Unauthorized(QueueError):
    """Missing staff passcode or contact mismatch at check-in."""

    status_code = 401
    kind = "unauthorized"


class ContactMismatch(Unauthorized):
    status_code = 403


class NotFound(QueueError):
    status_code = 404
    kind = "not_found"


class Conflict(QueueError):
    """Ticket is in a state incompatible with the requested transition."""

    status_code = 409
    kind = "conflict"


class EmptyQueue(Conflict):
    kind = "empty_queue"


class NothingServing(Conflict):
    kind = "nothing_serving"


class Expired(QueueError):
    """Check-in attempted more than an hour after the appointment."""

    status_code = 410
    kind = "expired"


class Internal(QueueError):
    status_code = 500
    kind = "internal"

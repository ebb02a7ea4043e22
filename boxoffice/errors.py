"""Failure taxonomy shared by the core and the HTTP boundary.

Every failure carries an HTTP-equivalent status code, a stable machine code
and a user-safe message. ``details`` holds extra context a client needs to
tell a duplicate scan or a retried request apart from a real error.
"""

from datetime import datetime
from typing import Any


class BoxOfficeError(Exception):
    status_code = 500
    code = "UNEXPECTED_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_body(self, request_id: str | None) -> dict[str, Any]:
        return {
            "status": "fail" if self.status_code < 500 else "error",
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "request_id": request_id,
        }


class ValidationFailure(BoxOfficeError):
    status_code = 400
    code = "VALIDATION_FAILED"


class AuthenticationFailure(BoxOfficeError):
    status_code = 401
    code = "INVALID_TOKEN"


class SignatureInvalid(BoxOfficeError):
    status_code = 401
    code = "INVALID_SIGNATURE"


class AuthorizationFailure(BoxOfficeError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(BoxOfficeError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(BoxOfficeError):
    status_code = 409
    code = "CONFLICT"


class CapacityExceeded(Conflict):
    code = "CAPACITY_EXCEEDED"


class TicketAlreadyUsed(Conflict):
    code = "TICKET_ALREADY_USED"

    def __init__(self, ticket_id: str, used_at: datetime | None) -> None:
        super().__init__(
            "Ticket already used",
            details={
                "ticket_id": ticket_id,
                "first_used_at": used_at.isoformat() if used_at else None,
                "solution": "Check for duplicate scanning",
            },
        )
        self.ticket_id = ticket_id
        self.used_at = used_at


class TicketRefunded(Conflict):
    code = "TICKET_REFUNDED"

    def __init__(self, ticket_id: str, message: str = "Ticket already refunded") -> None:
        super().__init__(message, details={"ticket_id": ticket_id})
        self.ticket_id = ticket_id


class DuplicateTransaction(Conflict):
    code = "DUPLICATE_TRANSACTION"


class IdempotencyInProgress(Conflict):
    code = "IDEMPOTENCY_IN_PROGRESS"


class RateLimited(BoxOfficeError):
    status_code = 429
    code = "RATE_LIMITED"


class UnexpectedFailure(BoxOfficeError):
    status_code = 500
    code = "UNEXPECTED_ERROR"


class TransientStoreFailure(BoxOfficeError):
    """Contention or lock timeout; retrying the whole request is safe."""

    status_code = 503
    code = "TRANSIENT_STORE_FAILURE"


class ConcurrentModification(TransientStoreFailure):
    code = "CONCURRENT_MODIFICATION"

"""
Domain error taxonomy.

Components raise these instead of HTTPException so the same rules apply to
route handlers, background jobs and tests. The API layer maps each class to
a stable status code and error code (see responses.py).

    UnauthorizedError   401  no session, bad signature, expired session
    ForbiddenError      403  valid session but ownership / CSRF check failed
    NotFoundError       404  resource absent
    ConflictError       409  overlapping booking, invalid state transition,
                             invitation exhausted / expired at consume time
    ValidationFailedError 422 malformed or out-of-policy input
    RateLimitedError    429  too many requests from one client
    TransientError      503  store timeout or lock failure, safe to retry
"""

from typing import Any, Optional


class DomainError(Exception):
    """Base class for all expected, typed failures."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details
        super().__init__(message)


class UnauthorizedError(DomainError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"


class ForbiddenError(DomainError):
    status_code = 403
    code = "AUTHORIZATION_DENIED"


class NotFoundError(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(DomainError):
    status_code = 409
    code = "CONFLICT"


class InvitationExhaustedError(ConflictError):
    code = "INVITATION_EXHAUSTED"


class InvitationExpiredError(ConflictError):
    code = "INVITATION_EXPIRED"


class ValidationFailedError(DomainError):
    status_code = 422
    code = "VALIDATION_ERROR"


class TransientError(DomainError):
    status_code = 503
    code = "TRANSIENT_ERROR"


class RateLimitedError(DomainError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int, details: Optional[dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.retry_after = retry_after

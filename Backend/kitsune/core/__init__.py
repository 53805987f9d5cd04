"""
Core module - configuration, resource store, errors, and response formatting.

Request context lives in ``kitsune.core.request_context`` and is imported
from there directly; it depends on the session guard, which depends on
this package.
"""
from .config import Settings, get_settings
from .db import Base, Store, UTCDateTime, get_store
from .errors import (
    ConflictError,
    DomainError,
    ForbiddenError,
    InvitationExhaustedError,
    InvitationExpiredError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
    ValidationFailedError,
)
from .responses import ErrorCodes, ErrorDetail, error_response, register_error_handlers

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Store
    "Base",
    "Store",
    "UTCDateTime",
    "get_store",
    # Errors
    "DomainError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InvitationExhaustedError",
    "InvitationExpiredError",
    "ValidationFailedError",
    "RateLimitedError",
    "TransientError",
    # Responses
    "ErrorCodes",
    "ErrorDetail",
    "error_response",
    "register_error_handlers",
]

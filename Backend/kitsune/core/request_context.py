"""
Request Context Resolution Module

This module is the SINGLE SOURCE OF TRUTH for identity resolution.
All API routes use it for authentication.

ARCHITECTURE:
    1. resolve_request_context() extracts the session credential from the
       ``kitsune_session`` cookie (or an ``Authorization: Bearer`` header)
    2. The credential's signature and expiry are verified
    3. A RequestContext is returned; all authorization checks use it

State-changing routes depend on get_csrf_protected_context(), which adds
the CSRF double-submit check on top of authentication. Authentication is
always checked first, so an anonymous caller gets 401, never 403.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, Request

from ..security import (
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    SESSION_COOKIE_NAME,
    SUBJECT_CUSTOMER,
    SUBJECT_OWNER,
    Credential,
    verify_csrf_token,
)
from .config import Settings, get_settings
from .errors import UnauthorizedError
from .responses import ErrorCodes

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """
    Resolved identity of the caller.

    ``subject_id`` is a BusinessOwner id when ``subject_kind`` is "owner" and
    a Customer id when it is "customer"; the two id spaces never mix.
    """
    subject_id: int
    subject_kind: str
    session_id: str
    expires_at: Optional[datetime] = None

    # Request metadata
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_owner(self) -> bool:
        return self.subject_kind == SUBJECT_OWNER

    @property
    def is_customer(self) -> bool:
        return self.subject_kind == SUBJECT_CUSTOMER


def app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def _extract_token(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


def resolve_request_context(request: Request) -> RequestContext:
    """
    Resolve the caller's identity from the request.

    Raises:
        UnauthorizedError: no credential, bad signature, expired session
    """
    token = _extract_token(request)
    if not token:
        logger.warning(f"Authentication failed: no session on {request.method} {request.url.path}")
        raise UnauthorizedError("Authentication required. Please sign in.", code=ErrorCodes.AUTHENTICATION_REQUIRED)

    clock = getattr(request.app.state, "clock", None)
    claims = Credential(token).verify(app_settings(request).auth_secret, now=clock() if clock else None)

    return RequestContext(
        subject_id=claims.subject_id,
        subject_kind=claims.subject_kind,
        session_id=claims.session_id,
        expires_at=claims.expires_at,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


async def get_request_context(request: Request) -> RequestContext:
    """
    FastAPI dependency for authenticated routes.

        @router.get("/something")
        async def handler(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    return resolve_request_context(request)


async def get_csrf_protected_context(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    """Authenticated context plus a verified CSRF token. Use on every state-changing route."""
    verify_csrf_token(
        ctx.session_id,
        request.headers.get(CSRF_HEADER_NAME),
        request.cookies.get(CSRF_COOKIE_NAME),
    )
    return ctx

"""
Session & CSRF Guard

Sessions are stateless HS256 JWTs (PyJWT) carried in an HTTP-only cookie.
Nothing about the subject is trusted until the signature and expiry have
been checked.

CSRF uses a hashed double-submit scheme:
    - the client receives a random token in the JSON body of the login /
      csrf endpoints
    - the ``kitsune_csrf`` cookie stores sha256("<session id>:<token>")
    - state-changing requests echo the plain token in ``X-CSRF-Token``

Binding the session id into the hash means rotating the session (refresh,
re-login) invalidates every previously issued CSRF token.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Response

from .core.config import Settings
from .core.errors import ForbiddenError, UnauthorizedError
from .core.responses import ErrorCodes
from .timeutils import utc_now

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "kitsune_session"
CSRF_COOKIE_NAME = "kitsune_csrf"
CSRF_HEADER_NAME = "X-CSRF-Token"

JWT_ALGORITHM = "HS256"

SUBJECT_OWNER = "owner"
SUBJECT_CUSTOMER = "customer"
SUBJECT_KINDS = (SUBJECT_OWNER, SUBJECT_CUSTOMER)


@dataclass(frozen=True)
class SessionClaims:
    subject_id: int
    subject_kind: str
    session_id: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        subject_id: int,
        subject_kind: str,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "SessionClaims":
        if subject_kind not in SUBJECT_KINDS:
            raise ValueError(f"Unknown subject kind: {subject_kind}")
        issued_at = (now or utc_now()).replace(microsecond=0)
        return cls(
            subject_id=subject_id,
            subject_kind=subject_kind,
            session_id=secrets.token_urlsafe(16),
            issued_at=issued_at,
            expires_at=issued_at + ttl,
        )

    def rotated(self, ttl: timedelta, now: Optional[datetime] = None) -> "SessionClaims":
        """Same subject, fresh session id and lifetime."""
        return SessionClaims.new(self.subject_id, self.subject_kind, ttl, now)


@dataclass(frozen=True)
class Credential:
    """A signed, self-describing session token."""

    token: str

    @classmethod
    def issue(cls, claims: SessionClaims, secret: str) -> "Credential":
        payload = {
            "sub": str(claims.subject_id),
            "kind": claims.subject_kind,
            "sid": claims.session_id,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
        }
        return cls(jwt.encode(payload, secret, algorithm=JWT_ALGORITHM))

    def verify(self, secret: str, now: Optional[datetime] = None) -> SessionClaims:
        """
        Check signature and expiry and return the claims.

        Expiry is compared against ``now`` rather than the wall clock so the
        caller's clock is authoritative.
        """
        try:
            payload = jwt.decode(
                self.token,
                secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "sid", "exp", "iat"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Session token rejected: {e}")
            raise UnauthorizedError("Invalid session. Please sign in again.", code=ErrorCodes.INVALID_SESSION)

        try:
            subject_id = int(payload["sub"])
            kind = payload.get("kind")
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError):
            raise UnauthorizedError("Invalid session. Please sign in again.", code=ErrorCodes.INVALID_SESSION)
        if kind not in SUBJECT_KINDS:
            raise UnauthorizedError("Invalid session. Please sign in again.", code=ErrorCodes.INVALID_SESSION)

        if (now or utc_now()) >= expires_at:
            raise UnauthorizedError("Session expired. Please sign in again.", code=ErrorCodes.SESSION_EXPIRED)

        return SessionClaims(
            subject_id=subject_id,
            subject_kind=kind,
            session_id=str(payload["sid"]),
            issued_at=issued_at,
            expires_at=expires_at,
        )


# ────────────────────────────────────────────────────────────────
# CSRF
# ────────────────────────────────────────────────────────────────

def mint_csrf_token() -> str:
    return secrets.token_hex(32)


def hash_csrf_token(session_id: str, token: str) -> str:
    return hashlib.sha256(f"{session_id}:{token}".encode("utf-8")).hexdigest()


def verify_csrf_token(session_id: str, token: Optional[str], cookie_hash: Optional[str]) -> None:
    """Raise ForbiddenError unless ``token`` matches the hash stored in the CSRF cookie."""
    if not token or not cookie_hash:
        logger.warning(f"CSRF check failed for session {session_id[:6]}...: token or cookie missing")
        raise ForbiddenError("CSRF token missing", code=ErrorCodes.CSRF_FAILED)
    expected = hash_csrf_token(session_id, token)
    if not hmac.compare_digest(expected, cookie_hash):
        logger.warning(f"CSRF check failed for session {session_id[:6]}...: token mismatch")
        raise ForbiddenError("CSRF token invalid", code=ErrorCodes.CSRF_FAILED)


# ────────────────────────────────────────────────────────────────
# Cookies
# ────────────────────────────────────────────────────────────────

def set_session_cookies(
    response: Response,
    credential: Credential,
    claims: SessionClaims,
    csrf_token: str,
    settings: Settings,
) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        credential.token,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )
    set_csrf_cookie(response, claims.session_id, csrf_token, settings)


def set_csrf_cookie(response: Response, session_id: str, csrf_token: str, settings: Settings) -> None:
    response.set_cookie(
        CSRF_COOKIE_NAME,
        hash_csrf_token(session_id, csrf_token),
        max_age=settings.csrf_cookie_max_age_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (SESSION_COOKIE_NAME, CSRF_COOKIE_NAME):
        response.delete_cookie(name, path="/", secure=settings.is_production, httponly=True, samesite="lax")


def start_session(
    response: Response,
    subject_id: int,
    subject_kind: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> tuple[SessionClaims, str]:
    """Issue a new session plus CSRF token and write both cookies. Returns (claims, plain csrf token)."""
    claims = SessionClaims.new(subject_id, subject_kind, timedelta(days=settings.session_ttl_days), now)
    credential = Credential.issue(claims, settings.auth_secret)
    csrf_token = mint_csrf_token()
    set_session_cookies(response, credential, claims, csrf_token, settings)
    logger.info(f"Session started for {subject_kind} {subject_id}")
    return claims, csrf_token

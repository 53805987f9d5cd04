"""
Authentication API (LINE Login)

ENDPOINTS:
    GET  /auth/login             - redirect an owner to the identity provider
    GET  /auth/callback/line     - provider callback: upsert owner, start session
    POST /auth/customer/line     - customer sign-in from a LINE access token
    GET  /auth/session           - who am I
    GET  /auth/csrf              - mint a fresh CSRF token for the current session
    POST /auth/refresh-session   - rotate session id (invalidates old CSRF tokens)
    POST /auth/logout            - clear cookies

Plain CSRF tokens are only ever returned in JSON bodies; the cookie holds
their hash.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from .access import subscription_allows_access
from .core.db import Store, get_store
from .core.errors import UnauthorizedError
from .core.request_context import (
    RequestContext,
    app_settings,
    get_csrf_protected_context,
    get_request_context,
)
from .identity import IdentityProvider, new_oauth_state, upsert_customer, upsert_owner
from .models import BusinessOwner, Customer
from .rate_limiter import public_rate_limit
from .security import (
    Credential,
    SessionClaims,
    clear_session_cookies,
    mint_csrf_token,
    set_csrf_cookie,
    set_session_cookies,
    start_session,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

OAUTH_STATE_COOKIE = "kitsune_oauth_state"
RETURN_URL_COOKIE = "kitsune_return_url"


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


def _now(request: Request) -> datetime:
    return request.app.state.clock()


def _safe_return_path(value: Optional[str]) -> str:
    # Only same-site relative paths; never an open redirect.
    if value and value.startswith("/") and not value.startswith("//"):
        return value
    return "/setup"


class CustomerLogin(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1)


class SessionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_id: int = Field(alias="subjectId")
    subject_kind: str = Field(alias="subjectKind")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    picture_url: Optional[str] = Field(default=None, alias="pictureUrl")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    has_subscription_access: Optional[bool] = Field(default=None, alias="hasSubscriptionAccess")


class CsrfOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    csrf_token: str = Field(alias="csrfToken")


class LoginOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session: SessionOut
    csrf_token: str = Field(alias="csrfToken")


# ────────────────────────────────────────────────────────────────
# Owner login (OAuth redirect flow)
# ────────────────────────────────────────────────────────────────

@router.get("/login")
async def login(
    request: Request,
    return_url: Optional[str] = Query(default=None, alias="returnUrl"),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    settings = app_settings(request)
    state = new_oauth_state()
    response = RedirectResponse(provider.login_url(state), status_code=302)
    cookie_kwargs = dict(max_age=600, httponly=True, secure=settings.is_production, samesite="lax", path="/")
    response.set_cookie(OAUTH_STATE_COOKIE, state, **cookie_kwargs)
    response.set_cookie(RETURN_URL_COOKIE, _safe_return_path(return_url), **cookie_kwargs)
    return response


@router.get("/callback/line")
async def line_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    store: Store = Depends(get_store),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    settings = app_settings(request)
    base = settings.site_base_url.rstrip("/")

    if error:
        logger.warning(f"LINE OAuth error: {error}")
        return RedirectResponse(f"{base}/setup?error=auth_failed", status_code=302)
    if not code:
        return RedirectResponse(f"{base}/setup?error=missing_code", status_code=302)
    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if not state or not expected_state or state != expected_state:
        logger.warning("LINE OAuth state mismatch")
        return RedirectResponse(f"{base}/setup?error=auth_failed", status_code=302)

    try:
        profile = await provider.exchange_code(code)
    except UnauthorizedError:
        return RedirectResponse(f"{base}/setup?error=auth_failed", status_code=302)

    owner = await store.run_in_transaction(lambda session: upsert_owner(session, profile))

    return_path = _safe_return_path(request.cookies.get(RETURN_URL_COOKIE))
    response = RedirectResponse(f"{base}{quote(return_path, safe='/?=&')}", status_code=302)
    start_session(response, owner.id, "owner", settings, now=_now(request))
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/")
    response.delete_cookie(RETURN_URL_COOKIE, path="/")
    return response


# ────────────────────────────────────────────────────────────────
# Customer login (embedded chat-app flow)
# ────────────────────────────────────────────────────────────────

@router.post("/customer/line", response_model=LoginOut, dependencies=[Depends(public_rate_limit)])
async def customer_login(
    payload: CustomerLogin,
    request: Request,
    response: Response,
    store: Store = Depends(get_store),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    settings = app_settings(request)
    profile = await provider.profile_from_access_token(payload.access_token)
    customer = await store.run_in_transaction(lambda session: upsert_customer(session, profile))

    claims, csrf_token = start_session(response, customer.id, "customer", settings, now=_now(request))
    return LoginOut(
        session=SessionOut(
            subject_id=customer.id,
            subject_kind="customer",
            display_name=customer.display_name,
            picture_url=customer.picture_url,
            expires_at=claims.expires_at,
        ),
        csrf_token=csrf_token,
    )


# ────────────────────────────────────────────────────────────────
# Session management
# ────────────────────────────────────────────────────────────────

@router.get("/session", response_model=SessionOut)
async def get_session_info(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    store: Store = Depends(get_store),
):
    async with store.session() as session:
        if ctx.is_owner:
            subject = await session.get(BusinessOwner, ctx.subject_id)
        else:
            subject = await session.get(Customer, ctx.subject_id)
    if subject is None:
        raise UnauthorizedError("Session subject no longer exists. Please sign in again.")

    return SessionOut(
        subject_id=ctx.subject_id,
        subject_kind=ctx.subject_kind,
        display_name=subject.display_name,
        picture_url=subject.picture_url,
        expires_at=ctx.expires_at,
        has_subscription_access=(
            subscription_allows_access(subject, _now(request)) if ctx.is_owner else None
        ),
    )


@router.get("/csrf", response_model=CsrfOut)
async def get_csrf_token(
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    """Mint a new CSRF token bound to the current session; the previous one stops working."""
    token = mint_csrf_token()
    set_csrf_cookie(response, ctx.session_id, token, app_settings(request))
    return CsrfOut(csrf_token=token)


@router.post("/refresh-session", response_model=CsrfOut)
async def refresh_session(
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_csrf_protected_context),
):
    """Issue a new session id for the same subject. CSRF tokens of the old session stop working."""
    settings = app_settings(request)
    claims = SessionClaims.new(
        ctx.subject_id,
        ctx.subject_kind,
        timedelta(days=settings.session_ttl_days),
        now=_now(request),
    )
    csrf_token = mint_csrf_token()
    set_session_cookies(response, Credential.issue(claims, settings.auth_secret), claims, csrf_token, settings)
    logger.info(f"Session rotated for {ctx.subject_kind} {ctx.subject_id}")
    return CsrfOut(csrf_token=csrf_token)


@router.post("/logout")
async def logout(request: Request):
    response = JSONResponse(content={"success": True})
    clear_session_cookies(response, app_settings(request))
    return response

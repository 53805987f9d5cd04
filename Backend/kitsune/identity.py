"""
Identity provider integration (LINE Login).

Only a stable external user id plus profile fields cross this boundary;
everything else about the provider's wire format stays inside
LineIdentityProvider.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import urlencode

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings
from .core.errors import TransientError, UnauthorizedError
from .models import BusinessOwner, Customer
from .timeutils import utc_now

logger = logging.getLogger(__name__)

LINE_AUTHORIZE_URL = "https://access.line.me/oauth2/v2.1/authorize"
LINE_TOKEN_URL = "https://api.line.me/oauth2/v2.1/token"
LINE_PROFILE_URL = "https://api.line.me/v2/profile"


@dataclass(frozen=True)
class ExternalProfile:
    external_id: str
    display_name: str
    picture_url: Optional[str] = None
    email: Optional[str] = None


class IdentityProvider(Protocol):
    def login_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> ExternalProfile: ...

    async def profile_from_access_token(self, access_token: str) -> ExternalProfile: ...


class LineIdentityProvider:
    def __init__(self, settings: Settings, timeout: float = 10.0):
        self.channel_id = settings.line_login_channel_id
        self.channel_secret = settings.line_login_channel_secret
        self.redirect_uri = f"{settings.site_base_url.rstrip('/')}/auth/callback/line"
        self.timeout = timeout

    def login_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.channel_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "scope": "profile openid email",
        }
        return f"{LINE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> ExternalProfile:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.channel_id,
            "client_secret": self.channel_secret,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(LINE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            logger.warning(f"LINE token exchange failed: {exc}")
            raise TransientError("Identity provider unavailable. Please retry.")
        if response.status_code != 200:
            logger.warning(f"LINE token exchange rejected: {response.status_code}")
            raise UnauthorizedError("Sign-in with LINE failed.")
        access_token = response.json().get("access_token")
        if not access_token:
            raise UnauthorizedError("Sign-in with LINE failed.")
        return await self.profile_from_access_token(access_token)

    async def profile_from_access_token(self, access_token: str) -> ExternalProfile:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    LINE_PROFILE_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            logger.warning(f"LINE profile fetch failed: {exc}")
            raise TransientError("Identity provider unavailable. Please retry.")
        if response.status_code != 200:
            logger.warning(f"LINE profile fetch rejected: {response.status_code}")
            raise UnauthorizedError("Invalid LINE access token.")
        body = response.json()
        if not body.get("userId"):
            raise UnauthorizedError("Invalid LINE access token.")
        return ExternalProfile(
            external_id=body["userId"],
            display_name=body.get("displayName") or "LINE user",
            picture_url=body.get("pictureUrl"),
            email=body.get("email"),
        )


def new_oauth_state() -> str:
    return secrets.token_urlsafe(16)


async def upsert_owner(session: AsyncSession, profile: ExternalProfile) -> BusinessOwner:
    owner = (
        await session.execute(select(BusinessOwner).where(BusinessOwner.line_user_id == profile.external_id))
    ).scalar_one_or_none()
    if owner is None:
        owner = BusinessOwner(
            line_user_id=profile.external_id,
            display_name=profile.display_name,
            picture_url=profile.picture_url,
            email=profile.email,
        )
        session.add(owner)
        logger.info(f"New business owner signed up: {profile.external_id}")
    else:
        owner.display_name = profile.display_name
        owner.picture_url = profile.picture_url
    await session.flush()
    return owner


async def upsert_customer(session: AsyncSession, profile: ExternalProfile) -> Customer:
    customer = (
        await session.execute(select(Customer).where(Customer.line_user_id == profile.external_id))
    ).scalar_one_or_none()
    if customer is None:
        customer = Customer(
            line_user_id=profile.external_id,
            display_name=profile.display_name,
            picture_url=profile.picture_url,
        )
        session.add(customer)
    else:
        customer.display_name = profile.display_name
        customer.picture_url = profile.picture_url
    customer.last_active_at = utc_now()
    await session.flush()
    return customer

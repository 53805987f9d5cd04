"""
Shared pytest fixtures for the booking backend tests.

Every test gets its own file-backed SQLite store (aiosqlite), so concurrent
transactions really contend for the database lock the way they would
against Postgres. Time is frozen through an injectable clock.
"""

import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from kitsune.core.config import Settings
from kitsune.core.db import Store
from kitsune.core.errors import UnauthorizedError
from kitsune.core.request_context import RequestContext
from kitsune.identity import ExternalProfile
from kitsune.main import create_app
from kitsune.models import (
    Business,
    BusinessOwner,
    Customer,
    Service,
    Staff,
    SubscriptionStatus,
)
from kitsune.security import (
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    SESSION_COOKIE_NAME,
    Credential,
    SessionClaims,
    hash_csrf_token,
    mint_csrf_token,
)

TEST_SECRET = "test-secret-do-not-use-in-production"

# Tuesday. The following Monday (2030-01-07) is the day most tests book on.
NOW = datetime(2030, 1, 1, 0, 0, tzinfo=timezone.utc)

MORNING_HOURS = {"mon": [{"open": "09:00", "close": "12:00"}]}


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeIdentityProvider:
    """Identity provider double: access tokens of the form "token-<id>" are valid."""

    def login_url(self, state: str) -> str:
        return f"https://idp.example/authorize?state={state}"

    async def exchange_code(self, code: str) -> ExternalProfile:
        if code != "good-code":
            raise UnauthorizedError("bad code")
        return ExternalProfile(external_id="U-owner-login", display_name="Login Owner")

    async def profile_from_access_token(self, access_token: str) -> ExternalProfile:
        if not access_token.startswith("token-"):
            raise UnauthorizedError("LINE access token rejected")
        external_id = access_token[len("token-"):]
        return ExternalProfile(external_id=f"U-{external_id}", display_name=f"Customer {external_id}")


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.events: list[tuple[str, object]] = []
        self.fail = fail

    async def _record(self, event: str, booking) -> None:
        self.events.append((event, booking.id))
        if self.fail:
            raise RuntimeError("notification backend down")

    async def booking_created(self, booking) -> None:
        await self._record("created", booking)

    async def booking_confirmed(self, booking) -> None:
        await self._record("confirmed", booking)

    async def booking_cancelled(self, booking, reason) -> None:
        await self._record("cancelled", booking)

    async def booking_completed(self, booking) -> None:
        await self._record("completed", booking)


@dataclass
class World:
    """Ids of the seeded rows."""
    owner_id: int
    business_id: int
    staff_id: int
    service_id: int
    customer_id: int
    other_customer_id: int
    other_owner_id: int
    other_business_id: int
    other_staff_id: int
    other_service_id: int


def owner_ctx(owner_id: int) -> RequestContext:
    return RequestContext(subject_id=owner_id, subject_kind="owner", session_id="sid-owner")


def customer_ctx(customer_id: int) -> RequestContext:
    return RequestContext(subject_id=customer_id, subject_kind="customer", session_id="sid-customer")


def auth_headers(
    subject_id: int,
    kind: str,
    now: datetime = NOW,
    secret: str = TEST_SECRET,
    csrf: Optional[str] = None,
    with_csrf: bool = True,
) -> dict[str, str]:
    """Session cookie (plus CSRF cookie and header) for a subject, as raw headers."""
    claims = SessionClaims.new(subject_id, kind, timedelta(days=30), now=now)
    token = Credential.issue(claims, secret).token
    if not with_csrf:
        return {"Cookie": f"{SESSION_COOKIE_NAME}={token}"}
    csrf = csrf or mint_csrf_token()
    return {
        "Cookie": f"{SESSION_COOKIE_NAME}={token}; {CSRF_COOKIE_NAME}={hash_csrf_token(claims.session_id, csrf)}",
        CSRF_HEADER_NAME: csrf,
    }


# ────────────────────────────────────────────────────────────────
# Store fixtures
# ────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    """Frozen clock starting at NOW."""
    return FrozenClock(NOW)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'kitsune.db'}",
        AUTH_SECRET=TEST_SECRET,
        ENVIRONMENT="test",
        PUBLIC_RATE_LIMIT_PER_MINUTE=1000,
    )


@pytest_asyncio.fixture
async def store(settings):
    """Fresh schema in a per-test SQLite file."""
    store = Store(settings.database_url, transaction_timeout=15.0)
    await store.create_all()
    yield store
    await store.dispose()


async def add_business(
    store: Store,
    owner_id: int,
    name: str = "Kitsune Salon",
    timezone_name: str = "Asia/Tokyo",
    hours: Optional[dict] = None,
    granularity: int = 30,
    lead_time: int = 0,
    auto_confirm: bool = False,
    service_minutes: int = 30,
) -> tuple[int, int, int]:
    """Insert a business with one staff member and one service. Returns (business, staff, service) ids."""
    async with store.session() as session:
        business = Business(
            owner_id=owner_id,
            name=name,
            timezone=timezone_name,
            operating_hours=MORNING_HOURS if hours is None else hours,
            slot_granularity_minutes=granularity,
            lead_time_minutes=lead_time,
            auto_confirm=auto_confirm,
        )
        session.add(business)
        await session.flush()
        staff = Staff(business_id=business.id, name="Aki")
        service = Service(business_id=business.id, name="Cut", duration_minutes=service_minutes)
        session.add_all([staff, service])
        await session.commit()
        return business.id, staff.id, service.id


@pytest_asyncio.fixture
async def world(store) -> World:
    """Two owners with one business each, plus two customers."""
    async with store.session() as session:
        owner = BusinessOwner(
            line_user_id="U-owner-1",
            display_name="Yuki",
            subscription_status=SubscriptionStatus.ACTIVE,
        )
        other_owner = BusinessOwner(
            line_user_id="U-owner-2",
            display_name="Ren",
            subscription_status=SubscriptionStatus.ACTIVE,
        )
        customer = Customer(line_user_id="U-cust-1", display_name="Hana")
        other_customer = Customer(line_user_id="U-cust-2", display_name="Sora")
        session.add_all([owner, other_owner, customer, other_customer])
        await session.commit()
        ids = (owner.id, other_owner.id, customer.id, other_customer.id)

    owner_id, other_owner_id, customer_id, other_customer_id = ids
    business_id, staff_id, service_id = await add_business(store, owner_id)
    other_business_id, other_staff_id, other_service_id = await add_business(
        store, other_owner_id, name="Tanuki Spa"
    )
    return World(
        owner_id=owner_id,
        business_id=business_id,
        staff_id=staff_id,
        service_id=service_id,
        customer_id=customer_id,
        other_customer_id=other_customer_id,
        other_owner_id=other_owner_id,
        other_business_id=other_business_id,
        other_staff_id=other_staff_id,
        other_service_id=other_service_id,
    )


# ────────────────────────────────────────────────────────────────
# App fixtures
# ────────────────────────────────────────────────────────────────

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(store, settings, clock, notifier):
    return create_app(
        store=store,
        settings=settings,
        clock=clock,
        identity_provider=FakeIdentityProvider(),
        notifier=notifier,
    )


@pytest_asyncio.fixture
async def client(app):
    """HTTP client talking to the app in-process."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

"""
Access control tests: 401 / 404 / 403 ordering, permission holders,
owner-only operations and the subscription gate.

Run with: pytest tests/test_access.py -v
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, customer_ctx, owner_ctx
from kitsune.access import AccessControl, subscription_allows_access
from kitsune.core.errors import ForbiddenError, NotFoundError, UnauthorizedError
from kitsune.models import (
    Booking,
    BookingStatus,
    BusinessOwner,
    BusinessPermission,
    Staff,
    SubscriptionStatus,
)


@pytest.fixture
def access(clock):
    return AccessControl(clock)


async def grant(store, business_id: int, owner_id: int, granted_by_id: int) -> None:
    async with store.session() as session:
        session.add(BusinessPermission(business_id=business_id, owner_id=owner_id, granted_by_id=granted_by_id))
        await session.commit()


async def seed_booking(store, world) -> uuid.UUID:
    start = datetime(2030, 1, 7, 0, 0, tzinfo=timezone.utc)
    async with store.session() as session:
        booking = Booking(
            business_id=world.business_id,
            staff_id=world.staff_id,
            service_id=world.service_id,
            customer_id=world.customer_id,
            start_at=start,
            end_at=start + timedelta(minutes=30),
            duration_minutes=30,
            status=BookingStatus.PENDING,
        )
        session.add(booking)
        await session.commit()
        return booking.id


# ────────────────────────────────────────────────────────────────
# Subscription gate
# ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "status,trial_ends_at,expected",
    [
        (SubscriptionStatus.PRE_TRIAL, None, True),
        (SubscriptionStatus.ACTIVE, None, True),
        (SubscriptionStatus.INCOMPLETE, None, True),
        (SubscriptionStatus.TRIALING, NOW + timedelta(days=1), True),
        (SubscriptionStatus.TRIALING, NOW - timedelta(seconds=1), False),
        (SubscriptionStatus.PAST_DUE, None, False),
        (SubscriptionStatus.CANCELED, None, False),
    ],
)
def test_subscription_gate(status, trial_ends_at, expected):
    owner = BusinessOwner(line_user_id="U", display_name="X", subscription_status=status, trial_ends_at=trial_ends_at)
    assert subscription_allows_access(owner, NOW) is expected


def test_missing_owner_has_no_access():
    assert subscription_allows_access(None, NOW) is False


# ────────────────────────────────────────────────────────────────
# Business resources
# ────────────────────────────────────────────────────────────────

class TestBusinessAccess:
    @pytest.mark.asyncio
    async def test_owner_is_allowed(self, access, store, world):
        async with store.session() as session:
            business = await access.require_business(session, owner_ctx(world.owner_id), world.business_id)
        assert business.id == world.business_id

    @pytest.mark.asyncio
    async def test_anonymous_is_unauthorized_even_for_missing_business(self, access, store, world):
        async with store.session() as session:
            with pytest.raises(UnauthorizedError):
                await access.require_business(session, None, 9999)

    @pytest.mark.asyncio
    async def test_missing_business_is_not_found(self, access, store, world):
        async with store.session() as session:
            with pytest.raises(NotFoundError):
                await access.require_business(session, owner_ctx(world.owner_id), 9999)

    @pytest.mark.asyncio
    async def test_foreign_business_is_forbidden(self, access, store, world):
        async with store.session() as session:
            with pytest.raises(ForbiddenError):
                await access.require_business(session, owner_ctx(world.owner_id), world.other_business_id)

    @pytest.mark.asyncio
    async def test_customers_never_manage_businesses(self, access, store, world):
        async with store.session() as session:
            with pytest.raises(ForbiddenError):
                await access.require_business(session, customer_ctx(world.customer_id), world.business_id)

    @pytest.mark.asyncio
    async def test_id_spaces_do_not_mix(self, access, store, world):
        """A customer whose id equals the owner's id still gets nothing."""
        async with store.session() as session:
            with pytest.raises(ForbiddenError):
                await access.require_business(session, customer_ctx(world.owner_id), world.business_id)

    @pytest.mark.asyncio
    async def test_permission_holder(self, access, store, world):
        await grant(store, world.business_id, world.other_owner_id, world.owner_id)

        async with store.session() as session:
            business = await access.require_business(session, owner_ctx(world.other_owner_id), world.business_id)
            assert business.id == world.business_id
            with pytest.raises(ForbiddenError):
                await access.require_business(
                    session, owner_ctx(world.other_owner_id), world.business_id, owner_only=True
                )

    @pytest.mark.asyncio
    async def test_write_checks_business_owner_subscription(self, access, store, world):
        async with store.session() as session:
            owner = await session.get(BusinessOwner, world.owner_id)
            owner.subscription_status = SubscriptionStatus.PAST_DUE
            await session.commit()

        async with store.session() as session:
            await access.require_business(session, owner_ctx(world.owner_id), world.business_id)
            with pytest.raises(ForbiddenError) as exc_info:
                await access.require_business(session, owner_ctx(world.owner_id), world.business_id, for_write=True)
        assert exc_info.value.code == "SUBSCRIPTION_REQUIRED"

    @pytest.mark.asyncio
    async def test_require_owned_goes_through_business(self, access, store, world):
        async with store.session() as session:
            staff = await access.require_owned(session, owner_ctx(world.owner_id), Staff, world.staff_id)
            assert staff.id == world.staff_id
            with pytest.raises(ForbiddenError):
                await access.require_owned(session, owner_ctx(world.owner_id), Staff, world.other_staff_id)
            with pytest.raises(NotFoundError):
                await access.require_owned(session, owner_ctx(world.owner_id), Staff, 9999)


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

class TestBookingAccess:
    @pytest.mark.asyncio
    async def test_booking_customer_is_allowed(self, access, store, world):
        booking_id = await seed_booking(store, world)
        async with store.session() as session:
            booking = await access.require_booking(session, customer_ctx(world.customer_id), booking_id)
        assert booking.id == booking_id

    @pytest.mark.asyncio
    async def test_other_customer_is_forbidden(self, access, store, world):
        booking_id = await seed_booking(store, world)
        async with store.session() as session:
            with pytest.raises(ForbiddenError):
                await access.require_booking(session, customer_ctx(world.other_customer_id), booking_id)

    @pytest.mark.asyncio
    async def test_foreign_owner_is_forbidden_not_hidden(self, access, store, world):
        booking_id = await seed_booking(store, world)
        async with store.session() as session:
            with pytest.raises(ForbiddenError):
                await access.require_booking(session, owner_ctx(world.other_owner_id), booking_id)
            with pytest.raises(NotFoundError):
                await access.require_booking(session, owner_ctx(world.other_owner_id), uuid.uuid4())

    @pytest.mark.asyncio
    async def test_customer_grant_can_be_disabled(self, access, store, world):
        booking_id = await seed_booking(store, world)
        async with store.session() as session:
            with pytest.raises(ForbiddenError):
                await access.require_booking(
                    session, customer_ctx(world.customer_id), booking_id, allow_customer=False
                )

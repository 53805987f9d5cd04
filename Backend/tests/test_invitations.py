"""
Invitation link tests: creation, read-only validation, single-use
consumption under concurrency, expiry and acceptance.

Run with: pytest tests/test_invitations.py -v
"""

import asyncio

import pytest
from sqlalchemy import select

from conftest import customer_ctx, owner_ctx
from kitsune.access import AccessControl
from kitsune.core.errors import (
    ConflictError,
    ForbiddenError,
    InvitationExhaustedError,
    InvitationExpiredError,
    NotFoundError,
)
from kitsune.invitations import CODE_ALPHABET, InvitationService, generate_code
from kitsune.models import BusinessOwner, BusinessPermission, InvitationLink, SubscriptionStatus


@pytest.fixture
def invitations(store, clock):
    return InvitationService(store, clock, ttl_days=7, code_length=6)


async def add_owner(store, line_user_id: str, name: str) -> int:
    async with store.session() as session:
        owner = BusinessOwner(line_user_id=line_user_id, display_name=name)
        session.add(owner)
        await session.commit()
        return owner.id


async def load_link(store, code: str) -> InvitationLink:
    async with store.session() as session:
        result = await session.execute(select(InvitationLink).where(InvitationLink.code == code))
        return result.scalar_one()


def test_generated_codes_use_url_safe_alphabet():
    code = generate_code(12)
    assert len(code) == 12
    assert set(code) <= set(CODE_ALPHABET)


# ────────────────────────────────────────────────────────────────
# Create / list / deactivate
# ────────────────────────────────────────────────────────────────

class TestManage:
    @pytest.mark.asyncio
    async def test_owner_creates_link(self, invitations, world, clock):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id), max_uses=3)

        assert len(link.code) == 6
        assert link.max_uses == 3
        assert link.used_count == 0
        assert link.is_active is True
        assert (link.expires_at - clock.now).days == 7

    @pytest.mark.asyncio
    async def test_permission_holder_cannot_create(self, invitations, store, world):
        async with store.session() as session:
            session.add(
                BusinessPermission(
                    business_id=world.business_id,
                    owner_id=world.other_owner_id,
                    granted_by_id=world.owner_id,
                )
            )
            await session.commit()

        with pytest.raises(ForbiddenError):
            await invitations.create(world.business_id, owner_ctx(world.other_owner_id))

    @pytest.mark.asyncio
    async def test_list_and_deactivate(self, invitations, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))

        links = await invitations.list_for_business(world.business_id, owner_ctx(world.owner_id))
        assert [item.id for item in links] == [link.id]

        deactivated = await invitations.deactivate(world.business_id, link.id, owner_ctx(world.owner_id))
        assert deactivated.is_active is False

        status = await invitations.validate(link.code)
        assert status.is_active is False
        assert status.is_valid is False

    @pytest.mark.asyncio
    async def test_deactivate_checks_subscription(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        async with store.session() as session:
            owner = await session.get(BusinessOwner, world.owner_id)
            owner.subscription_status = SubscriptionStatus.CANCELED
            await session.commit()

        with pytest.raises(ForbiddenError) as exc_info:
            await invitations.deactivate(world.business_id, link.id, owner_ctx(world.owner_id))
        assert exc_info.value.code == "SUBSCRIPTION_REQUIRED"
        assert (await load_link(store, link.code)).is_active is True

    @pytest.mark.asyncio
    async def test_deactivate_link_of_other_business(self, invitations, world):
        link = await invitations.create(world.other_business_id, owner_ctx(world.other_owner_id))
        with pytest.raises(NotFoundError):
            await invitations.deactivate(world.business_id, link.id, owner_ctx(world.owner_id))


# ────────────────────────────────────────────────────────────────
# Validate / consume
# ────────────────────────────────────────────────────────────────

class TestConsume:
    @pytest.mark.asyncio
    async def test_validate_is_read_only(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))

        status = await invitations.validate(link.code)
        await invitations.validate(link.code)

        assert status.is_valid is True
        assert status.business_name == "Kitsune Salon"
        assert status.invited_by == "Yuki"
        assert status.remaining_uses == 1
        assert (await load_link(store, link.code)).used_count == 0

    @pytest.mark.asyncio
    async def test_unknown_code(self, invitations, world):
        with pytest.raises(NotFoundError):
            await invitations.validate("nope42")
        with pytest.raises(NotFoundError):
            await invitations.consume("nope42")

    @pytest.mark.asyncio
    async def test_last_use_deactivates(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id), max_uses=2)

        first = await invitations.consume(link.code)
        assert first.used_count == 1
        assert first.is_active is True

        second = await invitations.consume(link.code)
        assert second.used_count == 2
        assert second.is_active is False

        with pytest.raises(InvitationExhaustedError):
            await invitations.consume(link.code)
        assert (await load_link(store, link.code)).used_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_consumers_of_single_use_link(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id), max_uses=1)

        results = await asyncio.gather(
            invitations.consume(link.code),
            invitations.consume(link.code),
            return_exceptions=True,
        )

        succeeded = [r for r in results if isinstance(r, InvitationLink)]
        exhausted = [r for r in results if isinstance(r, InvitationExhaustedError)]
        assert len(succeeded) == 1
        assert len(exhausted) == 1
        stored = await load_link(store, link.code)
        assert stored.used_count == 1
        assert stored.is_active is False

    @pytest.mark.asyncio
    async def test_expired_link(self, invitations, world, clock):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        clock.advance(days=7)

        status = await invitations.validate(link.code)
        assert status.is_expired is True
        assert status.is_valid is False

        with pytest.raises(InvitationExpiredError):
            await invitations.consume(link.code)

    @pytest.mark.asyncio
    async def test_deactivated_link_is_a_conflict(self, invitations, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        await invitations.deactivate(world.business_id, link.id, owner_ctx(world.owner_id))

        with pytest.raises(ConflictError):
            await invitations.consume(link.code)


# ────────────────────────────────────────────────────────────────
# Accept
# ────────────────────────────────────────────────────────────────

class TestAccept:
    @pytest.mark.asyncio
    async def test_accept_grants_permission(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        newcomer = await add_owner(store, "U-newcomer", "Kai")

        accepted = await invitations.accept(link.code, owner_ctx(newcomer))

        assert accepted.business_id == world.business_id
        assert accepted.business_name == "Kitsune Salon"
        assert accepted.permission.owner_id == newcomer
        assert accepted.permission.granted_by_id == world.owner_id
        assert (await load_link(store, link.code)).used_count == 1

    @pytest.mark.asyncio
    async def test_owner_cannot_accept_own_link(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))

        with pytest.raises(ConflictError):
            await invitations.accept(link.code, owner_ctx(world.owner_id))
        assert (await load_link(store, link.code)).used_count == 0

    @pytest.mark.asyncio
    async def test_second_accept_by_same_owner(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id), max_uses=5)
        newcomer = await add_owner(store, "U-newcomer", "Kai")
        await invitations.accept(link.code, owner_ctx(newcomer))

        with pytest.raises(ConflictError):
            await invitations.accept(link.code, owner_ctx(newcomer))
        assert (await load_link(store, link.code)).used_count == 1

    @pytest.mark.asyncio
    async def test_customers_cannot_accept(self, invitations, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        with pytest.raises(ForbiddenError):
            await invitations.accept(link.code, customer_ctx(world.customer_id))

    @pytest.mark.asyncio
    async def test_used_up_link_cannot_be_accepted(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        first = await add_owner(store, "U-first", "Mio")
        second = await add_owner(store, "U-second", "Riku")
        await invitations.accept(link.code, owner_ctx(first))

        with pytest.raises(InvitationExhaustedError):
            await invitations.accept(link.code, owner_ctx(second))


# ────────────────────────────────────────────────────────────────
# Granted permissions
# ────────────────────────────────────────────────────────────────

class TestPermissions:
    @pytest.mark.asyncio
    async def test_list_shows_accepted_grants(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        newcomer = await add_owner(store, "U-newcomer", "Kai")
        accepted = await invitations.accept(link.code, owner_ctx(newcomer))

        grants = await invitations.list_permissions(world.business_id, owner_ctx(world.owner_id))

        assert [g.permission.id for g in grants] == [accepted.permission.id]
        assert grants[0].display_name == "Kai"
        assert grants[0].granted_by == "Yuki"

    @pytest.mark.asyncio
    async def test_only_the_business_owner_sees_grants(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        newcomer = await add_owner(store, "U-newcomer", "Kai")
        await invitations.accept(link.code, owner_ctx(newcomer))

        with pytest.raises(ForbiddenError):
            await invitations.list_permissions(world.business_id, owner_ctx(newcomer))
        with pytest.raises(ForbiddenError):
            await invitations.list_permissions(world.business_id, owner_ctx(world.other_owner_id))

    @pytest.mark.asyncio
    async def test_revoked_holder_loses_access(self, invitations, store, world, clock):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id))
        newcomer = await add_owner(store, "U-newcomer", "Kai")
        accepted = await invitations.accept(link.code, owner_ctx(newcomer))
        access = AccessControl(clock)

        async with store.session() as session:
            await access.require_business(session, owner_ctx(newcomer), world.business_id)

        await invitations.revoke_permission(world.business_id, accepted.permission.id, owner_ctx(world.owner_id))

        async with store.session() as session:
            with pytest.raises(ForbiddenError):
                await access.require_business(session, owner_ctx(newcomer), world.business_id)
        assert await invitations.list_permissions(world.business_id, owner_ctx(world.owner_id)) == []

    @pytest.mark.asyncio
    async def test_revoke_unknown_or_foreign_permission(self, invitations, store, world):
        link = await invitations.create(world.other_business_id, owner_ctx(world.other_owner_id))
        newcomer = await add_owner(store, "U-newcomer", "Kai")
        foreign = await invitations.accept(link.code, owner_ctx(newcomer))

        with pytest.raises(NotFoundError):
            await invitations.revoke_permission(world.business_id, 9999, owner_ctx(world.owner_id))
        with pytest.raises(NotFoundError):
            await invitations.revoke_permission(world.business_id, foreign.permission.id, owner_ctx(world.owner_id))

    @pytest.mark.asyncio
    async def test_holder_cannot_revoke(self, invitations, store, world):
        link = await invitations.create(world.business_id, owner_ctx(world.owner_id), max_uses=2)
        first = await add_owner(store, "U-first", "Mio")
        second = await add_owner(store, "U-second", "Riku")
        await invitations.accept(link.code, owner_ctx(first))
        accepted = await invitations.accept(link.code, owner_ctx(second))

        with pytest.raises(ForbiddenError):
            await invitations.revoke_permission(world.business_id, accepted.permission.id, owner_ctx(first))

"""
Invitation Link Validator

An owner shares a short code; another owner who accepts it receives a
BusinessPermission for the business.
The business owner can list those grants and revoke them again.

validate() is read-only. consume() is one conditional UPDATE:

    UPDATE invitation_links
       SET used_count = used_count + 1,
           is_active  = (used_count + 1 < max_uses)
     WHERE code = :code AND is_active AND expires_at > :now
       AND used_count < max_uses

so two consumers racing for the last use are serialized by the store and
exactly one of them matches the row. used_count never exceeds max_uses and
is never reset.
"""

import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .access import AccessControl, require_authenticated
from .core.db import Store
from .core.errors import (
    ConflictError,
    ForbiddenError,
    InvitationExhaustedError,
    InvitationExpiredError,
    NotFoundError,
    TransientError,
)
from .core.request_context import RequestContext
from .models import Business, BusinessOwner, BusinessPermission, InvitationLink
from .timeutils import utc_now

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_letters + string.digits + "_-"
MAX_CODE_ATTEMPTS = 5


def generate_code(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class InvitationStatus:
    code: str
    business_id: int
    business_name: str
    invited_by: Optional[str]
    expires_at: datetime
    remaining_uses: int
    is_active: bool
    is_expired: bool
    is_used_up: bool
    is_valid: bool


@dataclass(frozen=True)
class PermissionGrant:
    permission: BusinessPermission
    display_name: str
    granted_by: Optional[str]


@dataclass(frozen=True)
class AcceptedInvitation:
    permission: BusinessPermission
    business_id: int
    business_name: str


class InvitationService:
    def __init__(
        self,
        store: Store,
        clock: Callable[[], datetime] = utc_now,
        access: Optional[AccessControl] = None,
        ttl_days: int = 7,
        code_length: int = 6,
    ):
        self.store = store
        self.clock = clock
        self.access = access or AccessControl(clock)
        self.ttl_days = ttl_days
        self.code_length = code_length

    async def create(
        self,
        business_id: int,
        actor: Optional[RequestContext],
        max_uses: int = 1,
    ) -> InvitationLink:
        """Owner only. Expires ``ttl_days`` after creation."""

        async def _create(session: AsyncSession) -> InvitationLink:
            await self.access.require_business(session, actor, business_id, owner_only=True, for_write=True)

            for _ in range(MAX_CODE_ATTEMPTS):
                code = generate_code(self.code_length)
                taken = await session.execute(select(InvitationLink.id).where(InvitationLink.code == code))
                if taken.first() is None:
                    break
            else:
                raise TransientError("Could not allocate an invitation code. Please retry.")

            now = self.clock()
            link = InvitationLink(
                business_id=business_id,
                code=code,
                created_by_id=actor.subject_id,
                expires_at=now + timedelta(days=self.ttl_days),
                max_uses=max_uses,
                used_count=0,
                is_active=True,
                created_at=now,
            )
            session.add(link)
            await session.flush()
            return link

        link = await self.store.run_in_transaction(_create)
        logger.info(f"Invitation link {link.code} created for business {business_id}")
        return link

    async def list_for_business(self, business_id: int, actor: Optional[RequestContext]) -> list[InvitationLink]:
        async with self.store.session() as session:
            await self.access.require_business(session, actor, business_id, owner_only=True)
            result = await session.execute(
                select(InvitationLink)
                .where(InvitationLink.business_id == business_id)
                .order_by(InvitationLink.created_at.desc())
            )
            return list(result.scalars().all())

    async def deactivate(
        self,
        business_id: int,
        link_id: uuid.UUID,
        actor: Optional[RequestContext],
    ) -> InvitationLink:
        async def _deactivate(session: AsyncSession) -> InvitationLink:
            await self.access.require_business(session, actor, business_id, owner_only=True, for_write=True)
            link = await session.get(InvitationLink, link_id)
            if link is None or link.business_id != business_id:
                raise NotFoundError("Invitation not found")
            link.is_active = False
            await session.flush()
            return link

        link = await self.store.run_in_transaction(_deactivate)
        logger.info(f"Invitation link {link.code} deactivated")
        return link

    async def validate(self, code: str) -> InvitationStatus:
        """Public, read-only view of a code. Unknown codes raise NotFoundError."""
        async with self.store.session() as session:
            row = (
                await session.execute(
                    select(InvitationLink, Business.name, BusinessOwner.display_name)
                    .join(Business, Business.id == InvitationLink.business_id)
                    .outerjoin(BusinessOwner, BusinessOwner.id == InvitationLink.created_by_id)
                    .where(InvitationLink.code == code)
                )
            ).first()
        if row is None:
            raise NotFoundError("Invitation not found")

        link, business_name, invited_by = row
        now = self.clock()
        return InvitationStatus(
            code=link.code,
            business_id=link.business_id,
            business_name=business_name,
            invited_by=invited_by,
            expires_at=link.expires_at,
            remaining_uses=max(0, link.max_uses - link.used_count),
            is_active=link.is_active,
            is_expired=link.is_expired(now),
            is_used_up=link.is_used_up(),
            is_valid=link.is_valid(now),
        )

    async def consume_in(self, session: AsyncSession, code: str) -> InvitationLink:
        """Consume one use of ``code`` inside the caller's transaction."""
        now = self.clock()
        result = await session.execute(
            update(InvitationLink)
            .where(
                InvitationLink.code == code,
                InvitationLink.is_active.is_(True),
                InvitationLink.expires_at > now,
                InvitationLink.used_count < InvitationLink.max_uses,
            )
            .values(
                used_count=InvitationLink.used_count + 1,
                is_active=case(
                    (InvitationLink.used_count + 1 >= InvitationLink.max_uses, False),
                    else_=True,
                ),
            )
            .execution_options(synchronize_session=False)
        )

        link = (
            await session.execute(
                select(InvitationLink)
                .where(InvitationLink.code == code)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        if result.rowcount == 1 and link is not None:
            return link

        if link is None:
            raise NotFoundError("Invitation not found")
        if link.is_used_up():
            logger.warning(f"Invitation {code} rejected: exhausted")
            raise InvitationExhaustedError("This invitation has already been used")
        if link.is_expired(now):
            logger.warning(f"Invitation {code} rejected: expired")
            raise InvitationExpiredError("This invitation has expired")
        logger.warning(f"Invitation {code} rejected: deactivated")
        raise ConflictError("This invitation has been deactivated")

    async def consume(self, code: str) -> InvitationLink:
        link = await self.store.run_in_transaction(lambda session: self.consume_in(session, code))
        logger.info(f"Invitation {code} consumed ({link.used_count}/{link.max_uses})")
        return link

    async def accept(self, code: str, actor: Optional[RequestContext]) -> AcceptedInvitation:
        """
        Consume ``code`` and grant the calling owner access to its business,
        all in one transaction.
        """
        actor = require_authenticated(actor)
        if not actor.is_owner:
            raise ForbiddenError("Only business owners can accept invitations.")

        async def _accept(session: AsyncSession) -> AcceptedInvitation:
            link = (
                await session.execute(select(InvitationLink).where(InvitationLink.code == code))
            ).scalar_one_or_none()
            if link is None:
                raise NotFoundError("Invitation not found")
            business = await session.get(Business, link.business_id)
            if business is None:
                raise NotFoundError("Invitation not found")
            if business.owner_id == actor.subject_id:
                raise ConflictError("You are already the owner of this business")
            if await self.access.has_permission(session, actor.subject_id, business.id):
                raise ConflictError("You already have access to this business")

            link = await self.consume_in(session, code)
            permission = BusinessPermission(
                business_id=business.id,
                owner_id=actor.subject_id,
                granted_by_id=link.created_by_id,
                invitation_link_id=link.id,
                created_at=self.clock(),
            )
            session.add(permission)
            try:
                await session.flush()
            except IntegrityError:
                raise ConflictError("You already have access to this business")
            return AcceptedInvitation(permission=permission, business_id=business.id, business_name=business.name)

        accepted = await self.store.run_in_transaction(_accept)
        logger.info(f"Owner {actor.subject_id} joined business {accepted.business_id} via invitation {code}")
        return accepted

    # ────────────────────────────────────────────────────────────────
    # Granted permissions
    # ────────────────────────────────────────────────────────────────

    async def list_permissions(self, business_id: int, actor: Optional[RequestContext]) -> list[PermissionGrant]:
        """Owner only. Newest grant first."""
        grantee = aliased(BusinessOwner)
        granter = aliased(BusinessOwner)
        async with self.store.session() as session:
            await self.access.require_business(session, actor, business_id, owner_only=True)
            rows = await session.execute(
                select(BusinessPermission, grantee.display_name, granter.display_name)
                .join(grantee, grantee.id == BusinessPermission.owner_id)
                .outerjoin(granter, granter.id == BusinessPermission.granted_by_id)
                .where(BusinessPermission.business_id == business_id)
                .order_by(BusinessPermission.created_at.desc(), BusinessPermission.id.desc())
            )
            return [
                PermissionGrant(permission=permission, display_name=name, granted_by=granted_by)
                for permission, name, granted_by in rows.all()
            ]

    async def revoke_permission(
        self,
        business_id: int,
        permission_id: int,
        actor: Optional[RequestContext],
    ) -> None:
        async def _revoke(session: AsyncSession) -> None:
            await self.access.require_business(session, actor, business_id, owner_only=True, for_write=True)
            permission = await session.get(BusinessPermission, permission_id)
            if permission is None or permission.business_id != business_id:
                raise NotFoundError("Permission not found")
            await session.delete(permission)

        await self.store.run_in_transaction(_revoke)
        logger.info(f"Permission {permission_id} on business {business_id} revoked")

"""
Access Control

One authorization rule for every business-scoped resource:

    caller is the business owner
    OR (operation is not owner-only AND caller holds a BusinessPermission)
    OR (resource is a booking AND caller is that booking's customer)

Existence is checked before ownership so "absent" (404) and "not yours"
(403) stay distinguishable, but only for authenticated callers: anonymous
callers are rejected with 401 before any lookup happens.

Writes additionally require the business owner's subscription to grant
access (see subscription_allows_access).
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import ForbiddenError, NotFoundError, UnauthorizedError
from .core.request_context import RequestContext
from .core.responses import ErrorCodes
from .models import Booking, Business, BusinessOwner, BusinessPermission, SubscriptionStatus
from .timeutils import utc_now

logger = logging.getLogger(__name__)

M = TypeVar("M")

_ALWAYS_ALLOWED = (
    SubscriptionStatus.PRE_TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.INCOMPLETE,
)


def subscription_allows_access(owner: Optional[BusinessOwner], now: datetime) -> bool:
    """
    Single boolean gate over the owner's subscription state.

    pre_trial, active and incomplete (payment in flight) grant access;
    trialing grants access until the trial ends; everything else denies.
    """
    if owner is None:
        return False
    if owner.subscription_status in _ALWAYS_ALLOWED:
        return True
    if owner.subscription_status == SubscriptionStatus.TRIALING:
        return owner.trial_ends_at is None or now <= owner.trial_ends_at
    return False


def require_authenticated(ctx: Optional[RequestContext]) -> RequestContext:
    if ctx is None:
        raise UnauthorizedError("Authentication required. Please sign in.", code=ErrorCodes.AUTHENTICATION_REQUIRED)
    return ctx


class AccessControl:
    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock

    async def has_permission(self, session: AsyncSession, owner_id: int, business_id: int) -> bool:
        result = await session.execute(
            select(BusinessPermission.id).where(
                BusinessPermission.business_id == business_id,
                BusinessPermission.owner_id == owner_id,
            )
        )
        return result.first() is not None

    async def can_access(
        self,
        session: AsyncSession,
        ctx: Optional[RequestContext],
        business_id: int,
        owner_id: int,
        owner_only: bool = False,
    ) -> bool:
        if ctx is None or not ctx.is_owner:
            return False
        if ctx.subject_id == owner_id:
            return True
        if owner_only:
            return False
        return await self.has_permission(session, ctx.subject_id, business_id)

    async def _check_subscription(self, session: AsyncSession, business: Business) -> None:
        owner = await session.get(BusinessOwner, business.owner_id)
        if not subscription_allows_access(owner, self.clock()):
            logger.warning(f"Subscription gate denied write on business {business.id}")
            raise ForbiddenError(
                "An active subscription is required for this action.",
                code=ErrorCodes.SUBSCRIPTION_REQUIRED,
            )

    async def require_business(
        self,
        session: AsyncSession,
        ctx: Optional[RequestContext],
        business_id: int,
        *,
        owner_only: bool = False,
        for_write: bool = False,
    ) -> Business:
        """
        Load a business the caller may manage.

        Raises:
            UnauthorizedError: anonymous caller
            NotFoundError: business does not exist
            ForbiddenError: caller is neither owner nor (when allowed) a
                permission holder, or the subscription gate failed
        """
        ctx = require_authenticated(ctx)
        business = await session.get(Business, business_id)
        if business is None:
            raise NotFoundError("Business not found", code=ErrorCodes.BUSINESS_NOT_FOUND)

        if not await self.can_access(session, ctx, business.id, business.owner_id, owner_only=owner_only):
            logger.warning(
                f"Authorization failed: {ctx.subject_kind} {ctx.subject_id} on business {business_id}"
                f"{' (owner only)' if owner_only else ''}"
            )
            raise ForbiddenError("You do not have access to this business.")

        if for_write:
            await self._check_subscription(session, business)
        return business

    async def require_booking(
        self,
        session: AsyncSession,
        ctx: Optional[RequestContext],
        booking_id: uuid.UUID,
        *,
        allow_customer: bool = True,
        for_write: bool = False,
    ) -> Booking:
        """
        Load a booking the caller may see or change.

        The booking's customer is an alternative grant when ``allow_customer``
        is set; otherwise only the business side qualifies.
        """
        ctx = require_authenticated(ctx)
        booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", code=ErrorCodes.BOOKING_NOT_FOUND)

        if allow_customer and ctx.is_customer and ctx.subject_id == booking.customer_id:
            return booking

        business = await session.get(Business, booking.business_id)
        if business is None or not await self.can_access(session, ctx, business.id, business.owner_id):
            logger.warning(f"Authorization failed: {ctx.subject_kind} {ctx.subject_id} on booking {booking_id}")
            raise ForbiddenError("You do not have access to this booking.")

        if for_write:
            await self._check_subscription(session, business)
        return booking

    async def require_owned(
        self,
        session: AsyncSession,
        ctx: Optional[RequestContext],
        model: Type[M],
        entity_id: int,
        *,
        owner_only: bool = False,
        for_write: bool = False,
    ) -> M:
        """Load a business-scoped row (Staff, Service, ClosedDate, ...) through its business."""
        ctx = require_authenticated(ctx)
        entity = await session.get(model, entity_id)
        if entity is None:
            raise NotFoundError(f"{model.__name__} not found")
        await self.require_business(
            session, ctx, entity.business_id, owner_only=owner_only, for_write=for_write
        )
        return entity

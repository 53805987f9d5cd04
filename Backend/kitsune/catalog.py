"""
Business catalog: businesses, staff, services and closed dates.

Every mutation goes through AccessControl; deactivation of staff and
services is soft so historical bookings keep their references.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .access import AccessControl, require_authenticated, subscription_allows_access
from .core.db import Store
from .core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from .core.request_context import RequestContext
from .core.responses import ErrorCodes
from .models import Business, BusinessOwner, BusinessPermission, ClosedDate, Service, Staff
from .timeutils import ensure_utc, get_zone, local_day_bounds, utc_now

logger = logging.getLogger(__name__)

BUSINESS_FIELDS = (
    "name",
    "timezone",
    "operating_hours",
    "slot_granularity_minutes",
    "lead_time_minutes",
    "auto_confirm",
    "is_active",
)
STAFF_FIELDS = ("name", "working_hours", "is_active", "display_order")
SERVICE_FIELDS = ("name", "duration_minutes", "price_cents", "is_active", "display_order")


@dataclass
class BusinessProfile:
    business: Business
    staff: list[Staff] = field(default_factory=list)
    services: list[Service] = field(default_factory=list)


def _apply(entity: Any, changes: dict[str, Any], allowed: tuple[str, ...]) -> None:
    for key, value in changes.items():
        if key in allowed:
            setattr(entity, key, value)


class CatalogService:
    def __init__(
        self,
        store: Store,
        clock: Callable[[], datetime] = utc_now,
        access: Optional[AccessControl] = None,
    ):
        self.store = store
        self.clock = clock
        self.access = access or AccessControl(clock)

    # ────────────────────────────────────────────────────────────────
    # Businesses
    # ────────────────────────────────────────────────────────────────

    async def create_business(self, actor: Optional[RequestContext], values: dict[str, Any]) -> Business:
        actor = require_authenticated(actor)
        if not actor.is_owner:
            raise ForbiddenError("Only business owners can create a business.")
        if "timezone" in values:
            try:
                get_zone(values["timezone"])
            except ValueError as exc:
                raise ValidationFailedError(str(exc))

        async def _create(session: AsyncSession) -> Business:
            owner = await session.get(BusinessOwner, actor.subject_id)
            if owner is None:
                raise NotFoundError("Business owner not found")
            if not subscription_allows_access(owner, self.clock()):
                raise ForbiddenError(
                    "An active subscription is required for this action.",
                    code=ErrorCodes.SUBSCRIPTION_REQUIRED,
                )
            business = Business(owner_id=owner.id, created_at=self.clock())
            _apply(business, values, BUSINESS_FIELDS)
            session.add(business)
            await session.flush()
            return business

        business = await self.store.run_in_transaction(_create)
        logger.info(f"Business {business.id} created by owner {actor.subject_id}")
        return business

    async def update_business(
        self,
        business_id: int,
        actor: Optional[RequestContext],
        changes: dict[str, Any],
    ) -> Business:
        if "timezone" in changes:
            try:
                get_zone(changes["timezone"])
            except ValueError as exc:
                raise ValidationFailedError(str(exc))

        async def _update(session: AsyncSession) -> Business:
            business = await self.access.require_business(
                session, actor, business_id, owner_only=True, for_write=True
            )
            _apply(business, changes, BUSINESS_FIELDS)
            await session.flush()
            return business

        return await self.store.run_in_transaction(_update)

    async def get_profile(self, business_id: int, include_inactive: bool = False) -> BusinessProfile:
        """Public view of a business with its staff and services."""
        async with self.store.session() as session:
            business = await session.get(Business, business_id)
            if business is None:
                raise NotFoundError("Business not found", code=ErrorCodes.BUSINESS_NOT_FOUND)
            staff_query = select(Staff).where(Staff.business_id == business_id)
            service_query = select(Service).where(Service.business_id == business_id)
            if not include_inactive:
                staff_query = staff_query.where(Staff.is_active.is_(True))
                service_query = service_query.where(Service.is_active.is_(True))
            staff = (await session.execute(staff_query.order_by(Staff.display_order, Staff.id))).scalars().all()
            services = (
                await session.execute(service_query.order_by(Service.display_order, Service.id))
            ).scalars().all()
            return BusinessProfile(business=business, staff=list(staff), services=list(services))

    async def list_accessible(self, actor: Optional[RequestContext]) -> list[Business]:
        """Businesses the owner runs or was invited to."""
        actor = require_authenticated(actor)
        if not actor.is_owner:
            raise ForbiddenError("Only business owners can list businesses.")
        async with self.store.session() as session:
            permitted = select(BusinessPermission.business_id).where(
                BusinessPermission.owner_id == actor.subject_id
            )
            result = await session.execute(
                select(Business)
                .where(or_(Business.owner_id == actor.subject_id, Business.id.in_(permitted)))
                .order_by(Business.id)
            )
            return list(result.scalars().all())

    # ────────────────────────────────────────────────────────────────
    # Staff & services
    # ────────────────────────────────────────────────────────────────

    async def add_staff(self, business_id: int, actor: Optional[RequestContext], values: dict[str, Any]) -> Staff:
        async def _add(session: AsyncSession) -> Staff:
            await self.access.require_business(session, actor, business_id, for_write=True)
            staff = Staff(business_id=business_id, lock_version=0, created_at=self.clock())
            _apply(staff, values, STAFF_FIELDS)
            session.add(staff)
            await session.flush()
            return staff

        staff = await self.store.run_in_transaction(_add)
        logger.info(f"Staff {staff.id} added to business {business_id}")
        return staff

    async def update_staff(
        self,
        business_id: int,
        staff_id: int,
        actor: Optional[RequestContext],
        changes: dict[str, Any],
    ) -> Staff:
        async def _update(session: AsyncSession) -> Staff:
            staff = await self.access.require_owned(session, actor, Staff, staff_id, for_write=True)
            if staff.business_id != business_id:
                raise NotFoundError("Staff not found")
            _apply(staff, changes, STAFF_FIELDS)
            await session.flush()
            return staff

        return await self.store.run_in_transaction(_update)

    async def add_service(self, business_id: int, actor: Optional[RequestContext], values: dict[str, Any]) -> Service:
        async def _add(session: AsyncSession) -> Service:
            await self.access.require_business(session, actor, business_id, for_write=True)
            service = Service(business_id=business_id, created_at=self.clock())
            _apply(service, values, SERVICE_FIELDS)
            session.add(service)
            try:
                await session.flush()
            except IntegrityError:
                raise ConflictError("A service with this name already exists")
            return service

        service = await self.store.run_in_transaction(_add)
        logger.info(f"Service {service.id} added to business {business_id}")
        return service

    async def update_service(
        self,
        business_id: int,
        service_id: int,
        actor: Optional[RequestContext],
        changes: dict[str, Any],
    ) -> Service:
        async def _update(session: AsyncSession) -> Service:
            service = await self.access.require_owned(session, actor, Service, service_id, for_write=True)
            if service.business_id != business_id:
                raise NotFoundError("Service not found")
            _apply(service, changes, SERVICE_FIELDS)
            try:
                await session.flush()
            except IntegrityError:
                raise ConflictError("A service with this name already exists")
            return service

        return await self.store.run_in_transaction(_update)

    # ────────────────────────────────────────────────────────────────
    # Closed dates
    # ────────────────────────────────────────────────────────────────

    async def add_closed_date(
        self,
        business_id: int,
        actor: Optional[RequestContext],
        *,
        staff_id: Optional[int] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        local_date: Optional[date] = None,
        reason: Optional[str] = None,
    ) -> ClosedDate:
        """
        Close either an explicit [start_at, end_at) period or a whole local
        calendar day (``local_date``) in the business time zone.
        """

        async def _add(session: AsyncSession) -> ClosedDate:
            business = await self.access.require_business(session, actor, business_id, for_write=True)
            if staff_id is not None:
                staff = await session.get(Staff, staff_id)
                if staff is None or staff.business_id != business.id:
                    raise NotFoundError("Staff not found")

            if local_date is not None:
                bounds = local_day_bounds(local_date, get_zone(business.timezone))
                start, end = bounds.start, bounds.end
            elif start_at is not None and end_at is not None:
                try:
                    start, end = ensure_utc(start_at), ensure_utc(end_at)
                except ValueError as exc:
                    raise ValidationFailedError(str(exc))
            else:
                raise ValidationFailedError("Provide either a date or both startAt and endAt")
            if end <= start:
                raise ValidationFailedError("endAt must be after startAt")

            closed = ClosedDate(
                business_id=business.id,
                staff_id=staff_id,
                start_at=start,
                end_at=end,
                reason=reason,
                created_at=self.clock(),
            )
            session.add(closed)
            await session.flush()
            return closed

        closed = await self.store.run_in_transaction(_add)
        logger.info(f"Closed date {closed.id} added to business {business_id}")
        return closed

    async def list_closed_dates(
        self,
        business_id: int,
        actor: Optional[RequestContext],
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
    ) -> list[ClosedDate]:
        async with self.store.session() as session:
            await self.access.require_business(session, actor, business_id)
            query = select(ClosedDate).where(ClosedDate.business_id == business_id)
            if start_from is not None:
                query = query.where(ClosedDate.end_at > ensure_utc(start_from))
            if start_to is not None:
                query = query.where(ClosedDate.start_at < ensure_utc(start_to))
            result = await session.execute(query.order_by(ClosedDate.start_at))
            return list(result.scalars().all())

    async def delete_closed_date(self, closed_date_id: int, actor: Optional[RequestContext]) -> None:
        async def _delete(session: AsyncSession) -> None:
            closed = await self.access.require_owned(session, actor, ClosedDate, closed_date_id, for_write=True)
            await session.delete(closed)

        await self.store.run_in_transaction(_delete)
        logger.info(f"Closed date {closed_date_id} deleted")

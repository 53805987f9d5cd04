"""
Booking Lifecycle Manager

States:

    pending ──> confirmed ──> completed
       │            │    └──> completed + no_show
       └────────────┴───────> cancelled

pending and confirmed are the occupying states; a staff member never has two
occupying bookings whose [start_at, end_at) intervals overlap.

Create is a single transaction:
    1. load and validate business / staff / service / customer
    2. check lead time, working hours and closed dates
    3. lock the staff row (UPDATE ... lock_version + 1)
    4. re-check overlap with occupying bookings under that lock
    5. insert

Step 3 serializes concurrent creators for the same staff member on every
supported store, so exactly one of two racing requests for the same slot
commits and the other sees a Conflict.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .access import AccessControl, require_authenticated
from .availability import AvailabilityCalculator
from .core.db import Store
from .core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from .core.request_context import RequestContext
from .core.responses import ErrorCodes
from .models import (
    OCCUPYING_STATUSES,
    Booking,
    BookingStatus,
    CancelledBy,
    Customer,
    Staff,
)
from .notifications import BookingNotifier, LoggingNotifier, notify_safely
from .timeutils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingRequest:
    business_id: int
    staff_id: int
    service_id: int
    customer_id: int
    start: datetime


def _invalid_transition(booking: Booking, target: str) -> ConflictError:
    return ConflictError(
        f"Cannot move booking from {booking.status.value} to {target}",
        code=ErrorCodes.INVALID_TRANSITION,
        details={"status": booking.status.value},
    )


class BookingManager:
    def __init__(
        self,
        store: Store,
        clock: Callable[[], datetime] = utc_now,
        notifier: Optional[BookingNotifier] = None,
        access: Optional[AccessControl] = None,
        availability: Optional[AvailabilityCalculator] = None,
    ):
        self.store = store
        self.clock = clock
        self.notifier = notifier or LoggingNotifier()
        self.access = access or AccessControl(clock)
        self.availability = availability or AvailabilityCalculator(store, clock)

    # ────────────────────────────────────────────────────────────────
    # Create
    # ────────────────────────────────────────────────────────────────

    async def create(self, request: BookingRequest, actor: Optional[RequestContext]) -> Booking:
        """
        Atomically check the slot and insert a booking.

        Raises:
            UnauthorizedError: no actor
            ForbiddenError: customer booking for someone else, or an owner
                without access to the business
            NotFoundError: business, staff, service or customer missing
            ValidationFailedError: inactive resource, inside lead time,
                outside working hours, on a closed date
            ConflictError: overlaps an occupying booking (nothing written)
        """
        actor = require_authenticated(actor)
        try:
            start = ensure_utc(request.start)
        except ValueError as exc:
            raise ValidationFailedError(str(exc))

        async def _create(session: AsyncSession) -> Booking:
            if actor.is_customer:
                if actor.subject_id != request.customer_id:
                    logger.warning(
                        f"Customer {actor.subject_id} tried to book on behalf of customer {request.customer_id}"
                    )
                    raise ForbiddenError("Customers may only book for themselves.")
                business, staff, service = await self.availability.load_schedule(
                    session, request.business_id, request.staff_id, request.service_id
                )
            else:
                await self.access.require_business(session, actor, request.business_id, for_write=True)
                business, staff, service = await self.availability.load_schedule(
                    session, request.business_id, request.staff_id, request.service_id
                )

            customer = await session.get(Customer, request.customer_id)
            if customer is None:
                raise NotFoundError("Customer not found")

            if not business.is_active:
                raise ValidationFailedError("Business is not accepting bookings")
            if not staff.is_active:
                raise ValidationFailedError("Staff member is not available")
            if not service.is_active:
                raise ValidationFailedError("Service is not available")

            now = self.clock()
            earliest = now + timedelta(minutes=business.lead_time_minutes or 0)
            if start < earliest:
                raise ValidationFailedError(
                    "Requested time is too soon or in the past",
                    code=ErrorCodes.INSIDE_LEAD_TIME,
                    details={"earliest": earliest.isoformat()},
                )

            end = Booking.end_for(start, service.duration_minutes)
            await self.availability.check_bookable_window(session, business, staff, start, end)

            await session.execute(
                update(Staff)
                .where(Staff.id == staff.id)
                .values(lock_version=Staff.lock_version + 1)
                .execution_options(synchronize_session=False)
            )

            clash = await session.execute(
                select(Booking.id).where(
                    Booking.staff_id == staff.id,
                    Booking.status.in_(OCCUPYING_STATUSES),
                    Booking.start_at < end,
                    Booking.end_at > start,
                ).limit(1)
            )
            if clash.first() is not None:
                logger.warning(f"Slot taken: staff {staff.id} at {start.isoformat()}")
                raise ConflictError(
                    "This time slot is no longer available.",
                    code=ErrorCodes.SLOT_TAKEN,
                    details={"action": "refresh_availability"},
                )

            booking = Booking(
                business_id=business.id,
                staff_id=staff.id,
                service_id=service.id,
                customer_id=customer.id,
                start_at=start,
                end_at=end,
                duration_minutes=service.duration_minutes,
                status=BookingStatus.CONFIRMED if business.auto_confirm else BookingStatus.PENDING,
                no_show=False,
                created_at=now,
                updated_at=now,
            )
            session.add(booking)
            await session.flush()
            return booking

        booking = await self.store.run_in_transaction(_create)
        logger.info(
            f"Booking {booking.id} created ({booking.status.value}) "
            f"staff={booking.staff_id} start={booking.start_at.isoformat()}"
        )
        await notify_safely(lambda: self.notifier.booking_created(booking), "created", booking.id)
        return booking

    # ────────────────────────────────────────────────────────────────
    # Transitions
    # ────────────────────────────────────────────────────────────────

    async def _transition(
        self,
        booking_id: uuid.UUID,
        actor: Optional[RequestContext],
        apply: Callable[[Booking, datetime], None],
        allow_customer: bool,
    ) -> Booking:
        async def _run(session: AsyncSession) -> Booking:
            booking = await self.access.require_booking(
                session, actor, booking_id, allow_customer=allow_customer, for_write=True
            )
            await session.refresh(booking, with_for_update=True)
            apply(booking, self.clock())
            await session.flush()
            return booking

        return await self.store.run_in_transaction(_run)

    async def confirm(self, booking_id: uuid.UUID, actor: Optional[RequestContext]) -> Booking:
        def _apply(booking: Booking, now: datetime) -> None:
            if booking.status != BookingStatus.PENDING:
                raise _invalid_transition(booking, "confirmed")
            booking.status = BookingStatus.CONFIRMED

        booking = await self._transition(booking_id, actor, _apply, allow_customer=False)
        logger.info(f"Booking {booking.id} confirmed")
        await notify_safely(lambda: self.notifier.booking_confirmed(booking), "confirmed", booking.id)
        return booking

    async def complete(self, booking_id: uuid.UUID, actor: Optional[RequestContext]) -> Booking:
        def _apply(booking: Booking, now: datetime) -> None:
            if booking.status != BookingStatus.CONFIRMED:
                raise _invalid_transition(booking, "completed")
            booking.status = BookingStatus.COMPLETED

        booking = await self._transition(booking_id, actor, _apply, allow_customer=False)
        logger.info(f"Booking {booking.id} completed")
        await notify_safely(lambda: self.notifier.booking_completed(booking), "completed", booking.id)
        return booking

    async def mark_no_show(self, booking_id: uuid.UUID, actor: Optional[RequestContext]) -> Booking:
        """Owner side only; a confirmed booking whose scheduled end has passed."""

        def _apply(booking: Booking, now: datetime) -> None:
            if booking.status != BookingStatus.CONFIRMED:
                raise _invalid_transition(booking, "no-show")
            if now < booking.end_at:
                raise ValidationFailedError(
                    "A booking can only be marked as no-show after it has ended",
                    details={"endsAt": booking.end_at.isoformat()},
                )
            booking.status = BookingStatus.COMPLETED
            booking.no_show = True

        booking = await self._transition(booking_id, actor, _apply, allow_customer=False)
        logger.info(f"Booking {booking.id} marked as no-show")
        await notify_safely(lambda: self.notifier.booking_completed(booking), "no-show", booking.id)
        return booking

    async def cancel(
        self,
        booking_id: uuid.UUID,
        actor: Optional[RequestContext],
        reason: Optional[str] = None,
    ) -> Booking:
        """Cancel a pending or confirmed booking; the slot becomes bookable again."""
        actor = require_authenticated(actor)

        def _apply(booking: Booking, now: datetime) -> None:
            if booking.is_terminal():
                raise _invalid_transition(booking, "cancelled")
            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = now
            booking.cancelled_by = CancelledBy.CUSTOMER if actor.is_customer else CancelledBy.OWNER
            booking.cancellation_reason = reason

        booking = await self._transition(booking_id, actor, _apply, allow_customer=True)
        logger.info(f"Booking {booking.id} cancelled by {booking.cancelled_by.value}")
        await notify_safely(lambda: self.notifier.booking_cancelled(booking, reason), "cancelled", booking.id)
        return booking

    async def set_status(
        self,
        booking_id: uuid.UUID,
        status: BookingStatus,
        actor: Optional[RequestContext],
        reason: Optional[str] = None,
    ) -> Booking:
        if status == BookingStatus.CONFIRMED:
            return await self.confirm(booking_id, actor)
        if status == BookingStatus.COMPLETED:
            return await self.complete(booking_id, actor)
        if status == BookingStatus.CANCELLED:
            return await self.cancel(booking_id, actor, reason)
        raise ValidationFailedError(f"Cannot set status to {status.value}")

    async def update_notes(
        self,
        booking_id: uuid.UUID,
        notes: Optional[str],
        actor: Optional[RequestContext],
    ) -> Booking:
        """Owner side only. Notes may be edited in any status; None clears them."""

        async def _run(session: AsyncSession) -> Booking:
            booking = await self.access.require_booking(
                session, actor, booking_id, allow_customer=False, for_write=True
            )
            booking.notes = notes
            await session.flush()
            return booking

        booking = await self.store.run_in_transaction(_run)
        logger.info(f"Booking {booking.id} notes updated")
        return booking

    # ────────────────────────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────────────────────────

    async def get(self, booking_id: uuid.UUID, actor: Optional[RequestContext]) -> Booking:
        async with self.store.session() as session:
            return await self.access.require_booking(session, actor, booking_id, allow_customer=True)

    async def list_for_business(
        self,
        business_id: int,
        actor: Optional[RequestContext],
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> list[Booking]:
        async with self.store.session() as session:
            await self.access.require_business(session, actor, business_id)
            query = select(Booking).where(Booking.business_id == business_id)
            if start_from is not None:
                query = query.where(Booking.start_at >= ensure_utc(start_from))
            if start_to is not None:
                query = query.where(Booking.start_at < ensure_utc(start_to))
            if statuses:
                query = query.where(Booking.status.in_(list(statuses)))
            result = await session.execute(query.order_by(Booking.start_at))
            return list(result.scalars().all())

    async def list_for_customer(self, actor: Optional[RequestContext]) -> list[Booking]:
        actor = require_authenticated(actor)
        if not actor.is_customer:
            raise ForbiddenError("Only customers have personal bookings.")
        async with self.store.session() as session:
            result = await session.execute(
                select(Booking)
                .where(Booking.customer_id == actor.subject_id)
                .order_by(Booking.start_at.desc())
            )
            return list(result.scalars().all())

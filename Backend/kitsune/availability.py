"""
Availability Calculator

Computes the bookable start instants for (business, staff, service) over an
inclusive range of local calendar dates.

A candidate start survives when:
    - it lies on the business's slot grid inside a working window
    - [start, start + duration) ends no later than that window
    - it does not intersect a closed period (business-wide or for the staff)
    - it does not intersect an occupying (pending/confirmed) booking
    - it is not earlier than now + lead time

Candidates are generated on the local wall clock of the business time zone.
Wall times skipped by a DST jump produce no candidate; repeated wall times
use their first occurrence. Durations are elapsed time, so a 60 minute
service across a fall-back transition ends 60 real minutes later.

Results are never cached: every call reads the current store state.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import Store
from .core.errors import NotFoundError, ValidationFailedError
from .core.responses import ErrorCodes
from .models import OCCUPYING_STATUSES, Booking, Business, ClosedDate, Service, Staff
from .timeutils import (
    WEEKDAY_KEYS,
    Interval,
    get_zone,
    iter_dates,
    local_day_bounds,
    local_to_utc,
    parse_hhmm,
    to_local,
    utc_now,
    wall_time_to_utc,
    weekday_key,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class WorkingWindow:
    """One open/close pair of a weekly hours template, as local minutes past midnight."""
    open_minute: int
    close_minute: int  # up to 1440 ("24:00")


def _parse_close(value: str) -> int:
    if value == "24:00":
        return MINUTES_PER_DAY
    parsed = parse_hhmm(value)
    return parsed.hour * 60 + parsed.minute


def parse_hours_template(hours: Optional[dict[str, Any]], day_key: str) -> list[WorkingWindow]:
    """
    Windows for one weekday of an hours template.

    Template shape: {"mon": [{"open": "09:00", "close": "12:00"}, ...], ...}.
    A missing or empty day is closed. Windows that do not close after they
    open are ignored.
    """
    windows: list[WorkingWindow] = []
    for entry in (hours or {}).get(day_key) or []:
        try:
            opened = parse_hhmm(entry["open"])
            close_minute = _parse_close(entry["close"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Ignoring malformed working window {entry!r} on {day_key}")
            continue
        open_minute = opened.hour * 60 + opened.minute
        if close_minute <= open_minute:
            continue
        windows.append(WorkingWindow(open_minute, close_minute))
    return sorted(windows, key=lambda w: w.open_minute)


def validate_hours_template(hours: dict[str, Any]) -> dict[str, Any]:
    """Strict variant used on input: raises ValueError on any malformed entry."""
    for key, windows in hours.items():
        if key not in WEEKDAY_KEYS:
            raise ValueError(f"Unknown weekday key: {key}")
        if not isinstance(windows, list):
            raise ValueError(f"Windows for {key} must be a list")
        for entry in windows:
            if not isinstance(entry, dict) or "open" not in entry or "close" not in entry:
                raise ValueError(f"Window on {key} needs 'open' and 'close'")
            opened = parse_hhmm(entry["open"])
            close_minute = _parse_close(entry["close"])
            if close_minute <= opened.hour * 60 + opened.minute:
                raise ValueError(f"Window on {key} must close after it opens")
    return hours


def _minute_to_time(minute: int) -> time:
    return time(minute // 60, minute % 60)


def window_interval(local_date: date, window: WorkingWindow, tz: ZoneInfo) -> Interval:
    start = wall_time_to_utc(local_date, _minute_to_time(window.open_minute), tz)
    if window.close_minute >= MINUTES_PER_DAY:
        end = wall_time_to_utc(local_date + timedelta(days=1), time.min, tz)
    else:
        end = wall_time_to_utc(local_date, _minute_to_time(window.close_minute), tz)
    return Interval(start, end)


def effective_hours(business: Business, staff: Staff) -> dict[str, Any]:
    return staff.working_hours if staff.working_hours is not None else (business.operating_hours or {})


def candidate_starts(
    local_date: date,
    window: WorkingWindow,
    granularity_minutes: int,
    duration: timedelta,
    tz: ZoneInfo,
) -> Iterable[datetime]:
    """Grid-aligned starts inside one window whose full duration fits in it."""
    bounds = window_interval(local_date, window, tz)
    minute = window.open_minute
    while minute < window.close_minute:
        start = local_to_utc(local_date, _minute_to_time(minute), tz)
        minute += granularity_minutes
        if start is None:
            continue
        if start + duration > bounds.end:
            continue
        yield start


def _is_blocked(slot: Interval, blocks: list[Interval]) -> bool:
    return any(slot.overlaps(block) for block in blocks)


async def load_blocks(
    session: AsyncSession,
    business_id: int,
    staff_id: int,
    span: Interval,
    exclude_booking_id=None,
) -> tuple[list[Interval], list[Interval]]:
    """(closed periods, occupying bookings) for the staff that intersect ``span``."""
    closed_rows = await session.execute(
        select(ClosedDate.start_at, ClosedDate.end_at).where(
            ClosedDate.business_id == business_id,
            or_(ClosedDate.staff_id.is_(None), ClosedDate.staff_id == staff_id),
            ClosedDate.start_at < span.end,
            ClosedDate.end_at > span.start,
        )
    )
    booking_query = select(Booking.start_at, Booking.end_at).where(
        and_(
            Booking.staff_id == staff_id,
            Booking.status.in_(OCCUPYING_STATUSES),
            Booking.start_at < span.end,
            Booking.end_at > span.start,
        )
    )
    if exclude_booking_id is not None:
        booking_query = booking_query.where(Booking.id != exclude_booking_id)
    booking_rows = await session.execute(booking_query)

    closed = [Interval(start, end) for start, end in closed_rows.all()]
    booked = [Interval(start, end) for start, end in booking_rows.all()]
    return closed, booked


class AvailabilityCalculator:
    def __init__(
        self,
        store: Store,
        clock: Callable[[], datetime] = utc_now,
        max_range_days: int = 31,
    ):
        self.store = store
        self.clock = clock
        self.max_range_days = max_range_days

    async def load_schedule(
        self,
        session: AsyncSession,
        business_id: int,
        staff_id: int,
        service_id: int,
    ) -> tuple[Business, Staff, Service]:
        """Fetch the three rows, raising NotFoundError when any is absent or foreign."""
        business = await session.get(Business, business_id)
        if business is None:
            raise NotFoundError("Business not found", code=ErrorCodes.BUSINESS_NOT_FOUND)
        staff = await session.get(Staff, staff_id)
        if staff is None or staff.business_id != business.id:
            raise NotFoundError("Staff not found")
        service = await session.get(Service, service_id)
        if service is None or service.business_id != business.id:
            raise NotFoundError("Service not found")
        return business, staff, service

    async def compute_available_slots(
        self,
        business_id: int,
        staff_id: int,
        service_id: int,
        date_from: date,
        date_to: date,
    ) -> list[datetime]:
        """
        Ascending UTC start instants bookable for the service with the staff.

        ``date_from`` and ``date_to`` are inclusive local dates in the
        business time zone.

        Raises:
            ValidationFailedError: date_to before date_from, or range too long
            NotFoundError: business, staff or service missing (or foreign)
        """
        if date_to < date_from:
            raise ValidationFailedError("'to' must not be before 'from'")
        if (date_to - date_from).days + 1 > self.max_range_days:
            raise ValidationFailedError(
                f"Availability range may span at most {self.max_range_days} days",
                details={"maxRangeDays": self.max_range_days},
            )

        async with self.store.session() as session:
            business, staff, service = await self.load_schedule(session, business_id, staff_id, service_id)
            if not (business.is_active and staff.is_active and service.is_active):
                return []
            return await self._slots(session, business, staff, service, date_from, date_to)

    async def _slots(
        self,
        session: AsyncSession,
        business: Business,
        staff: Staff,
        service: Service,
        date_from: date,
        date_to: date,
    ) -> list[datetime]:
        tz = get_zone(business.timezone)
        duration = timedelta(minutes=service.duration_minutes)
        granularity = business.slot_granularity_minutes or 30
        earliest = self.clock() + timedelta(minutes=business.lead_time_minutes or 0)
        hours = effective_hours(business, staff)

        span = Interval(
            local_day_bounds(date_from, tz).start,
            local_day_bounds(date_to, tz).end + duration,
        )
        closed, booked = await load_blocks(session, business.id, staff.id, span)
        blocks = closed + booked

        slots: list[datetime] = []
        for local_date in iter_dates(date_from, date_to):
            for window in parse_hours_template(hours, weekday_key(local_date)):
                for start in candidate_starts(local_date, window, granularity, duration, tz):
                    if start < earliest:
                        continue
                    if _is_blocked(Interval(start, start + duration), blocks):
                        continue
                    slots.append(start)

        slots = sorted(set(slots))
        logger.debug(
            f"{len(slots)} slots for staff {staff.id} / service {service.id} "
            f"between {date_from} and {date_to}"
        )
        return slots

    async def check_bookable_window(
        self,
        session: AsyncSession,
        business: Business,
        staff: Staff,
        start: datetime,
        end: datetime,
    ) -> None:
        """
        Raise ValidationFailedError unless [start, end) fits inside one working
        window of the staff and avoids every closed period.

        Overlap with other bookings is not checked here; that check must run
        under the staff lock (see BookingManager.create).
        """
        tz = get_zone(business.timezone)
        local_date = to_local(start, tz).date()
        hours = effective_hours(business, staff)
        requested = Interval(start, end)

        fits = any(
            bounds.start <= start and end <= bounds.end
            for bounds in (
                window_interval(local_date, window, tz)
                for window in parse_hours_template(hours, weekday_key(local_date))
            )
        )
        if not fits:
            raise ValidationFailedError(
                "Requested time is outside working hours",
                code=ErrorCodes.OUTSIDE_WORKING_HOURS,
            )

        closed, _ = await load_blocks(session, business.id, staff.id, requested)
        if closed:
            raise ValidationFailedError(
                "Requested time falls on a closed date",
                code=ErrorCodes.OUTSIDE_WORKING_HOURS,
                details={"reason": "closed"},
            )

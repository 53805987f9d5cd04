"""
Booking API

ENDPOINTS:
    GET   /bookings/availability   - bookable start instants (public)
    POST  /bookings                - create a booking (customer or business side)
    GET   /bookings                - business bookings (?businessId=) or own bookings
    GET   /bookings/{id}           - booking detail (business side or its customer)
    PATCH /bookings/{id}/status    - confirm / complete / cancel
    PATCH /bookings/{id}/no-show   - mark a finished confirmed booking as no-show
    PATCH /bookings/{id}/notes     - internal notes (business side only)
    POST  /bookings/{id}/cancel    - cancel (business side or its customer)

State-changing endpoints require the session cookie plus X-CSRF-Token.
A 409 on create carries details.action = "refresh_availability": the client
should recompute availability instead of retrying the same slot.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .bookings import BookingManager, BookingRequest
from .core.errors import ValidationFailedError
from .core.request_context import (
    RequestContext,
    get_csrf_protected_context,
    get_request_context,
)
from .models import Booking, BookingStatus
from .rate_limiter import public_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


# ────────────────────────────────────────────────────────────────
# DTOs
# ────────────────────────────────────────────────────────────────

def _require_offset(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("must include a UTC offset, e.g. 2025-01-06T09:00:00Z")
    return value.astimezone(timezone.utc)


def _query_instant(value: Optional[datetime], name: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return _require_offset(value)
    except ValueError as exc:
        raise ValidationFailedError(f"'{name}' {exc}")


class BookingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: int = Field(alias="businessId", gt=0)
    staff_id: int = Field(alias="staffId", gt=0)
    service_id: int = Field(alias="serviceId", gt=0)
    customer_id: int = Field(alias="customerId", gt=0)
    start: datetime

    @field_validator("start")
    @classmethod
    def start_has_offset(cls, v: datetime) -> datetime:
        return _require_offset(v)


class StatusUpdate(BaseModel):
    status: Literal["confirmed", "completed", "cancelled"]
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class NotesUpdate(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class BookingOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    business_id: int = Field(alias="businessId")
    staff_id: int = Field(alias="staffId")
    service_id: int = Field(alias="serviceId")
    customer_id: int = Field(alias="customerId")
    start: datetime
    end: datetime
    duration_minutes: int = Field(alias="durationMinutes")
    status: BookingStatus
    no_show: bool = Field(alias="noShow")
    cancelled_at: Optional[datetime] = Field(default=None, alias="cancelledAt")
    cancelled_by: Optional[str] = Field(default=None, alias="cancelledBy")
    cancellation_reason: Optional[str] = Field(default=None, alias="cancellationReason")
    notes: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_booking(cls, booking: Booking, viewer: Optional[RequestContext] = None) -> "BookingOut":
        # Notes are internal to the business side.
        show_notes = viewer is not None and viewer.is_owner
        return cls(
            id=booking.id,
            business_id=booking.business_id,
            staff_id=booking.staff_id,
            service_id=booking.service_id,
            customer_id=booking.customer_id,
            start=booking.start_at,
            end=booking.end_at,
            duration_minutes=booking.duration_minutes,
            status=booking.status,
            no_show=booking.no_show,
            cancelled_at=booking.cancelled_at,
            cancelled_by=booking.cancelled_by.value if booking.cancelled_by else None,
            cancellation_reason=booking.cancellation_reason,
            notes=booking.notes if show_notes else None,
            created_at=booking.created_at,
        )


class AvailabilityOut(BaseModel):
    slots: list[datetime]


def get_booking_manager(request: Request) -> BookingManager:
    return request.app.state.bookings


# ────────────────────────────────────────────────────────────────
# Routes
# ────────────────────────────────────────────────────────────────

@router.get("/availability", response_model=AvailabilityOut)
async def get_availability(
    request: Request,
    business_id: int = Query(alias="businessId", gt=0),
    staff_id: int = Query(alias="staffId", gt=0),
    service_id: int = Query(alias="serviceId", gt=0),
    date_from: date = Query(alias="from"),
    date_to: date = Query(alias="to"),
):
    slots = await request.app.state.availability.compute_available_slots(
        business_id, staff_id, service_id, date_from, date_to
    )
    return AvailabilityOut(slots=slots)


@router.post(
    "",
    response_model=BookingOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(public_rate_limit)],
)
async def create_booking(
    payload: BookingCreate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    manager: BookingManager = Depends(get_booking_manager),
):
    booking = await manager.create(
        BookingRequest(
            business_id=payload.business_id,
            staff_id=payload.staff_id,
            service_id=payload.service_id,
            customer_id=payload.customer_id,
            start=payload.start,
        ),
        ctx,
    )
    return BookingOut.from_booking(booking, ctx)


@router.get("", response_model=list[BookingOut])
async def list_bookings(
    business_id: Optional[int] = Query(default=None, alias="businessId", gt=0),
    start_from: Optional[datetime] = Query(default=None, alias="from"),
    start_to: Optional[datetime] = Query(default=None, alias="to"),
    status_filter: Optional[list[BookingStatus]] = Query(default=None, alias="status"),
    ctx: RequestContext = Depends(get_request_context),
    manager: BookingManager = Depends(get_booking_manager),
):
    if business_id is None:
        bookings = await manager.list_for_customer(ctx)
    else:
        bookings = await manager.list_for_business(
            business_id,
            ctx,
            start_from=_query_instant(start_from, "from"),
            start_to=_query_instant(start_to, "to"),
            statuses=status_filter,
        )
    return [BookingOut.from_booking(b, ctx) for b in bookings]


@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    manager: BookingManager = Depends(get_booking_manager),
):
    return BookingOut.from_booking(await manager.get(booking_id, ctx), ctx)


@router.patch("/{booking_id}/status", response_model=BookingOut)
async def update_booking_status(
    booking_id: uuid.UUID,
    payload: StatusUpdate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    manager: BookingManager = Depends(get_booking_manager),
):
    booking = await manager.set_status(booking_id, BookingStatus(payload.status), ctx, payload.reason)
    return BookingOut.from_booking(booking, ctx)


@router.patch("/{booking_id}/no-show", response_model=BookingOut)
async def mark_no_show(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    manager: BookingManager = Depends(get_booking_manager),
):
    return BookingOut.from_booking(await manager.mark_no_show(booking_id, ctx), ctx)


@router.post("/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: uuid.UUID,
    payload: Optional[CancelRequest] = None,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    manager: BookingManager = Depends(get_booking_manager),
):
    reason = payload.reason if payload else None
    return BookingOut.from_booking(await manager.cancel(booking_id, ctx, reason), ctx)


@router.patch("/{booking_id}/notes", response_model=BookingOut)
async def update_booking_notes(
    booking_id: uuid.UUID,
    payload: NotesUpdate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    manager: BookingManager = Depends(get_booking_manager),
):
    return BookingOut.from_booking(await manager.update_notes(booking_id, payload.notes, ctx), ctx)

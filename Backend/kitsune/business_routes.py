"""
Business catalog API

ENDPOINTS:
    POST   /businesses                              - create (owner)
    GET    /businesses                              - businesses the owner can manage
    GET    /businesses/{id}                         - public profile with active staff/services
    PATCH  /businesses/{id}                         - update settings (owner only)
    POST   /businesses/{id}/staff                   - add staff
    PATCH  /businesses/{id}/staff/{staff_id}        - update staff
    DELETE /businesses/{id}/staff/{staff_id}        - deactivate staff (soft)
    POST   /businesses/{id}/services                - add service
    PATCH  /businesses/{id}/services/{service_id}   - update service
    DELETE /businesses/{id}/services/{service_id}   - deactivate service (soft)

    GET    /closed-dates?businessId=                - list closed periods
    POST   /closed-dates                            - close a day or a period
    DELETE /closed-dates/{id}                       - reopen
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .availability import validate_hours_template
from .catalog import CatalogService
from .core.request_context import (
    RequestContext,
    get_csrf_protected_context,
    get_request_context,
)
from .models import Business, ClosedDate, Service, Staff

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/businesses", tags=["businesses"])
closed_dates_router = APIRouter(prefix="/closed-dates", tags=["closed-dates"])

HoursTemplate = dict[str, list[dict[str, str]]]


def get_catalog(request: Request) -> CatalogService:
    return request.app.state.catalog


def _hours(value: Optional[HoursTemplate]) -> Optional[HoursTemplate]:
    if value is None:
        return None
    return validate_hours_template(value)


def _not_null(value: Any) -> Any:
    if value is None:
        raise ValueError("may not be null")
    return value


# ────────────────────────────────────────────────────────────────
# DTOs
# ────────────────────────────────────────────────────────────────

class BusinessCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    timezone: str = Field(default="Asia/Tokyo", max_length=64)
    operating_hours: HoursTemplate = Field(default_factory=dict, alias="operatingHours")
    slot_granularity_minutes: int = Field(default=30, alias="slotGranularityMinutes", ge=5, le=240)
    lead_time_minutes: int = Field(default=0, alias="leadTimeMinutes", ge=0, le=60 * 24 * 30)
    auto_confirm: bool = Field(default=False, alias="autoConfirm")

    @field_validator("operating_hours")
    @classmethod
    def check_hours(cls, v: HoursTemplate) -> HoursTemplate:
        return _hours(v)


class BusinessUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    timezone: Optional[str] = Field(default=None, max_length=64)
    operating_hours: Optional[HoursTemplate] = Field(default=None, alias="operatingHours")
    slot_granularity_minutes: Optional[int] = Field(default=None, alias="slotGranularityMinutes", ge=5, le=240)
    lead_time_minutes: Optional[int] = Field(default=None, alias="leadTimeMinutes", ge=0, le=60 * 24 * 30)
    auto_confirm: Optional[bool] = Field(default=None, alias="autoConfirm")
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    @field_validator("operating_hours")
    @classmethod
    def check_hours(cls, v: Optional[HoursTemplate]) -> Optional[HoursTemplate]:
        return _hours(v)

    @field_validator(
        "name",
        "timezone",
        "operating_hours",
        "slot_granularity_minutes",
        "lead_time_minutes",
        "auto_confirm",
        "is_active",
        mode="before",
    )
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        return _not_null(v)


class StaffCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    working_hours: Optional[HoursTemplate] = Field(default=None, alias="workingHours")
    display_order: int = Field(default=0, alias="displayOrder")

    @field_validator("working_hours")
    @classmethod
    def check_hours(cls, v: Optional[HoursTemplate]) -> Optional[HoursTemplate]:
        return _hours(v)


class StaffUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    working_hours: Optional[HoursTemplate] = Field(default=None, alias="workingHours")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    display_order: Optional[int] = Field(default=None, alias="displayOrder")

    @field_validator("working_hours")
    @classmethod
    def check_hours(cls, v: Optional[HoursTemplate]) -> Optional[HoursTemplate]:
        return _hours(v)

    # workingHours: null means "use the business hours"
    @field_validator("name", "is_active", "display_order", mode="before")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        return _not_null(v)


class ServiceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    duration_minutes: int = Field(alias="durationMinutes", gt=0, le=24 * 60)
    price_cents: int = Field(default=0, alias="priceCents", ge=0)
    display_order: int = Field(default=0, alias="displayOrder")


class ServiceUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes", gt=0, le=24 * 60)
    price_cents: Optional[int] = Field(default=None, alias="priceCents", ge=0)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    display_order: Optional[int] = Field(default=None, alias="displayOrder")

    @field_validator("name", "duration_minutes", "price_cents", "is_active", "display_order", mode="before")
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        return _not_null(v)


class ClosedDateCreate(BaseModel):
    """Either ``date`` (a whole local day) or ``startAt`` + ``endAt``."""
    model_config = ConfigDict(populate_by_name=True)

    business_id: int = Field(alias="businessId", gt=0)
    staff_id: Optional[int] = Field(default=None, alias="staffId", gt=0)
    day: Optional[date] = Field(default=None, alias="date")
    start_at: Optional[datetime] = Field(default=None, alias="startAt")
    end_at: Optional[datetime] = Field(default=None, alias="endAt")
    reason: Optional[str] = Field(default=None, max_length=255)

    @field_validator("start_at", "end_at")
    @classmethod
    def require_offset(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("must include a UTC offset")
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def one_form(self) -> "ClosedDateCreate":
        if self.day is None and (self.start_at is None or self.end_at is None):
            raise ValueError("Provide either date or both startAt and endAt")
        if self.day is not None and (self.start_at is not None or self.end_at is not None):
            raise ValueError("Provide either date or startAt/endAt, not both")
        if self.start_at is not None and self.end_at is not None and self.end_at <= self.start_at:
            raise ValueError("endAt must be after startAt")
        return self


class StaffOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    business_id: int = Field(alias="businessId")
    name: str
    working_hours: Optional[dict[str, Any]] = Field(default=None, alias="workingHours")
    is_active: bool = Field(alias="isActive")
    display_order: int = Field(alias="displayOrder")

    @classmethod
    def from_row(cls, staff: Staff) -> "StaffOut":
        return cls(
            id=staff.id,
            business_id=staff.business_id,
            name=staff.name,
            working_hours=staff.working_hours,
            is_active=staff.is_active,
            display_order=staff.display_order,
        )


class ServiceOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    business_id: int = Field(alias="businessId")
    name: str
    duration_minutes: int = Field(alias="durationMinutes")
    price_cents: int = Field(alias="priceCents")
    is_active: bool = Field(alias="isActive")
    display_order: int = Field(alias="displayOrder")

    @classmethod
    def from_row(cls, service: Service) -> "ServiceOut":
        return cls(
            id=service.id,
            business_id=service.business_id,
            name=service.name,
            duration_minutes=service.duration_minutes,
            price_cents=service.price_cents,
            is_active=service.is_active,
            display_order=service.display_order,
        )


class BusinessOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    owner_id: int = Field(alias="ownerId")
    name: str
    timezone: str
    operating_hours: dict[str, Any] = Field(alias="operatingHours")
    slot_granularity_minutes: int = Field(alias="slotGranularityMinutes")
    lead_time_minutes: int = Field(alias="leadTimeMinutes")
    auto_confirm: bool = Field(alias="autoConfirm")
    is_active: bool = Field(alias="isActive")
    staff: list[StaffOut] = Field(default_factory=list)
    services: list[ServiceOut] = Field(default_factory=list)

    @classmethod
    def from_row(
        cls,
        business: Business,
        staff: Optional[list[Staff]] = None,
        services: Optional[list[Service]] = None,
    ) -> "BusinessOut":
        return cls(
            id=business.id,
            owner_id=business.owner_id,
            name=business.name,
            timezone=business.timezone,
            operating_hours=business.operating_hours or {},
            slot_granularity_minutes=business.slot_granularity_minutes,
            lead_time_minutes=business.lead_time_minutes,
            auto_confirm=business.auto_confirm,
            is_active=business.is_active,
            staff=[StaffOut.from_row(s) for s in staff or []],
            services=[ServiceOut.from_row(s) for s in services or []],
        )


class ClosedDateOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    business_id: int = Field(alias="businessId")
    staff_id: Optional[int] = Field(default=None, alias="staffId")
    start_at: datetime = Field(alias="startAt")
    end_at: datetime = Field(alias="endAt")
    reason: Optional[str] = None

    @classmethod
    def from_row(cls, closed: ClosedDate) -> "ClosedDateOut":
        return cls(
            id=closed.id,
            business_id=closed.business_id,
            staff_id=closed.staff_id,
            start_at=closed.start_at,
            end_at=closed.end_at,
            reason=closed.reason,
        )


# ────────────────────────────────────────────────────────────────
# Businesses
# ────────────────────────────────────────────────────────────────

@router.post("", response_model=BusinessOut, status_code=status.HTTP_201_CREATED)
async def create_business(
    payload: BusinessCreate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    business = await catalog.create_business(ctx, payload.model_dump())
    return BusinessOut.from_row(business)


@router.get("", response_model=list[BusinessOut])
async def list_businesses(
    ctx: RequestContext = Depends(get_request_context),
    catalog: CatalogService = Depends(get_catalog),
):
    return [BusinessOut.from_row(b) for b in await catalog.list_accessible(ctx)]


@router.get("/{business_id}", response_model=BusinessOut)
async def get_business(business_id: int, catalog: CatalogService = Depends(get_catalog)):
    profile = await catalog.get_profile(business_id)
    return BusinessOut.from_row(profile.business, profile.staff, profile.services)


@router.patch("/{business_id}", response_model=BusinessOut)
async def update_business(
    business_id: int,
    payload: BusinessUpdate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    business = await catalog.update_business(business_id, ctx, payload.model_dump(exclude_unset=True))
    return BusinessOut.from_row(business)


# ────────────────────────────────────────────────────────────────
# Staff
# ────────────────────────────────────────────────────────────────

@router.post("/{business_id}/staff", response_model=StaffOut, status_code=status.HTTP_201_CREATED)
async def add_staff(
    business_id: int,
    payload: StaffCreate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    return StaffOut.from_row(await catalog.add_staff(business_id, ctx, payload.model_dump()))


@router.patch("/{business_id}/staff/{staff_id}", response_model=StaffOut)
async def update_staff(
    business_id: int,
    staff_id: int,
    payload: StaffUpdate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    staff = await catalog.update_staff(business_id, staff_id, ctx, payload.model_dump(exclude_unset=True))
    return StaffOut.from_row(staff)


@router.delete("/{business_id}/staff/{staff_id}", response_model=StaffOut)
async def deactivate_staff(
    business_id: int,
    staff_id: int,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    staff = await catalog.update_staff(business_id, staff_id, ctx, {"is_active": False})
    return StaffOut.from_row(staff)


# ────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────

@router.post("/{business_id}/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
async def add_service(
    business_id: int,
    payload: ServiceCreate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    return ServiceOut.from_row(await catalog.add_service(business_id, ctx, payload.model_dump()))


@router.patch("/{business_id}/services/{service_id}", response_model=ServiceOut)
async def update_service(
    business_id: int,
    service_id: int,
    payload: ServiceUpdate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    service = await catalog.update_service(business_id, service_id, ctx, payload.model_dump(exclude_unset=True))
    return ServiceOut.from_row(service)


@router.delete("/{business_id}/services/{service_id}", response_model=ServiceOut)
async def deactivate_service(
    business_id: int,
    service_id: int,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    service = await catalog.update_service(business_id, service_id, ctx, {"is_active": False})
    return ServiceOut.from_row(service)


# ────────────────────────────────────────────────────────────────
# Closed dates
# ────────────────────────────────────────────────────────────────

@closed_dates_router.get("", response_model=list[ClosedDateOut])
async def list_closed_dates(
    business_id: int = Query(alias="businessId", gt=0),
    ctx: RequestContext = Depends(get_request_context),
    catalog: CatalogService = Depends(get_catalog),
):
    return [ClosedDateOut.from_row(c) for c in await catalog.list_closed_dates(business_id, ctx)]


@closed_dates_router.post("", response_model=ClosedDateOut, status_code=status.HTTP_201_CREATED)
async def create_closed_date(
    payload: ClosedDateCreate,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    closed = await catalog.add_closed_date(
        payload.business_id,
        ctx,
        staff_id=payload.staff_id,
        start_at=payload.start_at,
        end_at=payload.end_at,
        local_date=payload.day,
        reason=payload.reason,
    )
    return ClosedDateOut.from_row(closed)


@closed_dates_router.delete("/{closed_date_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_closed_date(
    closed_date_id: int,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    catalog: CatalogService = Depends(get_catalog),
):
    await catalog.delete_closed_date(closed_date_id, ctx)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

"""
Invitation link API

ENDPOINTS:
    POST   /businesses/{id}/invitation-links             - create (business owner only)
    GET    /businesses/{id}/invitation-links             - list (business owner only)
    DELETE /businesses/{id}/invitation-links/{link_id}   - deactivate
    GET    /businesses/{id}/permissions                - owners granted access (business owner only)
    DELETE /businesses/{id}/permissions/{perm_id}      - revoke a grant
    GET    /invitation-links/{code}                      - public validity payload
    POST   /invitation-links/{code}/accept               - consume and join the business
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field

from .core.request_context import (
    RequestContext,
    get_csrf_protected_context,
    get_request_context,
)
from .invitations import InvitationService, PermissionGrant
from .models import InvitationLink
from .rate_limiter import public_rate_limit

logger = logging.getLogger(__name__)

business_links_router = APIRouter(prefix="/businesses/{business_id}/invitation-links", tags=["invitations"])
permissions_router = APIRouter(prefix="/businesses/{business_id}/permissions", tags=["invitations"])
router = APIRouter(prefix="/invitation-links", tags=["invitations"])


def get_invitations(request: Request) -> InvitationService:
    return request.app.state.invitations


# ────────────────────────────────────────────────────────────────
# DTOs
# ────────────────────────────────────────────────────────────────

class InvitationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_uses: int = Field(default=1, alias="maxUses", ge=1, le=100)


class InvitationLinkOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    business_id: int = Field(alias="businessId")
    code: str
    expires_at: datetime = Field(alias="expiresAt")
    max_uses: int = Field(alias="maxUses")
    used_count: int = Field(alias="usedCount")
    is_active: bool = Field(alias="isActive")
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_row(cls, link: InvitationLink) -> "InvitationLinkOut":
        return cls(
            id=link.id,
            business_id=link.business_id,
            code=link.code,
            expires_at=link.expires_at,
            max_uses=link.max_uses,
            used_count=link.used_count,
            is_active=link.is_active,
            created_at=link.created_at,
        )


class BusinessSummary(BaseModel):
    id: int
    name: str


class InvitationStatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    business: BusinessSummary
    invited_by: Optional[str] = Field(default=None, alias="invitedBy")
    expires_at: datetime = Field(alias="expiresAt")
    remaining_uses: int = Field(alias="remainingUses")
    is_valid: bool = Field(alias="isValid")
    is_expired: bool = Field(alias="isExpired")
    is_used_up: bool = Field(alias="isUsedUp")
    is_active: bool = Field(alias="isActive")


class PermissionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    business_id: int = Field(alias="businessId")
    owner_id: int = Field(alias="ownerId")
    display_name: str = Field(alias="displayName")
    granted_by: Optional[str] = Field(default=None, alias="grantedBy")
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_grant(cls, grant: PermissionGrant) -> "PermissionOut":
        return cls(
            id=grant.permission.id,
            business_id=grant.permission.business_id,
            owner_id=grant.permission.owner_id,
            display_name=grant.display_name,
            granted_by=grant.granted_by,
            created_at=grant.permission.created_at,
        )


class AcceptOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    business_id: int = Field(alias="businessId")
    business_name: str = Field(alias="businessName")
    permission_id: int = Field(alias="permissionId")


# ────────────────────────────────────────────────────────────────
# Business-side management
# ────────────────────────────────────────────────────────────────

@business_links_router.post("", response_model=InvitationLinkOut, status_code=status.HTTP_201_CREATED)
async def create_invitation_link(
    business_id: int,
    payload: Optional[InvitationCreate] = None,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    invitations: InvitationService = Depends(get_invitations),
):
    max_uses = payload.max_uses if payload else 1
    return InvitationLinkOut.from_row(await invitations.create(business_id, ctx, max_uses=max_uses))


@business_links_router.get("", response_model=list[InvitationLinkOut])
async def list_invitation_links(
    business_id: int,
    ctx: RequestContext = Depends(get_request_context),
    invitations: InvitationService = Depends(get_invitations),
):
    return [InvitationLinkOut.from_row(link) for link in await invitations.list_for_business(business_id, ctx)]


@business_links_router.delete("/{link_id}", response_model=InvitationLinkOut)
async def deactivate_invitation_link(
    business_id: int,
    link_id: uuid.UUID,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    invitations: InvitationService = Depends(get_invitations),
):
    return InvitationLinkOut.from_row(await invitations.deactivate(business_id, link_id, ctx))


@permissions_router.get("", response_model=list[PermissionOut])
async def list_permissions(
    business_id: int,
    ctx: RequestContext = Depends(get_request_context),
    invitations: InvitationService = Depends(get_invitations),
):
    return [PermissionOut.from_grant(grant) for grant in await invitations.list_permissions(business_id, ctx)]


@permissions_router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_permission(
    business_id: int,
    permission_id: int,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    invitations: InvitationService = Depends(get_invitations),
):
    await invitations.revoke_permission(business_id, permission_id, ctx)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ────────────────────────────────────────────────────────────────
# Public
# ────────────────────────────────────────────────────────────────

@router.get("/{code}", response_model=InvitationStatusOut, dependencies=[Depends(public_rate_limit)])
async def get_invitation_link(
    code: str,
    invitations: InvitationService = Depends(get_invitations),
):
    result = await invitations.validate(code)
    return InvitationStatusOut(
        code=result.code,
        business=BusinessSummary(id=result.business_id, name=result.business_name),
        invited_by=result.invited_by,
        expires_at=result.expires_at,
        remaining_uses=result.remaining_uses,
        is_valid=result.is_valid,
        is_expired=result.is_expired,
        is_used_up=result.is_used_up,
        is_active=result.is_active,
    )


@router.post("/{code}/accept", response_model=AcceptOut)
async def accept_invitation_link(
    code: str,
    ctx: RequestContext = Depends(get_csrf_protected_context),
    invitations: InvitationService = Depends(get_invitations),
):
    accepted = await invitations.accept(code, ctx)
    return AcceptOut(
        business_id=accepted.business_id,
        business_name=accepted.business_name,
        permission_id=accepted.permission.id,
    )

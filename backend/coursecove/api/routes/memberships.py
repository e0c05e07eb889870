"""
Membership procedures: team listing and the removal lifecycle.

SECURITY:
- Listing requires a staff role in the active organization
- Remove/restore/permanent delete require an admin role and are rate limited
- Lookups are always scoped to the caller's organization
- Admins cannot remove their own membership
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from coursecove.models.membership import Membership, MembershipStatus
from coursecove.platform.authorization import (
    ADMIN,
    STAFF,
    Pipeline,
    ProcedureContext,
    StageLevel,
    procedure,
)
from coursecove.platform.errors import ValidationFailed
from coursecove.services.membership_lifecycle import MembershipLifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/memberships", tags=["memberships"])


def _admin_with_limit(action: str, action_class: str) -> Pipeline:
    return (
        Pipeline.builder()
        .up_to(StageLevel.ADMIN)
        .rate_limit(action, action_class)
        .build()
    )


admin_remove = _admin_with_limit("memberships.remove", "DELETE")
admin_restore = _admin_with_limit("memberships.restore", "MUTATION")
admin_delete = _admin_with_limit("memberships.delete", "DELETE")


class MemberResponse(BaseModel):
    id: str
    user_id: str
    clerk_user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str
    status: str


class RemovedMemberResponse(MemberResponse):
    removed_at: Optional[str] = None
    removed_by: Optional[str] = None
    days_since_removal: int
    days_remaining: int
    urgency: str


class MembersListResponse(BaseModel):
    members: List[MemberResponse]
    total_count: int


class RemovedMembersListResponse(BaseModel):
    members: List[RemovedMemberResponse]
    total_count: int
    retention_days: int


def _member_fields(membership: Membership) -> dict:
    user = membership.user
    return {
        "id": membership.id,
        "user_id": membership.user_id,
        "clerk_user_id": user.clerk_user_id if user else None,
        "email": user.email if user else None,
        "name": user.display_name if user else None,
        "avatar_url": user.avatar_url if user else None,
        "role": membership.role,
        "status": membership.status,
    }


@router.get("", response_model=MembersListResponse)
def list_members(ctx: ProcedureContext = Depends(procedure(STAFF))):
    memberships = (
        ctx.db.query(Membership)
        .filter(
            Membership.organization_id == ctx.organization_id,
            Membership.status == MembershipStatus.ACTIVE.value,
        )
        .order_by(Membership.created_at.asc())
        .all()
    )
    return MembersListResponse(
        members=[MemberResponse(**_member_fields(m)) for m in memberships],
        total_count=len(memberships),
    )


@router.get("/removed", response_model=RemovedMembersListResponse)
def list_removed_members(ctx: ProcedureContext = Depends(procedure(ADMIN))):
    lifecycle = MembershipLifecycle(ctx.db)
    summaries = lifecycle.list_removed(ctx.organization_id)
    members = [
        RemovedMemberResponse(
            **_member_fields(s.membership),
            removed_at=s.membership.removed_at.isoformat() if s.membership.removed_at else None,
            removed_by=s.membership.removed_by,
            days_since_removal=s.days_since_removal,
            days_remaining=s.days_remaining,
            urgency=s.urgency.value,
        )
        for s in summaries
    ]
    return RemovedMembersListResponse(
        members=members,
        total_count=len(members),
        retention_days=lifecycle.retention_days,
    )


@router.post("/{membership_id}/remove", response_model=MemberResponse)
def remove_member(membership_id: str, ctx: ProcedureContext = Depends(procedure(admin_remove))):
    lifecycle = MembershipLifecycle(ctx.db)
    membership = lifecycle.get(membership_id, ctx.organization_id)
    if membership.user is not None and membership.user.clerk_user_id == ctx.user_id:
        raise ValidationFailed("You cannot remove yourself from the organization")

    membership = lifecycle.remove(membership_id, actor=ctx.user_id, organization_id=ctx.organization_id)
    ctx.db.commit()
    return MemberResponse(**_member_fields(membership))


@router.post("/{membership_id}/restore", response_model=MemberResponse)
def restore_member(membership_id: str, ctx: ProcedureContext = Depends(procedure(admin_restore))):
    lifecycle = MembershipLifecycle(ctx.db)
    membership = lifecycle.restore(membership_id, organization_id=ctx.organization_id, actor=ctx.user_id)
    ctx.db.commit()
    return MemberResponse(**_member_fields(membership))


@router.delete("/{membership_id}")
def permanently_delete_member(membership_id: str, ctx: ProcedureContext = Depends(procedure(admin_delete))):
    MembershipLifecycle(ctx.db).permanently_delete(
        membership_id,
        organization_id=ctx.organization_id,
        actor=ctx.user_id,
    )
    ctx.db.commit()
    return {"success": True, "membership_id": membership_id}

"""
Appointment type procedures.

Any organization member can list published types; staff also see drafts
and, on request, archived types. Writes are admin-only and rate limited.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from coursecove.models.appointment_type import AppointmentTypeStatus
from coursecove.platform.authorization import (
    ORG_SCOPED,
    Pipeline,
    ProcedureContext,
    StageLevel,
    procedure,
)
from coursecove.services.appointment_type_service import (
    AppointmentTypeService,
    serialize_appointment_type,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointment-types", tags=["appointment-types"])

admin_create = Pipeline.builder().up_to(StageLevel.ADMIN).rate_limit("appointment_types.create", "CREATE").build()
admin_update = Pipeline.builder().up_to(StageLevel.ADMIN).rate_limit("appointment_types.update", "MUTATION").build()
admin_archive = Pipeline.builder().up_to(StageLevel.ADMIN).rate_limit("appointment_types.archive", "DELETE").build()
admin_restore = Pipeline.builder().up_to(StageLevel.ADMIN).rate_limit("appointment_types.restore", "MUTATION").build()


class AppointmentTypeCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    duration: int = Field(..., gt=0, description="Minutes")
    description: Optional[str] = None
    status: AppointmentTypeStatus = AppointmentTypeStatus.DRAFT
    default_is_online: bool = False
    default_address: Optional[str] = Field(None, max_length=500)
    default_video_link: Optional[str] = Field(None, max_length=500)
    instructor_ids: List[str] = Field(default_factory=list)


class AppointmentTypeUpdateRequest(BaseModel):
    version: int = Field(..., ge=0, description="Version the client last read")
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    duration: Optional[int] = Field(None, gt=0)
    description: Optional[str] = None
    status: Optional[AppointmentTypeStatus] = None
    default_is_online: Optional[bool] = None
    default_address: Optional[str] = Field(None, max_length=500)
    default_video_link: Optional[str] = Field(None, max_length=500)


@router.get("")
def list_appointment_types(
    include_archived: bool = False,
    ctx: ProcedureContext = Depends(procedure(ORG_SCOPED)),
):
    is_staff = ctx.session.org_role is not None
    service = AppointmentTypeService(ctx.db, ctx.organization_id)
    types = service.list(
        published_only=not is_staff,
        include_archived=include_archived and is_staff,
    )
    return {"appointment_types": [serialize_appointment_type(t) for t in types]}


@router.post("", status_code=201)
def create_appointment_type(
    body: AppointmentTypeCreateRequest,
    ctx: ProcedureContext = Depends(procedure(admin_create)),
):
    values = body.model_dump(exclude={"instructor_ids"})
    values["status"] = body.status.value
    appointment_type = AppointmentTypeService(ctx.db, ctx.organization_id).create(
        instructor_ids=body.instructor_ids,
        **values,
    )
    ctx.db.commit()
    return serialize_appointment_type(appointment_type)


@router.patch("/{appointment_type_id}")
def update_appointment_type(
    appointment_type_id: str,
    body: AppointmentTypeUpdateRequest,
    ctx: ProcedureContext = Depends(procedure(admin_update)),
):
    changes = body.model_dump(exclude={"version"}, exclude_unset=True)
    if changes.get("status") is not None:
        changes["status"] = AppointmentTypeStatus(changes["status"]).value
    appointment_type = AppointmentTypeService(ctx.db, ctx.organization_id).update(
        appointment_type_id,
        expected_version=body.version,
        **changes,
    )
    ctx.db.commit()
    return serialize_appointment_type(appointment_type)


@router.post("/{appointment_type_id}/archive")
def archive_appointment_type(
    appointment_type_id: str,
    ctx: ProcedureContext = Depends(procedure(admin_archive)),
):
    appointment_type = AppointmentTypeService(ctx.db, ctx.organization_id).archive(appointment_type_id)
    ctx.db.commit()
    return serialize_appointment_type(appointment_type)


@router.post("/{appointment_type_id}/restore")
def restore_appointment_type(
    appointment_type_id: str,
    ctx: ProcedureContext = Depends(procedure(admin_restore)),
):
    """Un-archive a type; it stays unpublished until an admin publishes it again."""
    appointment_type = AppointmentTypeService(ctx.db, ctx.organization_id).restore(appointment_type_id)
    ctx.db.commit()
    return serialize_appointment_type(appointment_type)

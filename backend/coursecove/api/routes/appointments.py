"""Appointment procedures."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from coursecove.models.membership import INSTRUCTOR_CAPABLE_ROLES
from coursecove.platform.authorization import (
    STAFF,
    Pipeline,
    ProcedureContext,
    StageLevel,
    procedure,
)
from coursecove.services.appointment_service import AppointmentService, serialize_appointment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])

instructor_create = (
    Pipeline.builder()
    .up_to(StageLevel.ORG_SCOPED)
    .roles(INSTRUCTOR_CAPABLE_ROLES)
    .rate_limit("appointments.create", "CREATE")
    .build()
)
staff_cancel = Pipeline.builder().up_to(StageLevel.STAFF).rate_limit("appointments.cancel", "MUTATION").build()


class AppointmentCreateRequest(BaseModel):
    appointment_type_id: str
    instructor_id: Optional[str] = None
    student_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    title: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = None


class AppointmentCancelRequest(BaseModel):
    version: Optional[int] = Field(None, ge=0)


@router.get("")
def list_appointments(
    instructor_id: Optional[str] = None,
    status: Optional[str] = None,
    ctx: ProcedureContext = Depends(procedure(STAFF)),
):
    appointments = AppointmentService(ctx.db, ctx.organization_id).list(
        instructor_id=instructor_id,
        status=status,
    )
    return {"appointments": [serialize_appointment(a) for a in appointments]}


@router.post("", status_code=201)
def create_appointment(
    body: AppointmentCreateRequest,
    ctx: ProcedureContext = Depends(procedure(instructor_create)),
):
    appointment = AppointmentService(ctx.db, ctx.organization_id).create(
        actor=ctx.membership,
        appointment_type_id=body.appointment_type_id,
        instructor_id=body.instructor_id,
        student_id=body.student_id,
        starts_at=body.starts_at,
        title=body.title,
        notes=body.notes,
    )
    ctx.db.commit()
    return serialize_appointment(appointment)


@router.post("/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: str,
    body: Optional[AppointmentCancelRequest] = None,
    ctx: ProcedureContext = Depends(procedure(staff_cancel)),
):
    appointment = AppointmentService(ctx.db, ctx.organization_id).cancel(
        appointment_id,
        expected_version=body.version if body else None,
    )
    ctx.db.commit()
    return serialize_appointment(appointment)

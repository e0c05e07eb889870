"""
Appointment booking within one organization.

New appointments copy delivery defaults from their appointment type.
The instructor must hold an instructor-capable role; the student, when
given, must be an active member of the same organization.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from coursecove.models.appointment import Appointment, AppointmentStatus
from coursecove.models.appointment_type import AppointmentTypeStatus
from coursecove.models.membership import (
    INSTRUCTOR_CAPABLE_ROLES,
    Membership,
    MembershipRole,
    MembershipStatus,
)
from coursecove.platform.errors import Conflict, NotFound, ValidationFailed
from coursecove.repositories.soft_delete import AppointmentRepository, AppointmentTypeRepository

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.CANCELLED.value,
})


class AppointmentService:
    def __init__(self, db: Session, organization_id: str):
        self.db = db
        self.organization_id = organization_id
        self.appointments = AppointmentRepository(db, organization_id)
        self.appointment_types = AppointmentTypeRepository(db, organization_id)

    def _active_member(self, membership_id: str) -> Membership:
        membership = self.db.query(Membership).filter(
            Membership.id == membership_id,
            Membership.organization_id == self.organization_id,
            Membership.status == MembershipStatus.ACTIVE.value,
        ).first()
        if membership is None:
            raise ValidationFailed("Member is not active in this organization", membership_id=membership_id)
        return membership

    def list(
        self,
        instructor_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Appointment]:
        query = self.db.query(Appointment).filter(
            Appointment.organization_id == self.organization_id,
            Appointment.deleted_at.is_(None),
        )
        if instructor_id:
            query = query.filter(Appointment.instructor_id == instructor_id)
        if status:
            query = query.filter(Appointment.status == status)
        return query.order_by(Appointment.starts_at.asc(), Appointment.created_at.asc()).all()

    def create(
        self,
        actor: Membership,
        appointment_type_id: str,
        instructor_id: Optional[str] = None,
        student_id: Optional[str] = None,
        starts_at: Optional[datetime] = None,
        title: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Appointment:
        appointment_type = self.appointment_types.get(appointment_type_id, include_deleted=False)
        if appointment_type is None:
            raise NotFound("Appointment type not found")
        if appointment_type.status != AppointmentTypeStatus.PUBLISHED.value:
            raise ValidationFailed("Appointment type is not published")

        instructor = self._active_member(instructor_id or actor.id)
        if MembershipRole(instructor.role) not in INSTRUCTOR_CAPABLE_ROLES:
            raise ValidationFailed("Selected member cannot teach appointments")

        student = self._active_member(student_id) if student_id else None
        if student is None:
            status = AppointmentStatus.UNBOOKED
        elif starts_at is None:
            status = AppointmentStatus.BOOKED
        else:
            status = AppointmentStatus.SCHEDULED

        appointment = self.appointments.create(
            appointment_type_id=appointment_type.id,
            instructor_id=instructor.id,
            student_id=student.id if student else None,
            created_by=actor.id,
            title=title or appointment_type.name,
            description=appointment_type.description,
            duration=appointment_type.duration,
            starts_at=starts_at,
            status=status.value,
            is_online=appointment_type.default_is_online,
            video_link=appointment_type.default_video_link,
            location_address=appointment_type.default_address,
            notes=notes,
            version=0,
        )
        logger.info(
            "Appointment created",
            extra={
                "appointment_id": appointment.id,
                "organization_id": self.organization_id,
                "status": status.value,
            },
        )
        return appointment

    def cancel(self, appointment_id: str, expected_version: Optional[int] = None) -> Appointment:
        appointment = self.appointments.get_or_404(appointment_id, include_deleted=False)
        if expected_version is not None and appointment.version != expected_version:
            raise Conflict(
                "This appointment was modified by someone else. Reload and try again.",
                expected_version=expected_version,
                current_version=appointment.version,
            )
        if appointment.status in TERMINAL_STATUSES:
            raise Conflict(f"Appointment is already {appointment.status.lower()}")

        appointment.status = AppointmentStatus.CANCELLED.value
        appointment.version = (appointment.version or 0) + 1
        self.db.flush()
        logger.info("Appointment cancelled", extra={"appointment_id": appointment_id})
        return appointment


def serialize_appointment(appointment: Appointment) -> Dict[str, Any]:
    return {
        "id": appointment.id,
        "appointment_type_id": appointment.appointment_type_id,
        "instructor_id": appointment.instructor_id,
        "student_id": appointment.student_id,
        "title": appointment.title,
        "duration": appointment.duration,
        "starts_at": appointment.starts_at.isoformat() if appointment.starts_at else None,
        "status": appointment.status,
        "is_online": appointment.is_online,
        "video_link": appointment.video_link,
        "location_address": appointment.location_address,
        "notes": appointment.notes,
        "version": appointment.version,
    }

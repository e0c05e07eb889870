"""
Appointment model.

Every membership reference on an appointment is ON DELETE RESTRICT:
a membership with appointments cannot be purged until those are
reassigned or resolved.
"""

import uuid
from enum import Enum

from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, ForeignKey, Index

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin, SoftDeleteMixin, OrganizationScopedMixin


class AppointmentStatus(str, Enum):
    UNBOOKED = "UNBOOKED"
    BOOKED = "BOOKED"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Appointment(Base, TimestampMixin, SoftDeleteMixin, OrganizationScopedMixin):
    """A single lesson between an instructor and a student."""

    __tablename__ = "appointments"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Internal UUID primary key"
    )

    appointment_type_id = Column(
        String(255),
        ForeignKey("appointment_types.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    instructor_id = Column(
        String(255),
        ForeignKey("memberships.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Instructor membership (RESTRICT)"
    )

    student_id = Column(
        String(255),
        ForeignKey("memberships.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Student membership (RESTRICT)"
    )

    created_by = Column(
        String(255),
        ForeignKey("memberships.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Creating membership (RESTRICT)"
    )

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    duration = Column(Integer, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        String(20),
        nullable=False,
        default=AppointmentStatus.UNBOOKED.value,
        index=True,
    )

    is_online = Column(Boolean, nullable=False, default=False)
    video_link = Column(String(500), nullable=True)
    location_address = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    version = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic lock counter"
    )

    __table_args__ = (
        Index("ix_appointments_org_status", "organization_id", "status"),
        Index("ix_appointments_instructor_starts_at", "instructor_id", "starts_at"),
    )

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, title={self.title}, status={self.status})>"

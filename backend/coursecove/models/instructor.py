"""
Instructor dependents of a Membership.

Both tables CASCADE on membership delete. They are left untouched by a
soft removal so that restoring a member is lossless.
"""

import uuid

from sqlalchemy import Column, String, Integer, Time, DateTime, ForeignKey, Index, UniqueConstraint, func
from sqlalchemy.orm import relationship

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin, OrganizationScopedMixin


class AppointmentTypeInstructor(Base, OrganizationScopedMixin):
    """Qualification: which instructor memberships may teach an appointment type."""

    __tablename__ = "appointment_type_instructors"

    id = Column(String(255), primary_key=True, default=lambda: str(uuid.uuid4()))

    appointment_type_id = Column(
        String(255),
        ForeignKey("appointment_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    instructor_id = Column(
        String(255),
        ForeignKey("memberships.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    appointment_type = relationship("AppointmentType", back_populates="instructors")
    membership = relationship("Membership", back_populates="qualifications")

    __table_args__ = (
        UniqueConstraint("appointment_type_id", "instructor_id", name="uq_appointment_type_instructor"),
    )


class InstructorAvailability(Base, TimestampMixin, OrganizationScopedMixin):
    """Weekly recurring availability block for an instructor membership."""

    __tablename__ = "instructor_availability"

    id = Column(String(255), primary_key=True, default=lambda: str(uuid.uuid4()))

    instructor_id = Column(
        String(255),
        ForeignKey("memberships.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    day_of_week = Column(Integer, nullable=False, comment="0 = Sunday")
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    membership = relationship("Membership", back_populates="availability")

    __table_args__ = (
        Index("ix_instructor_availability_instructor_day", "instructor_id", "day_of_week"),
    )

"""
AppointmentType model.

A bookable lesson template owned by one organization. Soft-deleted via
deleted_at ("archive"); archived types are hard-deleted by the retention
cleanup job once they are past the retention window and no appointment
references them.
"""

import uuid
from enum import Enum

from sqlalchemy import Column, String, Text, Integer, Boolean, Index
from sqlalchemy.orm import relationship

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin, SoftDeleteMixin, OrganizationScopedMixin


class AppointmentTypeStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    UNPUBLISHED = "UNPUBLISHED"


class AppointmentType(Base, TimestampMixin, SoftDeleteMixin, OrganizationScopedMixin):
    """Lesson template (name, duration, delivery defaults)."""

    __tablename__ = "appointment_types"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Internal UUID primary key"
    )

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    duration = Column(
        Integer,
        nullable=False,
        comment="Duration in minutes"
    )

    status = Column(
        String(20),
        nullable=False,
        default=AppointmentTypeStatus.DRAFT.value,
        index=True,
    )

    default_is_online = Column(Boolean, nullable=False, default=False)
    default_address = Column(String(500), nullable=True)
    default_video_link = Column(String(500), nullable=True)

    version = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic lock counter, incremented on every update"
    )

    instructors = relationship(
        "AppointmentTypeInstructor",
        back_populates="appointment_type",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_appointment_types_org_status", "organization_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<AppointmentType(id={self.id}, name={self.name}, status={self.status})>"

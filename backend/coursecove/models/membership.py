"""
Membership model.

Membership binds a User to an Organization with a role. It is the
tenant-level authorization record and the anchor for instructor data
(qualifications, availability, appointments).

Lifecycle:
- ACTIVE: created by organizationMembership.created sync
- REMOVED: soft delete (removed_at, removed_by set); dependents retained
- purged: hard delete by the retention cleanup job after the grace window

SECURITY:
- One row per (user, organization) pair; re-adding a removed member
  reactivates the existing row
- CASCADE from users/organizations; appointments RESTRICT deletion
"""

import uuid
from enum import Enum
from typing import FrozenSet, Optional

from sqlalchemy import Column, String, DateTime, Index, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin, utcnow


class MembershipRole(str, Enum):
    """Local fine-grained roles. Clerk only ever produces SUPER_ADMIN or STAFF."""
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    INSTRUCTOR = "INSTRUCTOR"
    STUDENT = "STUDENT"
    GUARDIAN = "GUARDIAN"
    STAFF = "STAFF"


class MembershipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


ADMIN_MEMBERSHIP_ROLES: FrozenSet[MembershipRole] = frozenset({
    MembershipRole.SUPER_ADMIN,
    MembershipRole.ADMIN,
})

# Roles that can teach and manage appointments
INSTRUCTOR_CAPABLE_ROLES: FrozenSet[MembershipRole] = frozenset({
    MembershipRole.SUPER_ADMIN,
    MembershipRole.INSTRUCTOR,
})


class Membership(Base, TimestampMixin):
    """User-to-organization binding with role and soft-delete state."""

    __tablename__ = "memberships"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Internal UUID primary key"
    )

    user_id = Column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="User ID (FK to users.id)"
    )

    organization_id = Column(
        String(255),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Organization ID (FK to organizations.id)"
    )

    clerk_membership_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Clerk organizationMembership ID"
    )

    role = Column(
        String(50),
        nullable=False,
        default=MembershipRole.STAFF.value,
        index=True,
        comment="MembershipRole value"
    )

    status = Column(
        String(20),
        nullable=False,
        default=MembershipStatus.ACTIVE.value,
        index=True,
    )

    removed_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the membership was soft-removed"
    )

    removed_by = Column(
        String(255),
        nullable=True,
        comment="clerk_user_id of the actor who removed the member; NULL for sync"
    )

    user = relationship("User", back_populates="memberships", lazy="joined")
    organization = relationship("Organization", back_populates="memberships", lazy="joined")

    availability = relationship(
        "InstructorAvailability",
        back_populates="membership",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    qualifications = relationship(
        "AppointmentTypeInstructor",
        back_populates="membership",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_membership_user_org"),
        Index("ix_memberships_org_status", "organization_id", "status"),
        Index("ix_memberships_status_removed_at", "status", "removed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Membership(id={self.id}, user_id={self.user_id}, "
            f"organization_id={self.organization_id}, role={self.role}, status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE.value

    @property
    def is_removed(self) -> bool:
        return self.status == MembershipStatus.REMOVED.value

    def mark_removed(self, removed_by: Optional[str] = None) -> None:
        self.status = MembershipStatus.REMOVED.value
        self.removed_at = utcnow()
        self.removed_by = removed_by

    def mark_active(self) -> None:
        self.status = MembershipStatus.ACTIVE.value
        self.removed_at = None
        self.removed_by = None

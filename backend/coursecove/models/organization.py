"""
Organization model.

An Organization is a tenant: one teaching business. Each row mirrors a
Clerk Organization and owns every tenant-scoped record through
organization_id.

The slug is the public path identifier. Format rules live in
coursecove.utils.slug.
"""

import uuid
from enum import Enum

from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin


class OrganizationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class Organization(Base, TimestampMixin):
    """Tenant record synced from a Clerk Organization."""

    __tablename__ = "organizations"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Internal UUID primary key"
    )

    clerk_org_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Clerk Organization ID"
    )

    name = Column(
        String(255),
        nullable=False,
        comment="Display name of the business"
    )

    slug = Column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="URL-friendly identifier (e.g., 'joes-music-1')"
    )

    image_url = Column(String(500), nullable=True)

    status = Column(
        String(20),
        nullable=False,
        default=OrganizationStatus.ACTIVE.value,
        index=True,
    )

    memberships = relationship(
        "Membership",
        back_populates="organization",
        lazy="select",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, clerk_org_id={self.clerk_org_id}, slug={self.slug})>"

    @property
    def is_active(self) -> bool:
        return self.status == OrganizationStatus.ACTIVE.value

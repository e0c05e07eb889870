"""
User model.

User is a local mirror of a Clerk user. Clerk is the source of truth for
authentication; rows are created and updated by identity-sync webhooks.

CRITICAL SECURITY:
- NO PASSWORDS are stored locally
- clerk_user_id is the natural key used for upserts
- Deletion is a status flip (DELETED), never a hard delete
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class User(Base, TimestampMixin):
    """Local user record synced from Clerk."""

    __tablename__ = "users"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Internal UUID primary key"
    )

    clerk_user_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Clerk user ID - source of truth for authentication"
    )

    email = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Primary email address (from Clerk)"
    )

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)

    avatar_url = Column(
        String(500),
        nullable=True,
        comment="Profile image URL (from Clerk)"
    )

    status = Column(
        String(20),
        nullable=False,
        default=UserStatus.ACTIVE.value,
        index=True,
        comment="ACTIVE or DELETED (soft delete)"
    )

    last_synced_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When user data was last synced from Clerk"
    )

    memberships = relationship(
        "Membership",
        back_populates="user",
        lazy="select",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, clerk_user_id={self.clerk_user_id}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    @property
    def display_name(self) -> str:
        """
        Return the best available display name.

        Priority: first + last name > email > clerk_user_id
        """
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return " ".join(parts)
        if self.email:
            return self.email
        return self.clerk_user_id

    def mark_synced(self) -> None:
        """Update the last_synced_at timestamp."""
        self.last_synced_at = datetime.now(timezone.utc)

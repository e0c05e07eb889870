"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- SoftDeleteMixin: deleted_at marker for soft-deletable entity families
- OrganizationScopedMixin: organization_id for row-level tenancy
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, DateTime, ForeignKey, func
from sqlalchemy.orm import declared_attr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on DateTime(timezone=True) columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class SoftDeleteMixin:
    """
    Mixin that adds a deleted_at column.

    Reads never filter on this column implicitly. Callers go through
    repositories.soft_delete and pass include_deleted explicitly.
    """

    deleted_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Soft delete marker; NULL while the row is live"
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class OrganizationScopedMixin:
    """
    Mixin that adds organization_id for row-level tenancy.

    SECURITY: organization_id is resolved from the verified session's org,
    NEVER from client input. RLS policies compare it to app.org_id.
    """

    @declared_attr
    def organization_id(cls):
        return Column(
            String(255),
            ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
            comment="Owning organization (internal id). NEVER from client input."
        )

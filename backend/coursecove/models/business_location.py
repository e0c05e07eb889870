"""
BusinessLocation model.

Physical teaching location of an organization. Soft-deleted via
deleted_at and purged by the retention cleanup job.
"""

import uuid

from sqlalchemy import Column, String, Text, Boolean

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin, SoftDeleteMixin, OrganizationScopedMixin


class BusinessLocation(Base, TimestampMixin, SoftDeleteMixin, OrganizationScopedMixin):
    __tablename__ = "business_locations"

    id = Column(String(255), primary_key=True, default=lambda: str(uuid.uuid4()))

    name = Column(String(100), nullable=False)
    address = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(50), nullable=False)
    zip_code = Column(String(20), nullable=False)
    notes = Column(Text, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    def __repr__(self) -> str:
        return f"<BusinessLocation(id={self.id}, name={self.name})>"

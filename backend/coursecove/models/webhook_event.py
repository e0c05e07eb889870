"""
WebhookEvent model: the identity-sync processing ledger.

One row per Clerk webhook delivery, keyed by the svix message id.
Used for idempotency - an event marked COMPLETED is never applied again -
and as the audit trail for failed deliveries. Rows are never deleted by
normal flow.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, String, Text, Integer, DateTime, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB

from coursecove.db_base import Base
from coursecove.models.base import TimestampMixin, SoftDeleteMixin, utcnow

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEvent(Base, TimestampMixin, SoftDeleteMixin):
    """Ledger row tracking processing state of one webhook delivery."""

    __tablename__ = "webhook_events"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    webhook_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Idempotency key (svix-id header)"
    )

    event_type = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Clerk event type (e.g., organizationMembership.created)"
    )

    payload = Column(JSONType, nullable=False, comment="Full Clerk event body")

    status = Column(
        String(20),
        nullable=False,
        default=WebhookEventStatus.PENDING.value,
        index=True,
    )

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    processed_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the event reached COMPLETED"
    )

    next_attempt_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Earliest time the worker may pick this event up again"
    )

    __table_args__ = (
        Index("ix_webhook_events_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_webhook_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(webhook_id={self.webhook_id}, type={self.event_type}, status={self.status})>"

    @property
    def is_completed(self) -> bool:
        return self.status == WebhookEventStatus.COMPLETED.value

    def mark_completed(self) -> None:
        self.status = WebhookEventStatus.COMPLETED.value
        self.attempts = (self.attempts or 0) + 1
        self.processed_at = utcnow()
        self.last_error = None
        self.next_attempt_at = None

    def mark_failed(self, error: str, next_attempt_at: Optional[datetime] = None) -> None:
        self.status = WebhookEventStatus.FAILED.value
        self.attempts = (self.attempts or 0) + 1
        self.last_error = error[:2000]
        self.next_attempt_at = next_attempt_at

"""
Audit logging for identity and membership changes.

Audit rows are append-only. They are added to the caller's session and
persisted by the caller's commit, so an audit entry never outlives a
rolled-back change.

Audited actions:
- membership lifecycle (removed, restored, purged, role changed)
- identity sync (user synced/deleted, organization synced/deleted)
- webhook processing failures
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, String, DateTime, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from coursecove.db_base import Base

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")

logger = logging.getLogger(__name__)

REDACTED_FIELDS = frozenset({"email", "phone", "phone_number", "token", "secret"})
REDACTION_MARKER = "[REDACTED]"


class AuditAction(str, Enum):
    MEMBERSHIP_CREATED = "membership.created"
    MEMBERSHIP_ROLE_CHANGED = "membership.role_changed"
    MEMBERSHIP_REMOVED = "membership.removed"
    MEMBERSHIP_RESTORED = "membership.restored"
    MEMBERSHIP_PURGED = "membership.purged"
    USER_SYNCED = "identity.user_synced"
    USER_DELETED = "identity.user_deleted"
    ORGANIZATION_SYNCED = "identity.organization_synced"
    ORGANIZATION_DELETED = "identity.organization_deleted"
    WEBHOOK_FAILED = "webhook.failed"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditLog(Base):
    """Append-only audit table."""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String(255), nullable=True, index=True)  # NULL for global identity events
    actor_id = Column(String(255), nullable=True, index=True)  # NULL for system events
    action = Column(String(100), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True, index=True)
    event_metadata = Column(JSONType, nullable=False, default=dict)
    source = Column(String(50), nullable=False, default="api")  # api, webhook, job
    outcome = Column(String(20), nullable=False, default="success")

    __table_args__ = (
        Index("ix_audit_logs_org_timestamp", "organization_id", "timestamp"),
    )


def redact(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively replace PII values with a marker."""
    result = {}
    for key, value in data.items():
        if key.lower() in REDACTED_FIELDS:
            result[key] = REDACTION_MARKER
        elif isinstance(value, dict):
            result[key] = redact(value)
        else:
            result[key] = value
    return result


@dataclass
class AuditEvent:
    action: AuditAction
    organization_id: Optional[str] = None
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str = "api"
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to column values with PII redaction."""
        return {
            "organization_id": self.organization_id,
            "actor_id": self.actor_id,
            "action": self.action.value,
            "timestamp": self.timestamp,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "event_metadata": redact(self.metadata),
            "source": self.source,
            "outcome": self.outcome.value,
        }


def write_audit_log_sync(db: Session, event: AuditEvent) -> AuditLog:
    """
    Add an audit row to the session.

    The row is flushed with the caller's unit of work; no commit here.
    """
    audit_log = AuditLog(**event.to_dict())
    db.add(audit_log)

    logger.info(
        "Audit event recorded",
        extra={
            "action": event.action.value,
            "organization_id": event.organization_id,
            "actor_id": event.actor_id,
            "resource_id": event.resource_id,
            "source": event.source,
            "outcome": event.outcome.value,
        },
    )
    return audit_log

"""
Membership lifecycle: remove, restore, permanently delete, scheduled purge.

State machine:

    ACTIVE --remove--> REMOVED --restore (within retention)--> ACTIVE
                       REMOVED --permanently_delete / purge--> (row gone)

Removal keeps qualifications and availability so a restore is lossless.
Permanent deletion removes those dependents and is refused while any
appointment still references the membership (instructor, student or
creator). Blocked dependents are resolved manually; nothing is reassigned.

Methods flush but never commit, except purge_expired which isolates each
candidate in a savepoint and commits the batch.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursecove.config.settings import get_settings
from coursecove.models.appointment import Appointment
from coursecove.models.base import as_utc, utcnow
from coursecove.models.instructor import AppointmentTypeInstructor, InstructorAvailability
from coursecove.models.membership import Membership, MembershipStatus
from coursecove.platform.audit import AuditAction, AuditEvent, write_audit_log_sync
from coursecove.platform.errors import Conflict, Expired, NotFound, RestrictedDelete

logger = logging.getLogger(__name__)

CRITICAL_DAYS = 3
WARNING_DAYS = 7


class UrgencyLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


def urgency_level(days_remaining: int) -> UrgencyLevel:
    if days_remaining <= CRITICAL_DAYS:
        return UrgencyLevel.CRITICAL
    if days_remaining <= WARNING_DAYS:
        return UrgencyLevel.WARNING
    return UrgencyLevel.NORMAL


def days_since(removed_at: datetime, now: datetime) -> int:
    return max(int((now - as_utc(removed_at)).total_seconds() // 86400), 0)


def days_remaining(removed_at: datetime, now: datetime, retention_days: int) -> int:
    """Whole days left in the grace window, never negative."""
    return max(retention_days - days_since(removed_at, now), 0)


@dataclass(frozen=True)
class RemovedMemberSummary:
    membership: Membership
    days_since_removal: int
    days_remaining: int
    urgency: UrgencyLevel


class MembershipLifecycle:
    """Soft-delete lifecycle for memberships within one store session."""

    def __init__(
        self,
        db: Session,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.retention_days = (
            retention_days if retention_days is not None
            else get_settings().membership_retention_days
        )
        self._clock = clock

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    def get(self, membership_id: str, organization_id: Optional[str] = None) -> Membership:
        query = self.db.query(Membership).filter(Membership.id == membership_id)
        if organization_id is not None:
            query = query.filter(Membership.organization_id == organization_id)
        membership = query.first()
        if membership is None:
            raise NotFound("Membership not found", membership_id=membership_id)
        return membership

    def list_removed(self, organization_id: str) -> List[RemovedMemberSummary]:
        now = self._clock()
        rows = (
            self.db.query(Membership)
            .filter(
                Membership.organization_id == organization_id,
                Membership.status == MembershipStatus.REMOVED.value,
            )
            .order_by(Membership.removed_at.asc())
            .all()
        )
        summaries = []
        for membership in rows:
            remaining = days_remaining(membership.removed_at, now, self.retention_days)
            summaries.append(RemovedMemberSummary(
                membership=membership,
                days_since_removal=days_since(membership.removed_at, now),
                days_remaining=remaining,
                urgency=urgency_level(remaining),
            ))
        return summaries

    def remove(
        self,
        membership_id: str,
        actor: Optional[str],
        organization_id: Optional[str] = None,
    ) -> Membership:
        """
        ACTIVE -> REMOVED.

        Raises:
            NotFound: unknown membership
            Conflict: already removed
        """
        membership = self.get(membership_id, organization_id)
        if membership.is_removed:
            raise Conflict("Membership is already removed", membership_id=membership_id)

        membership.mark_removed(removed_by=actor)
        membership.removed_at = self._clock()
        self.db.flush()

        write_audit_log_sync(self.db, AuditEvent(
            action=AuditAction.MEMBERSHIP_REMOVED,
            organization_id=membership.organization_id,
            actor_id=actor,
            resource_type="membership",
            resource_id=membership.id,
            metadata={"user_id": membership.user_id, "role": membership.role},
        ))
        logger.info(
            "Membership removed",
            extra={"membership_id": membership.id, "removed_by": actor},
        )
        return membership

    def restore(
        self,
        membership_id: str,
        organization_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Membership:
        """
        REMOVED -> ACTIVE within the retention window.

        Raises:
            NotFound: unknown membership
            Conflict: membership is not removed
            Expired: removed longer than the retention window
        """
        membership = self.get(membership_id, organization_id)
        if not membership.is_removed:
            raise Conflict("Membership is not removed", membership_id=membership_id)

        removed_at = as_utc(membership.removed_at)
        if removed_at is not None and self._clock() - removed_at > self.retention:
            raise Expired(
                f"Membership was removed more than {self.retention_days} days ago and cannot be restored",
                membership_id=membership_id,
            )

        membership.mark_active()
        self.db.flush()

        write_audit_log_sync(self.db, AuditEvent(
            action=AuditAction.MEMBERSHIP_RESTORED,
            organization_id=membership.organization_id,
            actor_id=actor,
            resource_type="membership",
            resource_id=membership.id,
            metadata={"user_id": membership.user_id},
        ))
        logger.info("Membership restored", extra={"membership_id": membership.id})
        return membership

    def count_blocking_appointments(self, membership_id: str) -> int:
        return (
            self.db.query(Appointment)
            .filter(or_(
                Appointment.instructor_id == membership_id,
                Appointment.student_id == membership_id,
                Appointment.created_by == membership_id,
            ))
            .count()
        )

    def permanently_delete(
        self,
        membership_id: str,
        organization_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> None:
        """
        Hard delete a REMOVED membership and its dependents.

        Raises:
            NotFound: unknown membership
            Conflict: membership is still active
            RestrictedDelete: appointments still reference the membership
        """
        membership = self.get(membership_id, organization_id)
        if not membership.is_removed:
            raise Conflict("Only removed memberships can be permanently deleted", membership_id=membership_id)

        blocked = self.count_blocking_appointments(membership.id)
        if blocked:
            raise RestrictedDelete(
                f"Membership is referenced by {blocked} appointment(s); reassign or cancel them first",
                blocked_count=blocked,
            )

        org_id = membership.organization_id
        user_id = membership.user_id
        self.db.query(InstructorAvailability).filter(
            InstructorAvailability.instructor_id == membership.id
        ).delete(synchronize_session=False)
        self.db.query(AppointmentTypeInstructor).filter(
            AppointmentTypeInstructor.instructor_id == membership.id
        ).delete(synchronize_session=False)
        self.db.delete(membership)
        self.db.flush()

        write_audit_log_sync(self.db, AuditEvent(
            action=AuditAction.MEMBERSHIP_PURGED,
            organization_id=org_id,
            actor_id=actor,
            resource_type="membership",
            resource_id=membership_id,
            metadata={"user_id": user_id},
            source="api" if actor else "job",
        ))
        logger.info("Membership permanently deleted", extra={"membership_id": membership_id})

    def expired_candidates(self) -> List[Membership]:
        cutoff = self._clock() - self.retention
        return (
            self.db.query(Membership)
            .filter(
                Membership.status == MembershipStatus.REMOVED.value,
                Membership.removed_at.isnot(None),
                Membership.removed_at < cutoff,
            )
            .all()
        )

    def purge_expired(self) -> Dict[str, int]:
        """
        Permanently delete every membership removed longer than the window.

        Per-item failures are logged and skipped.

        Returns:
            {"deleted": n, "total": candidates}
        """
        candidate_ids = [m.id for m in self.expired_candidates()]
        deleted = 0

        for membership_id in candidate_ids:
            savepoint = self.db.begin_nested()
            try:
                self.permanently_delete(membership_id)
                savepoint.commit()
                deleted += 1
            except (RestrictedDelete, IntegrityError) as exc:
                savepoint.rollback()
                logger.warning(
                    "Skipping membership purge",
                    extra={"membership_id": membership_id, "error": str(exc)},
                )

        self.db.commit()
        logger.info(
            "Membership purge finished",
            extra={"deleted": deleted, "total": len(candidate_ids)},
        )
        return {"deleted": deleted, "total": len(candidate_ids)}

"""
Idempotent processing of Clerk identity-sync events.

Flow for one delivery:

    record_event()  -> ledger row (pending), committed before any effect
    process()       -> lock row, completed? return early
                       dispatch on EventKind via ClerkSyncService
                       mark completed | failed (with next_attempt_at), commit
                       failures are re-raised for the outer scheduler

The membership.created handler waits for its user and organization rows
with a nested, un-jittered exponential backoff (1s, 2s, 4s, 8s with the
defaults). Every wait re-checks both dependencies. The row lock is
released before each wait, so no transaction stays open across a sleep.
The worker first runs each event with wait_for_dependencies=False and
waits only for the events it had to defer, after the rest of its batch.

Replaying a webhook_id whose ledger row is COMPLETED performs no writes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursecove.config.settings import Settings, get_settings
from coursecove.jobs.retry import (
    RetryPolicy,
    calculate_backoff,
    log_retry_decision,
    should_retry,
)
from coursecove.models.webhook_event import WebhookEvent, WebhookEventStatus
from coursecove.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    write_audit_log_sync,
)
from coursecove.platform.errors import DependencyNotReady, NotFound
from coursecove.services.clerk_sync_service import ClerkSyncService
from coursecove.services.webhook_events import ClerkEvent, EventKind, parse_event

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


class ProcessingOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    UNHANDLED = "unhandled"
    DEFERRED = "deferred"


@dataclass
class ProcessingResult:
    webhook_id: str
    event_type: str
    outcome: ProcessingOutcome
    result: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "result": self.result,
        }


def get_event(db: Session, webhook_id: str, lock: bool = False) -> Optional[WebhookEvent]:
    query = db.query(WebhookEvent).filter(WebhookEvent.webhook_id == webhook_id)
    if lock:
        query = query.with_for_update().populate_existing()
    return query.first()


def record_event(db: Session, webhook_id: str, body: Dict[str, Any]) -> WebhookEvent:
    """
    Upsert the ledger row for a delivery and commit it.

    Re-deliveries return the existing row untouched. A concurrent insert of
    the same webhook_id loses on the unique constraint and re-reads.
    """
    existing = get_event(db, webhook_id)
    if existing is not None:
        logger.info(
            "Webhook event already recorded",
            extra={"webhook_id": webhook_id, "status": existing.status},
        )
        return existing

    event = WebhookEvent(
        webhook_id=webhook_id,
        event_type=str(body.get("type") or "unknown"),
        payload=body,
        status=WebhookEventStatus.PENDING.value,
        attempts=0,
    )
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_event(db, webhook_id)
        if existing is None:
            raise
        return existing

    logger.info(
        "Webhook event recorded",
        extra={"webhook_id": webhook_id, "event_type": event.event_type},
    )
    return event


class WebhookProcessor:
    """
    Applies ledger rows to the local store.

    Args:
        db: Session owned by the caller; this class commits and rolls back
        settings: retry configuration (defaults to get_settings())
        sleep: awaitable used for dependency waits (tests inject a mock)
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.sync = ClerkSyncService(db, source="webhook")

    @property
    def event_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.webhook_max_attempts,
            base_delay_seconds=self.settings.webhook_retry_base_delay,
        )

    @property
    def dependency_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.membership_dependency_max_attempts,
            base_delay_seconds=self.settings.membership_dependency_base_delay,
            jitter_factor=0.0,
        )

    async def handle_delivery(self, webhook_id: str, body: Dict[str, Any]) -> ProcessingResult:
        """Record then process in one call (inline mode)."""
        record_event(self.db, webhook_id, body)
        return await self.process(webhook_id)

    async def process(self, webhook_id: str, wait_for_dependencies: bool = True) -> ProcessingResult:
        """
        Process one recorded event.

        The ledger row is locked only while the handler runs. When a
        membership event's user or organization is missing, the transaction
        is rolled back (releasing the lock) before each backoff wait and the
        row is re-locked afterwards, so a duplicate delivery arriving in the
        meantime completes the row and this call reports it as already
        processed.

        With wait_for_dependencies=False a missing dependency returns a
        DEFERRED result and leaves the ledger row untouched.

        Raises:
            NotFound: no ledger row for webhook_id
            Exception: whatever the handler raised, after the failure is persisted
        """
        policy = self.dependency_policy
        max_waits = max(policy.max_attempts, 1)

        for wait in range(max_waits):
            event = get_event(self.db, webhook_id, lock=True)
            if event is None:
                raise NotFound(f"Webhook event {webhook_id} not found")

            event_type = event.event_type
            if event.is_completed:
                self.db.rollback()
                logger.info(
                    "Webhook event already processed",
                    extra={"webhook_id": webhook_id, "event_type": event_type},
                )
                return ProcessingResult(
                    webhook_id=webhook_id,
                    event_type=event_type,
                    outcome=ProcessingOutcome.ALREADY_PROCESSED,
                )

            attempt = (event.attempts or 0) + 1
            try:
                clerk_event = parse_event(event.payload)
                outcome, result = self._dispatch(clerk_event)
                event.mark_completed()
                self.db.commit()
            except DependencyNotReady as exc:
                self.db.rollback()
                if not wait_for_dependencies:
                    logger.info(
                        "Webhook event deferred, dependencies not ready",
                        extra={"webhook_id": webhook_id, "event_type": event_type},
                    )
                    return ProcessingResult(
                        webhook_id=webhook_id,
                        event_type=event_type,
                        outcome=ProcessingOutcome.DEFERRED,
                    )
                if wait + 1 >= max_waits:
                    logger.error(
                        "Webhook event dependencies never arrived",
                        extra={"webhook_id": webhook_id, "event_type": event_type, "waits": max_waits},
                    )
                    self._record_failure(webhook_id, event_type, attempt, exc)
                    raise
                delay = calculate_backoff(wait, policy)
                logger.warning(
                    "Webhook event dependencies not ready, waiting",
                    extra={
                        "webhook_id": webhook_id,
                        "event_type": event_type,
                        "wait": wait + 1,
                        "delay_seconds": delay,
                    },
                )
                await self._sleep(delay)
                continue
            except Exception as exc:
                self.db.rollback()
                self._record_failure(webhook_id, event_type, attempt, exc)
                raise

            logger.info(
                "Webhook event processed",
                extra={
                    "webhook_id": webhook_id,
                    "event_type": event_type,
                    "outcome": outcome.value,
                    "attempt": attempt,
                },
            )
            return ProcessingResult(
                webhook_id=webhook_id,
                event_type=event_type,
                outcome=outcome,
                result=result,
            )

    def _record_failure(self, webhook_id: str, event_type: str, attempt: int, exc: BaseException) -> None:
        event = get_event(self.db, webhook_id)
        if event is None:
            return

        decision = should_retry(exc, attempt, self.event_policy)
        event.mark_failed(
            f"{type(exc).__name__}: {exc}",
            next_attempt_at=decision.next_attempt_at if decision.should_retry else None,
        )
        log_retry_decision(webhook_id, event_type, decision)
        write_audit_log_sync(self.db, AuditEvent(
            action=AuditAction.WEBHOOK_FAILED,
            resource_type="webhook_event",
            resource_id=event.id,
            metadata={
                "webhook_id": webhook_id,
                "event_type": event_type,
                "attempt": attempt,
                "error": str(exc)[:500],
                "will_retry": decision.should_retry,
            },
            source="webhook",
            outcome=AuditOutcome.FAILURE,
        ))
        self.db.commit()
        logger.error(
            "Webhook event processing failed",
            extra={"webhook_id": webhook_id, "event_type": event_type, "attempt": attempt},
            exc_info=exc,
        )

    def _dispatch(self, event: ClerkEvent):
        kind = event.kind
        data = event.data

        if kind == EventKind.USER_UPSERTED:
            user = self.sync.sync_user(
                clerk_user_id=data.clerk_user_id,
                email=data.email,
                first_name=data.first_name,
                last_name=data.last_name,
                avatar_url=data.avatar_url,
            )
            return ProcessingOutcome.PROCESSED, {"user_id": user.id}

        if kind == EventKind.USER_DELETED:
            deleted = self.sync.delete_user(data.clerk_id)
            return ProcessingOutcome.PROCESSED, {"clerk_user_id": data.clerk_id, "deleted": deleted}

        if kind == EventKind.ORGANIZATION_UPSERTED:
            organization = self.sync.sync_organization(
                clerk_org_id=data.clerk_org_id,
                name=data.name,
                slug=data.slug,
                image_url=data.image_url,
            )
            return ProcessingOutcome.PROCESSED, {
                "organization_id": organization.id,
                "slug": organization.slug,
            }

        if kind == EventKind.ORGANIZATION_DELETED:
            deleted = self.sync.delete_organization(data.clerk_id)
            return ProcessingOutcome.PROCESSED, {"clerk_org_id": data.clerk_id, "deleted": deleted}

        if kind == EventKind.MEMBERSHIP_CREATED:
            # Raises DependencyNotReady until the user and organization exist
            membership = self.sync.sync_membership(
                clerk_user_id=data.clerk_user_id,
                clerk_org_id=data.clerk_org_id,
                clerk_role=data.role,
                clerk_membership_id=data.clerk_membership_id,
            )
            return ProcessingOutcome.PROCESSED, {
                "membership_id": membership.id,
                "role": membership.role,
            }

        if kind == EventKind.MEMBERSHIP_UPDATED:
            membership = self.sync.update_membership_role(
                clerk_user_id=data.clerk_user_id,
                clerk_org_id=data.clerk_org_id,
                clerk_role=data.role,
                clerk_membership_id=data.clerk_membership_id,
            )
            return ProcessingOutcome.PROCESSED, {
                "membership_id": membership.id,
                "role": membership.role,
            }

        if kind == EventKind.MEMBERSHIP_DELETED:
            membership = self.sync.remove_membership(data.clerk_user_id, data.clerk_org_id)
            return ProcessingOutcome.PROCESSED, {
                "membership_id": membership.id if membership else None,
            }

        logger.warning("Unhandled webhook event type", extra={"event_type": event.event_type})
        return ProcessingOutcome.UNHANDLED, {"event_type": event.event_type}


async def replay_event(db: Session, webhook_id: str, processor: Optional[WebhookProcessor] = None) -> ProcessingResult:
    """
    Operator replay of a failed event.

    Resets the row to pending and processes it once. Completed events
    are reported as already processed.
    """
    event = get_event(db, webhook_id)
    if event is None:
        raise NotFound(f"Webhook event {webhook_id} not found")

    if not event.is_completed:
        event.status = WebhookEventStatus.PENDING.value
        event.next_attempt_at = None
        db.commit()
        logger.info("Replaying webhook event", extra={"webhook_id": webhook_id})

    processor = processor or WebhookProcessor(db)
    return await processor.process(webhook_id)

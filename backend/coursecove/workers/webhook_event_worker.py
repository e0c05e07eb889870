"""
Webhook event worker: drains the identity-sync ledger.

Runs as a long-lived process. Each cycle:
1. Selects due events: pending, or failed with a scheduled retry whose
   next_attempt_at has passed, and attempts below WEBHOOK_MAX_ATTEMPTS
2. Processes each one through WebhookProcessor without waiting on
   missing dependencies; deferred events then wait with backoff once the
   rest of the batch has run
3. Failures are recorded on the ledger row by the processor (with the
   next retry time); the worker only counts them

Events that exhaust their budget stay FAILED with last_error and no
next_attempt_at. They are picked up again only through replay_event().

Usage:
    python -m coursecove.workers.webhook_event_worker
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from coursecove.config.settings import Settings, get_settings
from coursecove.database.session import get_session_factory
from coursecove.models.webhook_event import WebhookEvent, WebhookEventStatus
from coursecove.services.webhook_processor import ProcessingOutcome, WebhookProcessor

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_CYCLE = 50


@dataclass
class WorkerStats:
    """Cumulative statistics for the worker process lifetime."""

    cycles: int = 0
    processed: int = 0
    failed: int = 0
    deferred: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return {
            "cycles": self.cycles,
            "processed": self.processed,
            "failed": self.failed,
            "deferred": self.deferred,
            "errors": self.errors,
            "uptime_seconds": round(uptime, 2),
        }


def due_event_ids(
    db: Session,
    max_attempts: int,
    now: Optional[datetime] = None,
    limit: int = MAX_EVENTS_PER_CYCLE,
) -> List[str]:
    now = now or datetime.now(timezone.utc)
    rows = (
        db.query(WebhookEvent.webhook_id)
        .filter(
            WebhookEvent.deleted_at.is_(None),
            WebhookEvent.attempts < max_attempts,
            or_(
                WebhookEvent.status == WebhookEventStatus.PENDING.value,
                and_(
                    WebhookEvent.status == WebhookEventStatus.FAILED.value,
                    WebhookEvent.next_attempt_at.isnot(None),
                    WebhookEvent.next_attempt_at <= now,
                ),
            ),
        )
        .order_by(WebhookEvent.created_at.asc())
        .limit(limit)
        .all()
    )
    return [row.webhook_id for row in rows]


async def _process_one(
    processor: WebhookProcessor,
    webhook_id: str,
    stats: WorkerStats,
    wait_for_dependencies: bool,
) -> Optional[ProcessingOutcome]:
    try:
        result = await processor.process(webhook_id, wait_for_dependencies=wait_for_dependencies)
    except Exception as exc:
        # failure already persisted on the ledger row
        stats.failed += 1
        logger.warning(
            "webhook_worker.event_failed",
            extra={"webhook_id": webhook_id, "error": str(exc)},
        )
        return None

    if result.outcome != ProcessingOutcome.DEFERRED:
        stats.processed += 1
    return result.outcome


async def run_cycle(
    db: Session,
    stats: WorkerStats,
    settings: Optional[Settings] = None,
    processor: Optional[WebhookProcessor] = None,
) -> None:
    """
    Process every due event once.

    Events whose dependencies are missing (a membership before its user or
    organization) are deferred on the first pass and only wait with backoff
    after the rest of the batch has run, so rows arriving later in the same
    batch can satisfy them.
    """
    settings = settings or get_settings()
    processor = processor or WebhookProcessor(db, settings=settings)

    try:
        webhook_ids = due_event_ids(db, settings.webhook_max_attempts)
        db.rollback()
    except Exception:
        stats.errors += 1
        db.rollback()
        logger.exception("webhook_worker.poll_error", extra={"cycle": stats.cycles})
        return

    deferred: List[str] = []
    for webhook_id in webhook_ids:
        outcome = await _process_one(processor, webhook_id, stats, wait_for_dependencies=False)
        if outcome == ProcessingOutcome.DEFERRED:
            deferred.append(webhook_id)

    stats.deferred += len(deferred)
    for webhook_id in deferred:
        await _process_one(processor, webhook_id, stats, wait_for_dependencies=True)

    stats.cycles += 1
    if webhook_ids:
        logger.info(
            "webhook_worker.cycle_completed",
            extra={"cycle": stats.cycles, "events": len(webhook_ids), **stats.to_dict()},
        )


async def run_worker() -> None:
    """Main loop. Runs until SIGTERM/SIGINT."""
    settings = get_settings()
    stats = WorkerStats()
    shutdown_event = asyncio.Event()

    def _handle_signal(sig, _frame):
        logger.info("Received signal %s, shutting down gracefully", sig)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Webhook event worker starting",
        extra={
            "poll_interval_seconds": settings.webhook_worker_poll_interval,
            "max_attempts": settings.webhook_max_attempts,
        },
    )

    session_factory = get_session_factory()
    while not shutdown_event.is_set():
        session = session_factory()
        try:
            await run_cycle(session, stats, settings=settings)
        finally:
            session.close()

        try:
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=settings.webhook_worker_poll_interval,
            )
        except asyncio.TimeoutError:
            pass

    logger.info("Webhook event worker stopped", extra=stats.to_dict())


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        asyncio.run(run_worker())
    except Exception as e:
        logger.error("Webhook event worker crashed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()

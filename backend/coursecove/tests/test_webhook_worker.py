"""
Tests for the webhook event worker.

Covers:
- Due selection: pending rows, failed rows whose retry time has passed
- Terminal and exhausted rows are never picked up
- One cycle processes every due event and counts failures
- Events missing a dependency run after the rest of the batch
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from coursecove.models import Membership, WebhookEvent
from coursecove.services.webhook_processor import (
    ProcessingOutcome,
    WebhookProcessor,
    get_event,
    record_event,
)
from coursecove.workers.webhook_event_worker import WorkerStats, due_event_ids, run_cycle

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def add_event(db_session):
    def _add(webhook_id, status="pending", attempts=0, next_attempt_at=None, deleted=False):
        event = WebhookEvent(
            webhook_id=webhook_id,
            event_type="user.created",
            payload={"type": "user.created", "data": {"id": f"user_{webhook_id}"}},
            status=status,
            attempts=attempts,
            next_attempt_at=next_attempt_at,
            deleted_at=NOW if deleted else None,
        )
        db_session.add(event)
        db_session.flush()
        return event
    return _add


class TestDueEventIds:

    def test_selection(self, db_session, add_event):
        add_event("pending")
        add_event("retry_due", status="failed", attempts=1, next_attempt_at=NOW - timedelta(seconds=1))
        add_event("retry_later", status="failed", attempts=1, next_attempt_at=NOW + timedelta(minutes=5))
        add_event("terminal", status="failed", attempts=2, next_attempt_at=None)
        add_event("exhausted", status="failed", attempts=5, next_attempt_at=NOW - timedelta(minutes=1))
        add_event("completed", status="completed", attempts=1)
        add_event("deleted", deleted=True)

        assert set(due_event_ids(db_session, max_attempts=5, now=NOW)) == {"pending", "retry_due"}

    def test_respects_limit(self, db_session, add_event):
        for i in range(5):
            add_event(f"evt_{i}")
        assert len(due_event_ids(db_session, max_attempts=5, now=NOW, limit=3)) == 3


class TestRunCycle:

    @pytest.mark.asyncio
    async def test_processes_due_events(self, db_session, settings):
        record_event(db_session, "msg_ok", {"type": "user.created", "data": {"id": "user_1"}})
        record_event(db_session, "msg_bad", {
            "type": "organizationMembership.created",
            "data": {"organization": {"id": "org_1"}, "public_user_data": {"user_id": "user_9"}},
        })
        processor = WebhookProcessor(db_session, settings=settings, sleep=AsyncMock())
        stats = WorkerStats()

        await run_cycle(db_session, stats, settings=settings, processor=processor)

        assert stats.cycles == 1
        assert stats.processed == 1
        assert stats.failed == 1
        assert stats.deferred == 1
        assert get_event(db_session, "msg_ok").status == "completed"
        failed = get_event(db_session, "msg_bad")
        assert failed.status == "failed"
        assert failed.next_attempt_at is not None

    @pytest.mark.asyncio
    async def test_second_cycle_skips_scheduled_retry(self, db_session, settings):
        record_event(db_session, "msg_bad", {
            "type": "organizationMembership.created",
            "data": {"organization": {"id": "org_1"}, "public_user_data": {"user_id": "user_9"}},
        })
        processor = WebhookProcessor(db_session, settings=settings, sleep=AsyncMock())
        stats = WorkerStats()

        await run_cycle(db_session, stats, settings=settings, processor=processor)
        await run_cycle(db_session, stats, settings=settings, processor=processor)

        assert stats.cycles == 2
        assert stats.failed == 1
        assert get_event(db_session, "msg_bad").attempts == 1

    @pytest.mark.asyncio
    async def test_membership_waits_for_user_later_in_batch(self, db_session, settings, make_org):
        make_org(clerk_org_id="org_1")
        db_session.commit()
        record_event(db_session, "msg_member", {
            "type": "organizationMembership.created",
            "data": {
                "id": "orgmem_9",
                "role": "org:member",
                "organization": {"id": "org_1"},
                "public_user_data": {"user_id": "user_9"},
            },
        })
        record_event(db_session, "msg_user", {"type": "user.created", "data": {"id": "user_9"}})
        sleep = AsyncMock()
        processor = WebhookProcessor(db_session, settings=settings, sleep=sleep)
        stats = WorkerStats()

        await run_cycle(db_session, stats, settings=settings, processor=processor)

        assert db_session.query(Membership).count() == 1
        assert get_event(db_session, "msg_member").status == "completed"
        assert get_event(db_session, "msg_user").status == "completed"
        assert sleep.await_count == 0
        assert stats.processed == 2
        assert stats.deferred == 1
        assert stats.failed == 0

    @pytest.mark.asyncio
    async def test_deferred_event_leaves_row_untouched(self, db_session, settings):
        record_event(db_session, "msg_bad", {
            "type": "organizationMembership.created",
            "data": {"organization": {"id": "org_1"}, "public_user_data": {"user_id": "user_9"}},
        })
        processor = WebhookProcessor(db_session, settings=settings, sleep=AsyncMock())

        result = await processor.process("msg_bad", wait_for_dependencies=False)

        assert result.outcome == ProcessingOutcome.DEFERRED
        event = get_event(db_session, "msg_bad")
        assert event.status == "pending"
        assert event.attempts == 0


    def test_stats_to_dict(self):
        stats = WorkerStats(cycles=2, processed=3)
        data = stats.to_dict()
        assert data["cycles"] == 2
        assert data["processed"] == 3
        assert data["uptime_seconds"] >= 0

"""
Tests for the buffered audit logger: visibility, filters, paging and
statistics.
"""

from datetime import timedelta
from uuid import uuid4

from sqlalchemy import func, select

from board_voting.models import AuditEventType, AuditLog, AuditSeverity, utcnow
from board_voting.services.audit_logger import AuditLogger, AuditQuery


async def persisted_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(AuditLog))


# =============================================================================
# WRITE PATH
# =============================================================================


class TestBuffering:
    async def test_entries_are_readable_before_flush(self, session_factory, audit):
        item_id = uuid4()
        await audit.log(AuditEventType.VOTE_RECORDED, "vote_cast", "vote", resource_id=item_id)

        assert await persisted_count(session_factory) == 0
        entries, total = await audit.query(AuditQuery(resource_id=item_id))
        assert total == 1
        assert entries[0].action == "vote_cast"

    async def test_flush_writes_buffer_without_duplicates(self, session_factory, audit):
        for _ in range(3):
            await audit.log(AuditEventType.VOTE_RECORDED, "vote_cast", "vote")

        assert await audit.flush() == 3
        assert audit.pending_count == 0
        assert await persisted_count(session_factory) == 3

        await audit.log(AuditEventType.VOTE_RECORDED, "vote_updated", "vote")
        _, total = await audit.query(AuditQuery())
        assert total == 4

    async def test_full_batch_flushes_immediately(self, session_factory):
        audit = AuditLogger(session_factory, batch_size=2, flush_interval=60.0)

        await audit.log(AuditEventType.SCHEDULER_RUN, "deadline_sweep", "scheduler")
        await audit.log(AuditEventType.SCHEDULER_RUN, "deadline_sweep", "scheduler")

        assert audit.pending_count == 0
        assert await persisted_count(session_factory) == 2

    async def test_details_are_made_json_safe(self, audit):
        item_id = uuid4()
        entry = await audit.log(
            AuditEventType.VOTING_OPENED, "open_voting", "resolution",
            details={"item": item_id, "severity": AuditSeverity.INFO, "when": utcnow()},
        )
        assert entry.details["item"] == str(item_id)
        assert entry.details["severity"] == "info"
        assert isinstance(entry.details["when"], str)

        await audit.flush()
        entries, _ = await audit.query(AuditQuery(event_types=[AuditEventType.VOTING_OPENED]))
        assert entries[0].details["item"] == str(item_id)


# =============================================================================
# QUERIES
# =============================================================================


class TestQuery:
    async def test_filters_and_paging_span_buffer_and_table(self, audit):
        user_id = uuid4()
        for n in range(4):
            await audit.log(AuditEventType.VOTE_RECORDED, f"vote_{n}", "vote", user_id=user_id)
        await audit.flush()
        for n in range(4, 6):
            await audit.log(AuditEventType.VOTE_RECORDED, f"vote_{n}", "vote", user_id=user_id)
        await audit.log(AuditEventType.SYSTEM_ERROR, "boom", "listener", success=False,
                        severity=AuditSeverity.ERROR)

        page, total = await audit.query(AuditQuery(user_id=user_id, limit=4, offset=0))
        rest, _ = await audit.query(AuditQuery(user_id=user_id, limit=4, offset=4))

        assert total == 6
        assert len(page) == 4
        assert len(rest) == 2
        assert {e.action for e in page + rest} == {f"vote_{n}" for n in range(6)}

        failures, failed_total = await audit.query(AuditQuery(success=False))
        assert failed_total == 1
        assert failures[0].action == "boom"

    async def test_sort_by_severity(self, audit):
        await audit.log(AuditEventType.SYSTEM_ERROR, "warn", "listener", severity=AuditSeverity.WARNING)
        await audit.log(AuditEventType.SYSTEM_ERROR, "crit", "listener", severity=AuditSeverity.CRITICAL)
        await audit.flush()
        await audit.log(AuditEventType.SYSTEM_ERROR, "info", "listener")

        entries, _ = await audit.query(AuditQuery(sort_by="severity", sort_order="desc"))
        assert [e.action for e in entries] == ["crit", "warn", "info"]

    async def test_has_recent_notification(self, audit):
        item_id = uuid4()
        assert await audit.has_recent_notification(item_id, "resolution", timedelta(hours=24)) is False

        await audit.log(AuditEventType.NOTIFICATION_SENT, "send_summary", "resolution", resource_id=item_id)
        assert await audit.has_recent_notification(item_id, "resolution", timedelta(hours=24)) is True
        assert await audit.has_recent_notification(item_id, "minutes", timedelta(hours=24)) is False

        await audit.flush()
        assert await audit.has_recent_notification(item_id, "resolution", timedelta(hours=24)) is True
        assert await audit.has_recent_notification(
            item_id, "resolution", timedelta(hours=24), now=utcnow() + timedelta(hours=25)
        ) is False


# =============================================================================
# STATISTICS
# =============================================================================


class TestStatistics:
    async def test_counts_rates_and_top_actors(self, audit):
        voter, item_id = uuid4(), uuid4()
        for _ in range(3):
            await audit.log(AuditEventType.VOTE_RECORDED, "vote_cast", "vote", resource_id=item_id, user_id=voter)
        await audit.flush()
        await audit.log(AuditEventType.SYSTEM_ERROR, "boom", "listener", success=False,
                        severity=AuditSeverity.ERROR)

        stats = await audit.statistics()

        assert stats.total_events == 4
        assert stats.events_by_type == {"vote_recorded": 3, "system_error": 1}
        assert stats.events_by_severity == {"info": 3, "error": 1}
        assert stats.success_rate == 75.0
        assert stats.error_rate == 25.0
        assert stats.top_users == [(voter, 3)]
        assert stats.top_resources == [("vote", item_id, 3)]
        assert sum(count for _, count in stats.timeline) == 4

    async def test_empty_log(self, audit):
        stats = await audit.statistics()
        assert stats.total_events == 0
        assert stats.success_rate == 100.0

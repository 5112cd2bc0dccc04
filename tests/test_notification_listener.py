"""
Tests for the notification listener and the deduplicated notification path.
"""

import asyncio
import json

import pytest

from board_voting.models import AuditEventType, ItemKind, ItemStatus
from board_voting.services.alerting import AlertSeverity
from board_voting.services.audit_logger import AuditQuery
from board_voting.services.exceptions import InvalidOperationError, ItemNotFoundError, ListenerFatalError
from board_voting.services.notification_listener import ListenerState, NotificationListener
from board_voting.services.notifications import NotificationStatus

from fakes import FlakyChannel, completion_message

TOPIC = "voting_completion"


async def eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_listener(channel, notifications, audit, monitor=None, **kwargs):
    kwargs.setdefault("reconnect_base_delay", 0.01)
    kwargs.setdefault("reconnect_max_delay", 1.0)
    kwargs.setdefault("max_reconnect_attempts", 3)
    return NotificationListener(channel, notifications, audit, monitor=monitor, topic=TOPIC, **kwargs)


async def events_of(audit, event_type):
    entries, _ = await audit.query(AuditQuery(event_types=[event_type], limit=100))
    return entries


# =============================================================================
# NOTIFICATION SERVICE
# =============================================================================


class TestNotificationService:
    async def test_sends_once_then_suppresses(self, notifications, audit, transport, make_board, make_item):
        await make_board(3)
        item = await make_item(status=ItemStatus.PASSED)

        first = await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")
        second = await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")

        assert first.status == NotificationStatus.SENT
        assert first.dispatch.succeeded == 3
        assert second.status == NotificationStatus.DUPLICATE_SUPPRESSED
        assert len(transport.sent) == 3
        assert len(await events_of(audit, AuditEventType.NOTIFICATION_SENT)) == 1
        assert len(await events_of(audit, AuditEventType.DUPLICATE_SUPPRESSED)) == 1

    async def test_concurrent_requests_send_once(self, notifications, transport, make_board, make_item):
        await make_board(2)
        item = await make_item(status=ItemStatus.PASSED)

        results = await asyncio.gather(*(
            notifications.notify(item.id, ItemKind.RESOLUTION, source="test") for _ in range(3)
        ))

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["duplicate_suppressed", "duplicate_suppressed", "sent"]
        assert len(transport.sent) == 2

    async def test_dedup_is_per_kind(self, notifications, make_board, make_item):
        await make_board(1)
        item = await make_item(status=ItemStatus.PASSED)

        await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")
        # Same id under the other kind is a different notification (and no such minutes exist)
        result = await notifications.notify(item.id, ItemKind.MINUTES, source="test")
        assert result.status == NotificationStatus.FAILED
        assert "ItemNotFoundError" in result.error

    async def test_all_deliveries_failing_is_failed(self, notifications, audit, transport, make_board, make_item):
        members = await make_board(2)
        for member in members:
            transport.fail(member.email)
        item = await make_item(status=ItemStatus.PASSED)

        result = await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")

        assert result.status == NotificationStatus.FAILED
        assert result.dispatch.failed == 2
        failures = await events_of(audit, AuditEventType.NOTIFICATION_FAILED)
        assert failures[0].error_message == "All 2 deliveries failed"

        # A failed send does not count as sent, so a retry goes through
        transport.failures.clear()
        retry = await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")
        assert retry.status == NotificationStatus.SENT

    async def test_no_recipients_counts_as_sent(self, notifications, make_item):
        item = await make_item(status=ItemStatus.FAILED)

        result = await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")

        assert result.status == NotificationStatus.SENT
        assert result.dispatch.attempted == 0


class TestForceSend:
    async def test_force_bypasses_duplicate_check(self, notifications, audit, transport, make_board, make_item):
        await make_board(2)
        item = await make_item(status=ItemStatus.PASSED)
        await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")

        manual = await notifications.force_send(item.id, ItemKind.RESOLUTION)
        forced = await notifications.force_send(item.id, ItemKind.RESOLUTION, force=True)

        assert manual.status == NotificationStatus.DUPLICATE_SUPPRESSED
        assert forced.status == NotificationStatus.SENT
        assert len(transport.sent) == 4
        triggers = await events_of(audit, AuditEventType.MANUAL_TRIGGER)
        assert sorted(t.action for t in triggers) == ["force_send", "manual_send"]

    async def test_open_item_cannot_be_sent(self, notifications, make_item):
        item = await make_item(status=ItemStatus.VOTING)

        with pytest.raises(InvalidOperationError):
            await notifications.force_send(item.id, ItemKind.RESOLUTION)

    async def test_kind_must_match(self, notifications, make_item):
        item = await make_item(status=ItemStatus.PASSED)

        with pytest.raises(ItemNotFoundError):
            await notifications.force_send(item.id, ItemKind.MINUTES)


class TestRetryFailed:
    async def test_retries_latest_failed_dispatch(self, notifications, audit, transport, make_board, make_item):
        members = await make_board(3)
        item = await make_item(status=ItemStatus.PASSED)
        transport.fail(members[2].email, times=3)
        original = await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")
        assert original.dispatch.failed == 1

        result = await notifications.retry_failed(item.id, ItemKind.RESOLUTION)

        assert result.status == NotificationStatus.SENT
        assert result.trigger_id == original.trigger_id
        assert (result.dispatch.attempted, result.dispatch.succeeded) == (1, 1)
        assert len(transport.messages_to(members[2].email)) == 1

        triggers = await events_of(audit, AuditEventType.MANUAL_TRIGGER)
        assert [t.action for t in triggers] == ["retry_failed"]
        assert triggers[0].details["retry_of"] == str(original.trigger_id)
        sent = [e for e in await events_of(audit, AuditEventType.NOTIFICATION_SENT) if e.action == "retry_failed"]
        assert sent[0].details["succeeded"] == 1

        history = await notifications.delivery_history(item.id, ItemKind.RESOLUTION)
        assert {row.status.value for row in history} == {"sent"}

    async def test_nothing_to_retry(self, notifications, make_board, make_item):
        await make_board(2)
        item = await make_item(status=ItemStatus.PASSED)
        await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")

        with pytest.raises(InvalidOperationError):
            await notifications.retry_failed(item.id, ItemKind.RESOLUTION)

    async def test_retry_that_fails_again_is_audited(
        self, notifications, audit, transport, make_board, make_item
    ):
        members = await make_board(1)
        transport.fail(members[0].email)
        item = await make_item(status=ItemStatus.PASSED)
        original = await notifications.notify(item.id, ItemKind.RESOLUTION, source="test")

        result = await notifications.retry_failed(item.id, ItemKind.RESOLUTION, trigger_id=original.trigger_id)

        assert result.status == NotificationStatus.FAILED
        assert result.error == "All 1 retried deliveries failed"
        failures = await events_of(audit, AuditEventType.NOTIFICATION_FAILED)
        assert sorted(f.action for f in failures) == ["retry_failed", "send_summary"]

    async def test_open_item_cannot_be_retried(self, notifications, make_item):
        item = await make_item(status=ItemStatus.VOTING)

        with pytest.raises(InvalidOperationError):
            await notifications.retry_failed(item.id, ItemKind.RESOLUTION)

    async def test_history_requires_matching_kind(self, notifications, make_item):
        item = await make_item(status=ItemStatus.PASSED)

        with pytest.raises(ItemNotFoundError):
            await notifications.delivery_history(item.id, ItemKind.MINUTES)


# =============================================================================
# LISTENER: MESSAGE HANDLING
# =============================================================================


class TestListenerMessages:
    async def test_processes_published_completion(self, notifications, audit, transport, make_board, make_item):
        await make_board(2)
        item = await make_item(status=ItemStatus.PASSED)
        channel = FlakyChannel()
        listener = make_listener(channel, notifications, audit)

        listener.start()
        try:
            await listener.wait_until_listening(timeout=1.0)
            await channel.publish(TOPIC, completion_message(item.id))
            await eventually(lambda: listener.processed == 1)
        finally:
            await listener.stop()

        assert listener.sent == 1
        assert len(transport.sent) == 2
        assert listener.state == ListenerState.STOPPED

    async def test_replayed_message_is_suppressed(self, notifications, audit, transport, make_board, make_item):
        await make_board(2)
        item = await make_item(status=ItemStatus.PASSED)
        listener = make_listener(FlakyChannel(), notifications, audit)
        raw = completion_message(item.id)

        first = await listener.handle_raw(raw)
        replay = await listener.handle_raw(raw)

        assert first.status == NotificationStatus.SENT
        assert replay.status == NotificationStatus.DUPLICATE_SUPPRESSED
        assert (listener.sent, listener.suppressed) == (1, 1)
        assert len(transport.sent) == 2

    async def test_malformed_message_is_parked(self, notifications, audit, transport):
        listener = make_listener(FlakyChannel(), notifications, audit)
        raw = json.dumps({"action": "voting_completed", "kind": "budget"})

        assert await listener.handle_raw(raw) is None

        assert listener.malformed == 1
        assert listener.processed == 0
        assert listener.parked[0].raw == raw
        assert transport.calls == []
        errors = await events_of(audit, AuditEventType.SYSTEM_ERROR)
        assert errors[0].action == "malformed_message"

    async def test_parked_messages_are_bounded(self, notifications, audit):
        listener = make_listener(FlakyChannel(), notifications, audit, max_parked=2)

        for n in range(3):
            await listener.handle_raw(f"garbage {n}")

        assert [p.raw for p in listener.parked] == ["garbage 1", "garbage 2"]
        assert listener.malformed == 3


# =============================================================================
# LISTENER: CONNECTION
# =============================================================================


class TestListenerConnection:
    async def test_reconnects_with_backoff(self, notifications, audit):
        channel = FlakyChannel(failures=2)
        listener = make_listener(channel, notifications, audit)

        listener.start()
        try:
            await listener.wait_until_listening(timeout=2.0)
            assert listener.reconnect_delays == pytest.approx([0.01, 0.02])
            assert listener.reconnect_attempts == 0
            assert listener.connected_at is not None
        finally:
            await listener.stop()

        assert channel.subscribe_attempts == 3

    async def test_reconnects_after_connection_loss(self, notifications, audit):
        channel = FlakyChannel()
        listener = make_listener(channel, notifications, audit)

        listener.start()
        try:
            await listener.wait_until_listening(timeout=1.0)
            channel.disconnect_all("server restarted")
            await eventually(lambda: channel.subscribe_attempts == 2 and listener.state == ListenerState.LISTENING)
            assert listener.last_error == "server restarted"
        finally:
            await listener.stop()

        states = [e.action for e in await events_of(audit, AuditEventType.LISTENER_STATE)]
        assert "disconnected" in states
        assert states.count("listening") == 2
        assert states.count("connecting") == 2

    async def test_gives_up_after_max_attempts(self, notifications, audit, monitor):
        fatal_errors = []
        channel = FlakyChannel(failures=-1)
        listener = make_listener(channel, notifications, audit, monitor=monitor, on_fatal=fatal_errors.append)

        listener.start()
        with pytest.raises(ListenerFatalError):
            await asyncio.wait_for(listener.wait(), timeout=2.0)

        assert listener.state == ListenerState.FATAL
        assert listener.reconnect_delays == pytest.approx([0.01, 0.02, 0.04])
        assert channel.subscribe_attempts == 4
        assert len(fatal_errors) == 1

        alerts = [a for a in monitor.alerts.open_alerts() if a.condition == "fatal"]
        assert alerts[0].severity == AlertSeverity.CRITICAL

        # Stopping a fatal listener keeps the fatal state
        await listener.stop()
        assert listener.state == ListenerState.FATAL


# =============================================================================
# LISTENER: SHUTDOWN
# =============================================================================


class TestListenerShutdown:
    async def test_stop_finishes_summary_in_progress(
        self, notifications, audit, monitor, transport, make_board, make_item
    ):
        await make_board(3)
        item = await make_item(status=ItemStatus.PASSED)
        transport.delay = 0.05
        channel = FlakyChannel()
        listener = make_listener(channel, notifications, audit, monitor=monitor)

        listener.start()
        await listener.wait_until_listening(timeout=1.0)
        await channel.publish(TOPIC, completion_message(item.id))
        await eventually(lambda: transport.calls)

        # Still sending: not counted as processed yet
        assert listener.processed == 0

        await listener.stop()

        assert (listener.processed, listener.sent) == (1, 1)
        assert len(transport.sent) == 3
        assert len(await events_of(audit, AuditEventType.NOTIFICATION_SENT)) == 1
        assert listener.state == ListenerState.STOPPED
        assert monitor.active_operations == 0

    async def test_stop_cancels_after_grace_period(
        self, notifications, audit, monitor, transport, make_board, make_item
    ):
        await make_board(1)
        item = await make_item(status=ItemStatus.PASSED)
        transport.delay = 5.0
        channel = FlakyChannel()
        listener = make_listener(channel, notifications, audit, monitor=monitor, stop_grace_seconds=0.05)

        listener.start()
        await listener.wait_until_listening(timeout=1.0)
        await channel.publish(TOPIC, completion_message(item.id))
        await eventually(lambda: transport.calls)

        await asyncio.wait_for(listener.stop(), timeout=1.0)

        assert listener.state == ListenerState.STOPPED
        assert listener.processed == 0
        assert transport.sent == []
        assert monitor.active_operations == 0

    async def test_cancelling_a_waiter_leaves_listener_running(self, notifications, audit):
        listener = make_listener(FlakyChannel(), notifications, audit)
        listener.start()
        try:
            await listener.wait_until_listening(timeout=1.0)
            waiter = asyncio.create_task(listener.wait())
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            assert listener.running
            assert listener.state == ListenerState.LISTENING
        finally:
            await listener.stop()

"""
Notification Listener: resilient subscriber on the voting completion topic.

State machine::

    DISCONNECTED -> CONNECTING -> LISTENING -> (error) -> DISCONNECTED
                                                       -> FATAL (max attempts)
    any state -> STOPPED (stop())

Messages are processed one at a time. Each is validated at the channel
boundary; malformed payloads are parked and audited, never processed.
Valid messages go through NotificationService.notify, which handles
duplicate suppression.

stop() leaves the receive loop between messages: a summary that is being
sent when stop() is called finishes first. Only if it outlasts the grace
period is the task cancelled.

On connection loss the listener waits ``base, 2*base, 4*base ...`` (capped)
before reconnecting. Once ``max_reconnect_attempts`` consecutive attempts
have failed the listener goes FATAL and ``wait()`` raises
ListenerFatalError; it never retries forever.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..core.retry import BackoffPolicy
from ..models import AuditEventType, AuditSeverity, ItemKind, utcnow
from .alerting import AlertSeverity
from .audit_logger import AuditLogger
from .event_channel import EventChannel, Subscription, decode_message
from .exceptions import ChannelConnectionError, ListenerFatalError, MalformedMessageError
from .notifications import NotificationResult, NotificationService, NotificationStatus
from .performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


class ListenerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    STOPPED = "stopped"
    FATAL = "fatal"


# States that are worth an audit entry
_AUDITED_STATES = {
    ListenerState.CONNECTING: AuditSeverity.INFO,
    ListenerState.LISTENING: AuditSeverity.INFO,
    ListenerState.DISCONNECTED: AuditSeverity.WARNING,
    ListenerState.STOPPED: AuditSeverity.INFO,
    ListenerState.FATAL: AuditSeverity.CRITICAL,
}


@dataclass
class ParkedMessage:
    raw: str
    error: str
    received_at: datetime


@dataclass
class ListenerStatus:
    """Point-in-time view of the listener."""
    state: ListenerState
    topic: str
    reconnect_attempts: int
    max_reconnect_attempts: int
    reconnect_delays: list[float]
    processed: int
    sent: int
    suppressed: int
    failed: int
    malformed: int
    last_error: str | None
    connected_at: datetime | None
    parked: list[ParkedMessage] = field(default_factory=list)


class NotificationListener:
    """Explicitly started/stopped subscriber with bounded reconnects."""

    def __init__(
        self,
        channel: EventChannel,
        notifications: NotificationService,
        audit: AuditLogger,
        monitor: PerformanceMonitor | None = None,
        topic: str = "voting_completion",
        reconnect_base_delay: float = 5.0,
        reconnect_max_delay: float = 60.0,
        max_reconnect_attempts: int = 10,
        max_parked: int = 100,
        stop_grace_seconds: float = 30.0,
        on_fatal: Callable[[ListenerFatalError], None] | None = None,
    ):
        self._channel = channel
        self._notifications = notifications
        self._audit = audit
        self._monitor = monitor
        self.topic = topic
        self._policy = BackoffPolicy(
            max_attempts=max_reconnect_attempts,
            base_delay=reconnect_base_delay,
            max_delay=reconnect_max_delay,
        )
        self._stop_grace = stop_grace_seconds
        self._on_fatal = on_fatal

        self.state = ListenerState.DISCONNECTED
        self.reconnect_attempts = 0
        self.reconnect_delays: list[float] = []
        self.parked: deque[ParkedMessage] = deque(maxlen=max_parked)
        self.processed = 0
        self.sent = 0
        self.suppressed = 0
        self.failed = 0
        self.malformed = 0
        self.last_error: str | None = None
        self.connected_at: datetime | None = None

        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._listening = asyncio.Event()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="notification-listener")
        logger.info(f"Notification listener starting on '{self.topic}'")

    async def stop(self) -> None:
        """
        Stop listening. Safe to call in any state.

        The message being handled, if any, is finished first. The task is
        cancelled only when that takes longer than the grace period.
        """
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self._stop_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Listener did not finish within {self._stop_grace:.1f}s; cancelling"
                )
                self._task.cancel()
                try:
                    await self._task
                except (asyncio.CancelledError, ListenerFatalError):
                    pass
            except ListenerFatalError:
                pass
        if self.state != ListenerState.FATAL:
            await self._set_state(ListenerState.STOPPED)
        logger.info("Notification listener stopped")

    async def wait(self) -> None:
        """Wait for the listener to finish; raises ListenerFatalError on fatal exit.

        Cancelling the caller does not cancel the listener.
        """
        if self._task is not None:
            await asyncio.shield(self._task)

    async def wait_until_listening(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._listening.wait(), timeout=timeout)

    def status(self) -> ListenerStatus:
        return ListenerStatus(
            state=self.state,
            topic=self.topic,
            reconnect_attempts=self.reconnect_attempts,
            max_reconnect_attempts=self._policy.max_attempts,
            reconnect_delays=list(self.reconnect_delays),
            processed=self.processed,
            sent=self.sent,
            suppressed=self.suppressed,
            failed=self.failed,
            malformed=self.malformed,
            last_error=self.last_error,
            connected_at=self.connected_at,
            parked=list(self.parked),
        )

    async def _set_state(self, state: ListenerState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        if state == ListenerState.LISTENING:
            self._listening.set()
        else:
            self._listening.clear()
        logger.info(f"Listener state: {previous.value} -> {state.value}")

        severity = _AUDITED_STATES.get(state)
        if severity is not None:
            await self._audit.log(
                event_type=AuditEventType.LISTENER_STATE,
                action=state.value,
                resource_type="listener",
                severity=severity,
                success=state not in (ListenerState.DISCONNECTED, ListenerState.FATAL),
                error_message=self.last_error if severity != AuditSeverity.INFO else None,
                details={
                    "topic": self.topic,
                    "previous": previous.value,
                    "reconnect_attempts": self.reconnect_attempts,
                },
            )

    # =========================================================================
    # CONNECTION LOOP
    # =========================================================================

    async def _receive(self, subscription: Subscription) -> str | None:
        """Next payload, or None once stop() has been requested."""
        getter = asyncio.ensure_future(subscription.get())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not getter.done():
                getter.cancel()
        # A payload that arrived together with stop() is still handled
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self._set_state(ListenerState.CONNECTING)
            try:
                async with self._channel.subscribe(self.topic) as subscription:
                    self.reconnect_attempts = 0
                    self.connected_at = utcnow()
                    await self._set_state(ListenerState.LISTENING)
                    while not self._stop_event.is_set():
                        raw = await self._receive(subscription)
                        if raw is None:
                            break
                        await self.handle_raw(raw)
                self.connected_at = None
                return
            except ChannelConnectionError as e:
                self.last_error = str(e)
                logger.warning(f"Event channel connection lost: {e}")
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"Unexpected listener error: {e}", exc_info=True)

            self.connected_at = None
            await self._set_state(ListenerState.DISCONNECTED)
            if self._monitor is not None:
                self._monitor.record(
                    "notification_listener", "connection", 0.0,
                    success=False, error=self.last_error,
                )

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self._policy.max_attempts:
                await self._go_fatal()

            delay = self._policy.delay_for(self.reconnect_attempts)
            self.reconnect_delays.append(delay)
            logger.info(
                f"Reconnecting in {delay:.1f}s "
                f"(attempt {self.reconnect_attempts}/{self._policy.max_attempts})"
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def _go_fatal(self) -> None:
        error = ListenerFatalError(
            f"Gave up on '{self.topic}' after {self._policy.max_attempts} reconnect attempts: "
            f"{self.last_error}"
        )
        await self._set_state(ListenerState.FATAL)
        logger.critical(str(error))
        if self._monitor is not None:
            self._monitor.alerts.raise_alert(
                "notification_listener",
                "fatal",
                AlertSeverity.CRITICAL,
                str(error),
            )
        if self._on_fatal is not None:
            try:
                self._on_fatal(error)
            except Exception as e:
                logger.error(f"on_fatal callback failed: {e}")
        raise error

    # =========================================================================
    # MESSAGE HANDLING
    # =========================================================================

    async def handle_raw(self, raw: str) -> NotificationResult | None:
        """Validate and process one payload. Never raises."""
        try:
            message = decode_message(raw)
        except MalformedMessageError as e:
            await self._park(e)
            return None

        result = await self._notifications.notify(
            message.id,
            ItemKind(message.kind),
            source=f"channel:{message.action}",
        )
        if result.status == NotificationStatus.SENT:
            self.sent += 1
        elif result.status == NotificationStatus.DUPLICATE_SUPPRESSED:
            self.suppressed += 1
        else:
            self.failed += 1
        self.processed += 1
        return result

    async def _park(self, error: MalformedMessageError) -> None:
        self.malformed += 1
        self.parked.append(ParkedMessage(raw=error.raw, error=str(error), received_at=utcnow()))
        logger.warning(f"Parked malformed message: {error}")
        await self._audit.log(
            event_type=AuditEventType.SYSTEM_ERROR,
            action="malformed_message",
            resource_type="listener",
            severity=AuditSeverity.WARNING,
            success=False,
            error_message=str(error),
            details={"topic": self.topic, "raw": error.raw[:500]},
        )

"""
Event Channel: named pub/sub topics for voting completion messages.

Delivery is at-least-once and unordered. Publishers never wait on
subscribers; subscribers must tolerate seeing the same message twice.

Two transports share the EventChannel interface:
- InMemoryEventChannel: single-process fan-out (tests, development)
- PostgresEventChannel: PostgreSQL LISTEN/NOTIFY through asyncpg
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from pydantic import ValidationError as PydanticValidationError

from ..core.config import Settings
from ..schemas.events import CompletionMessage
from .exceptions import ChannelConnectionError, MalformedMessageError

logger = logging.getLogger(__name__)


# =============================================================================
# MESSAGE CODEC
# =============================================================================


def decode_message(raw: str | bytes) -> CompletionMessage:
    """Validate a raw channel payload.

    Raises:
        MalformedMessageError: payload is not a well-formed CompletionMessage
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        return CompletionMessage.model_validate_json(text)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise MalformedMessageError(f"Malformed completion message ({problems})", raw=text)


def _encode(message: CompletionMessage | str) -> str:
    if isinstance(message, CompletionMessage):
        return message.encode()
    return message


# =============================================================================
# SUBSCRIPTION
# =============================================================================


class Subscription:
    """
    Stream of raw payloads for one topic.

    ``get()`` raises ChannelConnectionError once the underlying connection
    is lost; the subscription is unusable after that.
    """

    def __init__(self, topic: str):
        self.topic = topic
        self._queue: asyncio.Queue[str | ChannelConnectionError] = asyncio.Queue()
        self._failed = False

    def deliver(self, payload: str) -> None:
        if not self._failed:
            self._queue.put_nowait(payload)

    def fail(self, error: ChannelConnectionError) -> None:
        if not self._failed:
            self._failed = True
            self._queue.put_nowait(error)

    @property
    def failed(self) -> bool:
        return self._failed

    async def get(self) -> str:
        item = await self._queue.get()
        if isinstance(item, ChannelConnectionError):
            raise item
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> str:
        return await self.get()


# =============================================================================
# INTERFACE
# =============================================================================


class EventChannel(ABC):
    """Publish/subscribe transport."""

    name: str = "base"

    @abstractmethod
    async def publish(self, topic: str, message: CompletionMessage | str) -> None:
        """Publish without waiting for subscribers.

        Raises:
            ChannelConnectionError: the transport is unreachable
        """
        pass

    @abstractmethod
    def subscribe(self, topic: str) -> AsyncIterator[Subscription]:
        """Async context manager yielding a Subscription for ``topic``.

        Raises:
            ChannelConnectionError: the subscription could not be established
        """
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# IN-MEMORY TRANSPORT
# =============================================================================


class InMemoryEventChannel(EventChannel):
    """Fan-out to in-process subscribers. Messages published while nobody
    is subscribed are dropped, as with LISTEN/NOTIFY."""

    name = "memory"

    def __init__(self):
        self._subscribers: dict[str, set[Subscription]] = {}

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, message: CompletionMessage | str) -> None:
        payload = _encode(message)
        subscribers = list(self._subscribers.get(topic, ()))
        logger.debug(f"Publishing on '{topic}' to {len(subscribers)} subscriber(s)")
        for subscription in subscribers:
            subscription.deliver(payload)

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[Subscription]:
        subscription = Subscription(topic)
        self._subscribers.setdefault(topic, set()).add(subscription)
        try:
            yield subscription
        finally:
            self._subscribers.get(topic, set()).discard(subscription)

    def disconnect_all(self, reason: str = "connection lost") -> None:
        """Fail every open subscription, as a dropped connection would."""
        for subscriptions in self._subscribers.values():
            for subscription in list(subscriptions):
                subscription.fail(ChannelConnectionError(reason))


# =============================================================================
# POSTGRESQL LISTEN/NOTIFY TRANSPORT
# =============================================================================


_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


class PostgresEventChannel(EventChannel):
    """
    LISTEN/NOTIFY over dedicated asyncpg connections.

    Each subscription holds its own connection and pings it periodically,
    since a silently dropped TCP connection never fires the termination
    callback on its own.
    """

    name = "postgres"

    def __init__(
        self,
        dsn: str,
        connect_timeout: float = 10.0,
        health_check_interval: float = 30.0,
    ):
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._health_check_interval = health_check_interval
        self._publish_conn: asyncpg.Connection | None = None
        self._publish_lock = asyncio.Lock()

    async def _connect(self) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(self._dsn, timeout=self._connect_timeout)
        except _CONNECTION_ERRORS as e:
            raise ChannelConnectionError(f"Could not connect to event channel: {e}") from e

    async def publish(self, topic: str, message: CompletionMessage | str) -> None:
        payload = _encode(message)
        async with self._publish_lock:
            if self._publish_conn is None or self._publish_conn.is_closed():
                self._publish_conn = await self._connect()
            try:
                await self._publish_conn.execute("SELECT pg_notify($1, $2)", topic, payload)
            except _CONNECTION_ERRORS as e:
                await self._discard_publish_conn()
                raise ChannelConnectionError(f"Publish on '{topic}' failed: {e}") from e

    async def _discard_publish_conn(self) -> None:
        conn, self._publish_conn = self._publish_conn, None
        if conn is not None and not conn.is_closed():
            conn.terminate()

    async def _health_check(self, conn: asyncpg.Connection, subscription: Subscription) -> None:
        while not subscription.failed:
            await asyncio.sleep(self._health_check_interval)
            try:
                await conn.fetchval("SELECT 1", timeout=self._connect_timeout)
            except _CONNECTION_ERRORS as e:
                logger.warning(f"Event channel health check failed: {e}")
                subscription.fail(ChannelConnectionError(f"Health check failed: {e}"))

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[Subscription]:
        conn = await self._connect()
        subscription = Subscription(topic)

        def on_notify(connection, pid, channel, payload):
            subscription.deliver(payload)

        def on_terminate(connection):
            subscription.fail(ChannelConnectionError("Event channel connection terminated"))

        try:
            await conn.add_listener(topic, on_notify)
        except _CONNECTION_ERRORS as e:
            conn.terminate()
            raise ChannelConnectionError(f"LISTEN {topic} failed: {e}") from e

        conn.add_termination_listener(on_terminate)
        health_task = asyncio.create_task(self._health_check(conn, subscription))
        logger.info(f"Listening on PostgreSQL channel '{topic}'")

        try:
            yield subscription
        finally:
            health_task.cancel()
            conn.remove_termination_listener(on_terminate)
            if not conn.is_closed():
                try:
                    await conn.remove_listener(topic, on_notify)
                    await conn.close(timeout=self._connect_timeout)
                except _CONNECTION_ERRORS as e:
                    logger.warning(f"Error closing channel connection: {e}")
                    conn.terminate()

    async def close(self) -> None:
        async with self._publish_lock:
            if self._publish_conn is not None and not self._publish_conn.is_closed():
                await self._publish_conn.close()
            self._publish_conn = None


def build_event_channel(settings: Settings) -> EventChannel:
    if settings.event_channel_backend == "postgres":
        return PostgresEventChannel(settings.database_url_asyncpg)
    return InMemoryEventChannel()

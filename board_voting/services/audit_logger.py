"""
Audit Logger: batched, queryable, append-only record of pipeline actions.

New entries go to an in-memory buffer and are flushed to the audit_log
table when the buffer reaches ``batch_size`` or every ``flush_interval``
seconds, whichever comes first. Reads merge the buffer with the table, so
an entry is visible to queries (and to duplicate-suppression checks) the
moment ``log()`` returns.

Logging never raises: a failure to record an audit entry is logged locally
and the business operation carries on.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal
from uuid import UUID, uuid4

from sqlalchemy import Select, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import AuditEventType, AuditLog, AuditSeverity, as_utc, utcnow

logger = logging.getLogger(__name__)


SEVERITY_RANK = {
    AuditSeverity.INFO: 0,
    AuditSeverity.WARNING: 1,
    AuditSeverity.ERROR: 2,
    AuditSeverity.CRITICAL: 3,
}

SortField = Literal["timestamp", "event_type", "severity"]
SortOrder = Literal["asc", "desc"]


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class AuditEntry:
    """An audit entry, buffered or persisted."""
    event_type: AuditEventType
    action: str
    resource_type: str
    resource_id: UUID | None = None
    user_id: UUID | None = None
    severity: AuditSeverity = AuditSeverity.INFO
    success: bool = True
    details: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    execution_time_ms: float | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record: AuditLog) -> "AuditEntry":
        return cls(
            id=record.id,
            created_at=as_utc(record.created_at),
            event_type=record.event_type,
            action=record.action,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            user_id=record.user_id,
            severity=record.severity,
            success=record.success,
            details=dict(record.details or {}),
            error_message=record.error_message,
            execution_time_ms=record.execution_time_ms,
        )

    def to_record(self) -> AuditLog:
        return AuditLog(
            id=self.id,
            created_at=self.created_at,
            event_type=self.event_type,
            action=self.action,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            user_id=self.user_id,
            severity=self.severity,
            success=self.success,
            details=self.details,
            error_message=self.error_message,
            execution_time_ms=self.execution_time_ms,
        )


@dataclass
class AuditQuery:
    """Filters, sort and page for an audit log search."""
    event_types: list[AuditEventType] | None = None
    severities: list[AuditSeverity] | None = None
    resource_type: str | None = None
    resource_id: UUID | None = None
    user_id: UUID | None = None
    success: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    sort_by: SortField = "timestamp"
    sort_order: SortOrder = "desc"
    limit: int = 50
    offset: int = 0

    def matches(self, entry: AuditEntry) -> bool:
        """Apply the filters to a buffered entry."""
        if self.event_types and entry.event_type not in self.event_types:
            return False
        if self.severities and entry.severity not in self.severities:
            return False
        if self.resource_type and entry.resource_type != self.resource_type:
            return False
        if self.resource_id and entry.resource_id != self.resource_id:
            return False
        if self.user_id and entry.user_id != self.user_id:
            return False
        if self.success is not None and entry.success != self.success:
            return False
        if self.start_date and entry.created_at < as_utc(self.start_date):
            return False
        if self.end_date and entry.created_at > as_utc(self.end_date):
            return False
        return True


@dataclass
class AuditStatistics:
    """Aggregate view of the audit trail over a period."""
    total_events: int
    events_by_type: dict[str, int]
    events_by_severity: dict[str, int]
    success_rate: float
    error_rate: float
    top_users: list[tuple[UUID, int]]
    top_resources: list[tuple[str, UUID, int]]
    timeline: list[tuple[str, int]]  # (YYYY-MM-DD, count)


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Buffered audit writer with merged reads.

    Appends and buffer swaps are serialized by one lock; flushes by another,
    so at most one batch is in flight. The in-flight batch stays visible to
    readers until its commit has finished.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int = 100,
        flush_interval: float = 5.0,
        max_buffer_size: int | None = None,
    ):
        self._session_factory = session_factory
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._max_buffer_size = max_buffer_size or batch_size * 10
        self._buffer: list[AuditEntry] = []
        self._inflight: list[AuditEntry] = []
        self._lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.dropped_entries = 0

    @property
    def pending_count(self) -> int:
        return len(self._buffer) + len(self._inflight)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="audit-flusher")
            logger.info(
                f"Audit logger started (batch={self._batch_size}, "
                f"interval={self._flush_interval}s)"
            )

    async def stop(self) -> None:
        """Stop the interval flusher and write out whatever is buffered."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        logger.info("Audit logger stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def log(
        self,
        event_type: AuditEventType,
        action: str,
        resource_type: str,
        resource_id: UUID | None = None,
        user_id: UUID | None = None,
        details: dict[str, Any] | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        success: bool = True,
        error_message: str | None = None,
        execution_time_ms: float | None = None,
    ) -> AuditEntry | None:
        """Buffer an audit entry. Returns None only if buffering itself failed."""
        try:
            entry = AuditEntry(
                event_type=event_type,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                user_id=user_id,
                details=json_safe(details or {}),
                severity=severity,
                success=success,
                error_message=error_message,
                execution_time_ms=execution_time_ms,
            )
            async with self._lock:
                self._buffer.append(entry)
                should_flush = len(self._buffer) >= self._batch_size
        except Exception as e:
            logger.error(f"Failed to buffer audit entry {event_type}: {e}", exc_info=True)
            return None

        if should_flush:
            await self.flush()
        return entry

    async def flush(self) -> int:
        """Write the buffer to the audit_log table. Returns entries written."""
        async with self._flush_lock:
            async with self._lock:
                if not self._buffer:
                    return 0
                batch, self._buffer = self._buffer, []
                self._inflight = batch

            try:
                async with self._session_factory() as session:
                    session.add_all([entry.to_record() for entry in batch])
                    await session.commit()
            except Exception as e:
                logger.error(f"Audit flush of {len(batch)} entries failed: {e}")
                async with self._lock:
                    self._buffer = batch + self._buffer
                    overflow = len(self._buffer) - self._max_buffer_size
                    if overflow > 0:
                        # Oldest entries go first
                        del self._buffer[:overflow]
                        self.dropped_entries += overflow
                        logger.error(f"Audit buffer full; dropped {overflow} entries")
                    self._inflight = []
                return 0

            async with self._lock:
                self._inflight = []
            logger.debug(f"Flushed {len(batch)} audit entries")
            return len(batch)

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def _pending_snapshot(self) -> list[AuditEntry]:
        async with self._lock:
            return list(self._inflight) + list(self._buffer)

    async def _persisted_ids(self, session: AsyncSession, ids: list[UUID]) -> set[UUID]:
        if not ids:
            return set()
        result = await session.execute(select(AuditLog.id).where(AuditLog.id.in_(ids)))
        return set(result.scalars().all())

    def _apply_filters(self, stmt: Select, query: AuditQuery) -> Select:
        if query.event_types:
            stmt = stmt.where(AuditLog.event_type.in_(query.event_types))
        if query.severities:
            stmt = stmt.where(AuditLog.severity.in_(query.severities))
        if query.resource_type:
            stmt = stmt.where(AuditLog.resource_type == query.resource_type)
        if query.resource_id:
            stmt = stmt.where(AuditLog.resource_id == query.resource_id)
        if query.user_id:
            stmt = stmt.where(AuditLog.user_id == query.user_id)
        if query.success is not None:
            stmt = stmt.where(AuditLog.success == query.success)
        if query.start_date:
            stmt = stmt.where(AuditLog.created_at >= query.start_date)
        if query.end_date:
            stmt = stmt.where(AuditLog.created_at <= query.end_date)
        return stmt

    def _order_by(self, query: AuditQuery) -> list:
        if query.sort_by == "event_type":
            primary = AuditLog.event_type
        elif query.sort_by == "severity":
            primary = case(
                {severity: rank for severity, rank in SEVERITY_RANK.items()},
                value=AuditLog.severity,
            )
        else:
            primary = AuditLog.created_at

        if query.sort_order == "asc":
            return [primary.asc(), AuditLog.created_at.asc(), AuditLog.id.asc()]
        return [primary.desc(), AuditLog.created_at.desc(), AuditLog.id.desc()]

    @staticmethod
    def _sort_key(query: AuditQuery):
        if query.sort_by == "event_type":
            return lambda e: (e.event_type.value, e.created_at, str(e.id))
        if query.sort_by == "severity":
            return lambda e: (SEVERITY_RANK[e.severity], e.created_at, str(e.id))
        return lambda e: (e.created_at, str(e.id))

    async def query(self, query: AuditQuery) -> tuple[list[AuditEntry], int]:
        """
        Search buffered and persisted entries.

        Returns one page of entries and the total number of matches.
        """
        # Snapshot first: anything flushed after this point is still found
        # in the table, and the overlap is removed below.
        pending = [e for e in await self._pending_snapshot() if query.matches(e)]
        window = query.offset + query.limit

        async with self._session_factory() as session:
            stmt = self._apply_filters(select(AuditLog), query)
            total_db = (
                await session.execute(select(func.count()).select_from(stmt.subquery()))
            ).scalar_one()
            rows = await session.execute(stmt.order_by(*self._order_by(query)).limit(window))
            persisted = [AuditEntry.from_record(r) for r in rows.scalars().all()]
            overlap = await self._persisted_ids(session, [e.id for e in pending])

        merged = {e.id: e for e in persisted}
        for entry in pending:
            merged.setdefault(entry.id, entry)

        entries = sorted(
            merged.values(),
            key=self._sort_key(query),
            reverse=query.sort_order == "desc",
        )
        total = total_db + len(pending) - len(overlap)
        return entries[query.offset:window], total

    async def has_recent_notification(
        self,
        item_id: UUID,
        kind: str,
        window: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """
        Whether a NOTIFICATION_SENT entry exists for (item, kind) in the window.

        Unlike ``log()``, this propagates store errors so the caller can
        decide how to treat an unanswerable dedup check.
        """
        cutoff = (now or utcnow()) - window

        for entry in await self._pending_snapshot():
            if (
                entry.event_type == AuditEventType.NOTIFICATION_SENT
                and entry.resource_id == item_id
                and entry.resource_type == kind
                and entry.created_at >= cutoff
            ):
                return True

        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditLog.id)
                .where(
                    AuditLog.event_type == AuditEventType.NOTIFICATION_SENT,
                    AuditLog.resource_type == kind,
                    AuditLog.resource_id == item_id,
                    AuditLog.created_at >= cutoff,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def statistics(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        top_n: int = 10,
    ) -> AuditStatistics:
        """Counts by type and severity, success rate, top actors, daily timeline."""
        period = AuditQuery(start_date=start_date, end_date=end_date)
        pending = [e for e in await self._pending_snapshot() if period.matches(e)]

        by_type: Counter[str] = Counter()
        by_severity: Counter[str] = Counter()
        users: Counter[UUID] = Counter()
        resources: Counter[tuple[str, UUID]] = Counter()
        timeline: Counter[str] = Counter()
        successes = 0

        async with self._session_factory() as session:
            overlap = await self._persisted_ids(session, [e.id for e in pending])

            base = self._apply_filters(select(AuditLog), period).subquery()

            rows = await session.execute(
                select(base.c.event_type, func.count()).group_by(base.c.event_type)
            )
            for event_type, count in rows.all():
                by_type[_value(event_type)] += count

            rows = await session.execute(
                select(base.c.severity, func.count()).group_by(base.c.severity)
            )
            for severity, count in rows.all():
                by_severity[_value(severity)] += count

            successes += (
                await session.execute(
                    select(func.count()).select_from(base).where(base.c.success.is_(True))
                )
            ).scalar_one()

            rows = await session.execute(
                select(base.c.user_id, func.count())
                .where(base.c.user_id.is_not(None))
                .group_by(base.c.user_id)
            )
            for user_id, count in rows.all():
                users[user_id] += count

            rows = await session.execute(
                select(base.c.resource_type, base.c.resource_id, func.count())
                .where(base.c.resource_id.is_not(None))
                .group_by(base.c.resource_type, base.c.resource_id)
            )
            for resource_type, resource_id, count in rows.all():
                resources[(resource_type, resource_id)] += count

            day = func.date(base.c.created_at)
            rows = await session.execute(select(day, func.count()).group_by(day))
            for date_value, count in rows.all():
                timeline[str(date_value)[:10]] += count

        for entry in pending:
            if entry.id in overlap:
                continue
            by_type[entry.event_type.value] += 1
            by_severity[entry.severity.value] += 1
            if entry.success:
                successes += 1
            if entry.user_id:
                users[entry.user_id] += 1
            if entry.resource_id:
                resources[(entry.resource_type, entry.resource_id)] += 1
            timeline[entry.created_at.date().isoformat()] += 1

        total = sum(by_type.values())
        success_rate = round(successes / total * 100, 2) if total else 100.0

        return AuditStatistics(
            total_events=total,
            events_by_type=dict(by_type),
            events_by_severity=dict(by_severity),
            success_rate=success_rate,
            error_rate=round(100.0 - success_rate, 2),
            top_users=users.most_common(top_n),
            top_resources=[
                (resource_type, resource_id, count)
                for (resource_type, resource_id), count in resources.most_common(top_n)
            ],
            timeline=sorted(timeline.items()),
        )


def _value(enum_or_str: Any) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def json_safe(value: Any) -> Any:
    """Make details JSON-serializable for the JSON column."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value

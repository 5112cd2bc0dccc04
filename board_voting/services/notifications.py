"""
Notification service: deduplicated summary dispatch.

Every request to send a voting summary, whether from the event channel or
an administrator, goes through ``notify``:

1. Look up the audit trail for a NOTIFICATION_SENT entry for the same
   (item, kind) within the recency window; if found, record
   DUPLICATE_SUPPRESSED and stop
2. Record NOTIFICATION_TRIGGERED (its id becomes the trigger id)
3. Dispatch the summary emails
4. Record NOTIFICATION_SENT or NOTIFICATION_FAILED with the counts

Requests for the same (item, kind) are serialized in-process so that two
copies of one message cannot both pass the duplicate check.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    AuditEventType,
    AuditSeverity,
    DeliveryStatus,
    EmailDeliveryAttempt,
    ItemKind,
    VotableItem,
)
from .audit_logger import AuditLogger
from .email_dispatch import DispatchResult, EmailDispatchService
from .exceptions import InvalidOperationError, ItemNotFoundError
from .performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"


@dataclass
class NotificationResult:
    """Outcome of one notification request."""
    item_id: UUID
    kind: ItemKind
    status: NotificationStatus
    trigger_id: UUID | None = None
    dispatch: DispatchResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != NotificationStatus.FAILED


class NotificationService:
    """Dedup check, dispatch and audit for summary emails."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: EmailDispatchService,
        audit: AuditLogger,
        monitor: PerformanceMonitor | None = None,
        dedup_window: timedelta = timedelta(hours=24),
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._audit = audit
        self._monitor = monitor
        self._dedup_window = dedup_window
        self._locks: dict[tuple[UUID, ItemKind], asyncio.Lock] = {}
        self._lock_users: dict[tuple[UUID, ItemKind], int] = {}

    @asynccontextmanager
    async def _item_lock(self, item_id: UUID, kind: ItemKind) -> AsyncIterator[None]:
        key = (item_id, kind)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    # =========================================================================
    # NOTIFY
    # =========================================================================

    async def notify(
        self,
        item_id: UUID,
        kind: ItemKind,
        source: str,
        force: bool = False,
        user_id: UUID | None = None,
    ) -> NotificationResult:
        """
        Send the summary for an item unless it was already sent recently.

        Never raises for dispatch problems; they come back as a FAILED
        result. DUPLICATE_SUPPRESSED is a successful no-op.
        """
        async with self._item_lock(item_id, kind):
            operation_id = f"notify:{kind.value}:{item_id}:{uuid4()}"
            if self._monitor is not None:
                self._monitor.start(operation_id, "notification_listener", "process_notification")

            result: NotificationResult | None = None
            try:
                result = await self._notify_locked(item_id, kind, source, force, user_id)
            finally:
                if self._monitor is not None:
                    if result is not None:
                        self._monitor.end(operation_id, success=result.ok, error=result.error)
                    else:
                        self._monitor.end(operation_id, success=False, error="interrupted")
            return result

    async def _is_duplicate(self, item_id: UUID, kind: ItemKind) -> bool:
        try:
            return await self._audit.has_recent_notification(
                item_id, kind.value, self._dedup_window
            )
        except Exception as e:
            # Unanswerable check: send anyway (at-least-once)
            logger.warning(
                f"Duplicate check for {kind.value} {item_id} failed ({e}); proceeding with send"
            )
            return False

    async def _notify_locked(
        self,
        item_id: UUID,
        kind: ItemKind,
        source: str,
        force: bool,
        user_id: UUID | None,
    ) -> NotificationResult:
        if not force and await self._is_duplicate(item_id, kind):
            logger.info(f"Summary for {kind.value} {item_id} already sent; suppressing ({source})")
            await self._audit.log(
                event_type=AuditEventType.DUPLICATE_SUPPRESSED,
                action="duplicate_suppressed",
                resource_type=kind.value,
                resource_id=item_id,
                user_id=user_id,
                details={"source": source},
            )
            return NotificationResult(item_id, kind, NotificationStatus.DUPLICATE_SUPPRESSED)

        trigger = await self._audit.log(
            event_type=AuditEventType.NOTIFICATION_TRIGGERED,
            action="trigger_email",
            resource_type=kind.value,
            resource_id=item_id,
            user_id=user_id,
            details={"source": source, "forced": force},
        )
        trigger_id = trigger.id if trigger is not None else uuid4()

        started = time.perf_counter()
        try:
            dispatch = await self._dispatcher.send_completion_summary(item_id, kind, trigger_id)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            error = f"{type(e).__name__}: {e}"
            logger.error(f"Summary dispatch for {kind.value} {item_id} failed: {error}")
            await self._audit.log(
                event_type=AuditEventType.NOTIFICATION_FAILED,
                action="send_summary",
                resource_type=kind.value,
                resource_id=item_id,
                user_id=user_id,
                severity=AuditSeverity.ERROR,
                success=False,
                error_message=error,
                execution_time_ms=elapsed_ms,
                details={"source": source, "trigger_id": trigger_id},
            )
            return NotificationResult(
                item_id, kind, NotificationStatus.FAILED, trigger_id=trigger_id, error=error
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        details = {
            "source": source,
            "trigger_id": trigger_id,
            "attempted": dispatch.attempted,
            "succeeded": dispatch.succeeded,
            "failed": dispatch.failed,
            "skipped": dispatch.skipped,
        }

        if dispatch.all_failed:
            error = f"All {dispatch.attempted} deliveries failed"
            await self._audit.log(
                event_type=AuditEventType.NOTIFICATION_FAILED,
                action="send_summary",
                resource_type=kind.value,
                resource_id=item_id,
                user_id=user_id,
                severity=AuditSeverity.ERROR,
                success=False,
                error_message=error,
                execution_time_ms=elapsed_ms,
                details={**details, "errors": dispatch.errors[:5]},
            )
            return NotificationResult(
                item_id, kind, NotificationStatus.FAILED,
                trigger_id=trigger_id, dispatch=dispatch, error=error,
            )

        await self._audit.log(
            event_type=AuditEventType.NOTIFICATION_SENT,
            action="send_summary",
            resource_type=kind.value,
            resource_id=item_id,
            user_id=user_id,
            severity=AuditSeverity.WARNING if dispatch.failed else AuditSeverity.INFO,
            execution_time_ms=elapsed_ms,
            details=details,
        )
        return NotificationResult(
            item_id, kind, NotificationStatus.SENT, trigger_id=trigger_id, dispatch=dispatch
        )

    # =========================================================================
    # MANUAL TRIGGER
    # =========================================================================

    async def _require_concluded(self, item_id: UUID, kind: ItemKind) -> VotableItem:
        async with self._session_factory() as session:
            item = await session.get(VotableItem, item_id)
        if item is None or item.kind != kind:
            raise ItemNotFoundError(f"{kind.value.capitalize()} {item_id} not found")
        if not item.status.is_terminal:
            raise InvalidOperationError(
                f"Voting on this {kind.value} has not concluded (status: {item.status.value})"
            )
        return item

    async def force_send(
        self,
        item_id: UUID,
        kind: ItemKind,
        force: bool = False,
        user_id: UUID | None = None,
    ) -> NotificationResult:
        """
        Administrator-initiated send. ``force=True`` skips the duplicate check.

        Raises:
            ItemNotFoundError: no item of this kind
            InvalidOperationError: voting on the item has not concluded
        """
        await self._require_concluded(item_id, kind)

        await self._audit.log(
            event_type=AuditEventType.MANUAL_TRIGGER,
            action="force_send" if force else "manual_send",
            resource_type=kind.value,
            resource_id=item_id,
            user_id=user_id,
            details={"force": force},
        )
        logger.info(f"Manual summary send for {kind.value} {item_id} (force={force})")
        return await self.notify(item_id, kind, source="manual", force=force, user_id=user_id)

    # =========================================================================
    # DELIVERY HISTORY
    # =========================================================================

    async def delivery_history(
        self,
        item_id: UUID,
        kind: ItemKind,
        trigger_id: UUID | None = None,
        status: DeliveryStatus | None = None,
        limit: int = 100,
    ) -> list[EmailDeliveryAttempt]:
        async with self._session_factory() as session:
            item = await session.get(VotableItem, item_id)
        if item is None or item.kind != kind:
            raise ItemNotFoundError(f"{kind.value.capitalize()} {item_id} not found")
        return await self._dispatcher.delivery_history(
            item_id, trigger_id=trigger_id, status=status, limit=limit
        )

    async def retry_failed(
        self,
        item_id: UUID,
        kind: ItemKind,
        trigger_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> NotificationResult:
        """
        Re-send to the recipients whose delivery failed. Without a trigger id
        the most recent dispatch with failures is retried.

        Raises:
            ItemNotFoundError: no item of this kind
            InvalidOperationError: voting has not concluded, or nothing failed
        """
        await self._require_concluded(item_id, kind)

        async with self._item_lock(item_id, kind):
            if trigger_id is None:
                trigger_id = await self._dispatcher.latest_failed_trigger(item_id)
                if trigger_id is None:
                    raise InvalidOperationError(
                        f"No failed deliveries to retry for {kind.value} {item_id}"
                    )

            await self._audit.log(
                event_type=AuditEventType.MANUAL_TRIGGER,
                action="retry_failed",
                resource_type=kind.value,
                resource_id=item_id,
                user_id=user_id,
                details={"retry_of": trigger_id},
            )
            logger.info(f"Retrying failed deliveries of {kind.value} {item_id} (trigger {trigger_id})")

            started = time.perf_counter()
            try:
                dispatch = await self._dispatcher.retry_failed(item_id, kind, trigger_id)
            except InvalidOperationError:
                raise
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.error(f"Retry for {kind.value} {item_id} failed: {error}")
                await self._audit.log(
                    event_type=AuditEventType.NOTIFICATION_FAILED,
                    action="retry_failed",
                    resource_type=kind.value,
                    resource_id=item_id,
                    user_id=user_id,
                    severity=AuditSeverity.ERROR,
                    success=False,
                    error_message=error,
                    execution_time_ms=(time.perf_counter() - started) * 1000,
                    details={"retry_of": trigger_id},
                )
                return NotificationResult(
                    item_id, kind, NotificationStatus.FAILED, trigger_id=trigger_id, error=error
                )

            details = {
                "retry_of": trigger_id,
                "attempted": dispatch.attempted,
                "succeeded": dispatch.succeeded,
                "failed": dispatch.failed,
                "skipped": dispatch.skipped,
            }
            elapsed_ms = (time.perf_counter() - started) * 1000
            if dispatch.all_failed or dispatch.attempted == 0:
                error = (
                    f"All {dispatch.attempted} retried deliveries failed"
                    if dispatch.attempted
                    else "No failed recipient is still eligible"
                )
                await self._audit.log(
                    event_type=AuditEventType.NOTIFICATION_FAILED,
                    action="retry_failed",
                    resource_type=kind.value,
                    resource_id=item_id,
                    user_id=user_id,
                    severity=AuditSeverity.ERROR,
                    success=False,
                    error_message=error,
                    execution_time_ms=elapsed_ms,
                    details={**details, "errors": dispatch.errors[:5]},
                )
                return NotificationResult(
                    item_id, kind, NotificationStatus.FAILED,
                    trigger_id=trigger_id, dispatch=dispatch, error=error,
                )

            await self._audit.log(
                event_type=AuditEventType.NOTIFICATION_SENT,
                action="retry_failed",
                resource_type=kind.value,
                resource_id=item_id,
                user_id=user_id,
                severity=AuditSeverity.WARNING if dispatch.failed else AuditSeverity.INFO,
                execution_time_ms=elapsed_ms,
                details=details,
            )
            return NotificationResult(
                item_id, kind, NotificationStatus.SENT, trigger_id=trigger_id, dispatch=dispatch
            )

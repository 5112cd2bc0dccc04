"""
Voting service: the write-side facade for votes and the voting lifecycle.

Every store operation here runs in its own session through
``run_store_operation`` (timeout + transient retry) and commits before any
side effect leaves the process. Completion messages are published only
after the terminal transition has been committed, and only by the caller
that won it.
"""

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.retry import BackoffPolicy, RetryExhaustedError, retry_with_backoff
from ..models import (
    VOTING_ROLES,
    AuditEventType,
    AuditSeverity,
    CompletionReason,
    ItemKind,
    ItemStatus,
    Profile,
    VotableItem,
    VoteChoice,
    VoteTally,
    as_utc,
    utcnow,
)
from ..schemas.events import CompletionMessage
from .alerting import AlertSeverity
from .audit_logger import AuditLogger
from .completion_detector import CompletionDetector, CompletionEvent, tally_counts
from .event_channel import EventChannel
from .exceptions import (
    InvalidOperationError,
    ItemNotFoundError,
    OperationFailedError,
    RateLimitedError,
    ValidationError,
)
from .outcome_calculator import DEFAULT_RULES, OutcomeResult, OutcomeRules, TallyCounts, calculate_outcome
from .performance_monitor import PerformanceMonitor
from .store import DEFAULT_STORE_POLICY, run_store_operation
from .tally_engine import TallyEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPENABLE_STATUSES = (ItemStatus.DRAFT, ItemStatus.PUBLISHED)
CANCELLABLE_STATUSES = (ItemStatus.DRAFT, ItemStatus.PUBLISHED, ItemStatus.VOTING)


# =============================================================================
# RATE LIMITING
# =============================================================================


class VoteRateLimiter:
    """
    Sliding-window limit on vote submissions per (voter, item).

    Rejected submissions do not consume the window. Pairs with no attempt
    inside the window are dropped at most once per window, so the map only
    holds recently active voters.
    """

    def __init__(
        self,
        max_attempts: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._attempts: dict[tuple[UUID, UUID], deque[float]] = {}
        self._last_prune = clock()

    @property
    def tracked_pairs(self) -> int:
        return len(self._attempts)

    def check(self, voter_id: UUID, item_id: UUID) -> None:
        """Count one submission or raise RateLimitedError."""
        now = self._clock()
        if now - self._last_prune >= self.window_seconds:
            self._prune(now)

        key = (voter_id, item_id)
        attempts = self._attempts.setdefault(key, deque())
        while attempts and attempts[0] <= now - self.window_seconds:
            attempts.popleft()

        if len(attempts) >= self.max_attempts:
            retry_after = attempts[0] + self.window_seconds - now
            raise RateLimitedError(
                f"Too many vote submissions; try again in {retry_after:.0f}s",
                retry_after_seconds=retry_after,
            )
        attempts.append(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        expired = [key for key, attempts in self._attempts.items() if not attempts or attempts[-1] <= cutoff]
        for key in expired:
            del self._attempts[key]
        self._last_prune = now

    def reset(self) -> None:
        self._attempts.clear()


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class VoteReceipt:
    """What a voter gets back from a successful vote."""
    item_id: UUID
    voter_id: UUID
    choice: VoteChoice
    comment: str | None
    updated_existing: bool
    counts: TallyCounts
    completion: CompletionEvent | None


@dataclass
class TallyView:
    """Current tally with the outcome it would produce if voting closed now."""
    item_id: UUID
    kind: ItemKind
    status: ItemStatus
    counts: TallyCounts
    total_eligible_voters: int
    quorum_threshold: float
    approval_threshold: float
    voting_deadline: datetime | None
    completed_at: datetime | None
    completion_reason: CompletionReason | None
    projected: OutcomeResult


@dataclass
class SweepResult:
    """Result of one deadline sweep."""
    checked: int = 0
    completed: list[CompletionEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


# =============================================================================
# SERVICE
# =============================================================================


class VotingService:
    """Vote writes, tally reads and the voting lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: EventChannel,
        audit: AuditLogger,
        monitor: PerformanceMonitor | None = None,
        topic: str = "voting_completion",
        rules: OutcomeRules = DEFAULT_RULES,
        rate_limiter: VoteRateLimiter | None = None,
        store_policy: BackoffPolicy = DEFAULT_STORE_POLICY,
        store_timeout: float | None = None,
        publish_policy: BackoffPolicy = BackoffPolicy(max_attempts=3, base_delay=0.5, max_delay=5.0),
        default_quorum_threshold: float = 50.0,
        default_approval_threshold: float = 75.0,
        max_comment_length: int = 2000,
    ):
        self._session_factory = session_factory
        self._channel = channel
        self._audit = audit
        self._monitor = monitor
        self.topic = topic
        self._rules = rules
        self._rate_limiter = rate_limiter or VoteRateLimiter()
        self._store_policy = store_policy
        self._store_timeout = store_timeout
        self._publish_policy = publish_policy
        self.default_quorum_threshold = default_quorum_threshold
        self.default_approval_threshold = default_approval_threshold
        self._max_comment_length = max_comment_length

    async def _store(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run a unit of work and record its timing against the database component."""
        started = time.perf_counter()
        try:
            result = await run_store_operation(
                operation, description, self._store_policy, self._store_timeout
            )
        except OperationFailedError as e:
            self._record("database", description, started, success=False, error=str(e))
            raise
        self._record("database", description, started)
        return result

    def _record(
        self,
        component: str,
        operation: str,
        started: float,
        success: bool = True,
        error: str | None = None,
    ) -> None:
        if self._monitor is not None:
            self._monitor.record(
                component, operation, (time.perf_counter() - started) * 1000,
                success=success, error=error,
            )

    # =========================================================================
    # VOTES
    # =========================================================================

    async def record_vote(
        self,
        item_id: UUID,
        voter_id: UUID,
        choice: str | VoteChoice,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> VoteReceipt:
        """
        Record (or change) a vote.

        Raises:
            ValidationError subclasses: rejected as submitted, never retried
            ItemNotFoundError: no such item
            OperationFailedError: store unavailable after retries
        """
        self._rate_limiter.check(voter_id, item_id)
        started = time.perf_counter()

        async def write() -> VoteReceipt:
            async with self._session_factory() as session:
                engine = TallyEngine(session, self._max_comment_length, self._rules)
                outcome = await engine.record_vote(item_id, voter_id, choice, comment, now)
                await session.commit()
                return VoteReceipt(
                    item_id=item_id,
                    voter_id=voter_id,
                    choice=outcome.vote.choice,
                    comment=outcome.vote.comment,
                    updated_existing=outcome.updated_existing,
                    counts=tally_counts(outcome.tally),
                    completion=outcome.completion,
                )

        try:
            receipt = await self._store(write, "record_vote")
        except (ValidationError, ItemNotFoundError) as e:
            # The system worked; the request was refused
            self._record("voting_system", "record_vote", started)
            logger.info(f"Vote on {item_id} by {voter_id} rejected: {e}")
            raise
        except Exception as e:
            self._record("voting_system", "record_vote", started, success=False, error=str(e))
            raise
        self._record("voting_system", "record_vote", started)

        await self._audit.log(
            event_type=AuditEventType.VOTE_RECORDED,
            action="vote_updated" if receipt.updated_existing else "vote_cast",
            resource_type="vote",
            resource_id=item_id,
            user_id=voter_id,
            details={
                "choice": receipt.choice,
                "for": receipt.counts.for_count,
                "against": receipt.counts.against_count,
                "abstain": receipt.counts.abstain_count,
            },
        )
        if receipt.completion is not None:
            await self._announce_completion(receipt.completion, user_id=voter_id)
        return receipt

    async def get_tally(self, item_id: UUID) -> TallyView:
        async def read() -> TallyView:
            async with self._session_factory() as session:
                item = await session.get(VotableItem, item_id)
                if item is None:
                    raise ItemNotFoundError(f"Item {item_id} not found")
                result = await session.execute(
                    select(VoteTally).where(VoteTally.item_id == item_id)
                )
                counts = tally_counts(result.scalar_one_or_none())
                return TallyView(
                    item_id=item.id,
                    kind=item.kind,
                    status=item.status,
                    counts=counts,
                    total_eligible_voters=item.total_eligible_voters,
                    quorum_threshold=item.quorum_threshold,
                    approval_threshold=item.approval_threshold,
                    voting_deadline=as_utc(item.voting_deadline),
                    completed_at=as_utc(item.completed_at),
                    completion_reason=item.completion_reason,
                    projected=calculate_outcome(
                        kind=item.kind,
                        counts=counts,
                        total_eligible_voters=item.total_eligible_voters,
                        quorum_threshold=item.quorum_threshold,
                        approval_threshold=item.approval_threshold,
                        completion_reason=item.completion_reason,
                        rules=self._rules,
                    ),
                )

        return await self._store(read, "get_tally")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open_voting(
        self,
        item_id: UUID,
        voting_deadline: datetime | None = None,
        quorum_threshold: float | None = None,
        approval_threshold: float | None = None,
        user_id: UUID | None = None,
        now: datetime | None = None,
    ) -> VotableItem:
        """
        Move a draft or published item into voting.

        Snapshots the eligible-voter count (active admins and board members)
        and applies default thresholds where none are given.
        """
        now = now or utcnow()
        deadline = as_utc(voting_deadline)
        if deadline is not None and deadline <= now:
            raise InvalidOperationError("Voting deadline must be in the future")

        async def write() -> VotableItem:
            async with self._session_factory() as session:
                engine = TallyEngine(session, self._max_comment_length, self._rules)
                item = await engine.lock_item(item_id)
                if item.status not in OPENABLE_STATUSES:
                    raise InvalidOperationError(
                        f"Cannot open voting on a {item.kind.value} with status {item.status.value}"
                    )

                eligible = await session.scalar(
                    select(func.count())
                    .select_from(Profile)
                    .where(Profile.is_active.is_(True), Profile.role.in_(VOTING_ROLES))
                )

                item.status = ItemStatus.VOTING
                item.voting_opened_at = now
                item.voting_deadline = deadline
                item.total_eligible_voters = eligible or 0
                item.quorum_threshold = (
                    quorum_threshold if quorum_threshold is not None
                    else self.default_quorum_threshold
                )
                item.approval_threshold = (
                    approval_threshold if approval_threshold is not None
                    else self.default_approval_threshold
                )
                item.completed_at = None
                item.completion_reason = None
                await session.flush()
                await engine.recompute_tally(item_id, now)
                await session.commit()
                return item

        item = await self._store(write, "open_voting")
        logger.info(
            f"Voting opened on {item.kind.value} {item_id} "
            f"({item.total_eligible_voters} eligible, deadline {deadline})"
        )
        await self._audit.log(
            event_type=AuditEventType.VOTING_OPENED,
            action="open_voting",
            resource_type=item.kind.value,
            resource_id=item_id,
            user_id=user_id,
            details={
                "total_eligible_voters": item.total_eligible_voters,
                "quorum_threshold": item.quorum_threshold,
                "approval_threshold": item.approval_threshold,
                "voting_deadline": deadline,
            },
        )
        return item

    async def close_voting(
        self,
        item_id: UUID,
        user_id: UUID | None = None,
        now: datetime | None = None,
    ) -> CompletionEvent:
        """Conclude voting early (reason=manual)."""
        now = now or utcnow()

        async def write() -> CompletionEvent | None:
            async with self._session_factory() as session:
                event = await CompletionDetector(session, self._rules).force_complete(item_id, now)
                await session.commit()
                return event

        event = await self._store(write, "close_voting")
        if event is None:
            raise InvalidOperationError(f"Voting on item {item_id} is not open")
        await self._announce_completion(event, user_id=user_id)
        return event

    async def cancel_voting(
        self,
        item_id: UUID,
        user_id: UUID | None = None,
        now: datetime | None = None,
    ) -> VotableItem:
        """Cancel an item. No completion event and no summary email."""
        now = now or utcnow()

        async def write() -> tuple[VotableItem, ItemStatus]:
            async with self._session_factory() as session:
                item = await TallyEngine(session).lock_item(item_id)
                previous = item.status
                if previous not in CANCELLABLE_STATUSES:
                    raise InvalidOperationError(
                        f"Cannot cancel a {item.kind.value} with status {previous.value}"
                    )
                result = await session.execute(
                    update(VotableItem)
                    .where(VotableItem.id == item_id, VotableItem.status == previous)
                    .values(status=ItemStatus.CANCELLED, completed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidOperationError(f"Item {item_id} changed status concurrently")
                await session.commit()
                await session.refresh(item)
                return item, previous

        item, previous = await self._store(write, "cancel_voting")
        logger.info(f"Voting cancelled on {item.kind.value} {item_id} (was {previous.value})")
        await self._audit.log(
            event_type=AuditEventType.VOTING_CANCELLED,
            action="cancel_voting",
            resource_type=item.kind.value,
            resource_id=item_id,
            user_id=user_id,
            severity=AuditSeverity.WARNING,
            details={"previous_status": previous},
        )
        return item

    # =========================================================================
    # DEADLINE SWEEP
    # =========================================================================

    async def sweep_expired_deadlines(self, now: datetime | None = None) -> SweepResult:
        """Conclude every item still in voting whose deadline has passed."""
        now = now or utcnow()
        started = time.perf_counter()
        result = SweepResult()

        async def find() -> list[UUID]:
            async with self._session_factory() as session:
                rows = await session.execute(
                    select(VotableItem.id).where(
                        VotableItem.status == ItemStatus.VOTING,
                        VotableItem.voting_deadline.is_not(None),
                        VotableItem.voting_deadline < now,
                    )
                )
                return list(rows.scalars().all())

        item_ids = await self._store(find, "find_expired_items")
        result.checked = len(item_ids)

        for item_id in item_ids:

            async def conclude(item_id: UUID = item_id) -> CompletionEvent | None:
                async with self._session_factory() as session:
                    event = await CompletionDetector(session, self._rules).evaluate(item_id, now)
                    await session.commit()
                    return event

            try:
                event = await self._store(conclude, "sweep_item")
            except Exception as e:
                logger.error(f"Deadline sweep failed for item {item_id}: {e}")
                result.errors.append(f"{item_id}: {e}")
                continue
            if event is not None:
                result.completed.append(event)
                await self._announce_completion(event)

        success = not result.errors
        self._record(
            "scheduler", "deadline_sweep", started,
            success=success, error=None if success else f"{len(result.errors)} item(s) failed",
        )
        await self._audit.log(
            event_type=AuditEventType.SCHEDULER_RUN,
            action="deadline_sweep",
            resource_type="scheduler",
            severity=AuditSeverity.INFO if success else AuditSeverity.ERROR,
            success=success,
            error_message="; ".join(result.errors[:5]) or None,
            execution_time_ms=(time.perf_counter() - started) * 1000,
            details={
                "checked": result.checked,
                "completed": [str(e.item_id) for e in result.completed],
                "errors": len(result.errors),
            },
        )
        logger.info(
            f"Deadline sweep: {result.checked} expired, "
            f"{len(result.completed)} completed, {len(result.errors)} errors"
        )
        return result

    # =========================================================================
    # COMPLETION EVENTS
    # =========================================================================

    async def _announce_completion(
        self,
        event: CompletionEvent,
        user_id: UUID | None = None,
    ) -> None:
        await self._audit.log(
            event_type=AuditEventType.VOTING_COMPLETED,
            action=event.outcome.status.value,
            resource_type=event.kind.value,
            resource_id=event.item_id,
            user_id=user_id,
            details={
                "completion_reason": event.reason,
                "participation_rate": event.outcome.participation_rate,
                "approval_percentage": event.outcome.approval_percentage,
                "reason": event.outcome.reason,
            },
        )
        await self.publish_completion(event)

    async def publish_completion(self, event: CompletionEvent) -> bool:
        """
        Publish a committed completion on the channel.

        Publishing is retried; if the channel stays down the failure is
        audited and alerted, and the summary has to be sent manually.
        """
        message = CompletionMessage(
            action="voting_completed",
            kind=event.kind.value,
            id=event.item_id,
            timestamp=event.timestamp,
        )
        try:
            await retry_with_backoff(
                lambda: self._channel.publish(self.topic, message),
                self._publish_policy,
            )
        except RetryExhaustedError as e:
            error = f"Could not publish completion of {event.kind.value} {event.item_id}: {e.last_error}"
            logger.error(error)
            await self._audit.log(
                event_type=AuditEventType.SYSTEM_ERROR,
                action="publish_completion",
                resource_type=event.kind.value,
                resource_id=event.item_id,
                severity=AuditSeverity.ERROR,
                success=False,
                error_message=error,
            )
            if self._monitor is not None:
                self._monitor.alerts.raise_alert(
                    "event_channel",
                    "publish_failed",
                    AlertSeverity.WARNING,
                    error,
                    details={"item_id": str(event.item_id), "kind": event.kind.value},
                )
            return False

        logger.info(f"Published completion of {event.kind.value} {event.item_id}")
        return True

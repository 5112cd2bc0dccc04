"""
Email Dispatch Service: personalized voting summaries, bulk-sent.

For one concluded item this:
1. Loads the item, its tally and votes, and computes the outcome
2. Filters profiles down to active, opted-in recipients
3. Renders one message per recipient (varies by what they voted)
4. Delivers with bounded concurrency and per-recipient retry
5. Records one EmailDeliveryAttempt per recipient

The delivery rows are also the history an administrator reads, and the
basis for re-sending to just the recipients whose delivery failed.

A recipient whose retries run out is recorded as failed and the batch
carries on. Only a missing item or an unavailable store fails the call.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..core.retry import BackoffPolicy, RetryExhaustedError, retry_with_backoff
from ..models import (
    VOTING_ROLES,
    DeliveryStatus,
    EmailDeliveryAttempt,
    ItemKind,
    Profile,
    VotableItem,
    VoteRecord,
    VoteTally,
)
from .completion_detector import tally_counts
from .email_templates import VoterLine, VotingSummary, render_summary
from .email_transport import EmailTransport, RenderedEmail
from .exceptions import DeliveryError, InvalidOperationError, ItemNotFoundError
from .outcome_calculator import DEFAULT_RULES, OutcomeRules, calculate_outcome
from .performance_monitor import PerformanceMonitor
from .store import DEFAULT_STORE_POLICY, run_store_operation

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class DispatchConfig:
    """Email dispatch behavior."""

    organization_name: str = "Board Management"
    portal_url: str = "http://localhost:3000"

    # Per-recipient delivery
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    send_timeout_seconds: float = 30.0

    # Simultaneous sends within one dispatch
    max_concurrent: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "DispatchConfig":
        return cls(
            organization_name=settings.organization_name,
            portal_url=settings.portal_url,
            max_attempts=settings.email_max_attempts,
            retry_base_delay=settings.email_retry_base_delay,
            send_timeout_seconds=settings.email_send_timeout_seconds,
            max_concurrent=settings.email_max_concurrent,
        )

    @property
    def retry_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class Recipient:
    user_id: UUID
    email: str
    full_name: str


@dataclass
class DeliveryOutcome:
    """One recipient's result within a dispatch."""
    recipient: Recipient
    status: DeliveryStatus
    attempt_count: int
    last_error: str | None = None
    delivery_time_ms: float | None = None


@dataclass
class DispatchResult:
    """Aggregate counts for one summary dispatch."""
    item_id: UUID
    kind: ItemKind
    trigger_id: UUID
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.attempted > 0 and self.succeeded == 0


def normalize_email(address: str | None) -> str | None:
    """Return the normalized address, or None if it is not deliverable syntax."""
    if not address:
        return None
    try:
        return validate_email(address, check_deliverability=False).normalized
    except EmailNotValidError:
        return None


# =============================================================================
# DISPATCH SERVICE
# =============================================================================


class EmailDispatchService:
    """Sends completion summaries through an EmailTransport."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: EmailTransport,
        config: DispatchConfig | None = None,
        monitor: PerformanceMonitor | None = None,
        rules: OutcomeRules = DEFAULT_RULES,
        store_policy: BackoffPolicy = DEFAULT_STORE_POLICY,
        store_timeout: float | None = None,
    ):
        self._session_factory = session_factory
        self._transport = transport
        self._config = config or DispatchConfig()
        self._monitor = monitor
        self._rules = rules
        self._store_policy = store_policy
        self._store_timeout = store_timeout

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def send_completion_summary(
        self,
        item_id: UUID,
        kind: ItemKind,
        trigger_id: UUID | None = None,
    ) -> DispatchResult:
        """
        Email a voting summary to every eligible recipient.

        Raises:
            ItemNotFoundError: no item of this kind with this id
            OperationFailedError: store unavailable while loading
        """
        started = time.perf_counter()
        result = DispatchResult(item_id=item_id, kind=kind, trigger_id=trigger_id or uuid4())

        summary, profiles = await run_store_operation(
            lambda: self._load(item_id, kind),
            description=f"load summary for {kind.value} {item_id}",
            policy=self._store_policy,
            timeout=self._store_timeout,
        )

        recipients: list[Recipient] = []
        invalid: list[DeliveryOutcome] = []
        for profile in profiles:
            if not profile.is_active or not profile.voting_email_opt_in:
                result.skipped += 1
                continue
            email = normalize_email(profile.email)
            recipient = Recipient(profile.id, email or profile.email, profile.full_name)
            if email is None:
                result.skipped += 1
                invalid.append(DeliveryOutcome(
                    recipient=recipient,
                    status=DeliveryStatus.SKIPPED,
                    attempt_count=0,
                    last_error="Invalid email address",
                ))
                continue
            recipients.append(recipient)

        logger.info(
            f"Dispatching {kind.value} summary for {item_id} to {len(recipients)} "
            f"recipient(s) ({result.skipped} skipped, trigger {result.trigger_id})"
        )

        delivered = await self._deliver_all(summary, recipients, result)
        await self._record_attempts(result, delivered + invalid)

        duration_ms = (time.perf_counter() - started) * 1000
        if self._monitor is not None:
            self._monitor.record(
                "email_service",
                "send_completion_summary",
                duration_ms,
                success=not result.all_failed,
                error=f"{result.failed} of {result.attempted} deliveries failed" if result.failed else None,
                details={"item_id": str(item_id), "kind": kind.value},
            )

        logger.info(
            f"Summary dispatch for {kind.value} {item_id} finished in {duration_ms:.0f}ms: "
            f"{result.succeeded} sent, {result.failed} failed, {result.skipped} skipped"
        )
        return result

    # =========================================================================
    # HISTORY AND RETRY
    # =========================================================================

    async def delivery_history(
        self,
        item_id: UUID,
        trigger_id: UUID | None = None,
        status: DeliveryStatus | None = None,
        limit: int | None = 100,
    ) -> list[EmailDeliveryAttempt]:
        """Delivery rows for an item, newest first."""

        async def read() -> list[EmailDeliveryAttempt]:
            async with self._session_factory() as session:
                stmt = select(EmailDeliveryAttempt).where(EmailDeliveryAttempt.item_id == item_id)
                if trigger_id is not None:
                    stmt = stmt.where(EmailDeliveryAttempt.trigger_id == trigger_id)
                if status is not None:
                    stmt = stmt.where(EmailDeliveryAttempt.status == status)
                stmt = stmt.order_by(
                    EmailDeliveryAttempt.created_at.desc(), EmailDeliveryAttempt.email
                )
                if limit is not None:
                    stmt = stmt.limit(limit)
                return list((await session.execute(stmt)).scalars().all())

        return await run_store_operation(
            read,
            description=f"read delivery history for {item_id}",
            policy=self._store_policy,
            timeout=self._store_timeout,
        )

    async def latest_failed_trigger(self, item_id: UUID) -> UUID | None:
        """Trigger id of the most recent dispatch with a failed recipient."""
        failed = await self.delivery_history(item_id, status=DeliveryStatus.FAILED, limit=1)
        return failed[0].trigger_id if failed else None

    async def retry_failed(
        self,
        item_id: UUID,
        kind: ItemKind,
        trigger_id: UUID,
    ) -> DispatchResult:
        """
        Re-send the summary to the recipients of one trigger whose delivery
        failed. Rows are updated in place; sent and skipped rows are left alone.

        A recipient who has since been deactivated, opted out or lost a valid
        address is counted as skipped and keeps the failed row.

        Raises:
            ItemNotFoundError: no item of this kind with this id
            InvalidOperationError: the trigger has no failed deliveries
        """
        started = time.perf_counter()
        result = DispatchResult(item_id=item_id, kind=kind, trigger_id=trigger_id)

        failed_rows = await self.delivery_history(
            item_id, trigger_id=trigger_id, status=DeliveryStatus.FAILED, limit=None
        )
        if not failed_rows:
            raise InvalidOperationError(f"Trigger {trigger_id} has no failed deliveries")

        summary, profiles = await run_store_operation(
            lambda: self._load(item_id, kind),
            description=f"load summary for {kind.value} {item_id}",
            policy=self._store_policy,
            timeout=self._store_timeout,
        )
        by_id = {p.id: p for p in profiles}

        recipients: list[Recipient] = []
        for row in failed_rows:
            profile = by_id.get(row.recipient_id)
            email = normalize_email(profile.email) if profile is not None else None
            if (
                profile is None
                or not profile.is_active
                or not profile.voting_email_opt_in
                or email is None
            ):
                result.skipped += 1
                continue
            recipients.append(Recipient(profile.id, email, profile.full_name))

        logger.info(
            f"Retrying {len(recipients)} failed delivery(ies) of trigger {trigger_id} "
            f"for {kind.value} {item_id} ({result.skipped} skipped)"
        )

        delivered = await self._deliver_all(summary, recipients, result)
        await self._update_attempts(result, delivered)

        duration_ms = (time.perf_counter() - started) * 1000
        if self._monitor is not None:
            self._monitor.record(
                "email_service",
                "retry_failed",
                duration_ms,
                success=not result.all_failed,
                error=f"{result.failed} of {result.attempted} retries failed" if result.failed else None,
                details={"item_id": str(item_id), "trigger_id": str(trigger_id)},
            )
        return result

    # =========================================================================
    # LOADING
    # =========================================================================

    async def _load(
        self,
        item_id: UUID,
        kind: ItemKind,
    ) -> tuple[VotingSummary, list[Profile]]:
        async with self._session_factory() as session:
            item = await session.get(VotableItem, item_id)
            if item is None or item.kind != kind:
                raise ItemNotFoundError(f"{kind.value.capitalize()} {item_id} not found")

            tally = (
                await session.execute(select(VoteTally).where(VoteTally.item_id == item_id))
            ).scalar_one_or_none()
            counts = tally_counts(tally)

            votes = (
                await session.execute(
                    select(VoteRecord, Profile)
                    .join(Profile, VoteRecord.voter_id == Profile.id)
                    .where(VoteRecord.item_id == item_id)
                    .order_by(VoteRecord.voted_at)
                )
            ).all()

            profiles = list(
                (await session.execute(select(Profile).order_by(Profile.full_name))).scalars().all()
            )

        outcome = calculate_outcome(
            kind=item.kind,
            counts=counts,
            total_eligible_voters=item.total_eligible_voters,
            quorum_threshold=item.quorum_threshold,
            approval_threshold=item.approval_threshold,
            completion_reason=item.completion_reason,
            rules=self._rules,
        )

        voted_ids = {vote.voter_id for vote, _ in votes}
        summary = VotingSummary(
            item_id=item.id,
            kind=item.kind,
            title=item.title,
            outcome=outcome,
            counts=counts,
            total_eligible_voters=item.total_eligible_voters,
            quorum_threshold=item.quorum_threshold,
            approval_threshold=item.approval_threshold,
            completion_reason=item.completion_reason,
            completed_at=item.completed_at,
            votes=[
                VoterLine(
                    voter_id=profile.id,
                    name=profile.full_name,
                    position=profile.position,
                    choice=vote.choice,
                    comment=vote.comment,
                )
                for vote, profile in votes
            ],
            non_voters=[
                p.full_name
                for p in profiles
                if p.is_active and p.role in VOTING_ROLES and p.id not in voted_ids
            ],
        )
        return summary, profiles

    # =========================================================================
    # DELIVERY
    # =========================================================================

    async def _deliver_all(
        self,
        summary: VotingSummary,
        recipients: list[Recipient],
        result: DispatchResult,
    ) -> list[DeliveryOutcome]:
        semaphore = asyncio.Semaphore(self._config.max_concurrent)

        async def bounded(recipient: Recipient) -> DeliveryOutcome:
            async with semaphore:
                return await self._deliver(summary, recipient)

        delivered = await asyncio.gather(*(bounded(r) for r in recipients))

        for outcome in delivered:
            result.attempted += 1
            if outcome.status == DeliveryStatus.SENT:
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append(f"{outcome.recipient.email}: {outcome.last_error}")
        return list(delivered)

    async def _deliver(self, summary: VotingSummary, recipient: Recipient) -> DeliveryOutcome:
        message = render_summary(
            summary,
            recipient_id=recipient.user_id,
            recipient_name=recipient.full_name,
            organization=self._config.organization_name,
            portal_url=self._config.portal_url,
        )

        attempts = 0
        started = time.perf_counter()

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            await self._send_once(recipient.email, message)

        try:
            await retry_with_backoff(
                attempt,
                self._config.retry_policy,
                retry_on=(DeliveryError,),
                on_retry=lambda n, e, delay: logger.warning(
                    f"Delivery to {recipient.email} failed (attempt {n}): {e}; "
                    f"retrying in {delay:.1f}s"
                ),
            )
        except RetryExhaustedError as e:
            duration_ms = (time.perf_counter() - started) * 1000
            self._record_metric(duration_ms, False, str(e.last_error))
            logger.error(f"Giving up on {recipient.email} after {attempts} attempts: {e.last_error}")
            return DeliveryOutcome(
                recipient=recipient,
                status=DeliveryStatus.FAILED,
                attempt_count=attempts,
                last_error=str(e.last_error),
                delivery_time_ms=round(duration_ms, 2),
            )

        duration_ms = (time.perf_counter() - started) * 1000
        self._record_metric(duration_ms, True, None)
        return DeliveryOutcome(
            recipient=recipient,
            status=DeliveryStatus.SENT,
            attempt_count=attempts,
            delivery_time_ms=round(duration_ms, 2),
        )

    async def _send_once(self, address: str, message: RenderedEmail) -> None:
        try:
            success, error = await asyncio.wait_for(
                self._transport.send(address, message),
                timeout=self._config.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise DeliveryError(
                f"Send timed out after {self._config.send_timeout_seconds}s"
            )
        except Exception as e:
            raise DeliveryError(f"Transport error: {e}") from e
        if not success:
            raise DeliveryError(error or "Transport reported failure")

    def _record_metric(self, duration_ms: float, success: bool, error: str | None) -> None:
        if self._monitor is not None:
            self._monitor.record("email_service", "deliver", duration_ms, success=success, error=error)

    async def _record_attempts(
        self,
        result: DispatchResult,
        outcomes: list[DeliveryOutcome],
    ) -> None:
        if not outcomes:
            return

        async def write() -> None:
            async with self._session_factory() as session:
                session.add_all([
                    EmailDeliveryAttempt(
                        trigger_id=result.trigger_id,
                        item_id=result.item_id,
                        recipient_id=o.recipient.user_id,
                        email=o.recipient.email,
                        status=o.status,
                        attempt_count=o.attempt_count,
                        last_error=o.last_error,
                        delivery_time_ms=o.delivery_time_ms,
                    )
                    for o in outcomes
                ])
                await session.commit()

        try:
            await run_store_operation(
                write,
                description=f"record delivery attempts for trigger {result.trigger_id}",
                policy=self._store_policy,
                timeout=self._store_timeout,
            )
        except Exception as e:
            # Delivery already happened; bookkeeping failures are reported, not raised
            logger.error(f"Failed to record delivery attempts for {result.item_id}: {e}")
            result.errors.append(f"delivery attempts not recorded: {e}")

    async def _update_attempts(
        self,
        result: DispatchResult,
        outcomes: list[DeliveryOutcome],
    ) -> None:
        if not outcomes:
            return
        by_recipient = {o.recipient.user_id: o for o in outcomes}

        async def write() -> None:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(EmailDeliveryAttempt).where(
                            EmailDeliveryAttempt.trigger_id == result.trigger_id,
                            EmailDeliveryAttempt.recipient_id.in_(list(by_recipient)),
                        )
                    )
                ).scalars().all()
                for row in rows:
                    outcome = by_recipient[row.recipient_id]
                    row.status = outcome.status
                    row.email = outcome.recipient.email
                    row.attempt_count += outcome.attempt_count
                    row.last_error = outcome.last_error
                    row.delivery_time_ms = outcome.delivery_time_ms
                await session.commit()

        try:
            await run_store_operation(
                write,
                description=f"update delivery attempts for trigger {result.trigger_id}",
                policy=self._store_policy,
                timeout=self._store_timeout,
            )
        except Exception as e:
            logger.error(f"Failed to update delivery attempts for {result.item_id}: {e}")
            result.errors.append(f"delivery attempts not recorded: {e}")

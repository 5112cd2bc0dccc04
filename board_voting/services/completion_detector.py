"""
Completion Detector: decides when an item's voting period has ended.

The decision itself is a pure function of the item, its tally and the
current time. The transition out of ``voting`` is a conditional write
(``UPDATE ... WHERE status = 'voting'``) so that concurrent triggers, such
as a vote write racing the deadline sweep, cannot both declare completion.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    CompletionReason,
    ItemKind,
    ItemStatus,
    VotableItem,
    VoteTally,
    as_utc,
    utcnow,
)
from .exceptions import ItemNotFoundError
from .outcome_calculator import (
    DEFAULT_RULES,
    OutcomeResult,
    OutcomeRules,
    TallyCounts,
    calculate_outcome,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class CompletionDecision:
    """Whether voting on an item has concluded, and why."""
    complete: bool
    reason: CompletionReason | None = None


NOT_COMPLETE = CompletionDecision(complete=False)


@dataclass(frozen=True)
class CompletionEvent:
    """Created once per item, by whichever caller wins the terminal transition."""
    item_id: UUID
    kind: ItemKind
    reason: CompletionReason
    outcome: OutcomeResult
    timestamp: datetime


# =============================================================================
# DETECTION
# =============================================================================


def detect_completion(
    item: VotableItem,
    tally: TallyCounts,
    now: datetime,
) -> CompletionDecision:
    """
    Decide whether voting on ``item`` is over.

    Complete when every eligible voter has voted (reason=all_voted) or the
    deadline is strictly in the past (reason=deadline_expired). An item with
    no eligible voters is never complete by all_voted; only its deadline or
    a manual close ends it.
    """
    if item.status != ItemStatus.VOTING:
        return NOT_COMPLETE

    eligible = item.total_eligible_voters or 0
    if eligible > 0 and tally.total_votes >= eligible:
        return CompletionDecision(complete=True, reason=CompletionReason.ALL_VOTED)

    deadline = as_utc(item.voting_deadline)
    if deadline is not None and deadline < as_utc(now):
        return CompletionDecision(complete=True, reason=CompletionReason.DEADLINE_EXPIRED)

    return NOT_COMPLETE


def tally_counts(tally: VoteTally | None) -> TallyCounts:
    if tally is None:
        return TallyCounts()
    return TallyCounts(
        for_count=tally.for_count,
        against_count=tally.against_count,
        abstain_count=tally.abstain_count,
    )


# =============================================================================
# TRANSITION
# =============================================================================


class CompletionDetector:
    """
    Evaluates items and performs the guarded terminal transition.

    Runs inside the caller's session; the caller owns the commit. A
    returned CompletionEvent means this caller won the transition and is
    responsible for publishing it once the transaction commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        rules: OutcomeRules = DEFAULT_RULES,
    ):
        self._session = session
        self._rules = rules

    async def _load(self, item_id: UUID) -> tuple[VotableItem, TallyCounts]:
        item = await self._session.get(VotableItem, item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        result = await self._session.execute(
            select(VoteTally).where(VoteTally.item_id == item_id)
        )
        return item, tally_counts(result.scalar_one_or_none())

    async def evaluate(
        self,
        item_id: UUID,
        now: datetime | None = None,
    ) -> CompletionEvent | None:
        """Check an item and transition it if voting has concluded."""
        now = now or utcnow()
        item, counts = await self._load(item_id)

        decision = detect_completion(item, counts, now)
        if not decision.complete:
            return None

        return await self._transition(item, counts, decision.reason, now)

    async def force_complete(
        self,
        item_id: UUID,
        now: datetime | None = None,
    ) -> CompletionEvent | None:
        """Close voting early (reason=manual). None if already concluded."""
        now = now or utcnow()
        item, counts = await self._load(item_id)
        if item.status != ItemStatus.VOTING:
            return None
        return await self._transition(item, counts, CompletionReason.MANUAL, now)

    async def _transition(
        self,
        item: VotableItem,
        counts: TallyCounts,
        reason: CompletionReason,
        now: datetime,
    ) -> CompletionEvent | None:
        outcome = calculate_outcome(
            kind=item.kind,
            counts=counts,
            total_eligible_voters=item.total_eligible_voters,
            quorum_threshold=item.quorum_threshold,
            approval_threshold=item.approval_threshold,
            completion_reason=reason,
            rules=self._rules,
        )

        result = await self._session.execute(
            update(VotableItem)
            .where(
                VotableItem.id == item.id,
                VotableItem.status == ItemStatus.VOTING,
            )
            .values(
                status=outcome.status,
                completed_at=now,
                completion_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(item)

        if result.rowcount != 1:
            # Another caller already concluded this item
            logger.info(
                f"Completion of {item.kind.value} {item.id} already recorded "
                f"(status={item.status.value}); skipping"
            )
            return None

        logger.info(
            f"Voting completed for {item.kind.value} {item.id}: "
            f"{outcome.status.value} ({reason.value}) - {outcome.reason}"
        )
        return CompletionEvent(
            item_id=item.id,
            kind=item.kind,
            reason=reason,
            outcome=outcome,
            timestamp=now,
        )

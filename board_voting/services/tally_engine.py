"""
Vote Tally Engine: records votes and recomputes tallies.

There is exactly one way a tally changes: ``recompute_tally`` counts the
item's vote records and overwrites the tally row. It runs in the same
transaction as the vote upsert, after the item row has been locked, so
concurrent votes on one item serialize and the tally always equals the
number of vote records.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    VOTING_ROLES,
    ItemStatus,
    Profile,
    VotableItem,
    VoteChoice,
    VoteRecord,
    VoteTally,
    as_utc,
    utcnow,
)
from .completion_detector import CompletionDetector, CompletionEvent
from .exceptions import (
    DeadlinePassedError,
    InvalidChoiceError,
    ItemNotFoundError,
    NotEligibleError,
    VotingClosedError,
)
from .outcome_calculator import DEFAULT_RULES, OutcomeRules

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_comment(comment: str | None, max_length: int = 2000) -> str | None:
    """Strip markup and collapse whitespace. Blank comments become None."""
    if comment is None:
        return None
    cleaned = _TAG_RE.sub("", comment)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if not cleaned:
        return None
    return cleaned[:max_length]


def parse_choice(choice: str | VoteChoice) -> VoteChoice:
    if isinstance(choice, VoteChoice):
        return choice
    try:
        return VoteChoice(str(choice).strip().lower())
    except ValueError:
        allowed = ", ".join(c.value for c in VoteChoice)
        raise InvalidChoiceError(f"Invalid vote choice '{choice}'. Must be one of: {allowed}")


@dataclass
class VoteOutcome:
    """Result of one successful vote write."""
    vote: VoteRecord
    tally: VoteTally
    updated_existing: bool
    completion: CompletionEvent | None


class TallyEngine:
    """Vote write path for a single unit of work. The caller commits."""

    def __init__(
        self,
        session: AsyncSession,
        max_comment_length: int = 2000,
        rules: OutcomeRules = DEFAULT_RULES,
    ):
        self._session = session
        self._max_comment_length = max_comment_length
        self._detector = CompletionDetector(session, rules)

    async def lock_item(self, item_id: UUID) -> VotableItem:
        """Load an item holding its row lock until the transaction ends."""
        result = await self._session.execute(
            select(VotableItem)
            .where(VotableItem.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        return item

    async def _check_eligible(self, voter_id: UUID) -> Profile:
        voter = await self._session.get(Profile, voter_id)
        if voter is None or not voter.is_active:
            raise NotEligibleError(f"User {voter_id} is not an active member")
        if voter.role not in VOTING_ROLES:
            raise NotEligibleError(
                f"Role '{voter.role.value}' is not allowed to vote"
            )
        return voter

    async def record_vote(
        self,
        item_id: UUID,
        voter_id: UUID,
        choice: str | VoteChoice,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> VoteOutcome:
        """
        Upsert a voter's choice, recompute the tally and run completion.

        Raises:
            InvalidChoiceError: choice not approve/reject/abstain
            VotingClosedError: item is not in voting
            DeadlinePassedError: deadline is in the past
            NotEligibleError: voter inactive or without a voting role
            ItemNotFoundError: no such item
        """
        now = now or utcnow()
        vote_choice = parse_choice(choice)

        item = await self.lock_item(item_id)
        if item.status != ItemStatus.VOTING:
            raise VotingClosedError(
                f"Voting is not open for this {item.kind.value} (status: {item.status.value})"
            )
        deadline = as_utc(item.voting_deadline)
        if deadline is not None and deadline < now:
            raise DeadlinePassedError(
                f"The voting deadline passed at {deadline.isoformat()}"
            )
        await self._check_eligible(voter_id)

        clean_comment = sanitize_comment(comment, self._max_comment_length)

        result = await self._session.execute(
            select(VoteRecord).where(
                VoteRecord.item_id == item_id,
                VoteRecord.voter_id == voter_id,
            )
        )
        vote = result.scalar_one_or_none()
        updated_existing = vote is not None

        if vote is None:
            vote = VoteRecord(
                item_id=item_id,
                voter_id=voter_id,
                choice=vote_choice,
                comment=clean_comment,
                voted_at=now,
                updated_at=now,
            )
            self._session.add(vote)
        else:
            vote.choice = vote_choice
            vote.comment = clean_comment
            vote.updated_at = now

        await self._session.flush()

        tally = await self.recompute_tally(item_id, now)
        completion = await self._detector.evaluate(item_id, now)

        logger.info(
            f"Vote {'updated' if updated_existing else 'recorded'} on "
            f"{item.kind.value} {item_id} by {voter_id}: {vote_choice.value} "
            f"(tally {tally.for_count}/{tally.against_count}/{tally.abstain_count})"
        )
        return VoteOutcome(
            vote=vote,
            tally=tally,
            updated_existing=updated_existing,
            completion=completion,
        )

    async def recompute_tally(
        self,
        item_id: UUID,
        now: datetime | None = None,
    ) -> VoteTally:
        """Count the item's vote records and overwrite its tally row."""
        rows = await self._session.execute(
            select(VoteRecord.choice, func.count())
            .where(VoteRecord.item_id == item_id)
            .group_by(VoteRecord.choice)
        )
        counts = {choice: count for choice, count in rows.all()}

        for_count = counts.get(VoteChoice.APPROVE, 0)
        against_count = counts.get(VoteChoice.REJECT, 0)
        abstain_count = counts.get(VoteChoice.ABSTAIN, 0)

        result = await self._session.execute(
            select(VoteTally).where(VoteTally.item_id == item_id)
        )
        tally = result.scalar_one_or_none()
        if tally is None:
            tally = VoteTally(item_id=item_id)
            self._session.add(tally)

        tally.for_count = for_count
        tally.against_count = against_count
        tally.abstain_count = abstain_count
        tally.total_votes = for_count + against_count + abstain_count
        tally.recomputed_at = now or utcnow()

        await self._session.flush()
        return tally

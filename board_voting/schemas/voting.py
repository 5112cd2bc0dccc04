"""Pydantic schemas for votes, tallies and the voting lifecycle."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from ..models import CompletionReason, DeliveryStatus, ItemKind, ItemStatus, VoteChoice
from .base import VotingBaseModel


# =============================================================================
# VOTES
# =============================================================================


class VoteCreate(VotingBaseModel):
    """Submit or change a vote.

    ``choice`` is validated by the tally engine so that an unknown choice
    comes back as ``invalid_choice`` like every other vote rejection.
    """

    choice: str = Field(..., min_length=1, max_length=20, examples=["approve"])
    comment: str | None = Field(None, max_length=10000)


class TallyCountsResponse(VotingBaseModel):
    for_count: int
    against_count: int
    abstain_count: int
    total_votes: int


class QuorumResponse(VotingBaseModel):
    met: bool
    required_votes: int
    actual_votes: int
    participation_rate: float
    shortfall: int


class OutcomeResponse(VotingBaseModel):
    status: ItemStatus
    passed: bool
    participation_rate: float
    approval_percentage: float
    approval_met: bool
    quorum: QuorumResponse
    reason: str


class CompletionResponse(VotingBaseModel):
    """Emitted once, when voting on an item concludes."""

    item_id: UUID
    kind: ItemKind
    reason: CompletionReason
    timestamp: datetime
    outcome: OutcomeResponse


class VoteResponse(VotingBaseModel):
    item_id: UUID
    voter_id: UUID
    choice: VoteChoice
    comment: str | None = None
    updated_existing: bool
    tally: TallyCountsResponse
    completion: CompletionResponse | None = None


class TallyResponse(VotingBaseModel):
    """Current tally and the outcome it would produce now."""

    item_id: UUID
    kind: ItemKind
    status: ItemStatus
    tally: TallyCountsResponse
    total_eligible_voters: int
    quorum_threshold: float
    approval_threshold: float
    voting_deadline: datetime | None = None
    completed_at: datetime | None = None
    completion_reason: CompletionReason | None = None
    projected_outcome: OutcomeResponse


# =============================================================================
# LIFECYCLE
# =============================================================================


class OpenVotingRequest(VotingBaseModel):
    voting_deadline: datetime | None = None
    quorum_threshold: float | None = Field(None, ge=0, le=100)
    approval_threshold: float | None = Field(None, ge=0, le=100)


class ItemStatusResponse(VotingBaseModel):
    id: UUID
    kind: ItemKind
    title: str
    status: ItemStatus
    total_eligible_voters: int
    quorum_threshold: float
    approval_threshold: float
    voting_deadline: datetime | None = None
    voting_opened_at: datetime | None = None
    completed_at: datetime | None = None
    completion_reason: CompletionReason | None = None


class SweepResponse(VotingBaseModel):
    checked: int
    completed: list[CompletionResponse]
    errors: list[str] = []


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class NotificationResponse(VotingBaseModel):
    """Result of a summary send request."""

    item_id: UUID
    kind: ItemKind
    status: str  # sent | failed | duplicate_suppressed
    trigger_id: UUID | None = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None


class DeliveryAttemptResponse(VotingBaseModel):
    """One recipient's delivery row for one trigger."""

    id: UUID
    trigger_id: UUID
    item_id: UUID
    recipient_id: UUID
    email: str
    status: DeliveryStatus
    attempt_count: int
    last_error: str | None = None
    delivery_time_ms: float | None = None
    created_at: datetime


class ParkedMessageResponse(VotingBaseModel):
    raw: str
    error: str
    received_at: datetime


class ListenerStatusResponse(VotingBaseModel):
    state: str
    topic: str
    reconnect_attempts: int
    max_reconnect_attempts: int
    reconnect_delays: list[float]
    processed: int
    sent: int
    suppressed: int
    failed: int
    malformed: int
    last_error: str | None = None
    connected_at: datetime | None = None
    parked: list[ParkedMessageResponse] = []

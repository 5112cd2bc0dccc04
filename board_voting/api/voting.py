"""API routes for votes and the voting lifecycle."""

from uuid import UUID

from fastapi import APIRouter, status

from ..core.dependencies import OptionalUserIdDep, PipelineDep, VoterIdDep
from ..schemas import (
    CompletionResponse,
    ItemStatusResponse,
    OpenVotingRequest,
    OutcomeResponse,
    SweepResponse,
    TallyCountsResponse,
    TallyResponse,
    VoteCreate,
    VoteResponse,
)
from ..services.completion_detector import CompletionEvent

router = APIRouter(tags=["voting"])


# =============================================================================
# HELPERS
# =============================================================================


def completion_to_response(event: CompletionEvent) -> CompletionResponse:
    return CompletionResponse(
        item_id=event.item_id,
        kind=event.kind,
        reason=event.reason,
        timestamp=event.timestamp,
        outcome=OutcomeResponse.model_validate(event.outcome),
    )


# =============================================================================
# VOTES
# =============================================================================


@router.post(
    "/items/{item_id}/votes",
    response_model=VoteResponse,
    status_code=status.HTTP_200_OK,
)
async def cast_vote(
    item_id: UUID,
    data: VoteCreate,
    voter_id: VoterIdDep,
    pipeline: PipelineDep,
):
    """
    Cast or change a vote.

    Re-submitting replaces the voter's previous choice; the tally counts
    each voter once. When this vote concludes the item, the completion is
    returned and the summary emails go out asynchronously.
    """
    receipt = await pipeline.voting.record_vote(item_id, voter_id, data.choice, data.comment)
    return VoteResponse(
        item_id=receipt.item_id,
        voter_id=receipt.voter_id,
        choice=receipt.choice,
        comment=receipt.comment,
        updated_existing=receipt.updated_existing,
        tally=TallyCountsResponse.model_validate(receipt.counts),
        completion=completion_to_response(receipt.completion) if receipt.completion else None,
    )


@router.get("/items/{item_id}/tally", response_model=TallyResponse)
async def get_tally(item_id: UUID, pipeline: PipelineDep):
    """Current tally and the outcome it would produce if voting closed now."""
    view = await pipeline.voting.get_tally(item_id)
    return TallyResponse(
        item_id=view.item_id,
        kind=view.kind,
        status=view.status,
        tally=TallyCountsResponse.model_validate(view.counts),
        total_eligible_voters=view.total_eligible_voters,
        quorum_threshold=view.quorum_threshold,
        approval_threshold=view.approval_threshold,
        voting_deadline=view.voting_deadline,
        completed_at=view.completed_at,
        completion_reason=view.completion_reason,
        projected_outcome=OutcomeResponse.model_validate(view.projected),
    )


# =============================================================================
# LIFECYCLE
# =============================================================================


@router.post("/items/{item_id}/open", response_model=ItemStatusResponse)
async def open_voting(
    item_id: UUID,
    data: OpenVotingRequest,
    pipeline: PipelineDep,
    user_id: OptionalUserIdDep,
):
    """Open voting on a draft or published item."""
    item = await pipeline.voting.open_voting(
        item_id,
        voting_deadline=data.voting_deadline,
        quorum_threshold=data.quorum_threshold,
        approval_threshold=data.approval_threshold,
        user_id=user_id,
    )
    return ItemStatusResponse.model_validate(item)


@router.post("/items/{item_id}/close", response_model=CompletionResponse)
async def close_voting(item_id: UUID, pipeline: PipelineDep, user_id: OptionalUserIdDep):
    """Conclude voting now (reason: manual)."""
    event = await pipeline.voting.close_voting(item_id, user_id=user_id)
    return completion_to_response(event)


@router.post("/items/{item_id}/cancel", response_model=ItemStatusResponse)
async def cancel_voting(item_id: UUID, pipeline: PipelineDep, user_id: OptionalUserIdDep):
    """Cancel an item. No summary is sent."""
    item = await pipeline.voting.cancel_voting(item_id, user_id=user_id)
    return ItemStatusResponse.model_validate(item)


@router.post("/voting/sweep", response_model=SweepResponse)
async def run_deadline_sweep(pipeline: PipelineDep):
    """Conclude every item whose deadline has passed."""
    result = await pipeline.voting.sweep_expired_deadlines()
    return SweepResponse(
        checked=result.checked,
        completed=[completion_to_response(e) for e in result.completed],
        errors=result.errors,
    )

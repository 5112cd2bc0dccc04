"""FastAPI dependencies for the pipeline and caller identity."""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from ..services.pipeline import VotingPipeline

logger = logging.getLogger(__name__)


def get_pipeline(request: Request) -> VotingPipeline:
    """The running VotingPipeline, created by the application lifespan."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None or not pipeline.started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Voting pipeline is not running",
        )
    return pipeline


async def get_voter_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> UUID:
    """Caller identity from the X-User-ID header (set by the auth proxy)."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header required",
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        logger.warning(f"Rejected malformed X-User-ID header: {x_user_id[:64]}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-User-ID format",
        )


async def get_optional_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> UUID | None:
    if not x_user_id:
        return None
    return await get_voter_id(x_user_id)


PipelineDep = Annotated[VotingPipeline, Depends(get_pipeline)]
VoterIdDep = Annotated[UUID, Depends(get_voter_id)]
OptionalUserIdDep = Annotated[UUID | None, Depends(get_optional_user_id)]

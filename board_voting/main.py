"""Board Voting: Main FastAPI Application.

Records board votes on resolutions and minutes, detects when voting has
concluded, and emails every board member a summary of the outcome.
"""

import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import close_db, get_settings, init_db
from .schemas import ErrorResponse
from .services import (
    ItemNotFoundError,
    OperationFailedError,
    RateLimitedError,
    ValidationError,
    VotingPipeline,
)

logger = logging.getLogger(__name__)
settings = get_settings()

# Validation codes that describe a state conflict rather than a bad request
CONFLICT_CODES = {"voting_closed", "deadline_passed", "invalid_operation"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: database, then the pipeline; reverse on shutdown."""
    # Skip init_db in production (tables are managed by migrations)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")

    pipeline = VotingPipeline.from_settings(settings)
    await pipeline.start()
    app.state.pipeline = pipeline
    try:
        yield
    finally:
        await pipeline.stop()
        await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## Board Voting API

    Vote recording, completion detection and outcome notification for
    board resolutions and meeting minutes.

    ### Key Features

    - **Idempotent Votes**: Each member holds exactly one vote per item; re-voting replaces it.
    - **Automatic Completion**: Voting concludes when everyone has voted or the deadline passes.
    - **Outcome Emails**: Every member receives a personalized summary, exactly once.
    - **Audit Trail**: Every vote, completion and notification is recorded.

    ### Authentication

    The caller's profile id arrives in the `X-User-ID` header, set by the
    authenticating proxy.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS", "HEAD"],
    allow_headers=["*"],
    max_age=86400,
)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================


def _error(status_code: int, error: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message, details=[]).model_dump(),
        headers=headers,
    )


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    """Rejected requests carry their stable code verbatim."""
    if isinstance(exc, RateLimitedError):
        return _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            exc.code,
            exc.message,
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after_seconds)))},
        )
    if exc.code in CONFLICT_CODES:
        return _error(status.HTTP_409_CONFLICT, exc.code, exc.message)
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc.code, exc.message)


@app.exception_handler(ItemNotFoundError)
async def not_found_exception_handler(request: Request, exc: ItemNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, exc.code, str(exc))


@app.exception_handler(OperationFailedError)
async def operation_failed_exception_handler(request: Request, exc: OperationFailedError):
    logger.error(f"Store unavailable for {request.method} {request.url.path}: {exc}")
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        exc.code,
        "The service is temporarily unavailable; please retry",
        headers={"Retry-After": "5"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    message = "An unexpected error occurred"
    if settings.debug:
        message = f"{message}: {str(exc)[:200]}"
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", message)


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Liveness plus the listener's connection state."""
    pipeline = getattr(request.app.state, "pipeline", None)
    listener_state = pipeline.listener.state.value if pipeline is not None else "not_started"
    return {
        "status": "healthy",
        "version": settings.app_version,
        "listener": listener_state,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "board_voting.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )

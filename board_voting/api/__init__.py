"""API routes for Board Voting."""

from fastapi import APIRouter

from .audit import router as audit_router
from .monitoring import router as monitoring_router
from .notifications import router as notifications_router
from .voting import router as voting_router

# Main API router
api_router = APIRouter()

api_router.include_router(voting_router)
api_router.include_router(notifications_router)

# Read-only observability
api_router.include_router(audit_router)
api_router.include_router(monitoring_router)

__all__ = ["api_router"]

"""Pydantic schemas for the audit trail."""

from datetime import datetime
from typing import Any
from uuid import UUID

from ..models import AuditEventType, AuditSeverity
from .base import PaginatedResponse, VotingBaseModel


# =============================================================================
# AUDIT LOG SCHEMAS
# =============================================================================


class AuditLogEntry(VotingBaseModel):
    """A single audit log entry."""

    id: UUID
    created_at: datetime
    event_type: AuditEventType
    severity: AuditSeverity
    action: str
    resource_type: str
    resource_id: UUID | None = None
    user_id: UUID | None = None  # None for system actions
    success: bool
    details: dict[str, Any]
    error_message: str | None = None
    execution_time_ms: float | None = None


class AuditLogResponse(PaginatedResponse):
    """Paginated audit log response."""

    items: list[AuditLogEntry]


# =============================================================================
# STATISTICS SCHEMAS
# =============================================================================


class UserActivity(VotingBaseModel):
    user_id: UUID
    event_count: int


class ResourceActivity(VotingBaseModel):
    resource_type: str
    resource_id: UUID
    event_count: int


class TimelinePoint(VotingBaseModel):
    date: str
    event_count: int


class AuditStatisticsResponse(VotingBaseModel):
    """Aggregates over the audit trail for a period."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    total_events: int
    events_by_type: dict[str, int]
    events_by_severity: dict[str, int]
    success_rate: float
    error_rate: float
    top_users: list[UserActivity]
    top_resources: list[ResourceActivity]
    timeline: list[TimelinePoint]

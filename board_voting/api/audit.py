"""API routes for the audit trail."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Query

from ..core.dependencies import PipelineDep
from ..models import AuditEventType, AuditSeverity
from ..schemas import (
    AuditLogEntry,
    AuditLogResponse,
    AuditStatisticsResponse,
    ResourceActivity,
    TimelinePoint,
    UserActivity,
)
from ..services.audit_logger import AuditQuery

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/log", response_model=AuditLogResponse)
async def get_audit_log(
    pipeline: PipelineDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    event_type: list[AuditEventType] | None = Query(None),
    severity: list[AuditSeverity] | None = Query(None),
    resource_type: str | None = None,
    resource_id: UUID | None = None,
    user_id: UUID | None = None,
    success: bool | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    sort_by: Literal["timestamp", "event_type", "severity"] = "timestamp",
    sort_order: Literal["asc", "desc"] = "desc",
):
    """Query the audit log, including entries not yet flushed to the database."""
    entries, total = await pipeline.audit.query(
        AuditQuery(
            event_types=event_type,
            severities=severity,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=user_id,
            success=success,
            start_date=start_date,
            end_date=end_date,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
    )

    return AuditLogResponse(
        items=[AuditLogEntry.model_validate(e) for e in entries],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )


@router.get("/statistics", response_model=AuditStatisticsResponse)
async def get_audit_statistics(
    pipeline: PipelineDep,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    top_n: int = Query(10, ge=1, le=100),
):
    """Event counts, success rate, most active users/resources and a daily timeline."""
    stats = await pipeline.audit.statistics(start_date, end_date, top_n=top_n)

    return AuditStatisticsResponse(
        start_date=start_date,
        end_date=end_date,
        total_events=stats.total_events,
        events_by_type=stats.events_by_type,
        events_by_severity=stats.events_by_severity,
        success_rate=stats.success_rate,
        error_rate=stats.error_rate,
        top_users=[
            UserActivity(user_id=user, event_count=count)
            for user, count in stats.top_users
        ],
        top_resources=[
            ResourceActivity(resource_type=rtype, resource_id=rid, event_count=count)
            for rtype, rid, count in stats.top_resources
        ],
        timeline=[
            TimelinePoint(date=day, event_count=count)
            for day, count in stats.timeline
        ],
    )

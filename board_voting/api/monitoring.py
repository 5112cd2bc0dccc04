"""API routes for performance stats, health and alerts (read-mostly)."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from ..core.dependencies import PipelineDep
from ..schemas import (
    AlertResponse,
    ComponentHealthResponse,
    OperationStatsResponse,
    PerformanceSummaryResponse,
    SystemHealthResponse,
)

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


@router.get("/stats", response_model=list[OperationStatsResponse])
async def get_performance_stats(
    pipeline: PipelineDep,
    component: str | None = None,
    operation: str | None = None,
):
    """Per-operation timing aggregates over the monitoring window."""
    return [
        OperationStatsResponse.model_validate(s)
        for s in pipeline.monitor.stats(component, operation)
    ]


@router.get("/health", response_model=SystemHealthResponse)
async def get_system_health(pipeline: PipelineDep):
    """Overall and per-component health with open alerts."""
    health = pipeline.monitor.system_health()
    return SystemHealthResponse(
        timestamp=health.timestamp,
        overall_health=health.overall_health,
        components={
            name: ComponentHealthResponse.model_validate(c)
            for name, c in health.components.items()
        },
        performance_summary=PerformanceSummaryResponse.model_validate(health.performance_summary),
        alerts=[AlertResponse.model_validate(a) for a in health.alerts],
    )


@router.get("/alerts", response_model=list[AlertResponse])
async def list_alerts(
    pipeline: PipelineDep,
    include_resolved: bool = Query(False),
):
    """Open alerts, most severe first."""
    return [
        AlertResponse.model_validate(a)
        for a in pipeline.monitor.alerts.list_alerts(include_resolved)
    ]


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(alert_id: UUID, pipeline: PipelineDep):
    """Resolve an open alert."""
    alert = pipeline.monitor.alerts.resolve(alert_id)
    if alert is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Open alert not found",
        )
    return AlertResponse.model_validate(alert)

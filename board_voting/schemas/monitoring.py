"""Pydantic schemas for performance stats, health and alerts."""

from datetime import datetime
from typing import Any
from uuid import UUID

from .base import VotingBaseModel


class OperationStatsResponse(VotingBaseModel):
    component: str
    operation: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    average_duration_ms: float
    min_duration_ms: float
    max_duration_ms: float
    p50_duration_ms: float
    p95_duration_ms: float
    p99_duration_ms: float
    total_duration_ms: float
    executions_per_hour: float
    error_rate: float
    last_execution: datetime | None = None


class ComponentHealthResponse(VotingBaseModel):
    status: str  # healthy | degraded | unhealthy
    response_time_ms: float
    error_rate: float
    sample_count: int
    last_check: datetime
    issues: list[str] = []


class PerformanceSummaryResponse(VotingBaseModel):
    average_response_time: float
    error_rate: float
    throughput_per_minute: float
    active_operations: int


class AlertResponse(VotingBaseModel):
    id: UUID
    component: str
    condition: str
    severity: str
    message: str
    raised_at: datetime
    updated_at: datetime
    resolved: bool
    resolved_at: datetime | None = None
    details: dict[str, Any] = {}


class SystemHealthResponse(VotingBaseModel):
    timestamp: datetime
    overall_health: str
    components: dict[str, ComponentHealthResponse]
    performance_summary: PerformanceSummaryResponse
    alerts: list[AlertResponse]

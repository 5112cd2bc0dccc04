"""
Performance Monitor: timing and error-rate aggregation with health scoring.

Two ways to record:
- ``start(op_id, ...)`` / ``end(op_id, ...)`` around long operations
- ``record(...)`` for a one-shot measurement (or the ``track`` helper)

Samples are kept in memory for a sliding window and aggregated per
(component, operation). Unflushed samples are also written to the
performance_metrics table by a background flusher. After each sample the
component's health is compared against the response-time and error-rate
thresholds and an alert is raised when one is crossed.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import PerformanceMetric, utcnow
from .alerting import AlertManager, AlertSeverity
from .audit_logger import json_safe

logger = logging.getLogger(__name__)

HealthStatus = Literal["healthy", "degraded", "unhealthy"]

# Components reported by system health even before they record anything
KNOWN_COMPONENTS = (
    "email_service",
    "database",
    "voting_system",
    "notification_listener",
    "scheduler",
)

_HEALTH_RANK = {"healthy": 0, "degraded": 1, "unhealthy": 2}


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class HealthThresholds:
    """Thresholds for component health and alerts."""

    response_time_warning_ms: float = 5000.0
    response_time_critical_ms: float = 15000.0
    error_rate_warning_percent: float = 5.0
    error_rate_critical_percent: float = 20.0

    # Fewer samples than this never raise an alert
    min_samples: int = 5


DEFAULT_THRESHOLDS = HealthThresholds()


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class MetricSample:
    component: str
    operation: str
    duration_ms: float
    success: bool
    recorded_at: datetime
    error_message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationStats:
    """Aggregates for one (component, operation) over the window."""
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
    last_execution: datetime | None


@dataclass
class ComponentHealth:
    status: HealthStatus
    response_time_ms: float
    error_rate: float
    sample_count: int
    last_check: datetime
    issues: list[str] = field(default_factory=list)


@dataclass
class PerformanceSummary:
    average_response_time: float
    error_rate: float
    throughput_per_minute: float
    active_operations: int


@dataclass
class SystemHealth:
    timestamp: datetime
    overall_health: HealthStatus
    components: dict[str, ComponentHealth]
    performance_summary: PerformanceSummary
    alerts: list


@dataclass
class _ActiveOperation:
    component: str
    operation: str
    started: float
    details: dict[str, Any]


def percentile(sorted_values: list[float], q: float) -> float:
    """Nearest-rank percentile at index floor(n * q)."""
    if not sorted_values:
        return 0.0
    index = min(int(len(sorted_values) * q), len(sorted_values) - 1)
    return sorted_values[index]


# =============================================================================
# PERFORMANCE MONITOR
# =============================================================================


class PerformanceMonitor:
    """Sliding-window performance aggregation. Never raises into callers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        alert_manager: AlertManager | None = None,
        thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
        window: timedelta = timedelta(minutes=60),
        buffer_size: int = 100,
        flush_interval: float = 30.0,
        max_samples: int = 10_000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.alerts = alert_manager or AlertManager()
        self.thresholds = thresholds
        self._window = window
        self._buffer_size = buffer_size
        self._flush_interval = flush_interval
        self._clock = clock

        self._samples: deque[MetricSample] = deque(maxlen=max_samples)
        self._unflushed: list[MetricSample] = []
        self._active: dict[str, _ActiveOperation] = {}
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._flush_tasks: set[asyncio.Task] = set()

    @property
    def active_operations(self) -> int:
        return len(self._active)

    # =========================================================================
    # RECORDING
    # =========================================================================

    def start(
        self,
        operation_id: str,
        component: str,
        operation: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Start timing a long operation."""
        self._active[operation_id] = _ActiveOperation(
            component=component,
            operation=operation,
            started=time.perf_counter(),
            details=details or {},
        )

    def end(
        self,
        operation_id: str,
        success: bool = True,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> MetricSample | None:
        """Finish timing an operation. Unknown ids are logged and ignored."""
        active = self._active.pop(operation_id, None)
        if active is None:
            logger.warning(f"end() called for unknown operation '{operation_id}'")
            return None
        duration_ms = (time.perf_counter() - active.started) * 1000
        return self.record(
            component=active.component,
            operation=active.operation,
            duration_ms=duration_ms,
            success=success,
            error=error,
            details={**active.details, **(details or {})},
        )

    def record(
        self,
        component: str,
        operation: str,
        duration_ms: float,
        success: bool = True,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> MetricSample | None:
        """Record one measurement and re-check the component's thresholds."""
        try:
            sample = MetricSample(
                component=component,
                operation=operation,
                duration_ms=max(0.0, float(duration_ms)),
                success=success,
                recorded_at=self._clock(),
                error_message=error,
                details=details or {},
            )
            self._samples.append(sample)
            self._unflushed.append(sample)
            self.check_thresholds(component)
        except Exception as e:
            logger.error(f"Failed to record metric {component}.{operation}: {e}", exc_info=True)
            return None

        if len(self._unflushed) >= self._buffer_size:
            self._schedule_flush()
        return sample

    @contextmanager
    def track(self, component: str, operation: str, **details: Any) -> Iterator[None]:
        """Time the enclosed block; exceptions are recorded as failures and re-raised."""
        started = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.record(
                component, operation, (time.perf_counter() - started) * 1000,
                success=False, error=str(e), details=details,
            )
            raise
        self.record(component, operation, (time.perf_counter() - started) * 1000, details=details)

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    def _window_samples(
        self,
        component: str | None = None,
        operation: str | None = None,
    ) -> list[MetricSample]:
        cutoff = self._clock() - self._window
        return [
            s for s in self._samples
            if s.recorded_at >= cutoff
            and (component is None or s.component == component)
            and (operation is None or s.operation == operation)
        ]

    def stats(
        self,
        component: str | None = None,
        operation: str | None = None,
    ) -> list[OperationStats]:
        """Per (component, operation) aggregates, busiest first."""
        groups: dict[tuple[str, str], list[MetricSample]] = {}
        for sample in self._window_samples(component, operation):
            groups.setdefault((sample.component, sample.operation), []).append(sample)

        hours = self._window.total_seconds() / 3600
        results = []
        for (comp, op), samples in groups.items():
            durations = sorted(s.duration_ms for s in samples)
            total = len(samples)
            succeeded = sum(1 for s in samples if s.success)
            total_duration = sum(durations)
            results.append(OperationStats(
                component=comp,
                operation=op,
                total_executions=total,
                successful_executions=succeeded,
                failed_executions=total - succeeded,
                success_rate=round(succeeded / total * 100, 2),
                average_duration_ms=round(total_duration / total, 2),
                min_duration_ms=durations[0],
                max_duration_ms=durations[-1],
                p50_duration_ms=percentile(durations, 0.50),
                p95_duration_ms=percentile(durations, 0.95),
                p99_duration_ms=percentile(durations, 0.99),
                total_duration_ms=round(total_duration, 2),
                executions_per_hour=round(total / hours, 2),
                error_rate=round((total - succeeded) / total * 100, 2),
                last_execution=max(s.recorded_at for s in samples),
            ))

        return sorted(results, key=lambda s: s.total_executions, reverse=True)

    def component_health(self, component: str) -> ComponentHealth:
        """Score one component against the thresholds."""
        samples = self._window_samples(component)
        now = self._clock()
        if not samples:
            return ComponentHealth(
                status="healthy", response_time_ms=0.0, error_rate=0.0,
                sample_count=0, last_check=now,
            )

        t = self.thresholds
        response_ms = sum(s.duration_ms for s in samples) / len(samples)
        error_rate = sum(1 for s in samples if not s.success) / len(samples) * 100

        status: HealthStatus = "healthy"
        issues: list[str] = []

        if response_ms > t.response_time_critical_ms:
            issues.append(f"High response time (>{t.response_time_critical_ms:g}ms)")
            status = "unhealthy"
        elif response_ms > t.response_time_warning_ms:
            issues.append(f"Elevated response time (>{t.response_time_warning_ms:g}ms)")
            status = "degraded"

        if error_rate > t.error_rate_critical_percent:
            issues.append(f"High error rate (>{t.error_rate_critical_percent:g}%)")
            status = "unhealthy"
        elif error_rate > t.error_rate_warning_percent:
            issues.append(f"Elevated error rate (>{t.error_rate_warning_percent:g}%)")
            if status == "healthy":
                status = "degraded"

        return ComponentHealth(
            status=status,
            response_time_ms=round(response_ms, 2),
            error_rate=round(error_rate, 2),
            sample_count=len(samples),
            last_check=now,
            issues=issues,
        )

    def check_thresholds(self, component: str) -> None:
        """Raise alerts for any threshold the component currently crosses."""
        health = self.component_health(component)
        if health.sample_count < self.thresholds.min_samples:
            return

        t = self.thresholds
        if health.response_time_ms > t.response_time_critical_ms:
            self.alerts.raise_alert(
                component, "response_time", AlertSeverity.CRITICAL,
                f"Average response time {health.response_time_ms:.0f}ms exceeds "
                f"{t.response_time_critical_ms:g}ms",
            )
        elif health.response_time_ms > t.response_time_warning_ms:
            self.alerts.raise_alert(
                component, "response_time", AlertSeverity.WARNING,
                f"Average response time {health.response_time_ms:.0f}ms exceeds "
                f"{t.response_time_warning_ms:g}ms",
            )

        if health.error_rate > t.error_rate_critical_percent:
            self.alerts.raise_alert(
                component, "error_rate", AlertSeverity.CRITICAL,
                f"Error rate {health.error_rate:.1f}% exceeds {t.error_rate_critical_percent:g}%",
            )
        elif health.error_rate > t.error_rate_warning_percent:
            self.alerts.raise_alert(
                component, "error_rate", AlertSeverity.WARNING,
                f"Error rate {health.error_rate:.1f}% exceeds {t.error_rate_warning_percent:g}%",
            )

    def system_health(self) -> SystemHealth:
        """Overall health, per-component health, summary and open alerts."""
        samples = self._window_samples()
        names = list(KNOWN_COMPONENTS) + sorted(
            {s.component for s in samples} - set(KNOWN_COMPONENTS)
        )
        components = {name: self.component_health(name) for name in names}
        overall: HealthStatus = max(
            (c.status for c in components.values()),
            key=lambda status: _HEALTH_RANK[status],
            default="healthy",
        )

        total = len(samples)
        failed = sum(1 for s in samples if not s.success)
        error_rate = round(failed / total * 100, 2) if total else 0.0

        if total >= self.thresholds.min_samples and error_rate > self.thresholds.error_rate_critical_percent:
            self.alerts.raise_alert(
                "system", "error_rate", AlertSeverity.CRITICAL,
                f"System-wide error rate is high: {error_rate:.1f}%",
            )

        return SystemHealth(
            timestamp=self._clock(),
            overall_health=overall,
            components=components,
            performance_summary=PerformanceSummary(
                average_response_time=(
                    round(sum(s.duration_ms for s in samples) / total, 2) if total else 0.0
                ),
                error_rate=error_rate,
                throughput_per_minute=round(total / (self._window.total_seconds() / 60), 2),
                active_operations=self.active_operations,
            ),
            alerts=self.alerts.open_alerts(),
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def start_flusher(self) -> None:
        if self._session_factory is None:
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="metrics-flusher")

    async def stop_flusher(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
        await self.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    def _schedule_flush(self) -> None:
        if self._session_factory is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> int:
        """Write unflushed samples to performance_metrics."""
        if self._session_factory is None:
            self._unflushed.clear()
            return 0

        async with self._flush_lock:
            if not self._unflushed:
                return 0
            batch, self._unflushed = self._unflushed, []
            try:
                async with self._session_factory() as session:
                    session.add_all([
                        PerformanceMetric(
                            recorded_at=s.recorded_at,
                            component=s.component,
                            operation=s.operation,
                            duration_ms=s.duration_ms,
                            success=s.success,
                            error_message=s.error_message,
                            details=json_safe(s.details),
                        )
                        for s in batch
                    ])
                    await session.commit()
            except Exception as e:
                logger.error(f"Failed to flush {len(batch)} performance metrics: {e}")
                # Keep the newest samples for the next attempt
                self._unflushed = (batch + self._unflushed)[-self._buffer_size * 10:]
                return 0

            logger.debug(f"Flushed {len(batch)} performance metrics")
            return len(batch)

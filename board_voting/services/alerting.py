"""
Alerting: threshold alerts raised by the performance monitor and the
pipeline's background jobs.

Alerts are keyed by (component, condition). While an alert is open the
same condition is not raised again; a warning that worsens is escalated to
critical in place. Alerts stay open until explicitly resolved.

Every raise, escalation and resolution is written to the audit trail and
announced on the configured webhooks (Slack, generic).
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import httpx

from ..models import AuditEventType, AuditSeverity, utcnow

if TYPE_CHECKING:
    from .audit_logger import AuditLogger

logger = logging.getLogger(__name__)


# =============================================================================
# WEBHOOK DELIVERY
# =============================================================================

_LOG_LEVELS = {"critical": logging.CRITICAL, "warning": logging.WARNING, "info": logging.INFO}


def slack_payload(title: str, message: str, severity: str, details: dict | None = None) -> dict:
    lines = [f"*[{severity.upper()}] {title}*", message]
    lines += [f"- {key}: {value}" for key, value in (details or {}).items()]
    return {"text": "\n".join(lines)}


def webhook_payload(title: str, message: str, severity: str, details: dict | None = None) -> dict:
    return {
        "source": "board-voting",
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": utcnow().isoformat(),
        "details": json.loads(json.dumps(details or {}, default=str)),
    }


async def send_alert(
    title: str,
    message: str,
    severity: str = "critical",
    details: dict | None = None,
    slack_webhook_url: str | None = None,
    alert_webhook_url: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """
    Log an alert and post it to whichever webhooks are configured.

    Webhook failures are logged; they never propagate to the job or monitor
    that raised the alert.
    """
    logger.log(
        _LOG_LEVELS.get(severity, logging.ERROR),
        f"[ALERT] {title}: {message}" + (f" | {details}" if details else ""),
    )

    targets = []
    if slack_webhook_url:
        targets.append(("Slack", slack_webhook_url, slack_payload(title, message, severity, details)))
    if alert_webhook_url:
        targets.append(("webhook", alert_webhook_url, webhook_payload(title, message, severity, details)))
    if not targets:
        return

    owned = client is None
    client = client or httpx.AsyncClient(timeout=10)
    try:
        for name, url, payload in targets:
            try:
                response = await client.post(url, json=payload)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(f"Failed to send {name} alert '{title}': {e}")
    finally:
        if owned:
            await client.aclose()


# =============================================================================
# ALERTS
# =============================================================================


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


_RANK = {AlertSeverity.INFO: 0, AlertSeverity.WARNING: 1, AlertSeverity.CRITICAL: 2}


@dataclass
class Alert:
    """A threshold alert."""
    component: str
    condition: str
    severity: AlertSeverity
    message: str
    id: UUID = field(default_factory=uuid4)
    raised_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: datetime | None = None
    details: dict[str, Any] = field(default_factory=dict)


class AlertManager:
    """Open/resolved alert registry with deduplication by condition."""

    def __init__(
        self,
        audit_logger: "AuditLogger | None" = None,
        slack_webhook_url: str | None = None,
        alert_webhook_url: str | None = None,
        max_history: int = 500,
    ):
        self._audit = audit_logger
        self._slack_webhook_url = slack_webhook_url
        self._alert_webhook_url = alert_webhook_url
        self._max_history = max_history
        self._open: dict[tuple[str, str], Alert] = {}
        self._history: list[Alert] = []
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # QUERIES
    # =========================================================================

    def open_alerts(self) -> list[Alert]:
        return sorted(
            self._open.values(),
            key=lambda a: (-_RANK[a.severity], a.raised_at),
        )

    def list_alerts(self, include_resolved: bool = False) -> list[Alert]:
        if not include_resolved:
            return self.open_alerts()
        return self.open_alerts() + [a for a in reversed(self._history) if a.resolved]

    def get(self, alert_id: UUID) -> Alert | None:
        for alert in self._open.values():
            if alert.id == alert_id:
                return alert
        for alert in self._history:
            if alert.id == alert_id:
                return alert
        return None

    # =========================================================================
    # RAISE / RESOLVE
    # =========================================================================

    def raise_alert(
        self,
        component: str,
        condition: str,
        severity: AlertSeverity,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Alert | None:
        """
        Open an alert for (component, condition).

        Returns the alert when it was newly raised or escalated; None when an
        alert of equal or higher severity is already open for the condition.
        """
        key = (component, condition)
        existing = self._open.get(key)

        if existing is not None:
            if _RANK[severity] <= _RANK[existing.severity]:
                return None
            existing.severity = severity
            existing.message = message
            existing.details = details or existing.details
            existing.updated_at = utcnow()
            logger.warning(f"Alert escalated to {severity.value}: [{component}] {message}")
            self._announce(existing, "escalated")
            return existing

        alert = Alert(
            component=component,
            condition=condition,
            severity=severity,
            message=message,
            details=details or {},
        )
        self._open[key] = alert
        logger.warning(f"Alert raised ({severity.value}): [{component}] {message}")
        self._announce(alert, "raised")
        return alert

    def resolve(self, alert_id: UUID) -> Alert | None:
        """Resolve an open alert. None if no open alert has this id."""
        for key, alert in list(self._open.items()):
            if alert.id == alert_id:
                return self._close(key)
        return None

    def resolve_condition(self, component: str, condition: str) -> Alert | None:
        key = (component, condition)
        if key not in self._open:
            return None
        return self._close(key)

    def _close(self, key: tuple[str, str]) -> Alert:
        alert = self._open.pop(key)
        alert.resolved = True
        alert.resolved_at = utcnow()
        self._history.append(alert)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]
        logger.info(f"Alert resolved: [{alert.component}] {alert.condition}")
        self._announce(alert, "resolved")
        return alert

    # =========================================================================
    # ANNOUNCEMENT
    # =========================================================================

    def _announce(self, alert: Alert, change: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._publish(alert, change))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish(self, alert: Alert, change: str) -> None:
        resolved = change == "resolved"
        if resolved:
            event_type, audit_severity = AuditEventType.ALERT_RESOLVED, AuditSeverity.INFO
        elif alert.severity == AlertSeverity.CRITICAL:
            event_type, audit_severity = AuditEventType.ALERT_RAISED, AuditSeverity.CRITICAL
        else:
            event_type, audit_severity = AuditEventType.ALERT_RAISED, AuditSeverity.WARNING

        try:
            if self._audit is not None:
                await self._audit.log(
                    event_type=event_type,
                    action=f"alert_{change}",
                    resource_type="alert",
                    resource_id=alert.id,
                    severity=audit_severity,
                    details={
                        "component": alert.component,
                        "condition": alert.condition,
                        "severity": alert.severity.value,
                        "message": alert.message,
                    },
                )
            if not resolved:
                await send_alert(
                    title=f"{alert.component}: {alert.condition}",
                    message=alert.message,
                    severity=alert.severity.value,
                    details=alert.details,
                    slack_webhook_url=self._slack_webhook_url,
                    alert_webhook_url=self._alert_webhook_url,
                )
        except Exception as e:
            logger.error(f"Failed to announce alert {alert.id}: {e}")

    async def drain(self) -> None:
        """Wait for pending announcements."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

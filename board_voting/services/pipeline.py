"""
Voting pipeline: builds and owns every long-lived service.

The API lifespan and the worker jobs both go through this class, so the
listener, the audit flusher and the metrics flusher are started and stopped
in one place and in a fixed order.
"""

import logging
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.retry import BackoffPolicy
from .alerting import AlertManager
from .audit_logger import AuditLogger
from .email_dispatch import DispatchConfig, EmailDispatchService
from .email_transport import EmailTransport, build_email_transport
from .event_channel import EventChannel, build_event_channel
from .exceptions import ListenerFatalError
from .notification_listener import NotificationListener
from .notifications import NotificationService
from .outcome_calculator import OutcomeRules
from .performance_monitor import HealthThresholds, PerformanceMonitor
from .voting import VoteRateLimiter, VotingService

logger = logging.getLogger(__name__)


class VotingPipeline:
    """Composition root with explicit start()/stop()."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        channel: EventChannel | None = None,
        transport: EmailTransport | None = None,
        on_listener_fatal: Callable[[ListenerFatalError], None] | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.channel = channel or build_event_channel(settings)
        self.transport = transport or build_email_transport(settings)

        rules = OutcomeRules(
            abstain_counts_toward_approval=settings.approval_includes_abstentions,
        )
        store_policy = BackoffPolicy(
            max_attempts=settings.store_retry_attempts,
            base_delay=settings.store_retry_base_delay,
            max_delay=max(settings.store_retry_base_delay, 5.0),
        )

        self.audit = AuditLogger(
            session_factory,
            batch_size=settings.audit_batch_size,
            flush_interval=settings.audit_flush_interval_seconds,
        )
        self.alerts = AlertManager(
            audit_logger=self.audit,
            slack_webhook_url=settings.slack_alerts_webhook_url,
            alert_webhook_url=settings.alert_webhook_url,
        )
        self.monitor = PerformanceMonitor(
            session_factory,
            alert_manager=self.alerts,
            thresholds=HealthThresholds(
                response_time_warning_ms=settings.response_time_warning_ms,
                response_time_critical_ms=settings.response_time_critical_ms,
                error_rate_warning_percent=settings.error_rate_warning_percent,
                error_rate_critical_percent=settings.error_rate_critical_percent,
                min_samples=settings.alert_min_samples,
            ),
            window=timedelta(minutes=settings.metrics_window_minutes),
            buffer_size=settings.metrics_buffer_size,
            flush_interval=settings.metrics_flush_interval_seconds,
        )

        self.dispatcher = EmailDispatchService(
            session_factory,
            self.transport,
            config=DispatchConfig.from_settings(settings),
            monitor=self.monitor,
            rules=rules,
            store_policy=store_policy,
            store_timeout=settings.store_timeout_seconds,
        )
        self.notifications = NotificationService(
            session_factory,
            self.dispatcher,
            self.audit,
            monitor=self.monitor,
            dedup_window=timedelta(hours=settings.notification_dedup_window_hours),
        )
        self.listener = NotificationListener(
            self.channel,
            self.notifications,
            self.audit,
            monitor=self.monitor,
            topic=settings.voting_channel_topic,
            reconnect_base_delay=settings.listener_reconnect_base_delay,
            reconnect_max_delay=settings.listener_reconnect_max_delay,
            max_reconnect_attempts=settings.listener_max_reconnect_attempts,
            stop_grace_seconds=settings.listener_stop_grace_seconds,
            on_fatal=on_listener_fatal,
        )
        self.voting = VotingService(
            session_factory,
            self.channel,
            self.audit,
            monitor=self.monitor,
            topic=settings.voting_channel_topic,
            rules=rules,
            rate_limiter=VoteRateLimiter(
                max_attempts=settings.vote_rate_limit_attempts,
                window_seconds=settings.vote_rate_limit_window_seconds,
            ),
            store_policy=store_policy,
            store_timeout=settings.store_timeout_seconds,
            default_quorum_threshold=settings.default_quorum_threshold,
            default_approval_threshold=settings.default_approval_threshold,
            max_comment_length=settings.max_comment_length,
        )
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        **kwargs,
    ) -> "VotingPipeline":
        """Build a pipeline on the application's database engine."""
        from ..core.database import async_session_factory

        return cls(settings or get_settings(), async_session_factory, **kwargs)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, listen: bool = True) -> None:
        """Start the flushers and, unless ``listen`` is False, the listener."""
        if self._started:
            return
        self.audit.start()
        self.monitor.start_flusher()
        if listen:
            self.listener.start()
        self._started = True
        logger.info(
            f"Voting pipeline started (channel={self.settings.event_channel_backend}, "
            f"email={self.transport.name}, listener={'on' if listen else 'off'})"
        )

    async def stop(self) -> None:
        """Stop in reverse order; buffered audit entries and metrics are flushed."""
        if not self._started:
            return
        await self.listener.stop()
        await self.monitor.stop_flusher()
        await self.alerts.drain()
        await self.audit.stop()
        await self.channel.close()
        self._started = False
        logger.info("Voting pipeline stopped")

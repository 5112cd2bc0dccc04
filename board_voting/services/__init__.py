"""Voting pipeline services."""

from .alerting import Alert, AlertManager, AlertSeverity, send_alert
from .audit_logger import AuditEntry, AuditLogger, AuditQuery, AuditStatistics
from .completion_detector import (
    CompletionDecision,
    CompletionDetector,
    CompletionEvent,
    detect_completion,
)
from .email_dispatch import DispatchConfig, DispatchResult, EmailDispatchService
from .email_transport import (
    EmailTransport,
    LoggingEmailTransport,
    RenderedEmail,
    SmtpEmailTransport,
)
from .event_channel import (
    EventChannel,
    InMemoryEventChannel,
    PostgresEventChannel,
    decode_message,
)
from .exceptions import (
    ChannelConnectionError,
    DeadlinePassedError,
    DeliveryError,
    InvalidChoiceError,
    InvalidOperationError,
    ItemNotFoundError,
    ListenerFatalError,
    MalformedMessageError,
    NotEligibleError,
    OperationFailedError,
    RateLimitedError,
    TransientStoreError,
    ValidationError,
    VotingClosedError,
    VotingError,
)
from .notification_listener import ListenerState, ListenerStatus, NotificationListener
from .notifications import NotificationResult, NotificationService, NotificationStatus
from .outcome_calculator import OutcomeResult, OutcomeRules, TallyCounts, calculate_outcome
from .performance_monitor import HealthThresholds, PerformanceMonitor
from .pipeline import VotingPipeline
from .tally_engine import TallyEngine
from .voting import SweepResult, TallyView, VoteRateLimiter, VoteReceipt, VotingService

__all__ = [
    # Composition
    "VotingPipeline",
    # Voting
    "VotingService",
    "VoteRateLimiter",
    "VoteReceipt",
    "TallyView",
    "SweepResult",
    "TallyEngine",
    "CompletionDetector",
    "CompletionDecision",
    "CompletionEvent",
    "detect_completion",
    "OutcomeResult",
    "OutcomeRules",
    "TallyCounts",
    "calculate_outcome",
    # Channel & notifications
    "EventChannel",
    "InMemoryEventChannel",
    "PostgresEventChannel",
    "decode_message",
    "NotificationListener",
    "ListenerState",
    "ListenerStatus",
    "NotificationService",
    "NotificationResult",
    "NotificationStatus",
    # Email
    "EmailDispatchService",
    "DispatchConfig",
    "DispatchResult",
    "EmailTransport",
    "LoggingEmailTransport",
    "SmtpEmailTransport",
    "RenderedEmail",
    # Observability
    "AuditLogger",
    "AuditEntry",
    "AuditQuery",
    "AuditStatistics",
    "PerformanceMonitor",
    "HealthThresholds",
    "AlertManager",
    "Alert",
    "AlertSeverity",
    "send_alert",
    # Errors
    "VotingError",
    "ValidationError",
    "InvalidChoiceError",
    "VotingClosedError",
    "DeadlinePassedError",
    "NotEligibleError",
    "RateLimitedError",
    "InvalidOperationError",
    "ItemNotFoundError",
    "TransientStoreError",
    "OperationFailedError",
    "ChannelConnectionError",
    "MalformedMessageError",
    "DeliveryError",
    "ListenerFatalError",
]

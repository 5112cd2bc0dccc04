"""SQLAlchemy ORM Models for board voting."""

from .base import Base, TimestampMixin, UUIDMixin, as_utc, utcnow
from .models import (
    # Enums
    AuditEventType,
    AuditSeverity,
    CompletionReason,
    DeliveryStatus,
    ItemKind,
    ItemStatus,
    ProfileRole,
    TERMINAL_STATUSES,
    VOTING_ROLES,
    VoteChoice,
    # Records
    AuditLog,
    EmailDeliveryAttempt,
    PerformanceMetric,
    Profile,
    VotableItem,
    VoteRecord,
    VoteTally,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "utcnow",
    "as_utc",
    # Enums
    "ItemKind",
    "ItemStatus",
    "TERMINAL_STATUSES",
    "VoteChoice",
    "CompletionReason",
    "ProfileRole",
    "VOTING_ROLES",
    "AuditEventType",
    "AuditSeverity",
    "DeliveryStatus",
    # Voting
    "Profile",
    "VotableItem",
    "VoteRecord",
    "VoteTally",
    # Audit & delivery
    "AuditLog",
    "EmailDeliveryAttempt",
    "PerformanceMetric",
]

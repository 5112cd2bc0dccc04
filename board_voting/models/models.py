"""SQLAlchemy ORM Models for board voting.

Items, votes and profiles are the records the pipeline reads and writes;
audit_log, email_delivery_attempts and performance_metrics are the
append-only stores behind the observability layer.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDMixin, utcnow


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# ENUMS
# =============================================================================


class ItemKind(str, PyEnum):
    RESOLUTION = "resolution"
    MINUTES = "minutes"


class ItemStatus(str, PyEnum):
    DRAFT = "draft"
    PUBLISHED = "published"
    VOTING = "voting"
    PASSED = "passed"
    FAILED = "failed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ItemStatus.PASSED,
    ItemStatus.FAILED,
    ItemStatus.APPROVED,
    ItemStatus.REJECTED,
    ItemStatus.EXPIRED,
    ItemStatus.CANCELLED,
})


class VoteChoice(str, PyEnum):
    APPROVE = "approve"
    REJECT = "reject"
    ABSTAIN = "abstain"


class CompletionReason(str, PyEnum):
    ALL_VOTED = "all_voted"
    DEADLINE_EXPIRED = "deadline_expired"
    MANUAL = "manual"


class ProfileRole(str, PyEnum):
    ADMIN = "admin"
    BOARD_MEMBER = "board_member"
    OBSERVER = "observer"


# Roles counted in the eligible-voter snapshot and allowed to vote
VOTING_ROLES = (ProfileRole.ADMIN, ProfileRole.BOARD_MEMBER)


class AuditEventType(str, PyEnum):
    VOTING_OPENED = "voting_opened"
    VOTE_RECORDED = "vote_recorded"
    VOTING_COMPLETED = "voting_completed"
    VOTING_CANCELLED = "voting_cancelled"
    NOTIFICATION_TRIGGERED = "notification_triggered"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    MANUAL_TRIGGER = "manual_trigger"
    SCHEDULER_RUN = "scheduler_run"
    LISTENER_STATE = "listener_state"
    ALERT_RAISED = "alert_raised"
    ALERT_RESOLVED = "alert_resolved"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, PyEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class DeliveryStatus(str, PyEnum):
    """Status of one recipient's delivery for one trigger."""
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Invalid address or filtered out


# =============================================================================
# PROFILES
# =============================================================================


class Profile(Base, UUIDMixin, TimestampMixin):
    """Board member profile; the recipient source for summary emails."""

    __tablename__ = "profiles"

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    position: Mapped[str | None] = mapped_column(String(255))
    role: Mapped[ProfileRole] = mapped_column(
        _enum(ProfileRole, "profile_role"),
        default=ProfileRole.BOARD_MEMBER,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    voting_email_opt_in: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )

    __table_args__ = (
        Index("idx_profiles_active_role", "is_active", "role"),
    )


# =============================================================================
# VOTING
# =============================================================================


class VotableItem(Base, UUIDMixin, TimestampMixin):
    """A resolution or a set of minutes subject to a board vote."""

    __tablename__ = "votable_items"

    kind: Mapped[ItemKind] = mapped_column(_enum(ItemKind, "item_kind"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ItemStatus] = mapped_column(
        _enum(ItemStatus, "item_status"),
        default=ItemStatus.DRAFT,
        nullable=False,
    )
    voting_deadline: Mapped[datetime | None] = mapped_column()
    quorum_threshold: Mapped[float] = mapped_column(Float, default=50.0, nullable=False)
    approval_threshold: Mapped[float] = mapped_column(Float, default=75.0, nullable=False)
    total_eligible_voters: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    voting_opened_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()
    completion_reason: Mapped[CompletionReason | None] = mapped_column(
        _enum(CompletionReason, "completion_reason"), nullable=True
    )

    # Relationships
    votes: Mapped[list["VoteRecord"]] = relationship(back_populates="item")
    tally: Mapped["VoteTally | None"] = relationship(back_populates="item")

    __table_args__ = (
        CheckConstraint(
            "quorum_threshold >= 0 AND quorum_threshold <= 100",
            name="quorum_threshold_range",
        ),
        CheckConstraint(
            "approval_threshold >= 0 AND approval_threshold <= 100",
            name="approval_threshold_range",
        ),
        CheckConstraint("total_eligible_voters >= 0", name="eligible_non_negative"),
        Index("idx_votable_items_status_deadline", "status", "voting_deadline"),
    )


class VoteRecord(Base, UUIDMixin):
    """One voter's choice on one item. Repeat votes update this row."""

    __tablename__ = "vote_records"

    item_id: Mapped[UUID] = mapped_column(
        ForeignKey("votable_items.id", ondelete="CASCADE"), nullable=False
    )
    voter_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    choice: Mapped[VoteChoice] = mapped_column(
        _enum(VoteChoice, "vote_choice"), nullable=False
    )
    comment: Mapped[str | None] = mapped_column(Text)
    voted_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    # Relationships
    item: Mapped["VotableItem"] = relationship(back_populates="votes")
    voter: Mapped["Profile"] = relationship()

    __table_args__ = (
        UniqueConstraint("item_id", "voter_id", name="uq_vote_records_item_voter"),
        Index("idx_vote_records_item", "item_id"),
    )


class VoteTally(Base):
    """Derived vote counts; only ever written by the tally recompute."""

    __tablename__ = "vote_tallies"

    item_id: Mapped[UUID] = mapped_column(
        ForeignKey("votable_items.id", ondelete="CASCADE"), primary_key=True
    )
    for_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    against_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    abstain_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_votes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    recomputed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    item: Mapped["VotableItem"] = relationship(back_populates="tally")

    __table_args__ = (
        CheckConstraint(
            "for_count + against_count + abstain_count = total_votes",
            name="tally_sums",
        ),
    )


# =============================================================================
# AUDIT & DELIVERY RECORDS
# =============================================================================


class AuditLog(Base, UUIDMixin):
    """Append-only audit trail; also the notification de-duplication record."""

    __tablename__ = "audit_log"

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    event_type: Mapped[AuditEventType] = mapped_column(
        _enum(AuditEventType, "audit_event_type"), nullable=False
    )
    severity: Mapped[AuditSeverity] = mapped_column(
        _enum(AuditSeverity, "audit_severity"),
        default=AuditSeverity.INFO,
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[UUID | None] = mapped_column()
    user_id: Mapped[UUID | None] = mapped_column()
    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text)
    execution_time_ms: Mapped[float | None] = mapped_column(Float)

    __table_args__ = (
        Index("idx_audit_log_time", "created_at"),
        Index("idx_audit_log_resource", "resource_type", "resource_id", "event_type"),
        Index("idx_audit_log_event", "event_type", "created_at"),
    )


class EmailDeliveryAttempt(Base, UUIDMixin):
    """One recipient's delivery outcome for one notification trigger."""

    __tablename__ = "email_delivery_attempts"

    trigger_id: Mapped[UUID] = mapped_column(nullable=False)
    item_id: Mapped[UUID] = mapped_column(
        ForeignKey("votable_items.id", ondelete="CASCADE"), nullable=False
    )
    recipient_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        _enum(DeliveryStatus, "delivery_status"), nullable=False
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    delivery_time_ms: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("trigger_id", "recipient_id", name="uq_delivery_trigger_recipient"),
        Index("idx_delivery_item", "item_id", "created_at"),
    )


class PerformanceMetric(Base, UUIDMixin):
    """Flushed performance sample from the monitor's buffer."""

    __tablename__ = "performance_metrics"

    recorded_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    component: Mapped[str] = mapped_column(String(100), nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    __table_args__ = (
        Index("idx_performance_metrics_component", "component", "operation", "recorded_at"),
    )

"""Board Voting API Schemas.

Schemas are organized by domain:
- base: Common types, pagination, errors
- events: Event channel messages
- voting: Votes, tallies, lifecycle, notifications
- audit: Audit log and statistics
- monitoring: Performance stats, health and alerts
"""

from .audit import (
    AuditLogEntry,
    AuditLogResponse,
    AuditStatisticsResponse,
    ResourceActivity,
    TimelinePoint,
    UserActivity,
)
from .base import (
    ErrorDetail,
    ErrorResponse,
    PaginatedResponse,
    PaginationParams,
    VotingBaseModel,
)
from .events import ChannelAction, CompletionMessage
from .monitoring import (
    AlertResponse,
    ComponentHealthResponse,
    OperationStatsResponse,
    PerformanceSummaryResponse,
    SystemHealthResponse,
)
from .voting import (
    CompletionResponse,
    DeliveryAttemptResponse,
    ItemStatusResponse,
    ListenerStatusResponse,
    NotificationResponse,
    OpenVotingRequest,
    OutcomeResponse,
    ParkedMessageResponse,
    QuorumResponse,
    SweepResponse,
    TallyCountsResponse,
    TallyResponse,
    VoteCreate,
    VoteResponse,
)

__all__ = [
    # Base
    "VotingBaseModel",
    "PaginationParams",
    "PaginatedResponse",
    "ErrorDetail",
    "ErrorResponse",
    # Events
    "ChannelAction",
    "CompletionMessage",
    # Voting
    "VoteCreate",
    "VoteResponse",
    "TallyCountsResponse",
    "TallyResponse",
    "QuorumResponse",
    "OutcomeResponse",
    "CompletionResponse",
    "OpenVotingRequest",
    "ItemStatusResponse",
    "SweepResponse",
    "NotificationResponse",
    "DeliveryAttemptResponse",
    "ListenerStatusResponse",
    "ParkedMessageResponse",
    # Audit
    "AuditLogEntry",
    "AuditLogResponse",
    "AuditStatisticsResponse",
    "UserActivity",
    "ResourceActivity",
    "TimelinePoint",
    # Monitoring
    "OperationStatsResponse",
    "ComponentHealthResponse",
    "PerformanceSummaryResponse",
    "SystemHealthResponse",
    "AlertResponse",
]

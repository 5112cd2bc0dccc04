"""Exceptions raised by the voting pipeline.

ValidationError subclasses carry a stable ``code`` that the API returns
verbatim; they are never retried.
"""


class VotingError(Exception):
    """Base exception for voting pipeline operations."""
    pass


# =============================================================================
# VALIDATION (reject immediately, no retry)
# =============================================================================


class ValidationError(VotingError):
    """A request that can never succeed as submitted."""

    code = "validation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidChoiceError(ValidationError):
    code = "invalid_choice"


class VotingClosedError(ValidationError):
    code = "voting_closed"


class DeadlinePassedError(ValidationError):
    code = "deadline_passed"


class NotEligibleError(ValidationError):
    code = "not_eligible"


class RateLimitedError(ValidationError):
    code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: float):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class InvalidOperationError(ValidationError):
    """Operation not allowed in the item's current state."""
    code = "invalid_operation"


class ItemNotFoundError(VotingError):
    """Votable item does not exist."""
    code = "item_not_found"


# =============================================================================
# STORE
# =============================================================================


class TransientStoreError(VotingError):
    """Store temporarily unavailable; safe to retry."""
    pass


class OperationFailedError(VotingError):
    """Store operation still failing after retries."""
    code = "operation_failed"


# =============================================================================
# CHANNEL & DELIVERY
# =============================================================================


class ChannelConnectionError(VotingError):
    """Event channel connection could not be made or was lost."""
    pass


class MalformedMessageError(VotingError):
    """Channel payload does not match the completion message shape."""

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


class DeliveryError(VotingError):
    """One recipient's email could not be delivered."""
    pass


class ListenerFatalError(VotingError):
    """Listener gave up reconnecting; requires external restart."""
    pass

"""Core application utilities.

FastAPI dependencies live in ``core.dependencies`` and are imported by the
API routers directly; they depend on the services package.
"""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    close_db,
    engine,
    init_db,
)
from .retry import BackoffPolicy, RetryExhaustedError, retry_with_backoff

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "init_db",
    "close_db",
    # Retry
    "BackoffPolicy",
    "RetryExhaustedError",
    "retry_with_backoff",
]

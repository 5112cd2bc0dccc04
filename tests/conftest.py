"""
Shared fixtures for the board voting tests.

Every test gets its own file-backed SQLite database (aiosqlite) with the
full schema, plus factories for profiles and items. Services are wired the
way the pipeline wires them, with fast retry policies and a fake transport.
"""

from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from board_voting.core.retry import BackoffPolicy
from board_voting.models import (
    Base,
    ItemKind,
    ItemStatus,
    Profile,
    ProfileRole,
    VotableItem,
)
from board_voting.services.alerting import AlertManager
from board_voting.services.audit_logger import AuditLogger
from board_voting.services.email_dispatch import DispatchConfig, EmailDispatchService
from board_voting.services.event_channel import InMemoryEventChannel
from board_voting.services.notifications import NotificationService
from board_voting.services.performance_monitor import PerformanceMonitor
from board_voting.services.voting import VoteRateLimiter, VotingService

from fakes import FakeTransport

FAST_STORE_POLICY = BackoffPolicy(max_attempts=5, base_delay=0.01, max_delay=0.05)


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'voting.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


# =============================================================================
# FACTORIES
# =============================================================================


@pytest.fixture
def make_profile(session_factory):
    """Insert a profile and return it."""
    counter = {"n": 0}

    async def factory(
        full_name: str | None = None,
        email: str | None = None,
        role: ProfileRole = ProfileRole.BOARD_MEMBER,
        is_active: bool = True,
        voting_email_opt_in: bool = True,
        position: str | None = None,
    ) -> Profile:
        counter["n"] += 1
        n = counter["n"]
        profile = Profile(
            full_name=full_name or f"Member {n:02d}",
            email=email or f"member{n:02d}@acme-board.org",
            role=role,
            is_active=is_active,
            voting_email_opt_in=voting_email_opt_in,
            position=position,
        )
        async with session_factory() as session:
            session.add(profile)
            await session.commit()
        return profile

    return factory


@pytest.fixture
def make_board(make_profile):
    """Insert ``size`` active board members."""

    async def factory(size: int) -> list[Profile]:
        return [await make_profile() for _ in range(size)]

    return factory


@pytest.fixture
def make_item(session_factory, now):
    """Insert a votable item (in voting by default) and return it."""

    async def factory(
        kind: ItemKind = ItemKind.RESOLUTION,
        title: str = "Approve the annual budget",
        status: ItemStatus = ItemStatus.VOTING,
        total_eligible_voters: int = 5,
        quorum_threshold: float = 50.0,
        approval_threshold: float = 75.0,
        voting_deadline: datetime | None = None,
    ) -> VotableItem:
        item = VotableItem(
            kind=kind,
            title=title,
            status=status,
            total_eligible_voters=total_eligible_voters,
            quorum_threshold=quorum_threshold,
            approval_threshold=approval_threshold,
            voting_deadline=voting_deadline if voting_deadline is not None else now + timedelta(days=7),
            voting_opened_at=now - timedelta(days=1) if status == ItemStatus.VOTING else None,
        )
        async with session_factory() as session:
            session.add(item)
            await session.commit()
        return item

    return factory


# =============================================================================
# SERVICES
# =============================================================================


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def channel() -> InMemoryEventChannel:
    return InMemoryEventChannel()


@pytest.fixture
async def audit(session_factory) -> AsyncIterator[AuditLogger]:
    logger = AuditLogger(session_factory, batch_size=100, flush_interval=60.0)
    yield logger
    await logger.flush()


@pytest.fixture
async def monitor(audit) -> AsyncIterator[PerformanceMonitor]:
    monitor = PerformanceMonitor(alert_manager=AlertManager(audit_logger=audit))
    yield monitor
    await monitor.alerts.drain()


@pytest.fixture
def dispatcher(session_factory, transport, monitor) -> EmailDispatchService:
    return EmailDispatchService(
        session_factory,
        transport,
        config=DispatchConfig(
            organization_name="Acme Board",
            portal_url="https://board.acme.test",
            retry_base_delay=0.0,
        ),
        monitor=monitor,
        store_policy=FAST_STORE_POLICY,
    )


@pytest.fixture
def notifications(session_factory, dispatcher, audit, monitor) -> NotificationService:
    return NotificationService(session_factory, dispatcher, audit, monitor=monitor)


@pytest.fixture
def voting(session_factory, channel, audit, monitor) -> VotingService:
    return VotingService(
        session_factory,
        channel,
        audit,
        monitor=monitor,
        rate_limiter=VoteRateLimiter(max_attempts=100, window_seconds=60),
        store_policy=FAST_STORE_POLICY,
        publish_policy=BackoffPolicy(max_attempts=2, base_delay=0.0),
    )

"""
Shared pytest fixtures for Proofline tests.

This module provides common fixtures for:
- A controllable clock
- Step and timeline factories
- Database sessions on an in-memory SQLite engine
- A fully wired bake service and FastAPI test client
"""
import os
import pytest
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, List, Optional

# Set test environment variables BEFORE importing app modules
# This ensures Settings loads in debug/test mode
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from proofline.config import Settings, get_settings
from proofline.db.database import Base
from proofline.db import models  # noqa: F401
from proofline.engine.notification_backend import InMemoryNotificationBackend
from proofline.engine.notification_scheduler import NotificationScheduler
from proofline.features.flags import FeatureFlags, get_feature_flags
from proofline.models.schemas import Step, StepStatus, Timeline
from proofline.services.analytics_service import AnalyticsTap, SqlAnalyticsSink
from proofline.services.bake_service import BakeService, get_bake_service
from proofline.services.timeline_store import SqlTimelineStore
from proofline.utils.timeutils import add_minutes
from proofline.main import app


# Saturday morning, well clear of any bedtime/wakeup boundary
T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> datetime:
        self.now = self.now + timedelta(minutes=minutes)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


# ============================================================================
# Clock and Model Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at T0 (2025-03-01 09:00 UTC)."""
    return FakeClock()


@pytest.fixture
def make_step() -> Callable[..., Step]:
    """Factory for a single step starting at ``start`` (default T0)."""

    def _make_step(
        index: int,
        duration: int = 30,
        start: Optional[datetime] = None,
        status: StepStatus = StepStatus.PENDING,
        **kwargs,
    ) -> Step:
        start = start or T0
        return Step(
            id=kwargs.pop("id", f"step-{index}"),
            step_index=index,
            name=kwargs.pop("name", f"Step {index}"),
            status=status,
            scheduled_start=start,
            scheduled_end=add_minutes(start, duration),
            estimated_duration_minutes=duration,
            **kwargs,
        )

    return _make_step


@pytest.fixture
def make_timeline(make_step) -> Callable[..., Timeline]:
    """
    Factory for a timeline of back-to-back steps.

    Example:
        make_timeline([480, 30, 240], statuses=["active"])
    """

    def _make_timeline(
        durations: List[int],
        start: Optional[datetime] = None,
        statuses: Optional[List[str]] = None,
        bake_id: str = "bake-1",
        **step_kwargs,
    ) -> Timeline:
        cursor = start or T0
        statuses = statuses or []
        steps = []
        for index, duration in enumerate(durations):
            status = StepStatus(statuses[index]) if index < len(statuses) else StepStatus.PENDING
            steps.append(make_step(index, duration, cursor, status, **step_kwargs))
            cursor = add_minutes(cursor, duration)
        return Timeline(bake_id=bake_id, name="Test bake", steps=steps, created_at=start or T0)

    return _make_timeline


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings with UTC timezone and default alarm hours."""
    return get_settings(debug=True, timezone="UTC", adaptive_check_max_alarms=4)


@pytest.fixture
def flags() -> FeatureFlags:
    """Feature flags at their defaults."""
    return get_feature_flags()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database for testing.

    Each test function gets a fresh database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for assertions against stored rows."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def backend() -> InMemoryNotificationBackend:
    return InMemoryNotificationBackend()


@pytest.fixture
def store(session_factory) -> SqlTimelineStore:
    return SqlTimelineStore(session_factory)


@pytest.fixture
def bake_service(store, backend, session_factory, clock, test_settings, flags) -> BakeService:
    """Bake service wired to the test database, in-memory alarms and the fake clock."""
    return BakeService(
        store=store,
        notification_scheduler=NotificationScheduler(backend, config=test_settings, flags=flags),
        analytics=AnalyticsTap(sinks=[SqlAnalyticsSink(session_factory)], max_events_per_bake=100),
        clock=clock,
        config=test_settings,
        flags=flags,
    )


@pytest.fixture(scope="function")
def client(bake_service) -> Generator[TestClient, None, None]:
    """Create FastAPI test client with the bake service overridden.

    The lifespan is not entered, so no scheduler thread is started.
    """
    app.dependency_overrides[get_bake_service] = lambda: bake_service

    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def start_payload() -> dict:
    """Three-step bake request: mix, adaptive bulk, overnight retard."""
    return {
        "name": "Country loaf",
        "steps": [
            {"name": "Mix", "estimated_duration_minutes": 30},
            {"name": "Bulk Fermentation", "estimated_duration_minutes": 240, "is_adaptive": True},
            {"name": "Cold Retard", "estimated_duration_minutes": 600},
        ],
    }

"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of rally.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from rally.config import RallyConfig  # noqa: E402
from rally.database.models import Base  # noqa: E402
from rally.services.challenge_service import ChallengeDraft, ChallengeService  # noqa: E402
from rally.services.groups import StaticGroupDirectory  # noqa: E402
from rally.services.job_queue import InMemoryJobQueue  # noqa: E402
from rally.services.repository import ChallengeRepository  # noqa: E402
from rally.services.scheduler import LifecycleScheduler  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Manually advanced clock shared by the service and the queue."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Rally tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the worker).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def config() -> RallyConfig:
    return RallyConfig()


@pytest.fixture
def queue(clock) -> InMemoryJobQueue:
    return InMemoryJobQueue(clock=clock)


@pytest.fixture
def repository(db_engine) -> ChallengeRepository:
    return ChallengeRepository(db_engine)


@pytest.fixture
def service(repository, queue, clock, config) -> ChallengeService:
    """A fully wired service whose lifecycle jobs land on the in-memory queue."""
    scheduler = LifecycleScheduler(queue, config.job_options())
    svc = ChallengeService(
        repository,
        scheduler,
        config=config,
        groups=StaticGroupDirectory(),
        clock=clock,
    )
    scheduler.attach(svc)
    return svc


def make_draft(**overrides) -> ChallengeDraft:
    """A valid draft starting one hour after ``T0`` and running for a week."""
    fields = {
        "group_id": "book-club",
        "name": "March Reading Sprint",
        "challenge_type": "reading-pages",
        "start_at": T0 + timedelta(hours=1),
        "end_at": T0 + timedelta(days=7, hours=1),
        "goal_unit": "pages",
        "goal_quantity": None,
    }
    fields.update(overrides)
    return ChallengeDraft(**fields)


def start_challenge(service: ChallengeService, clock: FrozenClock, **overrides) -> int:
    """Create, publish and activate a challenge.  Leaves the clock at its start."""
    challenge_id = service.create_challenge(make_draft(**overrides))
    challenge = service.publish(challenge_id)
    clock.set(challenge.start_at)
    service.advance(challenge_id)
    return challenge_id


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from rally.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )

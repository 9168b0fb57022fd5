"""
conftest.py
===========
Shared fixtures: an isolated in-memory store per test, a private change feed,
and a manual clock so heartbeat ages can be controlled exactly.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from medisync.config import Settings
from medisync.lifecycle import SessionLifecycle
from medisync.models import Base, DoctorStatus
from medisync.notifications import ChangeFeed
from medisync.registry import DoctorRegistry


class ManualClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.current = start_ms

    def __call__(self) -> int:
        return self.current

    def advance(self, seconds: float) -> int:
        self.current += int(seconds * 1000)
        return self.current


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def registry(session_factory, feed, clock):
    return DoctorRegistry(session_factory, feed, clock)


@pytest.fixture
def lifecycle(registry, session_factory, feed, clock):
    return SessionLifecycle(registry, session_factory, feed, clock)


@pytest.fixture
def fast_settings():
    return Settings(heartbeat_interval_s=0.01, watchdog_interval_s=0.01)


@pytest.fixture
def add_doctor(registry, clock):
    """
    Create a doctor that is eligible right now unless overridden,
    e.g. add_doctor("d1", approved=False).
    """
    def _add(doctor_id: str, name: str = None, **overrides):
        fields = dict(
            approved=True,
            blocked=False,
            status=DoctorStatus.ACTIVE,
            busy=False,
            last_active_time=clock(),
        )
        fields.update(overrides)
        return registry.create_doctor(name or f"Doc {doctor_id}", doctor_id=doctor_id, **fields)

    return _add

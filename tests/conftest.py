"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from afms.core.logging import Logger
from afms.database import build_engine, build_session_factory, init_models
from afms.models.domain import DomainEvent
from afms.services.event_bus import EventBus
from afms.services.event_store import EventStore


class RecordingSleep:
    """Stands in for asyncio.sleep: records the requested delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTime:
    """Settable monotonic time source, in seconds."""

    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def make_event(event_type="AttendanceRecorded", event_id="evt-1", aggregate_id="emp-1", **data) -> DomainEvent:
    return DomainEvent(
        id=event_id,
        aggregate_id=aggregate_id,
        aggregate_type="Employee",
        event_type=event_type,
        event_data=data,
        event_version=1,
        occurred_at=datetime(2026, 1, 5, 9, 0),
    )


@pytest_asyncio.fixture
async def engine():
    """Create a fresh in-memory database for each test."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def logger():
    return Logger("afms.tests")


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest_asyncio.fixture
async def event_bus(logger, recording_sleep):
    bus = EventBus(logger, sleep=recording_sleep)

    yield bus

    await bus.shutdown()


@pytest.fixture
def event_store(session_factory, logger):
    return EventStore(session_factory, logger)

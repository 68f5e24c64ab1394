"""
Test fixtures for crmsync tests.

Provides database fixtures, deterministic clocks and in-memory fakes for
the CRM client and the entity repository.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional, Sequence

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import crmsync.models  # noqa: F401  (register tables on the metadata)
from crmsync.core.circuit_breaker import set_notification_callback
from crmsync.core.config import Settings
from crmsync.services.collaborators import DeleteOutcome, FetchedPage, UpsertOutcome
from crmsync.services.container import build_services, configure_services
from crmsync.services.counter_store import MemoryCounterStore, SqlCounterStore

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clear_global_state():
    """Module-level hooks must not leak between tests."""
    yield
    set_notification_callback(None)
    configure_services(None)


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


# ============================================
# Clocks
# ============================================


class FakeClock:
    """Settable UTC clock; call it like utc_now()."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTimer:
    """Monotonic timer stand-in (seconds as float)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and moves the clock forward instead of blocking."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.calls: List[float] = []
        self.clock = clock

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def sleeper(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


# ============================================
# Collaborators
# ============================================


def make_records(count: int, start_id: int = 1) -> List[Dict[str, Any]]:
    return [{"id": start_id + i, "title": f"Record {start_id + i}"} for i in range(count)]


class FakeClient:
    """
    Scripted CRM client.

    `responses` are served in order; an Exception instance is raised instead
    of returned. Once exhausted, an empty last page is returned.
    """

    def __init__(self, responses: Optional[Sequence[Any]] = None):
        self.responses = list(responses or [])
        self.fetch_calls: List[Dict[str, Any]] = []
        self.ping_calls = 0
        self.ping_error: Optional[Exception] = None

    @classmethod
    def with_pages(cls, *counts: int) -> "FakeClient":
        """One page per count; every page but the last has a next cursor."""
        responses = []
        next_id = 1
        for index, count in enumerate(counts):
            cursor = index + 1 if index < len(counts) - 1 else None
            responses.append(FetchedPage(make_records(count, next_id), cursor, {}))
            next_id += count
        return cls(responses)

    def fetch(self, entity_type, page_size, cursor, sort_mode):
        self.fetch_calls.append(
            {"entity_type": entity_type, "page_size": page_size, "cursor": cursor, "sort_mode": sort_mode}
        )
        if not self.responses:
            return FetchedPage([], None, {})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def ping(self):
        self.ping_calls += 1
        if self.ping_error is not None:
            raise self.ping_error
        return {"ok": True}


class FakeRepository:
    """
    In-memory entity store.

    `failures` maps a record id to exceptions raised by successive upserts
    of that record.
    """

    def __init__(self):
        self.records: Dict[tuple, Dict[str, Any]] = {}
        self.failures: Dict[Any, List[Exception]] = {}
        self.upsert_calls: List[tuple] = []
        self.delete_calls: List[tuple] = []

    def upsert(self, entity_type, record):
        remote_id = record["id"]
        self.upsert_calls.append((entity_type, remote_id))
        pending = self.failures.get(remote_id)
        if pending:
            raise pending.pop(0)
        key = (entity_type, str(remote_id))
        existing = self.records.get(key)
        self.records[key] = dict(record)
        if existing is None:
            return UpsertOutcome.CREATED
        if existing == dict(record):
            return UpsertOutcome.SKIPPED
        return UpsertOutcome.UPDATED

    def delete(self, entity_type, remote_id):
        self.delete_calls.append((entity_type, remote_id))
        if self.records.pop((entity_type, str(remote_id)), None) is None:
            return DeleteOutcome.NOT_FOUND
        return DeleteOutcome.OK


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


# ============================================
# Services
# ============================================


def make_settings(**overrides: Any) -> Settings:
    """Deterministic settings: no jitter, probe disabled unless asked for."""
    values: Dict[str, Any] = dict(
        DATABASE_URL=TEST_DATABASE_URL,
        OPERATIONS_API_TOKEN="",
        RATE_LIMIT_JITTER=False,
        HEALTH_ENABLED=False,
        MEMORY_LIMIT_MB=1024,
        SYNC_SCHEDULE_ENABLED=False,
    )
    values.update(overrides)
    return Settings(**values)


class MemorySampler:
    """Returns (used_bytes, limit_bytes) for a settable usage percentage."""

    def __init__(self, percent: float = 10.0, limit: int = 1000):
        self.percent = percent
        self.limit = limit

    def __call__(self):
        return int(self.limit * self.percent / 100), self.limit


@pytest.fixture
def memory_sampler() -> MemorySampler:
    return MemorySampler()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def memory_store(timer: FakeTimer) -> MemoryCounterStore:
    return MemoryCounterStore(timer=timer)


@pytest.fixture
def sql_store(test_engine, clock: FakeClock) -> SqlCounterStore:
    return SqlCounterStore(test_engine, clock=clock)


@pytest.fixture
def make_services(repository, test_engine, clock, sleeper, memory_sampler):
    """Build SyncServices around a given client, with settings overrides."""

    def _make(client=None, **setting_overrides):
        return build_services(
            client if client is not None else FakeClient(),
            repository,
            make_settings(**setting_overrides),
            engine=test_engine,
            clock=clock,
            sleep=sleeper,
            memory_sampler=memory_sampler,
            rng=lambda: 0.0,
        )

    return _make


@pytest.fixture
def services(make_services, client):
    """Fully wired SyncServices over the in-memory database."""
    return make_services(client)

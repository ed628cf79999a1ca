"""Pytest configuration and fixtures."""

import asyncio
import itertools
import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"

import carecue.main
from carecue.database import Base, get_db
from carecue.errors import DuplicateOccurrence, NotFound
from carecue.main import app
from carecue.models import CacheEntry
from carecue.schemas.occurrence import Occurrence, OccurrenceStatus
from carecue.schemas.reminder import Reminder, ReminderCreate, ReminderUpdate
from carecue.services.alerts import LocalAlertAdapter
from carecue.services.controller import ReconciliationController
from carecue.services.mutations import apply_patch
from carecue.services.offline_cache import OfflineCache

# Tuesday
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeBackend:
    """Alert backend that records alerts instead of raising them."""

    def __init__(self) -> None:
        self.scheduled: dict[str, tuple[datetime, dict[str, Any], Any]] = {}
        self.cancelled: list[str] = []

    def schedule(self, alert_id, when, payload, on_fire) -> None:
        self.scheduled[alert_id] = (when, payload, on_fire)

    def cancel(self, alert_id) -> None:
        self.cancelled.append(alert_id)
        self.scheduled.pop(alert_id, None)

    def fire(self, alert_id: str) -> None:
        _, _, on_fire = self.scheduled.pop(alert_id)
        on_fire()


class FakeRemote:
    """In-memory stand-in for the remote reminder service.

    ``failures``, ``delays`` and ``gates`` are keyed by method name, or by
    ``"<method>:<reminder_id>"`` to target a single reminder.
    """

    def __init__(self, clock: FrozenClock) -> None:
        self.clock = clock
        self.reminders: dict[str, Reminder] = {}
        self.history: dict[str, list[Occurrence]] = {}
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, tuple]] = []
        self._ids = itertools.count(100)

    def add(self, label: str = "Vitamin D", **fields: Any) -> Reminder:
        reminder_id = str(next(self._ids))
        data = {"id": reminder_id, "label": label, "created_at": self.clock()}
        data.update(fields)
        reminder = Reminder.model_validate(data)
        self.reminders[reminder_id] = reminder
        self.history.setdefault(reminder_id, [])
        return reminder

    def record(self, reminder_id: str, status: OccurrenceStatus, when: datetime) -> Occurrence:
        occurrence = Occurrence(
            id=str(next(self._ids)),
            reminder_id=reminder_id,
            scheduled_time=when,
            status=status,
            recorded_time=self.clock(),
        )
        self.history.setdefault(reminder_id, []).append(occurrence)
        return occurrence

    def called(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        keys = [name] + ([f"{name}:{args[0]}"] if args else [])
        await asyncio.sleep(0)
        for key in keys:
            if key in self.gates:
                await self.gates[key].wait()
            if key in self.delays:
                await asyncio.sleep(self.delays[key])
            if key in self.failures:
                raise self.failures[key]

    def _get(self, reminder_id: str) -> Reminder:
        if reminder_id not in self.reminders:
            raise NotFound("Reminder not found", status_code=404)
        return self.reminders[reminder_id]

    async def list_reminders(self) -> list[Reminder]:
        await self._call("list_reminders")
        return list(self.reminders.values())

    async def create_reminder(self, reminder: ReminderCreate) -> Reminder:
        await self._call("create_reminder")
        created = Reminder.model_validate(
            {**reminder.model_dump(), "id": str(next(self._ids)), "created_at": self.clock()}
        )
        self.reminders[created.id] = created
        self.history[created.id] = []
        return created

    async def update_reminder(self, reminder_id: str, patch: ReminderUpdate) -> Reminder:
        await self._call("update_reminder", reminder_id)
        updated = apply_patch(self._get(reminder_id), patch)
        self.reminders[reminder_id] = updated
        return updated

    async def delete_reminder(self, reminder_id: str) -> None:
        await self._call("delete_reminder", reminder_id)
        self._get(reminder_id)
        del self.reminders[reminder_id]
        self.history.pop(reminder_id, None)

    async def snooze(self, reminder_id: str, minutes: int) -> Reminder:
        await self._call("snooze", reminder_id)
        snoozed = self._get(reminder_id).model_copy(
            update={"snooze_until": self.clock() + timedelta(minutes=minutes)}
        )
        self.reminders[reminder_id] = snoozed
        return snoozed

    async def mark_missed(self, reminder_id: str) -> Reminder:
        await self._call("mark_missed", reminder_id)
        current = self._get(reminder_id)
        updated = current.model_copy(update={"missed_count": current.missed_count + 1})
        self.reminders[reminder_id] = updated
        return updated

    async def add_history(
        self, reminder_id: str, status: OccurrenceStatus, time: datetime
    ) -> Occurrence:
        await self._call("add_history", reminder_id)
        self._get(reminder_id)
        for occ in self.history.get(reminder_id, []):
            if occ.status == status and occ.scheduled_time == time:
                raise DuplicateOccurrence("Already recorded", status_code=409)
        return self.record(reminder_id, status, time)

    async def list_history(self, reminder_id: str) -> list[Occurrence]:
        await self._call("list_history", reminder_id)
        self._get(reminder_id)
        return list(self.history.get(reminder_id, []))

    async def stats(self) -> dict[str, Any]:
        await self._call("stats")
        return {"total_medications": len(self.reminders)}

    async def upcoming(self) -> list[dict[str, Any]]:
        await self._call("upcoming")
        return []


async def settle(predicate, attempts: int = 200) -> None:
    """Let the event loop run until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture(scope="session")
def engine():
    """Create test database engine."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine) -> Generator[sessionmaker, None, None]:
    """Session factory for the test database, emptied after each test."""
    factory = sessionmaker(bind=engine)
    yield factory
    with factory() as db:
        db.query(CacheEntry).delete()
        db.commit()


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a new database session for a test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def cache(session_factory) -> OfflineCache:
    return OfflineCache(session_factory=session_factory)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def remote(clock) -> FakeRemote:
    return FakeRemote(clock)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def alerts(backend, cache) -> LocalAlertAdapter:
    return LocalAlertAdapter(backend=backend, cache=cache)


@pytest.fixture
def controller(remote, cache, alerts, clock) -> ReconciliationController:
    """Controller wired to fakes; not started, so no sweep timer runs."""
    return ReconciliationController(
        remote, cache, alerts, clock=clock, premium=False, timeout=1.0
    )


@pytest.fixture
def client(monkeypatch, controller, db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client whose lifespan runs the fake-backed controller."""
    monkeypatch.setattr(carecue.main, "build_controller", lambda: controller)

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

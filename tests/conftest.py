import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio
import uuid
from datetime import datetime
from typing import Any, Generator, List, Optional, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import Base, MessageCondition, TriggerKind
from app.services.conditions.condition_service import ConditionService
from app.services.notifications.dispatch import DispatchResult
from app.services.sync.events import ConditionEvent, InMemoryEventBus


# Test database setup
TEST_DATABASE_URL = "sqlite://"

# Fixed reference instant used as "now" across tests
T0 = datetime(2025, 1, 1, 12, 0, 0)


class RecordingDispatcher:
    """Dispatcher double that records calls and can fail, raise or stall."""

    def __init__(self):
        self.reminders: List[tuple] = []
        self.deliveries: List[tuple] = []
        self.fail_reminders = False
        self.fail_final = False
        self.raise_error: Optional[Exception] = None
        self.delay_seconds = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    async def _run(self, fail: bool) -> DispatchResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            if self.raise_error is not None:
                raise self.raise_error
            if fail:
                return DispatchResult.failed("channel unavailable")
            return DispatchResult.ok()
        finally:
            self.in_flight -= 1

    async def remind_owner(self, owner_ref: Any, message_ref: Any) -> DispatchResult:
        self.reminders.append((owner_ref, message_ref))
        return await self._run(self.fail_reminders)

    async def deliver_final(
        self, recipient_refs: Sequence[Any], message_ref: Any
    ) -> DispatchResult:
        self.deliveries.append((list(recipient_refs), message_ref))
        return await self._run(self.fail_final)


@pytest.fixture
def test_engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database for tests that need truly separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'failsafe-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def now() -> datetime:
    return T0


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def published_events(event_bus) -> List[ConditionEvent]:
    events: List[ConditionEvent] = []
    event_bus.subscribe(events.append)
    return events


@pytest.fixture
def condition_service(db_session, dispatcher, event_bus) -> ConditionService:
    return ConditionService(db_session, dispatcher=dispatcher, event_bus=event_bus)


def build_condition(**overrides) -> MessageCondition:
    values = dict(
        message_id=uuid.uuid4(),
        owner_id=uuid.uuid4(),
        trigger_kind=TriggerKind.NO_CHECK_IN,
        active=False,
        hours_threshold=24,
        minutes_threshold=None,
        trigger_date=None,
        reminder_lead_times=[60],
        recipients=["alice@example.com", "bob@example.com"],
        panic_keep_armed=False,
    )
    values.update(overrides)
    return MessageCondition(**values)


@pytest.fixture
def make_condition(db_session):
    """Factory fixture persisting a condition with sensible defaults."""

    def _make(**overrides) -> MessageCondition:
        condition = build_condition(**overrides)
        db_session.add(condition)
        db_session.commit()
        return condition

    return _make

"""
Shared pytest fixtures for mercato-scheduler tests.

This module provides:
- An in-memory SQLite engine with the scheduler schema
- A schedule store wired to an in-process command bus
- In-memory fakes for job queues, the repeatable-registration backend
  and the event bus
- ``make_registration`` for building valid registrations with overrides
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest

from mercato_scheduler.commands import InProcessCommandBus, create_command_bus
from mercato_scheduler.events import Event, SchedulerEventEmitter
from mercato_scheduler.features import StaticFeatureChecker
from mercato_scheduler.models import ScheduleRegistration
from mercato_scheduler.orm import create_scheduler_engine, create_schema, scheduler_session_factory
from mercato_scheduler.protocols import RepeatableJob, RepeatOptions
from mercato_scheduler.scheduling.dispatch import TargetDispatcher
from mercato_scheduler.scheduling.store import ScheduleStore
from mercato_scheduler.settings import get_settings

REPORT_COMMAND = "reports.generate"


# =============================================================================
# Fakes
# =============================================================================


class FakeJobQueue:
    """Records enqueued payloads."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.jobs: list[dict[str, Any]] = []
        self.closed = 0

    def enqueue(self, payload: dict[str, Any]) -> str:
        self.jobs.append(payload)
        return f"{self.name}-{len(self.jobs)}"

    def close(self) -> None:
        self.closed += 1


class FakeQueueFactory:
    """``QueueFactory`` handing out one :class:`FakeJobQueue` per name."""

    def __init__(self) -> None:
        self.queues: dict[str, FakeJobQueue] = {}

    def __call__(self, name: str) -> FakeJobQueue:
        return self.queues.setdefault(name, FakeJobQueue(name))


class FakeRepeatableQueue:
    """In-memory repeatable-registration backend."""

    def __init__(self, name: str = "scheduler-execution") -> None:
        self.name = name
        self.jobs: dict[str, RepeatableJob] = {}
        self.add_calls: list[str] = []
        self.fail_on_add: set[str] = set()
        self.closed = False

    def add(
        self,
        name: str,
        data: dict[str, Any],
        repeat: RepeatOptions,
        *,
        options: dict[str, Any] | None = None,
    ) -> RepeatableJob:
        if name in self.fail_on_add:
            raise ConnectionError(f"backend refused {name}")
        self.add_calls.append(name)
        job = RepeatableJob(
            key=f"{name}::{repeat.pattern or repeat.every_ms}",
            name=name,
            id=data.get("id"),
            repeat=repeat,
            data=data,
            options=dict(options or {}),
        )
        self.jobs[name] = job
        return job

    def get_repeatable_jobs(self) -> list[RepeatableJob]:
        return sorted(self.jobs.values(), key=lambda job: job.name)

    def remove_repeatable_by_key(self, key: str) -> bool:
        for name, job in list(self.jobs.items()):
            if job.key == key:
                del self.jobs[name]
                return True
        return False

    def close(self) -> None:
        self.closed = True

    @property
    def names(self) -> set[str]:
        return set(self.jobs)


class RecordingEventBus:
    """Event bus that keeps every published event."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def publish(self, event: Event) -> None:
        self.events.append(event)

    async def subscribe(self, event_type: str, handler: Any) -> str:
        return "sub"

    async def unsubscribe(self, subscription_id: str) -> None:
        return None

    async def close(self) -> None:
        return None

    @property
    def types(self) -> list[str]:
        return [event.event_type for event in self.events]

    def of_type(self, event_type: str) -> list[Event]:
        return [event for event in self.events if event.event_type == event_type]


# =============================================================================
# Helpers
# =============================================================================


def make_registration(**overrides: Any) -> ScheduleRegistration:
    """Valid tenant-scoped interval schedule targeting the ``reports`` queue."""
    values: dict[str, Any] = {
        "id": "sched-1",
        "name": "Nightly report",
        "scope_type": "tenant",
        "tenant_id": "t-1",
        "schedule_type": "interval",
        "schedule_value": "15m",
        "target_type": "queue",
        "target_queue": "reports",
        "source_module": "reports",
    }
    values.update(overrides)
    return ScheduleRegistration(**values)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def engine():
    engine = create_scheduler_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return scheduler_session_factory(engine)


@pytest.fixture
def command_bus() -> InProcessCommandBus:
    bus = create_command_bus()

    @bus.register(REPORT_COMMAND)
    async def generate_report(input, context):
        return {"generated": True, "tenant_id": context.tenant_id}

    return bus


@pytest.fixture
def store(session_factory, command_bus) -> ScheduleStore:
    return ScheduleStore(session_factory, command_registry=command_bus)


@pytest.fixture
def queue_factory() -> FakeQueueFactory:
    return FakeQueueFactory()


@pytest.fixture
def repeatable_queue() -> FakeRepeatableQueue:
    return FakeRepeatableQueue()


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def emitter(event_bus) -> SchedulerEventEmitter:
    return SchedulerEventEmitter(event_bus)


@pytest.fixture
def dispatcher(command_bus, queue_factory) -> TargetDispatcher:
    return TargetDispatcher(command_bus=command_bus, queue_factory=queue_factory)


@pytest.fixture
def feature_checker() -> StaticFeatureChecker:
    return StaticFeatureChecker()


@pytest.fixture
def make_reg():
    """Factory fixture around :func:`make_registration`."""
    return make_registration

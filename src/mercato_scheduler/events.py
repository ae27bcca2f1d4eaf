"""
Scheduler lifecycle events.

Every execution attempt reports ``scheduler.job.started``, then exactly one
of ``completed``, ``failed`` or ``skipped``. Emission is fire-and-forget: a
broken event bus is logged and never affects scheduling.

Manifesto:
    Event delivery is someone else's problem. The scheduler hands events
    to whatever :class:`EventBus` it was given (in-memory by default) and
    moves on.

Tags:
    events, pub-sub, lifecycle, fire-and-forget

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from mercato_scheduler.logging import get_logger

if TYPE_CHECKING:
    from mercato_scheduler.models import ScheduledJob

logger = get_logger(__name__)


class SchedulerEventType(StrEnum):
    STARTED = "scheduler.job.started"
    COMPLETED = "scheduler.job.completed"
    FAILED = "scheduler.job.failed"
    SKIPPED = "scheduler.job.skipped"


@dataclass
class Event:
    """Event payload.

    Attributes:
        event_type: Dot-separated type (e.g. ``scheduler.job.started``)
        source: Origin component
        payload: Event-specific data
        timestamp: When the event occurred (UTC)
        correlation_id: Optional ID linking related events
        event_id: Unique event identifier
    """

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Match ``*``, ``prefix.*`` or an exact type."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return self.event_type.startswith(pattern[:-2] + ".")
        return self.event_type == pattern


EventHandler = Callable[[Event], Awaitable[None]]


@runtime_checkable
class EventBus(Protocol):
    """Publish/subscribe with wildcard patterns."""

    async def publish(self, event: Event) -> None: ...

    async def subscribe(self, event_type: str, handler: EventHandler) -> str: ...

    async def unsubscribe(self, subscription_id: str) -> None: ...

    async def close(self) -> None: ...


@dataclass
class Subscription:
    id: str
    pattern: str
    handler: EventHandler


class InMemoryEventBus:
    """In-process event bus.

    Handlers run concurrently; a failing handler is logged and does not
    stop delivery to the others.

    Example::

        bus = InMemoryEventBus()

        async def on_failed(event: Event) -> None:
            alert(event.payload["schedule_id"])

        await bus.subscribe("scheduler.job.failed", on_failed)
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._closed = False

    async def publish(self, event: Event) -> None:
        if self._closed:
            return

        handlers = [
            (sub.id, sub.handler)
            for sub in list(self._subscriptions.values())
            if event.matches(sub.pattern)
        ]
        if not handlers:
            return

        async def safe_call(sub_id: str, handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception as exc:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub_id,
                    event_type=event.event_type,
                    error=str(exc),
                )

        await asyncio.gather(*(safe_call(sub_id, handler) for sub_id, handler in handlers))

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=event_type, handler=handler)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        self._closed = True
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


class SchedulerEventEmitter:
    """Builds and publishes lifecycle events for a schedule.

    Payload keys: ``schedule_id``, ``schedule_name``, ``scope_type``,
    ``tenant_id``, ``organization_id``, ``emitted_at`` plus whatever the
    caller adds (``reason``, ``error``, ``queue_job_id``...).
    """

    def __init__(self, bus: EventBus | None = None, *, source: str = "scheduler") -> None:
        self.bus: EventBus = bus if bus is not None else InMemoryEventBus()
        self.source = source

    async def emit(
        self,
        event_type: SchedulerEventType,
        schedule: ScheduledJob,
        **fields: Any,
    ) -> None:
        payload = {
            **schedule.log_context(),
            "emitted_at": datetime.now(UTC).isoformat(),
            **fields,
        }
        event = Event(
            event_type=str(event_type),
            source=self.source,
            payload=payload,
            correlation_id=schedule.id,
        )
        try:
            await self.bus.publish(event)
        except Exception as exc:
            logger.warning(
                "event_publish_failed",
                event_type=str(event_type),
                schedule_id=schedule.id,
                error=str(exc),
            )

    async def started(self, schedule: ScheduledJob, **fields: Any) -> None:
        await self.emit(SchedulerEventType.STARTED, schedule, **fields)

    async def completed(self, schedule: ScheduledJob, **fields: Any) -> None:
        await self.emit(SchedulerEventType.COMPLETED, schedule, **fields)

    async def failed(self, schedule: ScheduledJob, error: str, **fields: Any) -> None:
        await self.emit(SchedulerEventType.FAILED, schedule, error=error, **fields)

    async def skipped(self, schedule: ScheduledJob, reason: str, **fields: Any) -> None:
        await self.emit(SchedulerEventType.SKIPPED, schedule, reason=reason, **fields)

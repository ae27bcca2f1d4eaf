"""Celery beat scheduler driven by the Redis registration store.

Unlike a static ``beat_schedule``, the entries here come from the
registrations the distributed runner maintains. Beat reloads them
periodically and fires the execute task on the execution queue at every
cron or interval occurrence, in the registration's own timezone.

::

    ┌──────────────────────┐  reload   ┌──────────────────────────┐
    │ RedisRepeatableQueue │ ────────► │ RepeatableBeatScheduler  │
    │ (registrations)      │           │  entry per registration  │
    └──────────────────────┘           └────────────┬─────────────┘
                                                    │ send_task(execute, [data])
                                                    ▼
                                        scheduler-execution queue ──► worker

Run with::

    celery -A mercato_scheduler.queue.celery_app:app beat \\
        -S mercato_scheduler.queue.beat:RepeatableBeatScheduler

Tags:
    queue, celery, beat, cron, timezone
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Any

from celery.beat import Scheduler
from celery.schedules import BaseSchedule, schedstate

from mercato_scheduler.errors import best_effort
from mercato_scheduler.logging import get_logger
from mercato_scheduler.protocols import RepeatableQueue, RepeatOptions
from mercato_scheduler.queue.redis_repeatable import DEFAULT_PREFIX, RedisRepeatableQueue
from mercato_scheduler.scheduling.recurrence import next_cron_occurrence

logger = get_logger(__name__)

EXECUTE_TASK_NAME = "mercato_scheduler.execute_schedule"


class RecurrenceSchedule(BaseSchedule):
    """Celery schedule for a cron pattern or fixed interval in a timezone."""

    def __init__(self, repeat: RepeatOptions, nowfun: Any = None, app: Any = None) -> None:
        if repeat.pattern is None and not repeat.every_ms:
            raise ValueError("Repeat options need a cron pattern or a positive interval")
        self.repeat = repeat
        super().__init__(nowfun=nowfun, app=app)

    def now(self) -> datetime:
        if self.nowfun is not None:
            return self.nowfun()
        return datetime.now(UTC)

    def next_fire_after(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        if self.repeat.pattern is not None:
            return next_cron_occurrence(self.repeat.pattern, self.repeat.timezone, moment)
        return moment + timedelta(milliseconds=self.repeat.every_ms or 0)

    def remaining_estimate(self, last_run_at: datetime) -> timedelta:
        return self.next_fire_after(last_run_at) - self.now()

    def is_due(self, last_run_at: datetime) -> schedstate:
        now = self.now()
        remaining = (self.next_fire_after(last_run_at) - now).total_seconds()
        if remaining > 0:
            return schedstate(is_due=False, next=remaining)
        following = (self.next_fire_after(now) - now).total_seconds()
        return schedstate(is_due=True, next=max(following, 0.0))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RecurrenceSchedule):
            return self.repeat == other.repeat
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.repeat)

    def __reduce__(self) -> tuple[Any, ...]:
        return (self.__class__, (self.repeat, self.nowfun))

    def __repr__(self) -> str:
        return f"<RecurrenceSchedule: {self.repeat.to_dict()}>"


class RepeatableBeatScheduler(Scheduler):
    """Beat scheduler whose entries mirror the registration store."""

    #: Seconds between registration reloads.
    refresh_interval = 15.0

    def __init__(
        self,
        *args: Any,
        registry: RepeatableQueue | None = None,
        refresh_interval: float | None = None,
        **kwargs: Any,
    ) -> None:
        self._registry = registry
        self._last_refresh = 0.0
        if refresh_interval is not None:
            self.refresh_interval = refresh_interval
        super().__init__(*args, **kwargs)

    @property
    def registry(self) -> RepeatableQueue:
        if self._registry is None:
            conf = self.app.conf
            self._registry = RedisRepeatableQueue.from_url(
                conf.get("mercato_redis_url") or "redis://localhost:6379/0",
                name=conf.get("mercato_execution_queue") or "scheduler-execution",
                prefix=conf.get("mercato_registry_prefix") or DEFAULT_PREFIX,
            )
        return self._registry

    def setup_schedule(self) -> None:
        self.install_default_entries(self.data)
        self.refresh()

    def refresh(self) -> None:
        """Rebuild entries from the store, keeping run state of unchanged ones."""
        entries: dict[str, Any] = {
            name: entry for name, entry in self.data.items() if name.startswith("celery.")
        }
        for job in self.registry.get_repeatable_jobs():
            if job.repeat is None:
                continue
            try:
                schedule = RecurrenceSchedule(job.repeat, app=self.app)
            except ValueError:
                logger.warning("beat_registration_invalid", registration=job.name)
                continue

            current = self.data.get(job.name)
            if (
                current is not None
                and current.schedule == schedule
                and tuple(current.args) == (job.data,)
            ):
                entries[job.name] = current
                continue

            entries[job.name] = self.Entry(
                name=job.name,
                task=EXECUTE_TASK_NAME,
                schedule=schedule,
                args=(job.data,),
                kwargs={},
                options={"queue": self.registry.name},
                app=self.app,
            )

        added = entries.keys() - self.data.keys()
        removed = self.data.keys() - entries.keys()
        self.data = entries
        self._last_refresh = time.monotonic()
        if added or removed:
            logger.info(
                "beat_registrations_reloaded",
                total=len(entries),
                added=len(added),
                removed=len(removed),
            )

    def tick(self, *args: Any, **kwargs: Any) -> float:
        if time.monotonic() - self._last_refresh >= self.refresh_interval:
            with best_effort("beat_registry_refresh_failed", queue=self.registry.name):
                self.refresh()
        return super().tick(*args, **kwargs)

    @property
    def info(self) -> str:
        return f"    . registrations -> {getattr(self.registry, 'hash_key', self.registry.name)}"

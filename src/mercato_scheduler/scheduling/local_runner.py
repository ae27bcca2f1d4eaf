"""Single-instance runner: polls the store and executes due schedules.

Manifesto:
    Development and small deployments should not need a broker. The local
    runner polls ``scheduled_jobs`` on a fixed interval, locks each due
    schedule, dispatches it in-process and reschedules it. The same
    lifecycle events are emitted as in distributed mode.

┌──────────────────────────────────────────────────────────────────────────────┐
│  LOCAL RUNNER CYCLE                                                          │
│                                                                              │
│   idle ──► querying ──► for each due schedule (oldest first, ≤ batch):      │
│                          locking      try_lock("schedule:<id>") else skip    │
│                          executing    started → feature gate → dispatch      │
│                          rescheduling last_run_at / next_run_at from now     │
│                          unlock (always)                                     │
│            ◄──────────── idle                                                │
│                                                                              │
│   Errors are reported through *failed* and never stop the loop.              │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    scheduling, runner, polling, advisory-lock, single-instance

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from mercato_scheduler.errors import best_effort
from mercato_scheduler.events import SchedulerEventEmitter
from mercato_scheduler.logging import get_logger
from mercato_scheduler.models import ScheduledJob
from mercato_scheduler.protocols import FeatureChecker
from mercato_scheduler.scheduling.context import TRIGGER_SCHEDULED
from mercato_scheduler.scheduling.dispatch import TargetDispatcher, check_feature_gate
from mercato_scheduler.scheduling.locks import AdvisoryLock, schedule_lock_key
from mercato_scheduler.scheduling.store import ScheduleStore
from mercato_scheduler.scheduling.ticker import PollTicker

logger = get_logger(__name__)


class RunOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    LOCKED = "locked"


@dataclass
class RunnerStats:
    """Counters for the local runner."""

    cycles: int = 0
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    lock_contention: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "executed": self.executed,
            "skipped": self.skipped,
            "failed": self.failed,
            "lock_contention": self.lock_contention,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_error": self.last_error,
        }


class LocalSchedulerRunner:
    """Poll-based runner for the ``local`` queue strategy.

    Example:
        >>> runner = LocalSchedulerRunner(
        ...     store=store,
        ...     lock=AdvisoryLock(engine),
        ...     dispatcher=TargetDispatcher(command_bus=bus, queue_factory=queues),
        ...     poll_interval_seconds=30.0,
        ... )
        >>> runner.start()
        >>> # ... later ...
        >>> runner.stop()
    """

    def __init__(
        self,
        store: ScheduleStore,
        lock: AdvisoryLock,
        dispatcher: TargetDispatcher,
        *,
        emitter: SchedulerEventEmitter | None = None,
        feature_checker: FeatureChecker | None = None,
        poll_interval_seconds: float = 30.0,
        batch_size: int = 100,
        ticker: PollTicker | None = None,
    ) -> None:
        self.store = store
        self.lock = lock
        self.dispatcher = dispatcher
        self.emitter = emitter or SchedulerEventEmitter()
        self.feature_checker = feature_checker
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self.ticker = ticker or PollTicker(name="mercato-scheduler-local")
        self._stats = RunnerStats()
        self._in_flight: set[str] = set()

    # === Lifecycle ===

    def start(self) -> None:
        """Start polling; the first cycle runs immediately."""
        if self.ticker.is_running:
            logger.warning("local_runner_already_running")
            return
        logger.info(
            "local_runner_starting",
            poll_interval_seconds=self.poll_interval_seconds,
            batch_size=self.batch_size,
        )
        self.ticker.start(self.run_cycle, self.poll_interval_seconds)

    def stop(self) -> None:
        """Stop scheduling further cycles; an in-progress cycle completes.

        Locks of schedules still executing are left to that execution.
        """
        if not self.ticker.stop():
            logger.warning("local_runner_cycle_still_running", in_flight=sorted(self._in_flight))
        self.lock.release_all(exclude=set(self._in_flight))
        logger.info("local_runner_stopped", **self._stats.to_dict())

    @property
    def is_running(self) -> bool:
        return self.ticker.is_running

    @property
    def stats(self) -> RunnerStats:
        return self._stats

    # === Cycle ===

    async def run_cycle(self) -> int:
        """Process one batch of due schedules. Returns how many were due."""
        self._stats.cycles += 1
        self._stats.last_cycle_at = datetime.now(UTC)

        try:
            due = self.store.find_due(datetime.now(UTC), limit=self.batch_size)
        except Exception as exc:
            self._stats.last_error = str(exc)
            logger.exception("poll_failed")
            return 0

        if not due:
            logger.debug("no_due_schedules")
            return 0

        logger.info("due_schedules_found", count=len(due))
        for schedule in due:
            try:
                await self.execute_schedule(schedule)
            except Exception as exc:
                self._stats.last_error = str(exc)
                logger.exception("schedule_processing_failed", **schedule.log_context())
        return len(due)

    async def execute_schedule(self, schedule: ScheduledJob) -> RunOutcome:
        """Lock, gate, dispatch and reschedule a single due schedule."""
        lock_key = schedule_lock_key(schedule.id)
        if not self.lock.try_lock(lock_key):
            self._stats.lock_contention += 1
            logger.debug("schedule_locked_elsewhere", **schedule.log_context())
            return RunOutcome.LOCKED

        self._in_flight.add(lock_key)
        try:
            await self.emitter.started(schedule, trigger_type=TRIGGER_SCHEDULED)

            if not await check_feature_gate(self.feature_checker, schedule):
                reason = f"Missing required feature: {schedule.require_feature}"
                logger.info("schedule_skipped", reason=reason, **schedule.log_context())
                self._stats.skipped += 1
                await self.emitter.skipped(schedule, reason)
                with best_effort("schedule_reschedule_failed", schedule_id=schedule.id):
                    self.store.reschedule(schedule.id)
                return RunOutcome.SKIPPED

            started = time.perf_counter()
            try:
                result = await self.dispatcher.dispatch(schedule, trigger=TRIGGER_SCHEDULED)
            except Exception as exc:
                self._stats.failed += 1
                self._stats.last_error = str(exc)
                logger.error(
                    "schedule_execution_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    **schedule.log_context(),
                )
                await self.emitter.failed(schedule, str(exc))
                with best_effort("schedule_reschedule_failed", schedule_id=schedule.id):
                    self.store.reschedule(schedule.id)
                return RunOutcome.FAILED

            duration_ms = int((time.perf_counter() - started) * 1000)
            fresh = None
            with best_effort("schedule_mark_run_failed", schedule_id=schedule.id):
                fresh = self.store.mark_run(schedule.id, ran_at=datetime.now(UTC))
            next_run_at = fresh.next_run_at.isoformat() if fresh and fresh.next_run_at else None

            self._stats.executed += 1
            logger.info(
                "schedule_completed",
                duration_ms=duration_ms,
                next_run_at=next_run_at,
                **schedule.log_context(),
            )
            await self.emitter.completed(
                schedule,
                duration_ms=duration_ms,
                next_run_at=next_run_at,
                **result.event_fields(),
            )
            return RunOutcome.COMPLETED
        finally:
            self._in_flight.discard(lock_key)
            self.lock.unlock(lock_key)

    def health(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "poll_interval_seconds": self.poll_interval_seconds,
            "tick_count": self.ticker.tick_count,
            "last_tick": self.ticker.last_tick.isoformat() if self.ticker.last_tick else None,
            "stats": self._stats.to_dict(),
        }

"""Distributed runner: one recurring registration per schedule.

Manifesto:
    In the ``async`` strategy, firing, retries and duplicate suppression
    belong to the queue backend. This runner only keeps the backend's
    registrations in line with the store: one registration per enabled
    schedule, named ``schedule-<id>``, carrying the schedule's scope so the
    worker can re-validate it at execution time.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DISTRIBUTED RUNNER                                                          │
│                                                                              │
│   register(schedule)   ──► queue.add("schedule-<id>", data, repeat)          │
│                              data = {id, payload: {scheduleId, tenantId,     │
│                                      organizationId, scopeType}, createdAt}  │
│                              repeat = {pattern, tz} | {every, tz}            │
│                                                                              │
│   unregister(id)       ──► remove registration by id/name (missing is ok)   │
│                                                                              │
│   sync_all()           ──► store (enabled, live)  vs  backend registrations  │
│                              missing in backend   → register                 │
│                              orphaned in backend  → remove                   │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    scheduling, distributed, reconciliation, repeatable-jobs, redis, celery

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mercato_scheduler.errors import ScheduleValidationError
from mercato_scheduler.logging import get_logger
from mercato_scheduler.models import ScheduledJob, ScheduleType
from mercato_scheduler.protocols import RepeatableJob, RepeatableQueue, RepeatOptions
from mercato_scheduler.scheduling.recurrence import (
    interval_to_milliseconds,
    recalculate_next_run,
    validate_cron,
)
from mercato_scheduler.scheduling.store import ScheduleStore

logger = get_logger(__name__)

EXECUTION_QUEUE = "scheduler-execution"
REGISTRATION_PREFIX = "schedule-"

DAY_SECONDS = 86400
RETENTION_OPTIONS: dict[str, Any] = {
    "remove_on_complete": {"age": DAY_SECONDS * 30, "count": 1000},
    "remove_on_fail": {"age": DAY_SECONDS * 90, "count": 5000},
}


def registration_name(schedule_id: str) -> str:
    return f"{REGISTRATION_PREFIX}{schedule_id}"


def schedule_id_from_registration(job: RepeatableJob) -> str | None:
    """The schedule id a registration belongs to, or None for foreign entries."""
    for candidate in (job.id, job.name):
        if candidate and candidate.startswith(REGISTRATION_PREFIX):
            return candidate[len(REGISTRATION_PREFIX):]
    return None


def build_repeat_options(schedule: ScheduledJob) -> RepeatOptions:
    """Repeat definition for the backend.

    Raises:
        ScheduleValidationError: The stored recurrence is not usable.
    """
    timezone = schedule.timezone or "UTC"
    if schedule.schedule_type == ScheduleType.CRON:
        if not validate_cron(schedule.schedule_value):
            raise ScheduleValidationError(
                f"Invalid cron expression: {schedule.schedule_value}",
                field="schedule_value",
                value=schedule.schedule_value,
            )
        return RepeatOptions(timezone=timezone, pattern=schedule.schedule_value)
    if schedule.schedule_type == ScheduleType.INTERVAL:
        try:
            every_ms = interval_to_milliseconds(schedule.schedule_value)
        except ValueError as exc:
            raise ScheduleValidationError(
                str(exc), field="schedule_value", value=schedule.schedule_value
            ) from exc
        return RepeatOptions(timezone=timezone, every_ms=every_ms)
    raise ScheduleValidationError(
        f"Unsupported schedule type: {schedule.schedule_type}",
        field="schedule_type",
        value=schedule.schedule_type,
    )


def build_job_data(schedule: ScheduledJob) -> dict[str, Any]:
    """Registration data: the envelope the worker receives on every firing."""
    return {
        "id": registration_name(schedule.id),
        "payload": {
            "scheduleId": schedule.id,
            "tenantId": schedule.tenant_id,
            "organizationId": schedule.organization_id,
            "scopeType": str(schedule.scope_type),
        },
        "createdAt": datetime.now(UTC).isoformat(),
    }


@dataclass
class SyncReport:
    """Outcome of :meth:`DistributedRunner.sync_all`."""

    registered: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    active: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "registered": list(self.registered),
            "removed": list(self.removed),
            "failed": list(self.failed),
            "active": self.active,
        }


class DistributedRunner:
    """Keeps backend registrations in line with the schedule store.

    Example:
        >>> runner = DistributedRunner(RedisRepeatableQueue(redis_client), store)
        >>> store.bind_distributed_runner(runner)
        >>> report = runner.sync_all()
        >>> report.active
        42
    """

    def __init__(
        self,
        queue: RepeatableQueue,
        store: ScheduleStore,
        *,
        sync_batch_size: int = 500,
    ) -> None:
        self.queue = queue
        self.store = store
        self.sync_batch_size = sync_batch_size

    def register(self, schedule: ScheduledJob, *, skip_next_run_update: bool = False) -> None:
        """(Re)create the registration for an enabled schedule.

        Disabled or deleted schedules are ignored. Backend errors propagate;
        callers that must not fail wrap this in ``best_effort``.
        """
        if not schedule.is_active:
            logger.debug("registration_skipped_inactive", schedule_id=schedule.id)
            return

        if not skip_next_run_update:
            next_run_at = recalculate_next_run(
                schedule.schedule_type, schedule.schedule_value, schedule.timezone
            )
            if next_run_at is not None:
                self.store.set_next_run(schedule.id, next_run_at)
                schedule.next_run_at = next_run_at

        repeat = build_repeat_options(schedule)
        name = registration_name(schedule.id)
        self.queue.add(name, build_job_data(schedule), repeat, options=RETENTION_OPTIONS)

        logger.debug(
            "schedule_registration_added",
            registration=name,
            repeat=repeat.to_dict(),
            **schedule.log_context(),
        )

    def unregister(self, schedule_id: str) -> bool:
        """Remove the registration for ``schedule_id``. False when none existed."""
        name = registration_name(schedule_id)
        for job in self.queue.get_repeatable_jobs():
            if job.id == name or job.name == name:
                self.queue.remove_repeatable_by_key(job.key)
                logger.debug("schedule_registration_removed", schedule_id=schedule_id)
                return True

        logger.debug("schedule_registration_missing", schedule_id=schedule_id)
        return False

    def sync_all(self) -> SyncReport:
        """Reconcile the backend with every enabled, live schedule.

        A row that fails to register is logged and counted; reconciliation
        carries on with the rest.
        """
        report = SyncReport()
        logger.info("distributed_sync_started", queue=self.queue.name)

        existing: dict[str, RepeatableJob] = {}
        for job in self.queue.get_repeatable_jobs():
            schedule_id = schedule_id_from_registration(job)
            if schedule_id is not None:
                existing[schedule_id] = job

        active_ids: set[str] = set()
        for batch in self.store.iter_enabled(self.sync_batch_size):
            for schedule in batch:
                active_ids.add(schedule.id)
                if schedule.id in existing:
                    continue
                try:
                    self.register(schedule)
                except Exception as exc:
                    report.failed.append(schedule.id)
                    logger.error(
                        "distributed_sync_register_failed",
                        error=str(exc),
                        exc_info=True,
                        **schedule.log_context(),
                    )
                else:
                    report.registered.append(schedule.id)

        for schedule_id, job in existing.items():
            if schedule_id in active_ids:
                continue
            try:
                self.queue.remove_repeatable_by_key(job.key)
            except Exception as exc:
                report.failed.append(schedule_id)
                logger.error(
                    "distributed_sync_remove_failed",
                    schedule_id=schedule_id,
                    error=str(exc),
                    exc_info=True,
                )
            else:
                report.removed.append(schedule_id)
                logger.info("orphaned_registration_removed", schedule_id=schedule_id)

        report.active = len(active_ids)
        logger.info("distributed_sync_completed", **report.to_dict())
        return report

    def get_repeatable_jobs(self) -> list[RepeatableJob]:
        return self.queue.get_repeatable_jobs()

    def close(self) -> None:
        self.queue.close()

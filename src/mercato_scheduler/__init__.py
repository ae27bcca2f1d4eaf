"""
mercato-scheduler: multi-tenant scheduling engine.

Schedules are persisted definitions of recurring work (cron or interval)
owned by a system, organization or tenant scope. When one comes due its
target runs: a job enqueued on a named queue, or a registered command.

Two interchangeable execution strategies:

- ``local``: one process polls the store and runs due schedules under an
  advisory lock (:class:`~mercato_scheduler.scheduling.LocalSchedulerRunner`).
- ``async``: schedules are registered as repeatable jobs in Redis, Celery
  beat fires them and workers run them through
  :class:`~mercato_scheduler.scheduling.ExecutionWorker`.

Usage::

    from mercato_scheduler import ScheduleRegistration, bootstrap_scheduler

    runtime = bootstrap_scheduler()
    runtime.store.register(
        ScheduleRegistration(
            id="billing-reminders-t1",
            name="Send billing reminders",
            scope_type="tenant",
            tenant_id="t-1",
            schedule_type="cron",
            schedule_value="0 9 * * 1-5",
            target_type="command",
            target_command="scheduler.test.echo",
        )
    )
"""

__version__ = "0.1.0"

from mercato_scheduler.bootstrap import SchedulerRuntime, bootstrap_scheduler
from mercato_scheduler.errors import (
    ErrorCategory,
    InvalidPayloadError,
    SchedulerConfigError,
    SchedulerError,
    ScheduleExecutionError,
    ScheduleIntegrityError,
    ScheduleNotFoundError,
    ScheduleValidationError,
)
from mercato_scheduler.models import (
    ScheduleChanges,
    ScheduledJob,
    ScheduleFilters,
    ScheduleRegistration,
    ScheduleType,
    ScopeType,
    SourceType,
    TargetType,
)
from mercato_scheduler.settings import SchedulerSettings, get_settings

__all__ = [
    "__version__",
    # Wiring
    "SchedulerRuntime",
    "bootstrap_scheduler",
    "SchedulerSettings",
    "get_settings",
    # Models
    "ScheduledJob",
    "ScheduleRegistration",
    "ScheduleChanges",
    "ScheduleFilters",
    "ScopeType",
    "ScheduleType",
    "TargetType",
    "SourceType",
    # Errors
    "ErrorCategory",
    "SchedulerError",
    "ScheduleValidationError",
    "ScheduleNotFoundError",
    "ScheduleIntegrityError",
    "InvalidPayloadError",
    "ScheduleExecutionError",
    "SchedulerConfigError",
]

"""Scheduling core: recurrence math, locking, store, runners, worker.

Manifesto:
    One table holds every schedule. Two mutually exclusive runners turn it
    into executions: the local runner polls the table on a timer, the
    distributed runner keeps one recurring registration per schedule in a
    queue backend and lets the execution worker run each firing. Both
    dispatch through the same target dispatcher and emit the same events.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULING                                                                  │
│                                                                              │
│   ScheduleStore ──► scheduled_jobs ◄── LocalSchedulerRunner (local)          │
│        │                    ▲                  │ AdvisoryLock                │
│        │ best-effort        │ fresh read       ▼                             │
│        ▼                    │            TargetDispatcher ──► queue/command  │
│   DistributedRunner ──► backend ──fires──► ExecutionWorker (async)           │
│        ▲                                                                     │
│   ScheduleChangeSynchronizer (session events)                                │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    scheduling, cron, interval, multi-tenant, package-overview

Doc-Types:
    package-overview, architecture-map
"""

from __future__ import annotations

from .context import (
    TRIGGER_MANUAL,
    TRIGGER_SCHEDULED,
    SystemExecutionContext,
    build_system_context,
)
from .dispatch import DispatchResult, TargetDispatcher, check_feature_gate, idempotency_key
from .distributed import (
    EXECUTION_QUEUE,
    DistributedRunner,
    SyncReport,
    build_repeat_options,
    registration_name,
)
from .local_runner import LocalSchedulerRunner, RunnerStats, RunOutcome
from .locks import AdvisoryLock, hash_lock_key, schedule_lock_key
from .recurrence import (
    calculate_next_run,
    get_next_occurrences,
    interval_to_human,
    parse_interval,
    recalculate_next_run,
    validate_cron,
    validate_interval,
)
from .store import ScheduleStore
from .sync import ScheduleChange, ScheduleChangeSynchronizer
from .ticker import PollTicker
from .worker import (
    ExecuteSchedulePayload,
    ExecutionOutcome,
    ExecutionStatus,
    ExecutionWorker,
    verify_scope,
)

__all__ = [
    # Context
    "SystemExecutionContext",
    "build_system_context",
    "TRIGGER_SCHEDULED",
    "TRIGGER_MANUAL",
    # Dispatch
    "TargetDispatcher",
    "DispatchResult",
    "check_feature_gate",
    "idempotency_key",
    # Recurrence
    "validate_cron",
    "validate_interval",
    "calculate_next_run",
    "recalculate_next_run",
    "parse_interval",
    "interval_to_human",
    "get_next_occurrences",
    # Locks
    "AdvisoryLock",
    "hash_lock_key",
    "schedule_lock_key",
    # Store
    "ScheduleStore",
    # Local runner
    "LocalSchedulerRunner",
    "RunnerStats",
    "RunOutcome",
    "PollTicker",
    # Distributed
    "DistributedRunner",
    "SyncReport",
    "EXECUTION_QUEUE",
    "build_repeat_options",
    "registration_name",
    "ScheduleChangeSynchronizer",
    "ScheduleChange",
    # Worker
    "ExecutionWorker",
    "ExecuteSchedulePayload",
    "ExecutionOutcome",
    "ExecutionStatus",
    "verify_scope",
]

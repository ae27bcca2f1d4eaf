"""Wiring: builds a complete scheduler runtime from settings.

Manifesto:
    Constructing the store, lock, dispatcher, runners and worker by hand
    is error-prone. ``bootstrap_scheduler`` wires them for the configured
    queue strategy, and every collaborator can be overridden for tests.

┌──────────────────────────────────────────────────────────────────────────────┐
│  bootstrap_scheduler(settings)                                               │
│                                                                              │
│   engine ─► session factory ─► ScheduleStore ─► TargetDispatcher            │
│                                                                              │
│   local strategy                  async strategy                             │
│   ──────────────                  ──────────────                             │
│   AdvisoryLock                    RedisRepeatableQueue                       │
│   LocalSchedulerRunner            DistributedRunner (bound to the store)     │
│                                   ScheduleChangeSynchronizer (installed)     │
│                                   ExecutionWorker                            │
│                                   cold-start sync_all (once per process)     │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    bootstrap, wiring, factory, configuration

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from mercato_scheduler.commands import create_command_bus
from mercato_scheduler.errors import SchedulerConfigError, best_effort
from mercato_scheduler.events import EventBus, SchedulerEventEmitter
from mercato_scheduler.features import StaticFeatureChecker
from mercato_scheduler.logging import get_logger
from mercato_scheduler.orm import create_scheduler_engine, create_schema, scheduler_session_factory
from mercato_scheduler.protocols import (
    CommandBus,
    CommandRegistry,
    FeatureChecker,
    QueueFactory,
    RepeatableQueue,
)
from mercato_scheduler.scheduling.dispatch import TargetDispatcher
from mercato_scheduler.scheduling.distributed import DistributedRunner, SyncReport
from mercato_scheduler.scheduling.local_runner import LocalSchedulerRunner
from mercato_scheduler.scheduling.locks import AdvisoryLock
from mercato_scheduler.scheduling.store import ScheduleStore
from mercato_scheduler.scheduling.sync import ScheduleChangeSynchronizer
from mercato_scheduler.scheduling.worker import ExecutionWorker
from mercato_scheduler.settings import SchedulerSettings, get_settings

logger = get_logger(__name__)

_cold_start_guard = threading.Lock()
_cold_start_done: set[tuple[str, str]] = set()

_runtime_guard = threading.Lock()
_runtime: SchedulerRuntime | None = None


@dataclass
class SchedulerRuntime:
    """Everything one process needs to run the scheduler."""

    settings: SchedulerSettings
    engine: Engine
    session_factory: sessionmaker[Any]
    store: ScheduleStore
    dispatcher: TargetDispatcher
    emitter: SchedulerEventEmitter
    feature_checker: FeatureChecker
    command_bus: CommandBus | None = None
    celery_app: Any = None
    lock: AdvisoryLock | None = None
    local_runner: LocalSchedulerRunner | None = None
    distributed_runner: DistributedRunner | None = None
    synchronizer: ScheduleChangeSynchronizer | None = None
    worker: ExecutionWorker | None = None
    sync_report: SyncReport | None = None

    @property
    def strategy(self) -> str:
        return self.settings.queue_strategy

    @property
    def is_distributed(self) -> bool:
        return self.distributed_runner is not None

    def enqueue_execution(self, payload: dict[str, Any]) -> str:
        """Send a request to the execution queue (async strategy only)."""
        if not self.is_distributed or self.celery_app is None:
            raise SchedulerConfigError("Execution queue requires QUEUE_STRATEGY=async")
        from mercato_scheduler.queue.tasks import enqueue_execution

        return enqueue_execution(self.celery_app, payload, queue=self.settings.execution_queue)

    def close(self) -> None:
        if self.local_runner is not None:
            self.local_runner.stop()
        if self.synchronizer is not None:
            self.synchronizer.remove()
        if self.distributed_runner is not None:
            with best_effort("distributed_runner_close_failed"):
                self.distributed_runner.close()
        self.engine.dispose()
        logger.info("scheduler_runtime_closed", strategy=self.strategy)


def cold_start_sync(runner: DistributedRunner, key: tuple[str, str]) -> SyncReport | None:
    """Run ``sync_all`` at most once per process for ``key``; failures are logged."""
    with _cold_start_guard:
        if key in _cold_start_done:
            return None
        _cold_start_done.add(key)

    report: SyncReport | None = None
    with best_effort("cold_start_sync_failed"):
        report = runner.sync_all()
        logger.info("cold_start_sync_completed", **report.to_dict())
    return report


def bootstrap_scheduler(
    settings: SchedulerSettings | None = None,
    *,
    engine: Engine | None = None,
    command_bus: CommandBus | None = None,
    command_registry: CommandRegistry | None = None,
    feature_checker: FeatureChecker | None = None,
    event_bus: EventBus | None = None,
    celery_app: Any = None,
    queue_factory: QueueFactory | None = None,
    repeatable_queue: RepeatableQueue | None = None,
    create_tables: bool = True,
    sync_on_start: bool = True,
) -> SchedulerRuntime:
    """Wire a :class:`SchedulerRuntime` for ``settings.queue_strategy``.

    ``command_registry`` defaults to ``command_bus`` when the bus can also
    answer ``has()`` (the built-in :class:`InProcessCommandBus` does).
    """
    settings = settings or get_settings()
    engine = engine or create_scheduler_engine(settings.database_url)
    if create_tables:
        create_schema(engine)
    session_factory = scheduler_session_factory(engine)

    if command_bus is None:
        command_bus = create_command_bus()
    if command_registry is None and isinstance(command_bus, CommandRegistry):
        command_registry = command_bus
    if feature_checker is None:
        feature_checker = StaticFeatureChecker(settings.feature_set)

    if queue_factory is None:
        if celery_app is None:
            from mercato_scheduler.queue.celery_app import create_celery_app

            celery_app = create_celery_app(settings)
        from mercato_scheduler.queue.job_queue import celery_queue_factory

        queue_factory = celery_queue_factory(celery_app)

    emitter = SchedulerEventEmitter(event_bus)
    store = ScheduleStore(session_factory, command_registry=command_registry)
    dispatcher = TargetDispatcher(command_bus=command_bus, queue_factory=queue_factory)

    runtime = SchedulerRuntime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        dispatcher=dispatcher,
        emitter=emitter,
        feature_checker=feature_checker,
        command_bus=command_bus,
        celery_app=celery_app,
    )

    if settings.is_distributed:
        if repeatable_queue is None:
            from mercato_scheduler.queue.redis_repeatable import RedisRepeatableQueue

            repeatable_queue = RedisRepeatableQueue.from_url(
                settings.redis_url,
                name=settings.execution_queue,
                prefix=settings.registry_prefix,
            )
        runner = DistributedRunner(
            repeatable_queue, store, sync_batch_size=settings.sync_batch_size
        )
        store.bind_distributed_runner(runner)
        synchronizer = ScheduleChangeSynchronizer(runner)
        synchronizer.install(session_factory)

        runtime.distributed_runner = runner
        runtime.synchronizer = synchronizer
        runtime.worker = ExecutionWorker(
            store, dispatcher, emitter=emitter, feature_checker=feature_checker
        )
        if sync_on_start:
            runtime.sync_report = cold_start_sync(
                runner, (settings.database_url, settings.redis_url)
            )
    else:
        lock = AdvisoryLock(engine, ttl_seconds=settings.lock_ttl_seconds)
        runtime.lock = lock
        runtime.local_runner = LocalSchedulerRunner(
            store,
            lock,
            dispatcher,
            emitter=emitter,
            feature_checker=feature_checker,
            poll_interval_seconds=settings.poll_interval_seconds,
            batch_size=settings.batch_size,
        )

    logger.info(
        "scheduler_bootstrapped",
        strategy=settings.queue_strategy,
        database=engine.url.render_as_string(hide_password=True),
    )
    return runtime


def get_runtime(*, celery_app: Any = None) -> SchedulerRuntime:
    """Process-wide runtime built from :func:`get_settings` (used by Celery tasks)."""
    global _runtime
    with _runtime_guard:
        if _runtime is None:
            _runtime = bootstrap_scheduler(get_settings(), celery_app=celery_app)
        return _runtime


def set_runtime(runtime: SchedulerRuntime) -> None:
    """Install ``runtime`` as the process-wide runtime.

    The CLI calls this before handing over to a Celery worker so the
    execute task (and forked pool children) use the store the CLI was
    pointed at instead of re-bootstrapping from the environment.
    """
    global _runtime
    with _runtime_guard:
        _runtime = runtime


def dispose_inherited_connections() -> None:
    """Drop pooled connections copied into a forked worker process."""
    with _runtime_guard:
        if _runtime is not None:
            _runtime.engine.dispose(close=False)


def reset_runtime() -> None:
    """Close and forget the process-wide runtime."""
    global _runtime
    with _runtime_guard:
        if _runtime is not None:
            _runtime.close()
        _runtime = None

"""Celery application configuration."""

from __future__ import annotations

from celery import Celery

from mercato_scheduler.queue.beat import EXECUTE_TASK_NAME
from mercato_scheduler.queue.tasks import register_tasks
from mercato_scheduler.settings import SchedulerSettings, get_settings

RESULT_EXPIRES_SECONDS = 86400 * 30


def create_celery_app(settings: SchedulerSettings | None = None) -> Celery:
    """Build the Celery app used for job queues, the worker and beat."""
    settings = settings or get_settings()

    app = Celery(
        "mercato_scheduler",
        broker=settings.effective_broker_url,
        backend=settings.result_backend,
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.worker_concurrency,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        result_expires=RESULT_EXPIRES_SECONDS,
        task_routes={
            EXECUTE_TASK_NAME: {"queue": settings.execution_queue},
        },
        beat_scheduler="mercato_scheduler.queue.beat:RepeatableBeatScheduler",
        mercato_redis_url=settings.redis_url,
        mercato_execution_queue=settings.execution_queue,
        mercato_registry_prefix=settings.registry_prefix,
    )
    register_tasks(app)
    return app


app = create_celery_app()

"""Queue integration: Redis registrations, Celery beat, tasks and job queues.

Tags:
    queue, celery, redis, beat
"""

from __future__ import annotations

from .beat import EXECUTE_TASK_NAME, RecurrenceSchedule, RepeatableBeatScheduler
from .job_queue import CeleryJobQueue, celery_queue_factory
from .redis_repeatable import RedisRepeatableQueue
from .tasks import enqueue_execution, register_tasks


def __getattr__(name: str):  # noqa: N807
    """Lazy import of the app factory; ``celery_app`` builds an app at import time."""
    if name == "create_celery_app":
        from .celery_app import create_celery_app

        return create_celery_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "EXECUTE_TASK_NAME",
    "RecurrenceSchedule",
    "RepeatableBeatScheduler",
    "CeleryJobQueue",
    "celery_queue_factory",
    "RedisRepeatableQueue",
    "create_celery_app",
    "enqueue_execution",
    "register_tasks",
]

"""Celery-backed job queues for queue targets.

A queue target ``billing-reminders`` becomes a Celery message for the task
named ``billing-reminders`` on the queue of the same name, carrying the
merged payload as its single argument. Consumers register a task under
that name and run a worker on that queue.
"""

from __future__ import annotations

from typing import Any

from celery import Celery

from mercato_scheduler.logging import get_logger
from mercato_scheduler.protocols import QueueFactory

logger = get_logger(__name__)


class CeleryJobQueue:
    """:class:`~mercato_scheduler.protocols.JobQueue` publishing through Celery."""

    def __init__(self, app: Celery, name: str) -> None:
        self.app = app
        self.name = name

    def enqueue(self, payload: dict[str, Any]) -> str:
        result = self.app.send_task(self.name, args=[payload], queue=self.name)
        logger.debug("job_enqueued", queue=self.name, job_id=result.id)
        return result.id

    def close(self) -> None:
        """Nothing to release; the app's producer pool is shared."""


def celery_queue_factory(app: Celery) -> QueueFactory:
    def factory(name: str) -> CeleryJobQueue:
        return CeleryJobQueue(app, name)

    return factory

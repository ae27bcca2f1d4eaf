"""Celery tasks for the distributed runner.

``mercato_scheduler.execute_schedule`` is the only task run by the
scheduler itself: beat fires it for every occurrence of a registration,
and manual triggers enqueue it directly. It hands the job to the
:class:`~mercato_scheduler.scheduling.worker.ExecutionWorker`.

Integrity and payload errors propagate so Celery records the failure;
dispatch failures are reported through events and returned as a failed
outcome.
"""

from __future__ import annotations

import asyncio
from typing import Any

from celery import Celery
from celery.signals import worker_process_init

from mercato_scheduler.logging import get_logger
from mercato_scheduler.queue.beat import EXECUTE_TASK_NAME

logger = get_logger(__name__)


def _reset_pool_after_fork(**_: Any) -> None:
    from mercato_scheduler.bootstrap import dispose_inherited_connections

    dispose_inherited_connections()


def register_tasks(app: Celery) -> Any:
    """Register the execute task on ``app`` and return it."""
    worker_process_init.connect(_reset_pool_after_fork, weak=False)

    @app.task(name=EXECUTE_TASK_NAME, bind=True, acks_late=True)
    def execute_schedule(self: Any, job: dict[str, Any]) -> dict[str, Any]:
        from mercato_scheduler.bootstrap import get_runtime

        runtime = get_runtime(celery_app=self.app)
        outcome = asyncio.run(
            runtime.worker.process(
                job,
                attempt=self.request.retries + 1,
                job_id=self.request.id,
            )
        )
        logger.info(
            "execute_task_finished",
            task_id=self.request.id,
            status=str(outcome.status),
            schedule_id=outcome.schedule_id,
        )
        return outcome.to_dict()

    return execute_schedule


def enqueue_execution(app: Celery, payload: dict[str, Any], *, queue: str) -> str:
    """Put one execution request on the execution queue; returns the task id."""
    result = app.send_task(EXECUTE_TASK_NAME, args=[payload], queue=queue)
    logger.info(
        "execution_enqueued",
        queue=queue,
        task_id=result.id,
        schedule_id=payload.get("scheduleId"),
    )
    return result.id

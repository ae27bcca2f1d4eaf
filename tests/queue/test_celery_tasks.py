"""Tests for Celery job queues and the execute task."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from celery import Celery

from mercato_scheduler.queue.beat import EXECUTE_TASK_NAME
from mercato_scheduler.queue.job_queue import CeleryJobQueue, celery_queue_factory
from mercato_scheduler.queue.tasks import enqueue_execution, register_tasks
from mercato_scheduler.scheduling.worker import ExecutionOutcome, ExecutionStatus


@pytest.fixture
def mock_app():
    app = MagicMock()
    app.send_task.return_value.id = "task-1"
    return app


class TestCeleryJobQueue:
    def test_enqueue_sends_named_task(self, mock_app):
        queue = CeleryJobQueue(mock_app, "billing-reminders")

        job_id = queue.enqueue({"tenantId": "t-1"})

        assert job_id == "task-1"
        mock_app.send_task.assert_called_once_with(
            "billing-reminders", args=[{"tenantId": "t-1"}], queue="billing-reminders"
        )

    def test_factory_binds_name(self, mock_app):
        queue = celery_queue_factory(mock_app)("reports")
        assert isinstance(queue, CeleryJobQueue)
        assert queue.name == "reports"
        queue.close()


class TestEnqueueExecution:
    def test_sends_execute_task(self, mock_app):
        payload = {"scheduleId": "s1", "triggerType": "manual"}

        task_id = enqueue_execution(mock_app, payload, queue="scheduler-execution")

        assert task_id == "task-1"
        mock_app.send_task.assert_called_once_with(
            EXECUTE_TASK_NAME, args=[payload], queue="scheduler-execution"
        )


class TestExecuteTask:
    @pytest.fixture
    def app(self):
        app = Celery("tasks-test", set_as_current=False)
        app.conf.task_always_eager = True
        return app

    def test_task_is_registered(self, app):
        task = register_tasks(app)
        assert task.name == EXECUTE_TASK_NAME
        assert EXECUTE_TASK_NAME in app.tasks

    def test_runs_worker_and_returns_outcome(self, app):
        task = register_tasks(app)
        runtime = MagicMock()
        runtime.worker.process = AsyncMock(
            return_value=ExecutionOutcome(ExecutionStatus.COMPLETED, "s1", details={"queue_job_id": "q-1"})
        )
        job = {"id": "schedule-s1", "payload": {"scheduleId": "s1"}}

        with patch("mercato_scheduler.bootstrap.get_runtime", return_value=runtime):
            result = task.apply(args=[job]).get()

        assert result["status"] == "completed"
        assert result["queue_job_id"] == "q-1"
        args, kwargs = runtime.worker.process.call_args
        assert args == (job,)
        assert kwargs["attempt"] == 1

"""Tests for the execution worker."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from mercato_scheduler.errors import InvalidPayloadError, ScheduleIntegrityError
from mercato_scheduler.events import SchedulerEventType
from mercato_scheduler.models import ScopeType
from mercato_scheduler.scheduling.dispatch import IDEMPOTENCY_KEY_FIELD
from mercato_scheduler.scheduling.worker import (
    ExecuteSchedulePayload,
    ExecutionStatus,
    ExecutionWorker,
)


@pytest.fixture
def worker(store, dispatcher, emitter, feature_checker):
    return ExecutionWorker(store, dispatcher, emitter=emitter, feature_checker=feature_checker)


def _payload(**overrides):
    values = {"scheduleId": "sched-1", "tenantId": "t-1", "scopeType": "tenant"}
    values.update(overrides)
    return values


class TestPayloadDecode:
    def test_bare_payload(self):
        payload = ExecuteSchedulePayload.decode(_payload(organizationId="o-1"))

        assert payload.schedule_id == "sched-1"
        assert payload.tenant_id == "t-1"
        assert payload.organization_id == "o-1"
        assert payload.scope_type == ScopeType.TENANT
        assert payload.trigger_type == "scheduled"

    def test_envelope(self):
        job = {"id": "schedule-sched-1", "payload": _payload(), "createdAt": "2026-01-01T00:00:00Z"}
        assert ExecuteSchedulePayload.decode(job).schedule_id == "sched-1"

    @pytest.mark.parametrize("job", [{}, {"tenantId": "t-1"}, {"payload": {"scheduleId": ""}}, "sched-1"])
    def test_missing_schedule_id(self, job):
        with pytest.raises(InvalidPayloadError, match="scheduleId is required"):
            ExecuteSchedulePayload.decode(job)

    def test_wrong_shape(self):
        with pytest.raises(InvalidPayloadError, match="Invalid job payload"):
            ExecuteSchedulePayload.decode(_payload(scopeType="galaxy"))

    def test_to_wire_uses_camel_case(self):
        payload = ExecuteSchedulePayload(
            schedule_id="s1",
            tenant_id="t-1",
            scope_type=ScopeType.TENANT,
            trigger_type="manual",
            triggered_by_user_id="u-1",
        )
        assert payload.to_wire() == {
            "scheduleId": "s1",
            "tenantId": "t-1",
            "scopeType": "tenant",
            "triggerType": "manual",
            "triggeredByUserId": "u-1",
        }


class TestProcess:
    @pytest.mark.asyncio
    async def test_success_marks_run_and_sends_idempotency_key(self, worker, store, make_reg, queue_factory, event_bus):
        store.register(make_reg())

        outcome = await worker.process(_payload(), job_id="job-1")

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.details["queue_job_id"] == "reports-1"
        job = queue_factory.queues["reports"].jobs[0]
        assert job[IDEMPOTENCY_KEY_FIELD].startswith("scheduler-sched-1-")
        assert store.get("sched-1").last_run_at is not None
        assert event_bus.types == [
            SchedulerEventType.STARTED.value,
            SchedulerEventType.COMPLETED.value,
        ]
        assert event_bus.events[0].payload["trigger_type"] == "scheduled"

    @pytest.mark.asyncio
    async def test_manual_trigger_is_recorded(self, worker, store, make_reg, event_bus):
        store.register(make_reg())

        await worker.process(_payload(triggerType="manual", triggeredByUserId="u-9"))

        started = event_bus.of_type(SchedulerEventType.STARTED.value)[0].payload
        assert started["trigger_type"] == "manual"
        assert started["triggered_by_user_id"] == "u-9"

    @pytest.mark.asyncio
    async def test_missing_schedule(self, worker, event_bus):
        outcome = await worker.process(_payload(scheduleId="gone"))

        assert outcome.status == ExecutionStatus.NOT_FOUND
        assert event_bus.events == []

    @pytest.mark.asyncio
    async def test_soft_deleted_schedule(self, worker, store, make_reg):
        store.register(make_reg())
        store.soft_delete("sched-1")

        outcome = await worker.process(_payload())

        assert outcome.status == ExecutionStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_tenant_mismatch_raises_before_dispatch(self, store, make_reg, emitter, event_bus):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock()
        worker = ExecutionWorker(store, dispatcher, emitter=emitter)
        store.register(make_reg())

        with pytest.raises(ScheduleIntegrityError, match="tenant ID mismatch"):
            await worker.process(_payload(tenantId="t-2"))

        dispatcher.dispatch.assert_not_awaited()
        assert event_bus.events == []
        assert store.get("sched-1").last_run_at is None

    @pytest.mark.asyncio
    async def test_scope_type_mismatch(self, worker, store, make_reg):
        store.register(make_reg())

        with pytest.raises(ScheduleIntegrityError, match="scope type mismatch"):
            await worker.process(_payload(scopeType="organization", organizationId="o-1"))

    @pytest.mark.asyncio
    async def test_disabled_schedule_is_skipped(self, worker, store, make_reg, event_bus, queue_factory):
        store.register(make_reg(is_enabled=False))

        outcome = await worker.process(_payload())

        assert outcome.status == ExecutionStatus.SKIPPED
        assert outcome.reason == "Schedule is disabled"
        assert event_bus.types == [SchedulerEventType.SKIPPED.value]
        assert queue_factory.queues == {}

    @pytest.mark.asyncio
    async def test_missing_feature_is_skipped(self, worker, store, make_reg, event_bus, queue_factory):
        store.register(make_reg(require_feature="reports.pro"))

        outcome = await worker.process(_payload())

        assert outcome.status == ExecutionStatus.SKIPPED
        assert outcome.reason == "Feature not enabled: reports.pro"
        assert event_bus.types == [
            SchedulerEventType.STARTED.value,
            SchedulerEventType.SKIPPED.value,
        ]
        assert queue_factory.queues == {}
        assert store.get("sched-1").last_run_at is None

    @pytest.mark.asyncio
    async def test_dispatch_failure_returns_failed(self, store, make_reg, emitter, event_bus):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("queue unavailable"))
        worker = ExecutionWorker(store, dispatcher, emitter=emitter)
        store.register(make_reg())

        outcome = await worker.process(_payload(), attempt=3)

        assert outcome.status == ExecutionStatus.FAILED
        assert outcome.error == "queue unavailable"
        failed = event_bus.of_type(SchedulerEventType.FAILED.value)[0].payload
        assert failed["error"] == "queue unavailable"
        assert failed["attempt_number"] == 3
        assert store.get("sched-1").last_run_at is None

    @pytest.mark.asyncio
    async def test_mark_run_failure_still_completes(self, worker, store, make_reg, event_bus, monkeypatch):
        store.register(make_reg())
        monkeypatch.setattr(store, "mark_run", MagicMock(side_effect=RuntimeError("database is locked")))

        outcome = await worker.process(_payload(), job_id="job-1")

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.details["queue_job_id"] == "reports-1"
        completed = event_bus.of_type(SchedulerEventType.COMPLETED.value)
        assert completed[0].payload["queue_job_id"] == "reports-1"
        store.mark_run.assert_called_once()

    @pytest.mark.asyncio
    async def test_command_target(self, worker, store, make_reg):
        store.register(
            make_reg(target_type="command", target_queue=None, target_command="reports.generate")
        )

        outcome = await worker.process(_payload())

        assert outcome.status == ExecutionStatus.COMPLETED
        assert outcome.details["command_result"] == {"generated": True, "tenant_id": "t-1"}

    @pytest.mark.asyncio
    async def test_outcome_to_dict(self, worker, store, make_reg):
        store.register(make_reg())
        before = datetime.now(UTC)

        data = (await worker.process(_payload())).to_dict()

        assert data["status"] == "completed"
        assert data["schedule_id"] == "sched-1"
        assert store.get("sched-1").last_run_at >= before.replace(microsecond=0)

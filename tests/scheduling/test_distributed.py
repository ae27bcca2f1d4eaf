"""Tests for the distributed runner and its registration helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from mercato_scheduler.errors import ScheduleValidationError
from mercato_scheduler.models import ScheduledJob, ScheduleType, ScopeType
from mercato_scheduler.protocols import RepeatableJob, RepeatOptions
from mercato_scheduler.scheduling.distributed import (
    RETENTION_OPTIONS,
    DistributedRunner,
    build_job_data,
    build_repeat_options,
    registration_name,
    schedule_id_from_registration,
)


@pytest.fixture
def runner(repeatable_queue, store):
    return DistributedRunner(repeatable_queue, store, sync_batch_size=2)


def _job(**overrides) -> ScheduledJob:
    values = {
        "id": "s1",
        "name": "Job",
        "scope_type": ScopeType.ORGANIZATION,
        "tenant_id": "t-1",
        "organization_id": "o-1",
        "schedule_type": ScheduleType.CRON,
        "schedule_value": "0 9 * * *",
        "timezone": "Europe/Warsaw",
        "target_queue": "reports",
    }
    values.update(overrides)
    return ScheduledJob(**values)


class TestHelpers:
    def test_registration_name(self):
        assert registration_name("abc") == "schedule-abc"

    def test_schedule_id_from_registration(self):
        assert schedule_id_from_registration(RepeatableJob(key="k", name="schedule-abc")) == "abc"
        assert schedule_id_from_registration(RepeatableJob(key="k", name="x", id="schedule-z")) == "z"
        assert schedule_id_from_registration(RepeatableJob(key="k", name="cleanup")) is None

    def test_cron_repeat_options(self):
        repeat = build_repeat_options(_job())
        assert repeat == RepeatOptions(timezone="Europe/Warsaw", pattern="0 9 * * *")
        assert repeat.to_dict() == {"pattern": "0 9 * * *", "tz": "Europe/Warsaw"}

    def test_interval_repeat_options(self):
        repeat = build_repeat_options(_job(schedule_type=ScheduleType.INTERVAL, schedule_value="15m"))
        assert repeat.every_ms == 900_000
        assert repeat.pattern is None

    def test_bad_recurrence(self):
        with pytest.raises(ScheduleValidationError):
            build_repeat_options(_job(schedule_value="never"))
        with pytest.raises(ScheduleValidationError):
            build_repeat_options(_job(schedule_type=ScheduleType.INTERVAL, schedule_value="soon"))

    def test_job_data_envelope(self):
        data = build_job_data(_job())
        assert data["id"] == "schedule-s1"
        assert data["payload"] == {
            "scheduleId": "s1",
            "tenantId": "t-1",
            "organizationId": "o-1",
            "scopeType": "organization",
        }
        assert datetime.fromisoformat(data["createdAt"]).tzinfo is not None


class TestRegister:
    def test_register_adds_registration(self, runner, store, repeatable_queue, make_reg):
        schedule = store.register(make_reg())

        runner.register(schedule)

        job = repeatable_queue.jobs["schedule-sched-1"]
        assert job.repeat.every_ms == 900_000
        assert job.data["payload"]["scheduleId"] == "sched-1"
        assert job.options == RETENTION_OPTIONS

    def test_register_refreshes_next_run(self, runner, store, make_reg):
        schedule = store.register(make_reg())
        store.set_next_run("sched-1", datetime.now(UTC) - timedelta(days=1))

        runner.register(store.get("sched-1"))

        assert store.get("sched-1").next_run_at > datetime.now(UTC)
        assert schedule.id == "sched-1"

    def test_register_can_skip_next_run_update(self, runner, store, make_reg):
        store.register(make_reg())
        stale = datetime.now(UTC) - timedelta(days=1)
        store.set_next_run("sched-1", stale)

        runner.register(store.get("sched-1"), skip_next_run_update=True)

        assert store.get("sched-1").next_run_at == stale

    def test_inactive_schedule_is_ignored(self, runner, repeatable_queue):
        runner.register(_job(is_enabled=False))
        runner.register(_job(deleted_at=datetime.now(UTC)))
        assert repeatable_queue.jobs == {}

    def test_reregister_replaces(self, runner, store, repeatable_queue, make_reg):
        runner.register(store.register(make_reg()))
        runner.register(store.register(make_reg(schedule_value="1h")))

        assert list(repeatable_queue.jobs) == ["schedule-sched-1"]
        assert repeatable_queue.jobs["schedule-sched-1"].repeat.every_ms == 3_600_000


class TestUnregister:
    def test_unregister_existing(self, runner, store, repeatable_queue, make_reg):
        runner.register(store.register(make_reg()))
        assert runner.unregister("sched-1") is True
        assert repeatable_queue.jobs == {}

    def test_unregister_missing(self, runner):
        assert runner.unregister("nope") is False


class TestSyncAll:
    def test_converges_to_enabled_set(self, runner, store, repeatable_queue, make_reg):
        store.register(make_reg(id="A"))
        store.register(make_reg(id="B", is_enabled=False))
        runner.register(store.get("A"))
        repeatable_queue.add(
            "schedule-C",
            {"id": "schedule-C", "payload": {"scheduleId": "C"}},
            RepeatOptions(every_ms=60_000),
        )
        repeatable_queue.add_calls.clear()

        report = runner.sync_all()

        assert repeatable_queue.names == {"schedule-A"}
        assert report.registered == []
        assert report.removed == ["C"]
        assert report.active == 1
        assert report.ok is True
        assert repeatable_queue.add_calls == []

    def test_registers_missing_across_batches(self, runner, store, repeatable_queue, make_reg):
        for index in range(5):
            store.register(make_reg(id=f"s{index}"))

        report = runner.sync_all()

        assert sorted(report.registered) == [f"s{index}" for index in range(5)]
        assert repeatable_queue.names == {f"schedule-s{index}" for index in range(5)}

    def test_foreign_registrations_are_left_alone(self, runner, repeatable_queue):
        repeatable_queue.add("cleanup", {"id": "cleanup"}, RepeatOptions(every_ms=1000))

        report = runner.sync_all()

        assert repeatable_queue.names == {"cleanup"}
        assert report.removed == []

    def test_soft_deleted_registration_removed(self, runner, store, repeatable_queue, make_reg):
        runner.register(store.register(make_reg()))
        store.soft_delete("sched-1")

        report = runner.sync_all()

        assert report.removed == ["sched-1"]
        assert repeatable_queue.jobs == {}

    def test_failure_is_isolated(self, runner, store, repeatable_queue, make_reg):
        store.register(make_reg(id="bad"))
        store.register(make_reg(id="good"))
        repeatable_queue.fail_on_add.add("schedule-bad")

        report = runner.sync_all()

        assert report.failed == ["bad"]
        assert report.registered == ["good"]
        assert report.ok is False
        assert report.to_dict()["active"] == 2

    def test_close(self, store):
        queue = MagicMock()
        DistributedRunner(queue, store).close()
        queue.close.assert_called_once()

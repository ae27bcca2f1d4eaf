"""Tests for the session-event change synchronizer."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from mercato_scheduler.models import ScheduledJob, ScheduleChanges
from mercato_scheduler.scheduling.sync import ScheduleChange, ScheduleChangeSynchronizer


def _job(**overrides) -> ScheduledJob:
    values = {"id": "s1", "name": "Job", "tenant_id": "t-1", "target_queue": "reports"}
    values.update(overrides)
    return ScheduledJob(**values)


class TestScheduleChange:
    def test_runtime_only(self):
        assert ScheduleChange("update", _job(), frozenset({"last_run_at"})).runtime_only is True
        assert (
            ScheduleChange("update", _job(), frozenset({"last_run_at", "next_run_at", "updated_at"}))
            .runtime_only
            is True
        )

    def test_definition_change_is_not_runtime_only(self):
        change = ScheduleChange("update", _job(), frozenset({"last_run_at", "schedule_value"}))
        assert change.runtime_only is False

    def test_create_and_delete_are_never_runtime_only(self):
        assert ScheduleChange("create", _job(), frozenset({"next_run_at"})).runtime_only is False
        assert ScheduleChange("delete", _job()).runtime_only is False

    def test_merge_keeps_create(self):
        first = ScheduleChange("create", _job(name="a"), frozenset({"name"}))
        later = ScheduleChange("update", _job(name="b"), frozenset({"next_run_at"}))

        merged = first.merge(later)

        assert merged.change_type == "create"
        assert merged.schedule.name == "b"
        assert merged.changed_fields == {"name", "next_run_at"}


class TestApply:
    @pytest.fixture
    def runner(self):
        return MagicMock()

    @pytest.fixture
    def sync(self, runner):
        return ScheduleChangeSynchronizer(runner)

    def test_only_last_run_changed_makes_no_calls(self, sync, runner):
        applied = sync.apply(ScheduleChange("update", _job(), frozenset({"last_run_at"})))

        assert applied is False
        runner.register.assert_not_called()
        runner.unregister.assert_not_called()

    def test_schedule_value_with_last_run_registers_once(self, sync, runner):
        job = _job()
        sync.apply(ScheduleChange("update", job, frozenset({"schedule_value", "last_run_at"})))

        runner.register.assert_called_once_with(job, skip_next_run_update=True)
        runner.unregister.assert_not_called()

    def test_disabled_schedule_unregisters(self, sync, runner):
        sync.apply(ScheduleChange("update", _job(is_enabled=False), frozenset({"is_enabled"})))
        runner.unregister.assert_called_once_with("s1")

    def test_soft_deleted_schedule_unregisters(self, sync, runner):
        job = _job(deleted_at=datetime.now(UTC))
        sync.apply(ScheduleChange("update", job, frozenset({"deleted_at"})))
        runner.unregister.assert_called_once_with("s1")

    def test_hard_delete_unregisters(self, sync, runner):
        sync.apply(ScheduleChange("delete", _job()))
        runner.unregister.assert_called_once_with("s1")

    def test_runner_errors_are_swallowed(self, sync, runner):
        runner.register.side_effect = ConnectionError("redis down")
        assert sync.apply(ScheduleChange("create", _job(), frozenset({"name"}))) is True


class TestSessionIntegration:
    @pytest.fixture
    def runner(self):
        return MagicMock()

    @pytest.fixture
    def sync(self, runner, session_factory):
        sync = ScheduleChangeSynchronizer(runner)
        sync.install(session_factory)
        yield sync
        sync.remove()

    def test_create_is_pushed_after_commit(self, sync, runner, store, make_reg):
        store.register(make_reg())

        runner.register.assert_called_once()
        args, kwargs = runner.register.call_args
        assert args[0].id == "sched-1"
        assert kwargs == {"skip_next_run_update": True}

    def test_mark_run_is_not_pushed(self, sync, runner, store, make_reg):
        store.register(make_reg())
        runner.reset_mock()

        store.mark_run("sched-1")
        store.set_next_run("sched-1", datetime.now(UTC))

        runner.register.assert_not_called()
        runner.unregister.assert_not_called()

    def test_disable_is_pushed_as_unregister(self, sync, runner, store, make_reg):
        store.register(make_reg())
        runner.reset_mock()

        store.update("sched-1", ScheduleChanges(is_enabled=False))

        runner.unregister.assert_called_once_with("sched-1")

    def test_hard_delete_is_pushed(self, sync, runner, store, make_reg):
        store.register(make_reg())
        runner.reset_mock()

        store.unregister("sched-1")

        runner.unregister.assert_called_once_with("sched-1")

    def test_rollback_discards_pending(self, sync, runner, store, make_reg):
        from mercato_scheduler.errors import ScheduleValidationError

        store.register(make_reg())
        runner.reset_mock()

        with pytest.raises(ScheduleValidationError):
            store.update("sched-1", ScheduleChanges(schedule_value="bogus"))

        runner.register.assert_not_called()
        runner.unregister.assert_not_called()

    def test_remove_detaches_listeners(self, runner, session_factory, store, make_reg):
        sync = ScheduleChangeSynchronizer(runner)
        sync.install(session_factory)
        sync.remove()

        store.register(make_reg())

        runner.register.assert_not_called()

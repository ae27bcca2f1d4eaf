"""Tests for the ``mercato-scheduler`` CLI."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from mercato_scheduler.bootstrap import bootstrap_scheduler, get_runtime
from mercato_scheduler.cli.app import app
from mercato_scheduler.scheduling.distributed import SyncReport
from mercato_scheduler.settings import SchedulerSettings

runner = CliRunner()


@pytest.fixture
def runtime(engine, command_bus, queue_factory):
    runtime = bootstrap_scheduler(
        SchedulerSettings(database_url="sqlite://", queue_strategy="local"),
        engine=engine,
        command_bus=command_bus,
        queue_factory=queue_factory,
        create_tables=False,
    )
    with patch("mercato_scheduler.cli.utils.build_runtime", return_value=runtime):
        yield runtime
    runtime.close()


class TestAdminCommands:
    def test_list_json(self, runtime, make_reg):
        runtime.store.register(make_reg(id="a", name="Alpha"))
        runtime.store.register(make_reg(id="b", name="Beta"))

        result = runner.invoke(app, ["list", "--json"])

        assert result.exit_code == 0
        assert '"total": 2' in result.stdout
        assert '"schedule_id": "a"' in result.stdout

    def test_list_table(self, runtime, make_reg):
        runtime.store.register(make_reg())

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "Showing 1 of 1 (offset 0)" in result.stdout

    def test_list_empty(self, runtime):
        result = runner.invoke(app, ["list", "--tenant", "t-9"])

        assert result.exit_code == 0
        assert "No schedules." in result.stdout

    def test_show(self, runtime, make_reg):
        runtime.store.register(make_reg())

        result = runner.invoke(app, ["show", "sched-1", "--json"])

        assert result.exit_code == 0
        assert '"schedule_id": "sched-1"' in result.stdout
        assert '"target_queue": "reports"' in result.stdout

    def test_show_missing(self, runtime):
        result = runner.invoke(app, ["show", "nope"])

        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output

    def test_status(self, runtime, make_reg):
        runtime.store.register(make_reg())

        result = runner.invoke(app, ["status", "--json"])

        assert result.exit_code == 0
        assert '"strategy": "local"' in result.stdout
        assert '"total": 1' in result.stdout

    def test_run_needs_async_strategy(self, runtime, make_reg):
        runtime.store.register(make_reg())

        result = runner.invoke(app, ["run", "sched-1", "--user", "u-1"])

        assert result.exit_code == 1
        assert "NOT_SUPPORTED" in result.output

    def test_delete(self, runtime, make_reg):
        runtime.store.register(make_reg())

        result = runner.invoke(app, ["delete", "sched-1", "--user", "u-1", "--json"])

        assert result.exit_code == 0
        assert '"schedule_id": "sched-1"' in result.stdout
        assert runtime.store.get("sched-1") is None

    def test_sync_needs_async_strategy(self, runtime):
        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 1
        assert "Reconciliation requires QUEUE_STRATEGY=async" in result.output


class TestStart:
    def test_async_without_worker_prints_sync_report(self):
        fake = MagicMock()
        fake.local_runner = None
        fake.sync_report = SyncReport(registered=["a", "b"], removed=["c"], failed=["d"], active=2)

        with patch("mercato_scheduler.cli.app.build_runtime", return_value=fake):
            result = runner.invoke(app, ["start", "--no-worker"])

        assert result.exit_code == 0
        assert "Synced 2 schedule(s), removed 1 stale registration(s)" in result.output
        assert "failed to sync d" in result.output
        fake.celery_app.worker_main.assert_not_called()
        fake.close.assert_called_once()

    def test_async_starts_worker_with_beat(self):
        fake = MagicMock()
        fake.local_runner = None
        fake.sync_report = None
        fake.settings = SchedulerSettings(queue_strategy="async")

        with patch("mercato_scheduler.cli.app.build_runtime", return_value=fake):
            result = runner.invoke(app, ["start"])

        assert result.exit_code == 0
        argv = fake.celery_app.worker_main.call_args.args[0]
        assert argv[:2] == ["worker", "--beat"]
        assert "scheduler-execution" in argv
        fake.close.assert_called_once()

    def test_worker_tasks_use_the_overridden_runtime(self):
        fake = MagicMock()
        fake.local_runner = None
        fake.sync_report = None
        fake.settings = SchedulerSettings(queue_strategy="async", database_url="sqlite:///other.db")
        seen = []
        fake.celery_app.worker_main.side_effect = lambda argv: seen.append(get_runtime())

        with patch("mercato_scheduler.cli.app.build_runtime", return_value=fake) as build:
            result = runner.invoke(app, ["start", "--database", "sqlite:///other.db"])

        assert result.exit_code == 0
        build.assert_called_once_with("sqlite:///other.db", sync_on_start=True)
        assert seen == [fake]
        fake.close.assert_called_once()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "mercato-scheduler" in result.stdout

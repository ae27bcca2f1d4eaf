"""Tests for the registration-driven beat scheduler."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from celery import Celery

from mercato_scheduler.protocols import RepeatOptions
from mercato_scheduler.queue.beat import (
    EXECUTE_TASK_NAME,
    RecurrenceSchedule,
    RepeatableBeatScheduler,
)


def _clock(moment: datetime):
    return lambda: moment


class TestRecurrenceSchedule:
    def test_requires_pattern_or_interval(self):
        with pytest.raises(ValueError):
            RecurrenceSchedule(RepeatOptions())

    def test_interval_not_due(self):
        last = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        schedule = RecurrenceSchedule(RepeatOptions(every_ms=60_000), nowfun=_clock(last + timedelta(seconds=30)))

        state = schedule.is_due(last)

        assert state.is_due is False
        assert state.next == pytest.approx(30)

    def test_interval_due(self):
        last = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        schedule = RecurrenceSchedule(RepeatOptions(every_ms=60_000), nowfun=_clock(last + timedelta(seconds=90)))

        state = schedule.is_due(last)

        assert state.is_due is True
        assert state.next == pytest.approx(60)

    def test_cron_in_timezone(self):
        # 09:00 Warsaw is 08:00 UTC in winter
        schedule = RecurrenceSchedule(RepeatOptions(pattern="0 9 * * *", timezone="Europe/Warsaw"))
        fire = schedule.next_fire_after(datetime(2026, 1, 10, 7, 0, tzinfo=UTC))
        assert fire == datetime(2026, 1, 10, 8, 0, tzinfo=UTC)

    def test_cron_due(self):
        last = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)
        now = datetime(2026, 1, 2, 9, 0, 5, tzinfo=UTC)
        schedule = RecurrenceSchedule(RepeatOptions(pattern="0 9 * * *"), nowfun=_clock(now))

        state = schedule.is_due(last)

        assert state.is_due is True
        assert state.next == pytest.approx(86_395)

    def test_naive_last_run_is_treated_as_utc(self):
        now = datetime(2026, 3, 1, 12, 0, 30, tzinfo=UTC)
        schedule = RecurrenceSchedule(RepeatOptions(every_ms=60_000), nowfun=_clock(now))
        assert schedule.remaining_estimate(datetime(2026, 3, 1, 12, 0)) == timedelta(seconds=30)

    def test_equality(self):
        assert RecurrenceSchedule(RepeatOptions(every_ms=1000)) == RecurrenceSchedule(RepeatOptions(every_ms=1000))
        assert RecurrenceSchedule(RepeatOptions(every_ms=1000)) != RecurrenceSchedule(RepeatOptions(every_ms=2000))


@pytest.fixture
def app():
    app = Celery("beat-test", set_as_current=False)
    app.conf.result_expires = None
    return app


@pytest.fixture
def beat(app, repeatable_queue):
    return RepeatableBeatScheduler(app, registry=repeatable_queue, lazy=True)


def _register(queue, schedule_id: str, repeat: RepeatOptions) -> dict:
    data = {"id": f"schedule-{schedule_id}", "payload": {"scheduleId": schedule_id}}
    queue.add(f"schedule-{schedule_id}", data, repeat)
    return data


class TestRepeatableBeatScheduler:
    def test_refresh_builds_entries(self, beat, repeatable_queue):
        data = _register(repeatable_queue, "a", RepeatOptions(pattern="*/5 * * * *"))

        beat.refresh()

        entry = beat.data["schedule-a"]
        assert entry.task == EXECUTE_TASK_NAME
        assert tuple(entry.args) == (data,)
        assert entry.options["queue"] == "scheduler-execution"
        assert entry.schedule == RecurrenceSchedule(RepeatOptions(pattern="*/5 * * * *"))

    def test_unchanged_entries_keep_run_state(self, beat, repeatable_queue):
        _register(repeatable_queue, "a", RepeatOptions(every_ms=60_000))
        beat.refresh()
        first = beat.data["schedule-a"]

        beat.refresh()

        assert beat.data["schedule-a"] is first

    def test_changed_recurrence_replaces_entry(self, beat, repeatable_queue):
        _register(repeatable_queue, "a", RepeatOptions(every_ms=60_000))
        beat.refresh()
        first = beat.data["schedule-a"]

        _register(repeatable_queue, "a", RepeatOptions(every_ms=120_000))
        beat.refresh()

        assert beat.data["schedule-a"] is not first
        assert beat.data["schedule-a"].schedule.repeat.every_ms == 120_000

    def test_removed_registrations_disappear(self, beat, repeatable_queue):
        _register(repeatable_queue, "a", RepeatOptions(every_ms=60_000))
        _register(repeatable_queue, "b", RepeatOptions(every_ms=60_000))
        beat.refresh()

        repeatable_queue.remove_repeatable_by_key(repeatable_queue.jobs["schedule-b"].key)
        beat.refresh()

        assert set(beat.data) == {"schedule-a"}

    def test_invalid_registration_is_skipped(self, beat, repeatable_queue):
        _register(repeatable_queue, "a", RepeatOptions())

        beat.refresh()

        assert "schedule-a" not in beat.data

    def test_setup_schedule_loads_registrations(self, app, repeatable_queue):
        _register(repeatable_queue, "a", RepeatOptions(every_ms=60_000))

        beat = RepeatableBeatScheduler(app, registry=repeatable_queue)

        assert "schedule-a" in beat.data

    def test_info(self, beat):
        assert "scheduler-execution" in beat.info

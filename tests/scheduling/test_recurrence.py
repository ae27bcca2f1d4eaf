"""Tests for cron / interval recurrence math."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from mercato_scheduler.scheduling.recurrence import (
    calculate_next_run,
    describe_recurrence,
    get_next_occurrences,
    interval_to_human,
    interval_to_milliseconds,
    parse_interval,
    recalculate_next_run,
    validate_cron,
    validate_interval,
)

ANCHOR = datetime(2026, 3, 10, 8, 30, tzinfo=UTC)


class TestValidation:
    @pytest.mark.parametrize("expr", ["0 9 * * *", "*/5 * * * *", "0 0 1 * *", "30 8 * * 1-5"])
    def test_valid_cron(self, expr):
        assert validate_cron(expr) is True

    @pytest.mark.parametrize("expr", ["", "   ", None, "not a cron", "61 * * * *", "0 9 * * * *"])
    def test_invalid_cron(self, expr):
        assert validate_cron(expr) is False

    @pytest.mark.parametrize("value", ["15m", "2h", "1d", "30s", "0s"])
    def test_valid_interval(self, value):
        assert validate_interval(value) is True

    @pytest.mark.parametrize("value", ["", "15", "m", "1.5h", "15 m", "-5m", "1w", "15M", None])
    def test_invalid_interval(self, value):
        assert validate_interval(value) is False


class TestIntervals:
    def test_parse_interval(self):
        assert parse_interval("15m") == timedelta(minutes=15)
        assert parse_interval("2h") == timedelta(hours=2)
        assert parse_interval("1d") == timedelta(days=1)

    def test_parse_interval_rejects_garbage(self):
        with pytest.raises(ValueError, match="Expected format"):
            parse_interval("soon")

    def test_interval_to_milliseconds(self):
        assert interval_to_milliseconds("30s") == 30_000
        assert interval_to_milliseconds("15m") == 900_000

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("60m", "1 hour"),
            ("90m", "90 minutes"),
            ("1m", "1 minute"),
            ("120m", "2 hours"),
            ("1440m", "1 day"),
            ("48h", "2 days"),
            ("3h", "3 hours"),
            ("120s", "120 seconds"),
            ("1s", "1 second"),
            ("0s", "0 seconds"),
            ("0h", "0 seconds"),
            ("0d", "0 seconds"),
        ],
    )
    def test_interval_to_human(self, value, expected):
        assert interval_to_human(value) == expected

    def test_interval_to_human_passes_unparseable_through(self):
        assert interval_to_human("whenever") == "whenever"


class TestCalculateNextRun:
    def test_cron_strictly_after_from(self):
        result = calculate_next_run("cron", "0 9 * * *", "UTC", ANCHOR)
        assert result == datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
        assert result > ANCHOR

    def test_cron_on_exact_boundary_moves_forward(self):
        at_nine = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
        result = calculate_next_run("cron", "0 9 * * *", "UTC", at_nine)
        assert result == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)

    @pytest.mark.parametrize("tz", ["UTC", "Europe/Warsaw", "America/New_York", "Asia/Tokyo"])
    def test_cron_after_from_in_any_timezone(self, tz):
        result = calculate_next_run("cron", "*/15 * * * *", tz, ANCHOR)
        assert result is not None
        assert result > ANCHOR
        assert result.tzinfo is not None

    def test_cron_evaluated_in_timezone(self):
        # 09:00 in Warsaw (CET, UTC+1 in early March) is 08:00 UTC.
        result = calculate_next_run(
            "cron", "0 9 * * *", "Europe/Warsaw", datetime(2026, 3, 10, 7, 0, tzinfo=UTC)
        )
        assert result == datetime(2026, 3, 10, 8, 0, tzinfo=UTC)

    def test_interval_adds_duration(self):
        assert calculate_next_run("interval", "30m", "UTC", ANCHOR) == ANCHOR + timedelta(minutes=30)

    def test_interval_ignores_timezone(self):
        result = calculate_next_run("interval", "1h", "Asia/Tokyo", ANCHOR)
        assert result == ANCHOR + timedelta(hours=1)

    def test_naive_from_is_treated_as_utc(self):
        naive = ANCHOR.replace(tzinfo=None)
        assert calculate_next_run("interval", "1h", "UTC", naive) == ANCHOR + timedelta(hours=1)

    @pytest.mark.parametrize(
        ("schedule_type", "value", "tz"),
        [
            ("cron", "bogus", "UTC"),
            ("cron", "0 9 * * *", "Mars/Olympus_Mons"),
            ("interval", "fortnight", "UTC"),
            ("yearly", "1y", "UTC"),
        ],
    )
    def test_malformed_returns_none(self, schedule_type, value, tz):
        assert calculate_next_run(schedule_type, value, tz, ANCHOR) is None


class TestRecalculateNextRun:
    def test_no_drift_between_calls(self):
        first = recalculate_next_run("interval", "30m")
        second = recalculate_next_run("interval", "30m")
        now = datetime.now(UTC)

        for result in (first, second):
            assert result is not None
            expected = now + timedelta(minutes=30)
            assert abs((result - expected).total_seconds()) < 5
        assert abs((second - first).total_seconds()) < 1

    def test_cron_is_in_future(self):
        result = recalculate_next_run("cron", "* * * * *")
        assert result is not None
        assert result > datetime.now(UTC) - timedelta(seconds=1)


class TestOccurrences:
    def test_next_occurrences(self):
        result = get_next_occurrences("0 * * * *", 3, "UTC", ANCHOR)
        assert result == [
            datetime(2026, 3, 10, 9, 0, tzinfo=UTC),
            datetime(2026, 3, 10, 10, 0, tzinfo=UTC),
            datetime(2026, 3, 10, 11, 0, tzinfo=UTC),
        ]

    def test_zero_count(self):
        assert get_next_occurrences("0 * * * *", 0) == []

    def test_malformed_expression(self):
        assert get_next_occurrences("nope", 3) == []

    def test_describe_recurrence(self):
        assert describe_recurrence("interval", "60m") == "every 1 hour"
        assert describe_recurrence("cron", "0 9 * * *") == "0 9 * * *"

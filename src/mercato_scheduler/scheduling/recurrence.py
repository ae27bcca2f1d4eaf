"""Recurrence math: cron / interval parsing and next-occurrence calculation.

Pure functions, no I/O. Everything returns timezone-aware UTC datetimes.

Manifesto:
    Next-run calculation anchors on the instant a schedule actually ran,
    never on the previous ``next_run_at``. A schedule that fires late does
    not try to catch up; its cadence restarts from "now", so small delays
    never accumulate into drift and an outage never causes a burst.

Tags:
    scheduling, cron, croniter, interval, timezone, zoneinfo

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from croniter import croniter

from mercato_scheduler.models import ScheduleType

_INTERVAL_RE = re.compile(r"([0-9]+)([smhd])")

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


# === Validation ===


def validate_cron(value: str | None) -> bool:
    """True for a parseable five-field cron expression."""
    if not value or not isinstance(value, str) or not value.strip():
        return False
    if len(value.split()) != 5:
        return False
    return croniter.is_valid(value)


def validate_interval(value: str | None) -> bool:
    """True for ``<integer><unit>`` with unit in ``s m h d``."""
    if not isinstance(value, str):
        return False
    return _INTERVAL_RE.fullmatch(value) is not None


def validate_recurrence(schedule_type: str, value: str | None) -> bool:
    if schedule_type == ScheduleType.CRON:
        return validate_cron(value)
    if schedule_type == ScheduleType.INTERVAL:
        return validate_interval(value)
    return False


# === Intervals ===


def _split_interval(value: str) -> tuple[int, str]:
    match = _INTERVAL_RE.fullmatch(value) if isinstance(value, str) else None
    if match is None:
        raise ValueError(
            f"Invalid interval format: {value}. "
            "Expected format: <number><unit> (e.g., 15m, 2h, 1d)"
        )
    return int(match.group(1)), match.group(2)


def parse_interval(value: str) -> timedelta:
    """Parse ``15m`` / ``2h`` / ``1d`` into a timedelta.

    Raises:
        ValueError: If the value is not ``<integer><unit>``.
    """
    amount, unit = _split_interval(value)
    return timedelta(seconds=amount * _UNIT_SECONDS[unit])


def interval_to_milliseconds(value: str) -> int:
    amount, unit = _split_interval(value)
    return amount * _UNIT_SECONDS[unit] * 1000


def _plural(amount: int, unit: str) -> str:
    return f"{amount} {unit}" if amount == 1 else f"{amount} {unit}s"


def interval_to_human(value: str) -> str:
    """Render an interval for display, e.g. ``60m`` -> ``1 hour``.

    Prefers the largest unit that divides evenly; seconds are never
    converted upward and zero always renders ``0 seconds``. Values that do
    not parse are returned unchanged.
    """
    try:
        amount, unit = _split_interval(value)
    except ValueError:
        return value

    if amount == 0:
        return "0 seconds"

    if unit == "s":
        return _plural(amount, "second")
    if unit == "m":
        if amount % 1440 == 0:
            return _plural(amount // 1440, "day")
        if amount % 60 == 0:
            return _plural(amount // 60, "hour")
        return _plural(amount, "minute")
    if unit == "h":
        if amount % 24 == 0:
            return _plural(amount // 24, "day")
        return _plural(amount, "hour")
    return _plural(amount, "day")


# === Next occurrence ===


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def next_cron_occurrence(expression: str, timezone: str, after: datetime) -> datetime:
    """Next cron occurrence strictly after ``after``, evaluated in ``timezone``.

    Raises:
        ValueError / KeyError: On a malformed expression or unknown timezone.
    """
    zone = ZoneInfo(timezone or "UTC")
    start = _as_utc(after).astimezone(zone)
    iterator = croniter(expression, start)
    candidate = iterator.get_next(datetime)
    while candidate <= start:
        candidate = iterator.get_next(datetime)
    return candidate.astimezone(UTC)


def calculate_next_run(
    schedule_type: str,
    value: str,
    timezone: str = "UTC",
    from_time: datetime | None = None,
) -> datetime | None:
    """Next run after ``from_time`` (default now), or None when malformed.

    Cron occurrences are computed in ``timezone``; intervals ignore it and
    simply add their duration.
    """
    anchor = _as_utc(from_time) if from_time is not None else datetime.now(UTC)

    try:
        if schedule_type == ScheduleType.CRON:
            if not validate_cron(value):
                return None
            return next_cron_occurrence(value, timezone, anchor)
        if schedule_type == ScheduleType.INTERVAL:
            return anchor + parse_interval(value)
    except (ValueError, KeyError, OverflowError):
        return None
    return None


def recalculate_next_run(
    schedule_type: str,
    value: str,
    timezone: str = "UTC",
) -> datetime | None:
    """Next run computed from the current instant, never from a stored value."""
    return calculate_next_run(schedule_type, value, timezone, datetime.now(UTC))


def get_next_occurrences(
    expression: str,
    count: int,
    timezone: str = "UTC",
    from_time: datetime | None = None,
) -> list[datetime]:
    """Preview the next ``count`` cron occurrences; ``[]`` when malformed."""
    if count <= 0 or not validate_cron(expression):
        return []

    anchor = _as_utc(from_time) if from_time is not None else datetime.now(UTC)
    occurrences: list[datetime] = []
    try:
        for _ in range(count):
            anchor = next_cron_occurrence(expression, timezone, anchor)
            occurrences.append(anchor)
    except (ValueError, KeyError):
        return []
    return occurrences


def describe_recurrence(schedule_type: str, value: str) -> str:
    """Short display form: the cron string or ``every <interval>``."""
    if schedule_type == ScheduleType.INTERVAL:
        return f"every {interval_to_human(value)}"
    return value

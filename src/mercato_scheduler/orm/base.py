"""Declarative base, column types and mixins for the scheduler tables.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map``
so mapped columns can be declared with plain Python types.

Mixins
------
* **TimestampMixin**: ``created_at`` / ``updated_at`` maintained on the Python side.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, Text
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class UTCDateTime(TypeDecorator[datetime.datetime]):
    """Timezone-aware UTC datetimes on every backend.

    Values are stored as naive UTC and come back tagged with ``UTC``, so
    comparisons against ``datetime.now(UTC)`` work on SQLite as well.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(
        self, value: datetime.datetime | None, dialect: Dialect
    ) -> datetime.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(datetime.UTC).replace(tzinfo=None)

    def process_result_value(
        self, value: datetime.datetime | None, dialect: Dialect
    ) -> datetime.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value.astimezone(datetime.UTC)


class SchedulerBase(DeclarativeBase):
    """Shared declarative base for the scheduler tables.

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``bool``  → ``Boolean``
    * ``datetime.datetime`` → ``UTCDateTime``
    * ``dict``  → ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: UTCDateTime,
        dict: JSON,
    }


class TimestampMixin:
    """Adds ``created_at`` and ``updated_at`` set from the application clock."""

    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

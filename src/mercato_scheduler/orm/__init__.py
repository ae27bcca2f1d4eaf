"""SQLAlchemy persistence for the scheduler: base, tables, engine and sessions."""

from mercato_scheduler.orm.base import SchedulerBase, TimestampMixin, UTCDateTime, utcnow
from mercato_scheduler.orm.session import (
    SchedulerSession,
    create_scheduler_engine,
    create_schema,
    drop_schema,
    scheduler_session_factory,
)
from mercato_scheduler.orm.tables import ScheduledJobTable, SchedulerLockTable

__all__ = [
    "SchedulerBase",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "SchedulerSession",
    "create_scheduler_engine",
    "create_schema",
    "drop_schema",
    "scheduler_session_factory",
    "ScheduledJobTable",
    "SchedulerLockTable",
]

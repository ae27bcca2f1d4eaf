"""Change synchronizer: mirrors committed schedule writes to the distributed runner.

Any code path writing ``scheduled_jobs`` through the observed session
factory is covered, not only the store. Changes are collected per flush
and applied once the transaction commits; a rollback discards them.

Writes touching only runtime bookkeeping (``last_run_at``, ``next_run_at``,
``updated_at``) leave the recurring definition unchanged and are skipped.

Tags:
    scheduling, sqlalchemy-events, synchronization, best-effort

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from mercato_scheduler.errors import best_effort
from mercato_scheduler.logging import get_logger
from mercato_scheduler.models import ScheduledJob
from mercato_scheduler.orm.tables import ScheduledJobTable

if TYPE_CHECKING:
    from mercato_scheduler.scheduling.distributed import DistributedRunner

logger = get_logger(__name__)

RUNTIME_ONLY_FIELDS = frozenset({"last_run_at", "next_run_at", "updated_at"})

_PENDING_KEY = "mercato_scheduler.pending_schedule_changes"

ChangeType = Literal["create", "update", "delete"]


@dataclass
class ScheduleChange:
    change_type: ChangeType
    schedule: ScheduledJob
    changed_fields: frozenset[str] = frozenset()

    @property
    def runtime_only(self) -> bool:
        return (
            self.change_type == "update"
            and bool(self.changed_fields)
            and self.changed_fields <= RUNTIME_ONLY_FIELDS
        )

    def merge(self, later: ScheduleChange) -> ScheduleChange:
        """Combine two flushes of the same row within one transaction."""
        change_type: ChangeType = later.change_type
        if self.change_type == "create" and later.change_type == "update":
            change_type = "create"
        return ScheduleChange(
            change_type=change_type,
            schedule=later.schedule,
            changed_fields=self.changed_fields | later.changed_fields,
        )


def _changed_fields(row: ScheduledJobTable) -> frozenset[str]:
    state = inspect(row)
    return frozenset(
        attr.key for attr in state.attrs if attr.history.has_changes()
    )


class ScheduleChangeSynchronizer:
    """Session-event observer pushing schedule changes to a :class:`DistributedRunner`.

    Example:
        >>> sync = ScheduleChangeSynchronizer(runner)
        >>> sync.install(session_factory)
    """

    def __init__(self, runner: DistributedRunner) -> None:
        self.runner = runner
        self._targets: list[Any] = []

    def install(self, target: Any) -> None:
        """Listen on a ``sessionmaker`` (or Session class / instance)."""
        if target in self._targets:
            return
        event.listen(target, "after_flush", self._after_flush)
        event.listen(target, "after_commit", self._after_commit)
        event.listen(target, "after_rollback", self._after_rollback)
        self._targets.append(target)
        logger.debug("schedule_synchronizer_installed")

    def remove(self) -> None:
        for target in self._targets:
            event.remove(target, "after_flush", self._after_flush)
            event.remove(target, "after_commit", self._after_commit)
            event.remove(target, "after_rollback", self._after_rollback)
        self._targets.clear()

    # === Session events ===

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        pending: dict[str, ScheduleChange] = session.info.setdefault(_PENDING_KEY, {})

        def collect(change: ScheduleChange) -> None:
            previous = pending.get(change.schedule.id)
            pending[change.schedule.id] = previous.merge(change) if previous else change

        for row in session.new:
            if isinstance(row, ScheduledJobTable):
                collect(ScheduleChange("create", row.to_model(), _changed_fields(row)))
        for row in session.dirty:
            if isinstance(row, ScheduledJobTable) and session.is_modified(row):
                collect(ScheduleChange("update", row.to_model(), _changed_fields(row)))
        for row in session.deleted:
            if isinstance(row, ScheduledJobTable):
                collect(ScheduleChange("delete", row.to_model()))

    def _after_commit(self, session: Session) -> None:
        pending: dict[str, ScheduleChange] = session.info.pop(_PENDING_KEY, {})
        for change in pending.values():
            self.apply(change)

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(_PENDING_KEY, None)

    # === Apply ===

    def apply(self, change: ScheduleChange) -> bool:
        """Push one committed change. Returns whether the runner was called."""
        schedule = change.schedule
        if change.runtime_only:
            return False

        with best_effort(
            "schedule_sync_failed",
            schedule_id=schedule.id,
            schedule_name=schedule.name,
            change_type=change.change_type,
        ):
            if change.change_type != "delete" and schedule.is_active:
                self.runner.register(schedule, skip_next_run_update=True)
                logger.info(
                    "schedule_synced",
                    schedule_id=schedule.id,
                    schedule_name=schedule.name,
                    change_type=change.change_type,
                )
            else:
                self.runner.unregister(schedule.id)
                logger.info(
                    "schedule_sync_removed",
                    schedule_id=schedule.id,
                    schedule_name=schedule.name,
                    change_type=change.change_type,
                )
        return True

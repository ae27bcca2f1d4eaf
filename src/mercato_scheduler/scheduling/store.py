"""Schedule store: registration façade over the ``scheduled_jobs`` table.

Manifesto:
    The table is the single source of truth. Every definition write goes
    through here, is validated before it is persisted, and only then is
    pushed (best-effort) to the distributed runner. If that push fails the
    row is still correct and reconciliation repairs the backend later.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULE STORE                                                              │
│                                                                              │
│   register / update                                                          │
│      │                                                                       │
│      ├── validate scope        system | organization | tenant               │
│      ├── validate target       queue name / registered command               │
│      ├── validate recurrence   cron (5 fields) | <int><s|m|h|d>              │
│      ├── compute next_run_at   (update: only if recurrence changed)          │
│      ├── persist               one session per operation                     │
│      └── push to distributed runner (best-effort, never raises)             │
│                                                                              │
│   Runner-owned writes: mark_run / reschedule / set_next_run                  │
│   touch only last_run_at and next_run_at.                                    │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    scheduling, store, repository, validation, sqlalchemy, multi-tenant

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import uuid4

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session, sessionmaker

from mercato_scheduler.errors import (
    ScheduleNotFoundError,
    ScheduleValidationError,
    best_effort,
)
from mercato_scheduler.logging import get_logger
from mercato_scheduler.models import (
    ScheduleChanges,
    ScheduledJob,
    ScheduleFilters,
    ScheduleRegistration,
    ScheduleType,
    ScopeType,
    SourceType,
    TargetType,
)
from mercato_scheduler.orm.tables import ScheduledJobTable
from mercato_scheduler.protocols import CommandRegistry
from mercato_scheduler.scheduling.recurrence import (
    calculate_next_run,
    recalculate_next_run,
    validate_cron,
    validate_interval,
)

if TYPE_CHECKING:
    from mercato_scheduler.scheduling.distributed import DistributedRunner

logger = get_logger(__name__)

E = TypeVar("E", bound=Enum)

_DEFINITION_FIELDS = (
    "name",
    "description",
    "target_queue",
    "target_command",
    "target_payload",
    "require_feature",
    "source_module",
)


def _coerce(enum_cls: type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(str(member.value) for member in enum_cls)
        raise ScheduleValidationError(
            f"Invalid {field}: {value!r} (expected one of {allowed})",
            field=field,
            value=value,
        ) from None


class ScheduleStore:
    """CRUD and validation for scheduled jobs.

    Example:
        >>> store = ScheduleStore(session_factory, command_registry=commands)
        >>> job = store.register(ScheduleRegistration(
        ...     id="billing.invoice-reminders",
        ...     name="Invoice reminders",
        ...     scope_type="tenant",
        ...     tenant_id="t-1",
        ...     schedule_type="cron",
        ...     schedule_value="0 9 * * 1-5",
        ...     timezone="Europe/Warsaw",
        ...     target_type="queue",
        ...     target_queue="billing-reminders",
        ...     source_module="billing",
        ... ))
        >>> store.disable(job.id)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Any],
        *,
        command_registry: CommandRegistry | None = None,
        distributed_runner: DistributedRunner | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.command_registry = command_registry
        self._distributed_runner = distributed_runner

    def bind_distributed_runner(self, runner: DistributedRunner | None) -> None:
        """Attach (or detach with None) the runner definition changes are pushed to."""
        self._distributed_runner = runner

    @property
    def distributed_runner(self) -> DistributedRunner | None:
        return self._distributed_runner

    # === Validation ===

    @staticmethod
    def validate_scope(
        scope_type: ScopeType,
        organization_id: str | None,
        tenant_id: str | None,
    ) -> None:
        if scope_type == ScopeType.SYSTEM:
            if organization_id or tenant_id:
                raise ScheduleValidationError(
                    "System-scoped schedules cannot have organizationId or tenantId",
                    field="scope_type",
                    value=scope_type,
                )
        elif scope_type == ScopeType.ORGANIZATION:
            if not organization_id or not tenant_id:
                raise ScheduleValidationError(
                    "Organization-scoped schedules must have both organizationId and tenantId",
                    field="scope_type",
                    value=scope_type,
                )
        elif scope_type == ScopeType.TENANT:
            if not tenant_id or organization_id:
                raise ScheduleValidationError(
                    "Tenant-scoped schedules must have tenantId and no organizationId",
                    field="scope_type",
                    value=scope_type,
                )

    def validate_target(
        self,
        target_type: TargetType,
        target_queue: str | None,
        target_command: str | None,
    ) -> None:
        if target_type == TargetType.QUEUE:
            if not target_queue:
                raise ScheduleValidationError(
                    "Queue target must have targetQueue", field="target_queue"
                )
            return

        if not target_command:
            raise ScheduleValidationError(
                "Command target must have targetCommand", field="target_command"
            )
        if self.command_registry is None or not self.command_registry.has(target_command):
            raise ScheduleValidationError(
                f"Command not registered: {target_command}",
                field="target_command",
                value=target_command,
            )

    @staticmethod
    def validate_recurrence(schedule_type: ScheduleType, value: str | None) -> None:
        if schedule_type == ScheduleType.CRON and not validate_cron(value):
            raise ScheduleValidationError(
                f"Invalid cron expression: {value}", field="schedule_value", value=value
            )
        if schedule_type == ScheduleType.INTERVAL and not validate_interval(value):
            raise ScheduleValidationError(
                f"Invalid interval: {value}. Expected format: <number><unit> (e.g., 15m, 2h, 1d)",
                field="schedule_value",
                value=value,
            )

    @staticmethod
    def _require_name(name: str | None) -> None:
        if not name or not name.strip():
            raise ScheduleValidationError("Schedule name is required", field="name")

    # === Registration API ===

    def register(self, registration: ScheduleRegistration) -> ScheduledJob:
        """Create or upsert a schedule by id.

        Raises:
            ScheduleValidationError: Invalid scope, target or recurrence, a
                scope change on an existing schedule, or no computable next run.
        """
        scope_type = _coerce(ScopeType, registration.scope_type, "scope_type")
        schedule_type = _coerce(ScheduleType, registration.schedule_type, "schedule_type")
        target_type = _coerce(TargetType, registration.target_type, "target_type")
        source_type = _coerce(SourceType, registration.source_type, "source_type")
        timezone = registration.timezone or "UTC"

        self._require_name(registration.name)
        self.validate_scope(scope_type, registration.organization_id, registration.tenant_id)
        self.validate_target(target_type, registration.target_queue, registration.target_command)
        self.validate_recurrence(schedule_type, registration.schedule_value)

        schedule_id = registration.id or str(uuid4())
        next_run_at = calculate_next_run(schedule_type, registration.schedule_value, timezone)
        if next_run_at is None:
            raise ScheduleValidationError(
                f"Failed to calculate next run time for schedule: {schedule_id}",
                field="timezone",
                value=timezone,
            )

        with self._session_factory.begin() as session:
            row = session.get(ScheduledJobTable, schedule_id)
            created = row is None
            if row is None:
                row = ScheduledJobTable(
                    id=schedule_id,
                    scope_type=str(scope_type),
                    organization_id=registration.organization_id,
                    tenant_id=registration.tenant_id,
                    is_enabled=True if registration.is_enabled is None else registration.is_enabled,
                    created_by_user_id=registration.actor_user_id,
                )
                session.add(row)
            else:
                stored_scope = (row.scope_type, row.tenant_id, row.organization_id)
                requested = (str(scope_type), registration.tenant_id, registration.organization_id)
                if stored_scope != requested:
                    raise ScheduleValidationError(
                        f"Scope of schedule {schedule_id} cannot change after creation",
                        field="scope_type",
                        value=requested,
                    )
                if registration.is_enabled is not None:
                    row.is_enabled = registration.is_enabled
                row.updated_by_user_id = registration.actor_user_id

            row.name = registration.name
            row.description = registration.description
            row.schedule_type = str(schedule_type)
            row.schedule_value = registration.schedule_value
            row.timezone = timezone
            row.target_type = str(target_type)
            row.target_queue = registration.target_queue if target_type == TargetType.QUEUE else None
            row.target_command = (
                registration.target_command if target_type == TargetType.COMMAND else None
            )
            row.target_payload = registration.target_payload
            row.require_feature = registration.require_feature
            row.source_type = str(source_type)
            row.source_module = registration.source_module
            row.next_run_at = next_run_at

            session.flush()
            schedule = row.to_model()

        logger.info(
            "schedule_registered",
            created=created,
            next_run_at=schedule.next_run_at.isoformat() if schedule.next_run_at else None,
            **schedule.log_context(),
        )
        self._sync_distributed(schedule)
        return schedule

    def update(self, schedule_id: str, changes: ScheduleChanges) -> ScheduledJob:
        """Apply a partial update to a live schedule.

        Switching ``target_type`` clears the other target field. ``next_run_at``
        is recomputed only when the recurrence actually changed.

        Raises:
            ScheduleNotFoundError: Unknown or soft-deleted schedule.
            ScheduleValidationError: The merged schedule is invalid.
        """
        provided = changes.provided()

        with self._session_factory.begin() as session:
            row = self._get_live_row(session, schedule_id)
            previous_recurrence = (row.schedule_type, row.schedule_value, row.timezone)

            for attr in _DEFINITION_FIELDS:
                if attr in provided:
                    setattr(row, attr, provided[attr])

            if "schedule_type" in provided:
                row.schedule_type = str(
                    _coerce(ScheduleType, provided["schedule_type"], "schedule_type")
                )
            if "schedule_value" in provided:
                row.schedule_value = provided["schedule_value"]
            if "timezone" in provided:
                row.timezone = provided["timezone"] or "UTC"
            if "is_enabled" in provided:
                row.is_enabled = bool(provided["is_enabled"])
            if "actor_user_id" in provided:
                row.updated_by_user_id = provided["actor_user_id"]

            if "target_type" in provided:
                target_type = _coerce(TargetType, provided["target_type"], "target_type")
                row.target_type = str(target_type)
                if target_type == TargetType.QUEUE:
                    row.target_command = None
                else:
                    row.target_queue = None

            self._require_name(row.name)
            self.validate_scope(ScopeType(row.scope_type), row.organization_id, row.tenant_id)
            self.validate_target(TargetType(row.target_type), row.target_queue, row.target_command)
            self.validate_recurrence(ScheduleType(row.schedule_type), row.schedule_value)

            if (row.schedule_type, row.schedule_value, row.timezone) != previous_recurrence:
                next_run_at = calculate_next_run(row.schedule_type, row.schedule_value, row.timezone)
                if next_run_at is None:
                    raise ScheduleValidationError(
                        f"Failed to calculate next run time for schedule: {schedule_id}",
                        field="timezone",
                        value=row.timezone,
                    )
                row.next_run_at = next_run_at

            session.flush()
            schedule = row.to_model()

        logger.info("schedule_updated", changed=sorted(provided), **schedule.log_context())
        self._sync_distributed(schedule)
        return schedule

    def unregister(self, schedule_id: str) -> bool:
        """Hard-delete a schedule. Returns False when it did not exist."""
        with self._session_factory.begin() as session:
            row = session.get(ScheduledJobTable, schedule_id)
            if row is not None:
                session.delete(row)

        removed = row is not None
        logger.info("schedule_unregistered", schedule_id=schedule_id, removed=removed)
        self._unsync_distributed(schedule_id)
        return removed

    def enable(self, schedule_id: str, *, actor_user_id: str | None = None) -> ScheduledJob:
        return self.update(
            schedule_id, ScheduleChanges(is_enabled=True, actor_user_id=actor_user_id)
        )

    def disable(self, schedule_id: str, *, actor_user_id: str | None = None) -> ScheduledJob:
        return self.update(
            schedule_id, ScheduleChanges(is_enabled=False, actor_user_id=actor_user_id)
        )

    def exists(self, schedule_id: str) -> bool:
        with self._session_factory() as session:
            count = session.scalar(
                select(func.count())
                .select_from(ScheduledJobTable)
                .where(ScheduledJobTable.id == schedule_id)
            )
        return bool(count)

    def find_by_module(self, module_id: str, limit: int = 100) -> list[ScheduledJob]:
        """Live schedules registered by ``module_id``."""
        stmt = (
            select(ScheduledJobTable)
            .where(
                ScheduledJobTable.source_module == module_id,
                ScheduledJobTable.deleted_at.is_(None),
            )
            .order_by(ScheduledJobTable.created_at, ScheduledJobTable.id)
            .limit(limit)
        )
        return self._fetch(stmt)

    # === Admin ===

    def get(self, schedule_id: str, *, include_deleted: bool = False) -> ScheduledJob | None:
        with self._session_factory() as session:
            row = session.get(ScheduledJobTable, schedule_id)
            if row is None or (row.deleted_at is not None and not include_deleted):
                return None
            return row.to_model()

    def list(self, filters: ScheduleFilters | None = None) -> list[ScheduledJob]:
        filters = filters or ScheduleFilters()
        stmt = (
            self._apply_filters(select(ScheduledJobTable), filters)
            .order_by(ScheduledJobTable.name, ScheduledJobTable.id)
            .offset(filters.offset)
            .limit(filters.limit)
        )
        return self._fetch(stmt)

    def count(self, filters: ScheduleFilters | None = None) -> int:
        filters = filters or ScheduleFilters()
        stmt = self._apply_filters(
            select(func.count()).select_from(ScheduledJobTable), filters
        )
        with self._session_factory() as session:
            return int(session.scalar(stmt) or 0)

    def soft_delete(self, schedule_id: str, *, actor_user_id: str | None = None) -> ScheduledJob:
        """Mark a schedule deleted; it leaves both runners' consideration."""
        with self._session_factory.begin() as session:
            row = self._get_live_row(session, schedule_id)
            row.deleted_at = datetime.now(UTC)
            row.updated_by_user_id = actor_user_id
            session.flush()
            schedule = row.to_model()

        logger.info("schedule_deleted", **schedule.log_context())
        self._sync_distributed(schedule)
        return schedule

    def restore(self, schedule_id: str, *, actor_user_id: str | None = None) -> ScheduledJob:
        """Undo a soft delete."""
        with self._session_factory.begin() as session:
            row = session.get(ScheduledJobTable, schedule_id)
            if row is None:
                raise ScheduleNotFoundError(schedule_id)
            row.deleted_at = None
            row.updated_by_user_id = actor_user_id
            session.flush()
            schedule = row.to_model()

        logger.info("schedule_restored", **schedule.log_context())
        self._sync_distributed(schedule)
        return schedule

    # === Runner API ===

    def find_due(self, now: datetime | None = None, limit: int = 100) -> list[ScheduledJob]:
        """Enabled, live schedules with ``next_run_at <= now``, oldest first."""
        now = now or datetime.now(UTC)
        stmt = (
            select(ScheduledJobTable)
            .where(
                ScheduledJobTable.is_enabled.is_(True),
                ScheduledJobTable.deleted_at.is_(None),
                ScheduledJobTable.next_run_at.is_not(None),
                ScheduledJobTable.next_run_at <= now,
            )
            .order_by(ScheduledJobTable.next_run_at, ScheduledJobTable.id)
            .limit(limit)
        )
        return self._fetch(stmt)

    def count_due(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        with self._session_factory() as session:
            return int(
                session.scalar(
                    select(func.count())
                    .select_from(ScheduledJobTable)
                    .where(
                        ScheduledJobTable.is_enabled.is_(True),
                        ScheduledJobTable.deleted_at.is_(None),
                        ScheduledJobTable.next_run_at <= now,
                    )
                )
                or 0
            )

    def iter_enabled(self, batch_size: int = 500) -> Iterator[list[ScheduledJob]]:
        """Enabled, live schedules in id order, one page per session."""
        last_id: str | None = None
        while True:
            stmt = (
                select(ScheduledJobTable)
                .where(
                    ScheduledJobTable.is_enabled.is_(True),
                    ScheduledJobTable.deleted_at.is_(None),
                )
                .order_by(ScheduledJobTable.id)
                .limit(batch_size)
            )
            if last_id is not None:
                stmt = stmt.where(ScheduledJobTable.id > last_id)
            batch = self._fetch(stmt)
            if not batch:
                return
            yield batch
            if len(batch) < batch_size:
                return
            last_id = batch[-1].id

    def mark_run(self, schedule_id: str, *, ran_at: datetime | None = None) -> ScheduledJob | None:
        """Record a run on the fresh row: ``last_run_at`` and a new ``next_run_at``.

        Returns None when the schedule disappeared in the meantime.
        """
        ran_at = ran_at or datetime.now(UTC)
        with self._session_factory.begin() as session:
            row = session.get(ScheduledJobTable, schedule_id)
            if row is None or row.deleted_at is not None:
                return None
            row.last_run_at = ran_at
            next_run_at = recalculate_next_run(row.schedule_type, row.schedule_value, row.timezone)
            if next_run_at is not None:
                row.next_run_at = next_run_at
            session.flush()
            return row.to_model()

    def reschedule(self, schedule_id: str) -> ScheduledJob | None:
        """Recompute ``next_run_at`` from now without recording a run."""
        with self._session_factory.begin() as session:
            row = session.get(ScheduledJobTable, schedule_id)
            if row is None or row.deleted_at is not None:
                return None
            next_run_at = recalculate_next_run(row.schedule_type, row.schedule_value, row.timezone)
            if next_run_at is not None:
                row.next_run_at = next_run_at
            session.flush()
            return row.to_model()

    def set_next_run(self, schedule_id: str, next_run_at: datetime) -> None:
        with self._session_factory.begin() as session:
            row = session.get(ScheduledJobTable, schedule_id)
            if row is not None:
                row.next_run_at = next_run_at

    # === Internals ===

    def _get_live_row(self, session: Session, schedule_id: str) -> ScheduledJobTable:
        row = session.get(ScheduledJobTable, schedule_id)
        if row is None or row.deleted_at is not None:
            raise ScheduleNotFoundError(schedule_id)
        return row

    def _fetch(self, stmt: Select[Any]) -> list[ScheduledJob]:
        with self._session_factory() as session:
            return [row.to_model() for row in session.scalars(stmt)]

    @staticmethod
    def _apply_filters(stmt: Select[Any], filters: ScheduleFilters) -> Select[Any]:
        if not filters.include_deleted:
            stmt = stmt.where(ScheduledJobTable.deleted_at.is_(None))
        if filters.tenant_id is not None:
            stmt = stmt.where(ScheduledJobTable.tenant_id == filters.tenant_id)
        if filters.organization_id is not None:
            stmt = stmt.where(ScheduledJobTable.organization_id == filters.organization_id)
        if filters.scope_type is not None:
            stmt = stmt.where(ScheduledJobTable.scope_type == str(filters.scope_type))
        if filters.is_enabled is not None:
            stmt = stmt.where(ScheduledJobTable.is_enabled.is_(filters.is_enabled))
        if filters.source_module is not None:
            stmt = stmt.where(ScheduledJobTable.source_module == filters.source_module)
        return stmt

    def _sync_distributed(self, schedule: ScheduledJob) -> None:
        runner = self._distributed_runner
        if runner is None:
            return
        with best_effort(
            "distributed_sync_failed",
            schedule_id=schedule.id,
            schedule_name=schedule.name,
        ):
            if schedule.is_active:
                runner.register(schedule, skip_next_run_update=True)
            else:
                runner.unregister(schedule.id)

    def _unsync_distributed(self, schedule_id: str) -> None:
        runner = self._distributed_runner
        if runner is None:
            return
        with best_effort("distributed_unregister_failed", schedule_id=schedule_id):
            runner.unregister(schedule_id)

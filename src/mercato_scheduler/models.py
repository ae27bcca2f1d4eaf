"""Scheduler domain models.

Plain dataclasses detached from any session: the store returns these, the
runners and the worker consume them, and the change synchronizer snapshots
them at flush time.

Tags:
    models, scheduling, dataclasses, scope, recurrence

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any


class ScopeType(StrEnum):
    SYSTEM = "system"
    ORGANIZATION = "organization"
    TENANT = "tenant"


class ScheduleType(StrEnum):
    CRON = "cron"
    INTERVAL = "interval"


class TargetType(StrEnum):
    QUEUE = "queue"
    COMMAND = "command"


class SourceType(StrEnum):
    USER = "user"
    MODULE = "module"


# ---------------------------------------------------------------------------
# scheduled_jobs
# ---------------------------------------------------------------------------


@dataclass
class ScheduledJob:
    """Schedule definition row (``scheduled_jobs``)."""

    id: str
    name: str
    scope_type: ScopeType = ScopeType.TENANT
    organization_id: str | None = None
    tenant_id: str | None = None
    description: str | None = None
    schedule_type: ScheduleType = ScheduleType.CRON
    schedule_value: str = ""
    timezone: str = "UTC"
    target_type: TargetType = TargetType.QUEUE
    target_queue: str | None = None
    target_command: str | None = None
    target_payload: dict[str, Any] | None = None
    require_feature: str | None = None
    is_enabled: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    source_type: SourceType = SourceType.MODULE
    source_module: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    created_by_user_id: str | None = None
    updated_by_user_id: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_active(self) -> bool:
        """Enabled and not soft-deleted."""
        return self.is_enabled and self.deleted_at is None

    @property
    def target_name(self) -> str | None:
        if self.target_type == TargetType.QUEUE:
            return self.target_queue
        return self.target_command

    def scope(self) -> tuple[str, str | None, str | None]:
        """The ``(scope_type, tenant_id, organization_id)`` triple."""
        return (str(self.scope_type), self.tenant_id, self.organization_id)

    def log_context(self) -> dict[str, Any]:
        return {
            "schedule_id": self.id,
            "schedule_name": self.name,
            "scope_type": str(self.scope_type),
            "tenant_id": self.tenant_id,
            "organization_id": self.organization_id,
        }


# ---------------------------------------------------------------------------
# registration inputs
# ---------------------------------------------------------------------------


class _Unset:
    """Marker for "field not provided" in partial updates."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class ScheduleRegistration:
    """Input for :meth:`ScheduleStore.register`.

    ``id`` may be supplied by the caller (modules register stable ids so a
    restart upserts instead of duplicating); otherwise one is generated.
    ``is_enabled`` of ``None`` means "keep the stored value" on upsert and
    ``True`` on create.
    """

    name: str
    schedule_type: ScheduleType | str
    schedule_value: str
    target_type: TargetType | str
    scope_type: ScopeType | str = ScopeType.TENANT
    id: str | None = None
    organization_id: str | None = None
    tenant_id: str | None = None
    description: str | None = None
    timezone: str = "UTC"
    target_queue: str | None = None
    target_command: str | None = None
    target_payload: dict[str, Any] | None = None
    require_feature: str | None = None
    is_enabled: bool | None = None
    source_type: SourceType | str = SourceType.MODULE
    source_module: str | None = None
    actor_user_id: str | None = None


@dataclass
class ScheduleChanges:
    """Partial update for :meth:`ScheduleStore.update`.

    Fields left as ``UNSET`` are not touched; ``None`` clears a nullable field.
    Scope fields are not updatable.
    """

    name: Any = UNSET
    description: Any = UNSET
    schedule_type: Any = UNSET
    schedule_value: Any = UNSET
    timezone: Any = UNSET
    target_type: Any = UNSET
    target_queue: Any = UNSET
    target_command: Any = UNSET
    target_payload: Any = UNSET
    require_feature: Any = UNSET
    is_enabled: Any = UNSET
    source_module: Any = UNSET
    actor_user_id: Any = UNSET

    def provided(self) -> dict[str, Any]:
        """Fields explicitly set on this change set."""
        return {
            name: value
            for name, value in vars(self).items()
            if value is not UNSET
        }


@dataclass
class ScheduleFilters:
    """Admin listing filters."""

    tenant_id: str | None = None
    organization_id: str | None = None
    scope_type: ScopeType | str | None = None
    is_enabled: bool | None = None
    source_module: str | None = None
    include_deleted: bool = False
    limit: int = 100
    offset: int = 0

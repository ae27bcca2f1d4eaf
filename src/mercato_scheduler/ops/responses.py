"""Response shapes returned by admin operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mercato_scheduler.models import ScheduledJob
from mercato_scheduler.scheduling.recurrence import describe_recurrence


@dataclass(slots=True)
class ScheduleSummary:
    """Compact schedule row for listings."""

    schedule_id: str = ""
    name: str = ""
    scope_type: str = "tenant"
    tenant_id: str | None = None
    organization_id: str | None = None
    schedule_type: str = "cron"
    schedule_value: str = ""
    recurrence: str = ""
    target_type: str = "queue"
    target_name: str | None = None
    enabled: bool = True
    next_run_at: datetime | None = None

    @classmethod
    def from_model(cls, job: ScheduledJob) -> ScheduleSummary:
        return cls(
            schedule_id=job.id,
            name=job.name,
            scope_type=str(job.scope_type),
            tenant_id=job.tenant_id,
            organization_id=job.organization_id,
            schedule_type=str(job.schedule_type),
            schedule_value=job.schedule_value,
            recurrence=describe_recurrence(job.schedule_type, job.schedule_value),
            target_type=str(job.target_type),
            target_name=job.target_name,
            enabled=job.is_enabled,
            next_run_at=job.next_run_at,
        )


@dataclass(slots=True)
class ScheduleDetail:
    """Full schedule representation with upcoming occurrences."""

    schedule_id: str = ""
    name: str = ""
    description: str | None = None
    scope_type: str = "tenant"
    tenant_id: str | None = None
    organization_id: str | None = None
    schedule_type: str = "cron"
    schedule_value: str = ""
    timezone: str = "UTC"
    recurrence: str = ""
    target_type: str = "queue"
    target_queue: str | None = None
    target_command: str | None = None
    target_payload: dict[str, Any] | None = None
    require_feature: str | None = None
    enabled: bool = True
    source_type: str = "module"
    source_module: str | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    upcoming: list[datetime] = field(default_factory=list)

    @classmethod
    def from_model(cls, job: ScheduledJob, upcoming: list[datetime] | None = None) -> ScheduleDetail:
        return cls(
            schedule_id=job.id,
            name=job.name,
            description=job.description,
            scope_type=str(job.scope_type),
            tenant_id=job.tenant_id,
            organization_id=job.organization_id,
            schedule_type=str(job.schedule_type),
            schedule_value=job.schedule_value,
            timezone=job.timezone,
            recurrence=describe_recurrence(job.schedule_type, job.schedule_value),
            target_type=str(job.target_type),
            target_queue=job.target_queue,
            target_command=job.target_command,
            target_payload=job.target_payload,
            require_feature=job.require_feature,
            enabled=job.is_enabled,
            source_type=str(job.source_type),
            source_module=job.source_module,
            last_run_at=job.last_run_at,
            next_run_at=job.next_run_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
            deleted_at=job.deleted_at,
            upcoming=upcoming or [],
        )


@dataclass(frozen=True, slots=True)
class TriggerResult:
    schedule_id: str
    job_id: str
    queue: str
    message: str = "Schedule queued for execution"


@dataclass(slots=True)
class SchedulerStatus:
    strategy: str
    total: int = 0
    enabled: int = 0
    due: int = 0
    poll_interval_seconds: float | None = None
    execution_queue: str | None = None
    registrations: int | None = None
    runner: dict[str, Any] | None = None

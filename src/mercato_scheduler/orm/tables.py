"""Scheduler table definitions: scheduled jobs and lock rows.

Tags:
    orm, sqlalchemy, tables, scheduling

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from mercato_scheduler.models import (
    ScheduledJob,
    ScheduleType,
    ScopeType,
    SourceType,
    TargetType,
)
from mercato_scheduler.orm.base import SchedulerBase, TimestampMixin, UTCDateTime


class ScheduledJobTable(TimestampMixin, SchedulerBase):
    __tablename__ = "scheduled_jobs"
    __table_args__ = (
        Index("scheduled_jobs_org_tenant_idx", "organization_id", "tenant_id"),
        Index("scheduled_jobs_scope_idx", "scope_type", "is_enabled"),
        Index("scheduled_jobs_next_run_idx", "next_run_at"),
        Index("scheduled_jobs_source_idx", "source_module"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    organization_id: Mapped[str | None] = mapped_column(Text)
    tenant_id: Mapped[str | None] = mapped_column(Text)
    scope_type: Mapped[str] = mapped_column(Text, nullable=False, default="tenant")

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    schedule_type: Mapped[str] = mapped_column(Text, nullable=False)
    schedule_value: Mapped[str] = mapped_column(Text, nullable=False)
    timezone: Mapped[str] = mapped_column(Text, nullable=False, default="UTC")

    target_type: Mapped[str] = mapped_column(Text, nullable=False)
    target_queue: Mapped[str | None] = mapped_column(Text)
    target_command: Mapped[str | None] = mapped_column(Text)
    target_payload: Mapped[dict | None] = mapped_column(JSON)

    require_feature: Mapped[str | None] = mapped_column(Text)

    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_run_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    next_run_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)

    source_type: Mapped[str] = mapped_column(Text, nullable=False, default="user")
    source_module: Mapped[str | None] = mapped_column(Text)

    deleted_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    created_by_user_id: Mapped[str | None] = mapped_column(Text)
    updated_by_user_id: Mapped[str | None] = mapped_column(Text)

    def to_model(self) -> ScheduledJob:
        """Detached dataclass copy of this row."""
        return ScheduledJob(
            id=self.id,
            name=self.name,
            scope_type=ScopeType(self.scope_type),
            organization_id=self.organization_id,
            tenant_id=self.tenant_id,
            description=self.description,
            schedule_type=ScheduleType(self.schedule_type),
            schedule_value=self.schedule_value,
            timezone=self.timezone or "UTC",
            target_type=TargetType(self.target_type),
            target_queue=self.target_queue,
            target_command=self.target_command,
            target_payload=dict(self.target_payload) if self.target_payload else None,
            require_feature=self.require_feature,
            is_enabled=bool(self.is_enabled),
            last_run_at=self.last_run_at,
            next_run_at=self.next_run_at,
            source_type=SourceType(self.source_type),
            source_module=self.source_module,
            created_at=self.created_at,
            updated_at=self.updated_at,
            deleted_at=self.deleted_at,
            created_by_user_id=self.created_by_user_id,
            updated_by_user_id=self.updated_by_user_id,
        )

    def __repr__(self) -> str:
        return f"ScheduledJobTable(id={self.id!r}, name={self.name!r})"


class SchedulerLockTable(SchedulerBase):
    """Lock rows for databases without session advisory locks."""

    __tablename__ = "scheduler_locks"

    lock_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    lock_key: Mapped[str] = mapped_column(Text, nullable=False)
    locked_by: Mapped[str] = mapped_column(Text, nullable=False)
    locked_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)


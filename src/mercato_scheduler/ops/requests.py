"""Typed inputs for admin operations."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ListSchedulesRequest:
    tenant_id: str | None = None
    organization_id: str | None = None
    scope_type: str | None = None
    is_enabled: bool | None = None
    source_module: str | None = None
    include_deleted: bool = False
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True, slots=True)
class GetScheduleRequest:
    schedule_id: str
    upcoming: int = 5


@dataclass(frozen=True, slots=True)
class DeleteScheduleRequest:
    schedule_id: str


@dataclass(frozen=True, slots=True)
class TriggerScheduleRequest:
    schedule_id: str

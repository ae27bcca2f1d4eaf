"""System execution context for scheduled commands.

Scheduled work runs on behalf of a scope, never of a user. Both runners and
the worker build the context through :func:`build_system_context` so the
shape is identical wherever a command is executed from.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from mercato_scheduler.models import ScheduledJob

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"


@dataclass(frozen=True)
class SystemExecutionContext:
    """Scope-only context: tenant and organization, no user identity."""

    tenant_id: str | None
    organization_id: str | None
    organization_ids: tuple[str, ...] | None
    schedule_id: str
    trigger: str = TRIGGER_SCHEDULED

    @property
    def user_id(self) -> None:
        return None

    @property
    def auth(self) -> None:
        return None

    @property
    def is_system(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "auth": None,
            "tenant_id": self.tenant_id,
            "selected_organization_id": self.organization_id,
            "organization_ids": list(self.organization_ids) if self.organization_ids else None,
            "schedule_id": self.schedule_id,
            "trigger": self.trigger,
        }


def build_system_context(
    schedule: ScheduledJob,
    *,
    trigger: str = TRIGGER_SCHEDULED,
) -> SystemExecutionContext:
    return SystemExecutionContext(
        tenant_id=schedule.tenant_id,
        organization_id=schedule.organization_id,
        organization_ids=(schedule.organization_id,) if schedule.organization_id else None,
        schedule_id=schedule.id,
        trigger=trigger,
    )

"""
Caller context for admin operations.

Every operation receives an :class:`OperationContext`: the wired scheduler
runtime plus who is asking. A caller bound to a tenant (and optionally an
organization) only ever sees schedules of that scope.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mercato_scheduler.bootstrap import SchedulerRuntime


@dataclass
class OperationContext:
    """Context passed to every operation function.

    Attributes:
        runtime: Wired :class:`~mercato_scheduler.bootstrap.SchedulerRuntime`.
        request_id: Unique ID for this invocation (auto-generated).
        caller: Origin of the request (``"cli"``, ``"sdk"``...).
        user_id: Acting user, recorded on manual triggers and deletes.
        tenant_id: Restricts visible schedules to this tenant when set.
        organization_id: Restricts visible schedules to this organization when set.
        is_superadmin: Required to trigger system-scoped schedules.
        metadata: Extra key/value pairs forwarded to logging.
    """

    runtime: SchedulerRuntime
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    caller: str = "sdk"
    user_id: str | None = None
    tenant_id: str | None = None
    organization_id: str | None = None
    is_superadmin: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

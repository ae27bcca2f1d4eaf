"""Target dispatch and feature gating shared by both runners and the worker.

A schedule's target is either a queue (a job is enqueued on the named
queue) or a command (executed through the command bus with a system
context). The forwarded data is the schedule's ``target_payload`` merged
with its tenant and organization.

Tags:
    scheduling, dispatch, command-bus, job-queue, feature-gate

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from mercato_scheduler.errors import ScheduleExecutionError
from mercato_scheduler.logging import get_logger
from mercato_scheduler.models import ScheduledJob, ScopeType, TargetType
from mercato_scheduler.protocols import CommandBus, FeatureChecker, QueueFactory
from mercato_scheduler.scheduling.context import TRIGGER_SCHEDULED, build_system_context

logger = get_logger(__name__)

IDEMPOTENCY_KEY_FIELD = "_idempotencyKey"


def idempotency_key(schedule_id: str, dispatched_at: datetime | None = None) -> str:
    """``scheduler-<id>-<epoch ms>`` token for downstream deduplication."""
    moment = dispatched_at or datetime.now(UTC)
    return f"scheduler-{schedule_id}-{int(moment.timestamp() * 1000)}"


@dataclass
class DispatchResult:
    target_type: TargetType
    queue_name: str | None = None
    queue_job_id: str | None = None
    command_id: str | None = None
    command_result: Any = None

    def event_fields(self) -> dict[str, Any]:
        if self.target_type == TargetType.QUEUE:
            return {"queue_name": self.queue_name, "queue_job_id": self.queue_job_id}
        return {"command_id": self.command_id, "command_result": self.command_result}


class TargetDispatcher:
    """Sends a schedule's target to its queue or command."""

    def __init__(
        self,
        *,
        command_bus: CommandBus | None = None,
        queue_factory: QueueFactory | None = None,
    ) -> None:
        self.command_bus = command_bus
        self.queue_factory = queue_factory

    async def dispatch(
        self,
        schedule: ScheduledJob,
        *,
        idempotency_token: str | None = None,
        trigger: str = TRIGGER_SCHEDULED,
    ) -> DispatchResult:
        """Dispatch ``schedule``'s target.

        Raises:
            ScheduleExecutionError: When the target is not configured or no
                collaborator is available for it. Errors from the queue or
                command propagate unchanged.
        """
        if schedule.target_type == TargetType.QUEUE and schedule.target_queue:
            return self._enqueue(schedule, idempotency_token)
        if schedule.target_type == TargetType.COMMAND and schedule.target_command:
            return await self._execute(schedule, trigger)
        raise ScheduleExecutionError("Invalid target configuration").with_context(
            schedule_id=schedule.id,
            target_type=str(schedule.target_type),
        )

    def _enqueue(self, schedule: ScheduledJob, idempotency_token: str | None) -> DispatchResult:
        if self.queue_factory is None:
            raise ScheduleExecutionError("No job queue configured").with_context(
                schedule_id=schedule.id
            )

        payload: dict[str, Any] = {
            **(schedule.target_payload or {}),
            "tenantId": schedule.tenant_id,
            "organizationId": schedule.organization_id,
        }
        if idempotency_token:
            payload[IDEMPOTENCY_KEY_FIELD] = idempotency_token

        queue = self.queue_factory(schedule.target_queue)
        try:
            job_id = queue.enqueue(payload)
        finally:
            queue.close()

        logger.info(
            "schedule_enqueued",
            schedule_id=schedule.id,
            queue_name=schedule.target_queue,
            queue_job_id=job_id,
        )
        return DispatchResult(
            target_type=TargetType.QUEUE,
            queue_name=schedule.target_queue,
            queue_job_id=job_id,
        )

    async def _execute(self, schedule: ScheduledJob, trigger: str) -> DispatchResult:
        if self.command_bus is None:
            raise ScheduleExecutionError("No command bus configured").with_context(
                schedule_id=schedule.id
            )

        command_input = {
            **(schedule.target_payload or {}),
            "tenant_id": schedule.tenant_id,
            "organization_id": schedule.organization_id,
        }
        outcome = await self.command_bus.execute(
            schedule.target_command,
            input=command_input,
            context=build_system_context(schedule, trigger=trigger),
        )

        logger.info(
            "schedule_command_executed",
            schedule_id=schedule.id,
            command_id=schedule.target_command,
        )
        return DispatchResult(
            target_type=TargetType.COMMAND,
            command_id=schedule.target_command,
            command_result=getattr(outcome, "result", outcome),
        )


async def check_feature_gate(
    checker: FeatureChecker | None,
    schedule: ScheduledJob,
) -> bool:
    """True when the schedule may run.

    No required feature and system scope always pass. A failing check
    counts as "feature missing".
    """
    if not schedule.require_feature:
        return True
    if schedule.scope_type == ScopeType.SYSTEM:
        return True
    if checker is None or not schedule.tenant_id:
        return False

    try:
        return bool(
            await checker.has_feature(
                schedule.tenant_id,
                schedule.require_feature,
                organization_id=schedule.organization_id,
            )
        )
    except Exception as exc:
        logger.warning(
            "feature_check_failed",
            schedule_id=schedule.id,
            feature=schedule.require_feature,
            error=str(exc),
        )
        return False

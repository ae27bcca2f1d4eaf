"""Execution worker: runs one fired occurrence of a distributed schedule.

Manifesto:
    A fired job carries only a schedule id and the scope it was registered
    with. The worker trusts neither: it loads the schedule fresh, and any
    difference between the job's scope and the stored scope is an integrity
    failure that must surface to the queue's failure policy.

Flow::

    decode payload ─► load fresh ─► (missing → return)
                     ─► scope check (mismatch → ScheduleIntegrityError)
                     ─► disabled → skipped
                     ─► started ─► feature gate (unmet → skipped)
                     ─► dispatch (+ idempotency key for queue targets)
                     ─► mark_run ─► completed
    dispatch error   ─► failed (returned, not raised)

Tags:
    scheduling, worker, integrity, idempotency, multi-tenant

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mercato_scheduler.errors import InvalidPayloadError, ScheduleIntegrityError, best_effort
from mercato_scheduler.events import SchedulerEventEmitter
from mercato_scheduler.logging import LogContext, get_logger
from mercato_scheduler.models import ScheduledJob, ScopeType
from mercato_scheduler.protocols import FeatureChecker
from mercato_scheduler.scheduling.dispatch import (
    TargetDispatcher,
    check_feature_gate,
    idempotency_key,
)
from mercato_scheduler.scheduling.store import ScheduleStore

logger = get_logger(__name__)


class ExecuteSchedulePayload(BaseModel):
    """Decoded job payload: ``{scheduleId, tenantId, organizationId, scopeType}``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    schedule_id: str = Field(alias="scheduleId", min_length=1)
    tenant_id: str | None = Field(default=None, alias="tenantId")
    organization_id: str | None = Field(default=None, alias="organizationId")
    scope_type: ScopeType | None = Field(default=None, alias="scopeType")
    trigger_type: Literal["scheduled", "manual"] = Field(default="scheduled", alias="triggerType")
    triggered_by_user_id: str | None = Field(default=None, alias="triggeredByUserId")

    @classmethod
    def decode(cls, job: Any) -> ExecuteSchedulePayload:
        """Accept the bare payload or a ``{id, payload, createdAt}`` envelope.

        Raises:
            InvalidPayloadError: No schedule id, or fields of the wrong shape.
        """
        data = job
        if isinstance(job, Mapping) and isinstance(job.get("payload"), Mapping):
            data = job["payload"]

        if not isinstance(data, Mapping) or not data.get("scheduleId"):
            raise InvalidPayloadError("scheduleId is required in job payload")

        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise InvalidPayloadError(
                f"Invalid job payload: {exc.error_count()} validation error(s)",
                cause=exc,
            ).with_context(schedule_id=data.get("scheduleId"))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ExecutionStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"


@dataclass
class ExecutionOutcome:
    """What happened to one fired occurrence."""

    status: ExecutionStatus
    schedule_id: str
    reason: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "schedule_id": self.schedule_id,
            "reason": self.reason,
            "error": self.error,
            **self.details,
        }


def verify_scope(payload: ExecuteSchedulePayload, schedule: ScheduledJob) -> None:
    """Compare the job's scope to the stored one, field by field.

    Raises:
        ScheduleIntegrityError: On the first mismatching field.
    """
    checks = (
        ("scope type", payload.scope_type, schedule.scope_type),
        ("tenant ID", payload.tenant_id, schedule.tenant_id),
        ("organization ID", payload.organization_id, schedule.organization_id),
    )
    for label, received, stored in checks:
        if received != stored:
            logger.error(
                "schedule_scope_mismatch",
                field=label,
                payload_value=received,
                stored_value=stored,
                schedule_id=schedule.id,
            )
            raise ScheduleIntegrityError(
                f"Schedule {label} mismatch - potential security issue"
            ).with_context(
                schedule_id=schedule.id,
                tenant_id=schedule.tenant_id,
                organization_id=schedule.organization_id,
            )


class ExecutionWorker:
    """Processes ``scheduler-execution`` jobs.

    Example:
        >>> worker = ExecutionWorker(store, TargetDispatcher(command_bus=bus))
        >>> outcome = await worker.process(
        ...     {"scheduleId": "abc", "tenantId": "t-1", "scopeType": "tenant"},
        ...     job_id="celery-task-id",
        ... )
        >>> outcome.status
        <ExecutionStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: ScheduleStore,
        dispatcher: TargetDispatcher,
        *,
        emitter: SchedulerEventEmitter | None = None,
        feature_checker: FeatureChecker | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.emitter = emitter or SchedulerEventEmitter()
        self.feature_checker = feature_checker

    async def process(
        self,
        job: Any,
        *,
        attempt: int = 1,
        job_id: str | None = None,
    ) -> ExecutionOutcome:
        """Execute one fired occurrence.

        Raises:
            InvalidPayloadError: The job payload is malformed.
            ScheduleIntegrityError: The job's scope differs from the stored one.
        """
        payload = ExecuteSchedulePayload.decode(job)
        with LogContext(schedule_id=payload.schedule_id, job_id=job_id):
            logger.debug("execution_job_received", attempt=attempt, trigger_type=payload.trigger_type)
            return await self._execute(payload, attempt)

    async def _execute(self, payload: ExecuteSchedulePayload, attempt: int) -> ExecutionOutcome:
        schedule = self.store.get(payload.schedule_id)
        if schedule is None:
            logger.info("schedule_missing_or_deleted")
            return ExecutionOutcome(ExecutionStatus.NOT_FOUND, payload.schedule_id)

        verify_scope(payload, schedule)

        if not schedule.is_enabled:
            reason = "Schedule is disabled"
            logger.debug("schedule_skipped", reason=reason)
            await self.emitter.skipped(schedule, reason)
            return ExecutionOutcome(ExecutionStatus.SKIPPED, schedule.id, reason=reason)

        await self.emitter.started(
            schedule,
            attempt_number=attempt,
            trigger_type=payload.trigger_type,
            triggered_by_user_id=payload.triggered_by_user_id,
        )

        if not await check_feature_gate(self.feature_checker, schedule):
            reason = f"Feature not enabled: {schedule.require_feature}"
            logger.info("schedule_skipped", reason=reason)
            await self.emitter.skipped(schedule, reason)
            return ExecutionOutcome(ExecutionStatus.SKIPPED, schedule.id, reason=reason)

        try:
            result = await self.dispatcher.dispatch(
                schedule,
                idempotency_token=idempotency_key(schedule.id),
                trigger=payload.trigger_type,
            )
        except Exception as exc:
            logger.error(
                "schedule_execution_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                attempt=attempt,
            )
            await self.emitter.failed(schedule, str(exc), attempt_number=attempt)
            return ExecutionOutcome(ExecutionStatus.FAILED, schedule.id, error=str(exc))

        with best_effort("schedule_mark_run_failed", schedule_id=schedule.id):
            self.store.mark_run(schedule.id, ran_at=datetime.now(UTC))

        details = result.event_fields()
        logger.info("schedule_completed", **details)
        await self.emitter.completed(schedule, **details)
        return ExecutionOutcome(ExecutionStatus.COMPLETED, schedule.id, details=details)

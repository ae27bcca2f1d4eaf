"""
Schedule admin operations.

List, inspect, soft-delete and manually trigger schedules, report status
and run reconciliation. Each function takes an :class:`OperationContext`
and returns an :class:`OperationResult`; none of them raise.
"""

from __future__ import annotations

from typing import Any

from mercato_scheduler.errors import SchedulerError
from mercato_scheduler.logging import get_logger
from mercato_scheduler.models import ScheduledJob, ScheduleFilters, ScheduleType, ScopeType
from mercato_scheduler.ops.context import OperationContext
from mercato_scheduler.ops.requests import (
    DeleteScheduleRequest,
    GetScheduleRequest,
    ListSchedulesRequest,
    TriggerScheduleRequest,
)
from mercato_scheduler.ops.responses import (
    ScheduleDetail,
    SchedulerStatus,
    ScheduleSummary,
    TriggerResult,
)
from mercato_scheduler.ops.result import OperationResult, PagedResult, start_timer
from mercato_scheduler.scheduling.context import TRIGGER_MANUAL
from mercato_scheduler.scheduling.recurrence import get_next_occurrences
from mercato_scheduler.scheduling.worker import ExecuteSchedulePayload

logger = get_logger(__name__)


def _visible(
    ctx: OperationContext,
    schedule_id: str,
    *,
    include_deleted: bool = False,
) -> ScheduledJob | None:
    """The schedule if it exists and lies within the caller's scope."""
    schedule = ctx.runtime.store.get(schedule_id, include_deleted=include_deleted)
    if schedule is None:
        return None
    if ctx.tenant_id is not None and schedule.tenant_id != ctx.tenant_id:
        return None
    if ctx.organization_id is not None and schedule.organization_id != ctx.organization_id:
        return None
    return schedule


def _not_found(schedule_id: str, elapsed_ms: float) -> OperationResult[Any]:
    return OperationResult.fail(
        "NOT_FOUND",
        f"Schedule not found: {schedule_id}",
        details={"schedule_id": schedule_id},
        elapsed_ms=elapsed_ms,
    )


def _internal(action: str, exc: Exception, elapsed_ms: float) -> OperationResult[Any]:
    logger.exception("op_failed", action=action, error=str(exc))
    return OperationResult.fail(
        "INTERNAL", f"Failed to {action}: {exc}", elapsed_ms=elapsed_ms
    )


def list_schedules(
    ctx: OperationContext,
    request: ListSchedulesRequest | None = None,
) -> PagedResult[ScheduleSummary]:
    """List schedules visible to the caller, ordered by name."""
    timer = start_timer()
    request = request or ListSchedulesRequest()

    filters = ScheduleFilters(
        tenant_id=ctx.tenant_id or request.tenant_id,
        organization_id=ctx.organization_id or request.organization_id,
        scope_type=request.scope_type,
        is_enabled=request.is_enabled,
        source_module=request.source_module,
        include_deleted=request.include_deleted,
        limit=request.limit,
        offset=request.offset,
    )
    try:
        store = ctx.runtime.store
        jobs = store.list(filters)
        total = store.count(filters)
    except Exception as exc:
        result = _internal("list schedules", exc, timer.elapsed_ms)
        return PagedResult(success=False, error=result.error, elapsed_ms=timer.elapsed_ms)

    return PagedResult.from_items(
        [ScheduleSummary.from_model(job) for job in jobs],
        total=total,
        limit=request.limit,
        offset=request.offset,
        elapsed_ms=timer.elapsed_ms,
    )


def get_schedule(
    ctx: OperationContext,
    request: GetScheduleRequest,
) -> OperationResult[ScheduleDetail]:
    """One schedule with its next occurrences (cron schedules only)."""
    timer = start_timer()

    if not request.schedule_id:
        return OperationResult.fail(
            "VALIDATION_FAILED", "schedule_id is required", elapsed_ms=timer.elapsed_ms
        )

    try:
        schedule = _visible(ctx, request.schedule_id, include_deleted=True)
    except Exception as exc:
        return _internal("get schedule", exc, timer.elapsed_ms)
    if schedule is None:
        return _not_found(request.schedule_id, timer.elapsed_ms)

    upcoming = []
    if schedule.schedule_type == ScheduleType.CRON and request.upcoming > 0:
        upcoming = get_next_occurrences(
            schedule.schedule_value, request.upcoming, schedule.timezone
        )
    return OperationResult.ok(
        ScheduleDetail.from_model(schedule, upcoming), elapsed_ms=timer.elapsed_ms
    )


def delete_schedule(
    ctx: OperationContext,
    request: DeleteScheduleRequest,
) -> OperationResult[dict[str, Any]]:
    """Soft-delete a schedule; it stops firing in both strategies."""
    timer = start_timer()

    if not request.schedule_id:
        return OperationResult.fail(
            "VALIDATION_FAILED", "schedule_id is required", elapsed_ms=timer.elapsed_ms
        )

    try:
        if _visible(ctx, request.schedule_id) is None:
            return _not_found(request.schedule_id, timer.elapsed_ms)
        deleted = ctx.runtime.store.soft_delete(request.schedule_id, actor_user_id=ctx.user_id)
    except SchedulerError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        return _internal("delete schedule", exc, timer.elapsed_ms)

    logger.info(
        "schedule_deleted_by_operator",
        schedule_id=deleted.id,
        user_id=ctx.user_id,
        caller=ctx.caller,
    )
    return OperationResult.ok(
        {"schedule_id": deleted.id, "deleted_at": deleted.deleted_at},
        elapsed_ms=timer.elapsed_ms,
    )


def trigger_schedule(
    ctx: OperationContext,
    request: TriggerScheduleRequest,
) -> OperationResult[TriggerResult]:
    """Run a schedule now through the execution queue.

    Needs the ``async`` strategy. System-scoped schedules need a superadmin.
    """
    timer = start_timer()
    runtime = ctx.runtime

    if not request.schedule_id:
        return OperationResult.fail(
            "VALIDATION_FAILED", "schedule_id is required", elapsed_ms=timer.elapsed_ms
        )

    try:
        schedule = _visible(ctx, request.schedule_id)
    except Exception as exc:
        return _internal("trigger schedule", exc, timer.elapsed_ms)
    if schedule is None:
        return _not_found(request.schedule_id, timer.elapsed_ms)

    if schedule.scope_type == ScopeType.SYSTEM and not ctx.is_superadmin:
        return OperationResult.fail(
            "ACCESS_DENIED",
            "Access denied",
            details={"schedule_id": schedule.id},
            elapsed_ms=timer.elapsed_ms,
        )

    if not runtime.is_distributed:
        return OperationResult.fail(
            "NOT_SUPPORTED",
            "Manual trigger requires QUEUE_STRATEGY=async",
            details={"strategy": runtime.strategy},
            elapsed_ms=timer.elapsed_ms,
        )

    payload = ExecuteSchedulePayload(
        schedule_id=schedule.id,
        tenant_id=schedule.tenant_id,
        organization_id=schedule.organization_id,
        scope_type=schedule.scope_type,
        trigger_type=TRIGGER_MANUAL,
        triggered_by_user_id=ctx.user_id,
    ).to_wire()

    try:
        job_id = runtime.enqueue_execution(payload)
    except SchedulerError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        logger.error("manual_trigger_failed", schedule_id=schedule.id, error=str(exc))
        return OperationResult.fail(
            "BACKEND_UNAVAILABLE",
            f"Failed to trigger schedule: {exc}",
            retryable=True,
            elapsed_ms=timer.elapsed_ms,
        )

    logger.info(
        "schedule_triggered_manually",
        schedule_id=schedule.id,
        schedule_name=schedule.name,
        job_id=job_id,
        triggered_by=ctx.user_id,
    )
    return OperationResult.ok(
        TriggerResult(
            schedule_id=schedule.id,
            job_id=job_id,
            queue=runtime.settings.execution_queue,
        ),
        elapsed_ms=timer.elapsed_ms,
    )


def scheduler_status(ctx: OperationContext) -> OperationResult[SchedulerStatus]:
    """Counts of total / enabled / due schedules plus runner state."""
    timer = start_timer()
    runtime = ctx.runtime
    warnings: list[str] = []

    try:
        store = runtime.store
        scope = {"tenant_id": ctx.tenant_id, "organization_id": ctx.organization_id}
        status = SchedulerStatus(
            strategy=runtime.strategy,
            total=store.count(ScheduleFilters(**scope)),
            enabled=store.count(ScheduleFilters(is_enabled=True, **scope)),
            due=store.count_due(),
        )
    except Exception as exc:
        return _internal("read scheduler status", exc, timer.elapsed_ms)

    if runtime.local_runner is not None:
        status.poll_interval_seconds = runtime.local_runner.poll_interval_seconds
        status.runner = runtime.local_runner.health()
    if runtime.distributed_runner is not None:
        status.execution_queue = runtime.settings.execution_queue
        try:
            status.registrations = len(runtime.distributed_runner.get_repeatable_jobs())
        except Exception as exc:
            warnings.append(f"Could not read registrations: {exc}")

    return OperationResult.ok(status, warnings=warnings, elapsed_ms=timer.elapsed_ms)


def sync_schedules(ctx: OperationContext) -> OperationResult[dict[str, Any]]:
    """Operator-run reconciliation of backend registrations with the store."""
    timer = start_timer()
    runner = ctx.runtime.distributed_runner

    if runner is None:
        return OperationResult.fail(
            "NOT_SUPPORTED",
            "Reconciliation requires QUEUE_STRATEGY=async",
            elapsed_ms=timer.elapsed_ms,
        )

    try:
        report = runner.sync_all()
    except Exception as exc:
        return _internal("sync schedules", exc, timer.elapsed_ms)

    warnings = [f"Failed to sync schedule: {schedule_id}" for schedule_id in report.failed]
    return OperationResult.ok(report.to_dict(), warnings=warnings, elapsed_ms=timer.elapsed_ms)

"""
Operations layer: admin functions over the scheduler runtime.

- All functions accept ``OperationContext`` as first argument
- All functions return ``OperationResult[T]`` (never raise)
- All functions are transport-agnostic (the CLI is one caller)

Usage::

    from mercato_scheduler.bootstrap import bootstrap_scheduler
    from mercato_scheduler.ops import OperationContext
    from mercato_scheduler.ops.schedules import list_schedules

    ctx = OperationContext(runtime=bootstrap_scheduler(), tenant_id="t-1")
    result = list_schedules(ctx)
    assert result.success
"""

from mercato_scheduler.ops.context import OperationContext
from mercato_scheduler.ops.result import OperationError, OperationResult, PagedResult

__all__ = [
    "OperationContext",
    "OperationError",
    "OperationResult",
    "PagedResult",
]

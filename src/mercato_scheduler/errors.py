"""
Structured error types for the scheduler.

Errors carry a category, a retry hint and structured context so that the
places which swallow them (best-effort sync, event emission) can still log
something useful, and the one place that must propagate them (the execution
worker) hands the queue a meaningful failure.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      SchedulerError                           │
        │        (category, retryable, context, cause)                  │
        ├──────────────────────────────────────────────────────────────┤
        │  ScheduleValidationError   (VALIDATION)  register / update    │
        │  ScheduleNotFoundError     (NOT_FOUND)   update / admin       │
        │  ScheduleIntegrityError    (INTEGRITY)   worker, fatal        │
        │  InvalidPayloadError       (VALIDATION)  worker boundary      │
        │  ScheduleExecutionError    (EXECUTION)   target dispatch      │
        │  SchedulerConfigError      (CONFIG)      wiring               │
        └──────────────────────────────────────────────────────────────┘

    Error classes by propagation:
        - Validation: raised synchronously to the caller, never retried
        - Integrity: escapes the worker so the queue's failure policy applies
        - Sync / lock / event errors: logged and swallowed via ``best_effort``
        - Execution: logged, reported as a *failed* event, schedule rescheduled

Tags:
    errors, exceptions, validation, integrity, best-effort

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mercato_scheduler.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    INTEGRITY = "INTEGRITY"
    EXECUTION = "EXECUTION"
    CONFIG = "CONFIG"
    BACKEND = "BACKEND"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only non-empty fields end up in :meth:`to_dict`.
    """

    schedule_id: str | None = None
    schedule_name: str | None = None
    tenant_id: str | None = None
    organization_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            key: value
            for key, value in (
                ("schedule_id", self.schedule_id),
                ("schedule_name", self.schedule_name),
                ("tenant_id", self.tenant_id),
                ("organization_id", self.organization_id),
            )
            if value is not None
        }
        if self.metadata:
            result.update(self.metadata)
        return result


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SchedulerError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class ScheduleValidationError(SchedulerError):
    """Bad scope / target / recurrence combination. Never retryable."""

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class ScheduleNotFoundError(SchedulerError):
    """No live schedule with the given id."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, schedule_id: str):
        super().__init__(
            f"Schedule not found: {schedule_id}",
            context=ErrorContext(schedule_id=schedule_id),
        )
        self.schedule_id = schedule_id


class ScheduleIntegrityError(SchedulerError):
    """Scope recorded in a fired job differs from the stored schedule."""

    default_category = ErrorCategory.INTEGRITY


class InvalidPayloadError(SchedulerError):
    """A job payload could not be decoded into an execution request."""

    default_category = ErrorCategory.VALIDATION


class ScheduleExecutionError(SchedulerError):
    """The schedule's target could not be dispatched."""

    default_category = ErrorCategory.EXECUTION


class SchedulerConfigError(SchedulerError):
    """Invalid or missing runtime configuration."""

    default_category = ErrorCategory.CONFIG


@contextmanager
def best_effort(event: str, **context: Any) -> Iterator[None]:
    """Run a side call whose failure must never reach the caller.

    Any exception raised inside the block is logged under ``event`` with the
    given context and then dropped.

    Example:
        with best_effort("distributed_register_failed", schedule_id=schedule.id):
            runner.register(schedule)
    """
    try:
        yield
    except Exception as exc:
        details = exc.to_dict() if isinstance(exc, SchedulerError) else str(exc)
        logger.error(event, exc_info=True, error=details, **context)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SchedulerError",
    "ScheduleValidationError",
    "ScheduleNotFoundError",
    "ScheduleIntegrityError",
    "InvalidPayloadError",
    "ScheduleExecutionError",
    "SchedulerConfigError",
    "best_effort",
]

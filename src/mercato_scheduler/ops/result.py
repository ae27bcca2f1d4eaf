"""
Operation result envelope.

Admin operations never raise into their caller. They return an
:class:`OperationResult` carrying either the payload or a structured
:class:`OperationError`, plus timing, so the CLI (or any other front end)
can render both outcomes uniformly.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from typing import Any, Generic, TypeVar

from mercato_scheduler.errors import ErrorCategory, SchedulerError

T = TypeVar("T")

_CODES: dict[ErrorCategory, str] = {
    ErrorCategory.VALIDATION: "VALIDATION_FAILED",
    ErrorCategory.NOT_FOUND: "NOT_FOUND",
    ErrorCategory.INTEGRITY: "INTEGRITY_VIOLATION",
    ErrorCategory.EXECUTION: "EXECUTION_FAILED",
    ErrorCategory.CONFIG: "NOT_SUPPORTED",
    ErrorCategory.BACKEND: "BACKEND_UNAVAILABLE",
    ErrorCategory.INTERNAL: "INTERNAL",
}


def _plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {key: _plain(item) for key, item in asdict(value).items()}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class OperationError:
    """Structured failure detail.

    Attributes:
        code: Machine-readable code (``NOT_FOUND``, ``VALIDATION_FAILED``, ...).
        message: Human-readable description.
        category: :class:`ErrorCategory` of the underlying error, if any.
        details: Extra context (field name, schedule id...).
        retryable: Whether retrying can succeed.
    """

    code: str
    message: str
    category: ErrorCategory | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


@dataclass
class OperationResult(Generic[T]):
    """Success/failure envelope; build with :meth:`ok`, :meth:`fail` or :meth:`from_error`."""

    success: bool
    data: T | None = None
    error: OperationError | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        data: T,
        *,
        warnings: list[str] | None = None,
        elapsed_ms: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> OperationResult[T]:
        return cls(
            success=True,
            data=data,
            warnings=warnings or [],
            elapsed_ms=elapsed_ms,
            metadata=metadata or {},
        )

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        category: ErrorCategory | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        elapsed_ms: float = 0.0,
    ) -> OperationResult[T]:
        return cls(
            success=False,
            error=OperationError(
                code=code,
                message=message,
                category=category,
                details=details or {},
                retryable=retryable,
            ),
            elapsed_ms=elapsed_ms,
        )

    @classmethod
    def from_error(cls, exc: SchedulerError, *, elapsed_ms: float = 0.0) -> OperationResult[T]:
        """Translate a scheduler exception into a failed result."""
        details = exc.context.to_dict()
        field_name = getattr(exc, "field", None)
        if field_name:
            details["field"] = field_name
        return cls.fail(
            _CODES.get(exc.category, "INTERNAL"),
            exc.message,
            category=exc.category,
            details=details,
            retryable=exc.retryable,
            elapsed_ms=elapsed_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain, JSON-ready dict."""
        d: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            d["data"] = _plain(self.data)
        if self.error is not None:
            d["error"] = {
                "code": self.error.code,
                "message": self.error.message,
                "retryable": self.error.retryable,
            }
            if self.error.details:
                d["error"]["details"] = _plain(self.error.details)
        if self.warnings:
            d["warnings"] = self.warnings
        if self.elapsed_ms:
            d["elapsed_ms"] = round(self.elapsed_ms, 2)
        if self.metadata:
            d["metadata"] = self.metadata
        return d


@dataclass
class PagedResult(OperationResult[list[T]]):
    """List result with ``total`` / ``limit`` / ``offset`` / ``has_more``."""

    total: int = 0
    limit: int = 100
    offset: int = 0
    has_more: bool = False

    @classmethod
    def from_items(
        cls,
        items: list[T],
        total: int,
        *,
        limit: int = 100,
        offset: int = 0,
        elapsed_ms: float = 0.0,
    ) -> PagedResult[T]:
        return cls(
            success=True,
            data=items,
            total=total,
            limit=limit,
            offset=offset,
            has_more=(offset + len(items)) < total,
            elapsed_ms=elapsed_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update(total=self.total, limit=self.limit, offset=self.offset, has_more=self.has_more)
        return d


class _Timer:
    __slots__ = ("_start",)

    def __init__(self) -> None:
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000


def start_timer() -> _Timer:
    """Stopwatch for an operation; read ``timer.elapsed_ms`` when done."""
    return _Timer()

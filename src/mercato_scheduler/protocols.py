"""Collaborator protocols consumed by the scheduler.

The command façade, the job queue, the entitlement service and the
distributed repeat backend live outside the scheduler; it only talks to
them through these protocols.

Tags:
    protocols, typing, command-bus, job-queue, feature-check
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from mercato_scheduler.scheduling.context import SystemExecutionContext


@dataclass
class CommandResult:
    """Return value of :meth:`CommandBus.execute`."""

    result: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CommandRegistry(Protocol):
    """Lookup of command ids known to the command façade."""

    def has(self, command_id: str) -> bool: ...


@runtime_checkable
class CommandBus(Protocol):
    """Executes a registered command with an explicit execution context."""

    async def execute(
        self,
        command_id: str,
        *,
        input: dict[str, Any],
        context: SystemExecutionContext,
    ) -> CommandResult: ...


@runtime_checkable
class JobQueue(Protocol):
    """A named queue jobs can be pushed onto."""

    def enqueue(self, payload: dict[str, Any]) -> str: ...

    def close(self) -> None: ...


QueueFactory = Callable[[str], JobQueue]


@runtime_checkable
class FeatureChecker(Protocol):
    """Entitlement check for a tenant / organization."""

    async def has_feature(
        self,
        tenant_id: str,
        feature: str,
        *,
        organization_id: str | None = None,
    ) -> bool: ...


@dataclass(frozen=True)
class RepeatOptions:
    """How often a registration fires.

    Exactly one of ``pattern`` (cron) or ``every_ms`` (interval) is set.
    """

    timezone: str = "UTC"
    pattern: str | None = None
    every_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.pattern is not None:
            return {"pattern": self.pattern, "tz": self.timezone}
        return {"every": self.every_ms, "tz": self.timezone}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepeatOptions:
        return cls(
            timezone=data.get("tz") or "UTC",
            pattern=data.get("pattern"),
            every_ms=data.get("every"),
        )


@dataclass
class RepeatableJob:
    """A recurring registration as the backend reports it."""

    key: str
    name: str
    id: str | None = None
    repeat: RepeatOptions | None = None
    data: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class RepeatableQueue(Protocol):
    """Backend holding recurring registrations for the distributed runner."""

    name: str

    def add(
        self,
        name: str,
        data: dict[str, Any],
        repeat: RepeatOptions,
        *,
        options: dict[str, Any] | None = None,
    ) -> RepeatableJob: ...

    def get_repeatable_jobs(self) -> list[RepeatableJob]: ...

    def remove_repeatable_by_key(self, key: str) -> bool: ...

    def close(self) -> None: ...

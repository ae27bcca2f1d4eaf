"""In-process command registry and bus.

Schedules with a ``command`` target name a command id that must be
registered before the schedule is accepted. Applications either plug
their own command façade in through the :class:`~mercato_scheduler.protocols.CommandBus`
protocol or register handlers here.

Tags:
    commands, registry, command-bus

Doc-Types:
    api-reference
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from mercato_scheduler.logging import get_logger
from mercato_scheduler.protocols import CommandResult
from mercato_scheduler.scheduling.context import SystemExecutionContext

logger = get_logger(__name__)

CommandHandler = Callable[[dict[str, Any], SystemExecutionContext], Awaitable[Any] | Any]

ECHO_COMMAND_ID = "scheduler.test.echo"


class InProcessCommandBus:
    """Command registry and executor in one.

    Example:
        >>> bus = InProcessCommandBus()
        >>> @bus.register("billing.send-reminders")
        ... async def send_reminders(input, context):
        ...     return {"sent": 3}
        >>> bus.has("billing.send-reminders")
        True
    """

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}

    def register(
        self,
        command_id: str,
        handler: CommandHandler | None = None,
    ) -> Any:
        """Register ``handler`` under ``command_id``; usable as a decorator."""

        def decorator(fn: CommandHandler) -> CommandHandler:
            if command_id in self._handlers:
                raise ValueError(f"Command '{command_id}' is already registered")
            self._handlers[command_id] = fn
            logger.debug("command_registered", command_id=command_id, handler=fn.__name__)
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    def has(self, command_id: str) -> bool:
        return command_id in self._handlers

    def list_commands(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(
        self,
        command_id: str,
        *,
        input: dict[str, Any],
        context: SystemExecutionContext,
    ) -> CommandResult:
        handler = self._handlers.get(command_id)
        if handler is None:
            available = ", ".join(sorted(self._handlers))
            raise KeyError(f"Command '{command_id}' not found. Available: {available}")

        result = handler(input, context)
        if inspect.isawaitable(result):
            result = await result
        return CommandResult(result=result, metadata={"command_id": command_id})


async def echo_command(input: dict[str, Any], context: SystemExecutionContext) -> dict[str, Any]:
    """Return the input unchanged with a timestamp."""
    timestamp = datetime.now(UTC).isoformat()
    logger.info(
        "test_echo_received",
        input=input,
        schedule_id=context.schedule_id,
        trigger=context.trigger,
    )
    return {"echoed": input, "timestamp": timestamp}


def create_command_bus(*, include_builtin: bool = True) -> InProcessCommandBus:
    """Command bus with the built-in ``scheduler.test.echo`` command."""
    bus = InProcessCommandBus()
    if include_builtin:
        bus.register(ECHO_COMMAND_ID, echo_command)
    return bus

"""
CLI utility helpers: runtime construction and output formatting.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from mercato_scheduler.bootstrap import SchedulerRuntime, bootstrap_scheduler
from mercato_scheduler.ops.context import OperationContext
from mercato_scheduler.ops.result import OperationResult, PagedResult
from mercato_scheduler.settings import get_settings

console = Console()
err_console = Console(stderr=True)


# ── Runtime helper ───────────────────────────────────────────────────────


def build_runtime(database: str | None = None, *, sync_on_start: bool = False) -> SchedulerRuntime:
    """Wire a runtime from the environment, optionally overriding the database URL."""
    settings = get_settings()
    if database:
        settings = settings.model_copy(update={"database_url": database})
    return bootstrap_scheduler(settings, sync_on_start=sync_on_start)


def make_context(
    database: str | None = None,
    *,
    tenant_id: str | None = None,
    organization_id: str | None = None,
    user_id: str | None = None,
    superadmin: bool = False,
) -> OperationContext:
    """Create an ``OperationContext`` for CLI commands."""
    return OperationContext(
        runtime=build_runtime(database),
        caller="cli",
        user_id=user_id,
        tenant_id=tenant_id,
        organization_id=organization_id,
        is_superadmin=superadmin,
    )


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def _fail(result: OperationResult[Any]) -> None:
    err = result.error
    msg = err.message if err else "Unknown error"
    code = err.code if err else "ERROR"
    err_console.print(f"[bold red]Error[/bold red] ({code}): {msg}")
    raise typer.Exit(code=1)


def output_result(
    result: OperationResult[Any],
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render an ``OperationResult``; exits with status 1 on failure."""
    if not result.success:
        _fail(result)

    data = result.data

    if as_json:
        console.print_json(json.dumps(_to_dict(data), default=str))
        return

    _print_dict(_to_dict(data), title=title)
    for warning in result.warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")


def output_paged(
    result: PagedResult[Any],
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render a ``PagedResult`` with pagination info."""
    if not result.success:
        _fail(result)

    items = result.data or []

    if as_json:
        payload = {
            "items": [_to_dict(d) for d in items],
            "total": result.total,
            "limit": result.limit,
            "offset": result.offset,
            "has_more": result.has_more,
        }
        console.print_json(json.dumps(payload, default=str))
        return

    if not items:
        console.print("[dim]No schedules.[/dim]")
        return

    _print_table(items, title=title)
    console.print(
        f"\n[dim]Showing {len(items)} of {result.total} (offset {result.offset})[/dim]"
    )


# ── Private helpers ──────────────────────────────────────────────────────


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat(timespec="seconds")
    return str(value)


def _print_table(items: list[Any], *, title: str = "") -> None:
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        table.add_row(*(_cell(v) for v in _to_dict(item).values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    for key, value in data.items():
        if isinstance(value, list):
            console.print(f"  [cyan]{key}[/cyan]:")
            for item in value:
                console.print(f"    - {_cell(item)}")
        elif isinstance(value, dict):
            console.print(f"  [cyan]{key}[/cyan]: {json.dumps(value, default=str)}")
        else:
            console.print(f"  [cyan]{key}[/cyan]: {_cell(value)}")

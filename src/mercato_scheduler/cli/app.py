"""
Root Typer application for the ``mercato-scheduler`` CLI.

Admin commands (``list``, ``show``, ``status``, ``run``, ``delete``,
``sync``) go through :mod:`mercato_scheduler.ops`; ``start`` runs the
scheduler for the configured queue strategy.
"""

from __future__ import annotations

import sys

import typer
from typer import Typer

from mercato_scheduler.bootstrap import reset_runtime, set_runtime
from mercato_scheduler.cli.utils import (
    build_runtime,
    console,
    err_console,
    make_context,
    output_paged,
    output_result,
)
from mercato_scheduler.logging import configure_logging
from mercato_scheduler.settings import get_settings

app = Typer(
    name="mercato-scheduler",
    help="mercato-scheduler: multi-tenant cron and interval scheduling.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

DatabaseOption = typer.Option(None, "--database", "-d", help="Override SCHEDULER_DATABASE_URL.")
JsonOption = typer.Option(False, "--json", help="Print JSON instead of tables.")


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("mercato-scheduler")
        except PackageNotFoundError:
            v = "0.1.0"
        typer.echo(f"mercato-scheduler {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """mercato-scheduler CLI: inspect, trigger and run schedules."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.json_logs, stream=sys.stderr)


# ── Admin commands ───────────────────────────────────────────────────────


@app.command("list")
def list_schedules(
    tenant: str | None = typer.Option(None, "--tenant", "-t", help="Tenant ID"),
    organization: str | None = typer.Option(None, "--organization", "-o", help="Organization ID"),
    scope: str | None = typer.Option(None, "--scope", help="system | organization | tenant"),
    enabled: bool | None = typer.Option(None, "--enabled/--disabled"),
    module: str | None = typer.Option(None, "--module", help="Owning module"),
    include_deleted: bool = typer.Option(False, "--include-deleted"),
    limit: int = typer.Option(100, "--limit", min=1),
    offset: int = typer.Option(0, "--offset", min=0),
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """List schedules."""
    from mercato_scheduler.ops.requests import ListSchedulesRequest
    from mercato_scheduler.ops.schedules import list_schedules as _list

    ctx = make_context(database)
    request = ListSchedulesRequest(
        tenant_id=tenant,
        organization_id=organization,
        scope_type=scope,
        is_enabled=enabled,
        source_module=module,
        include_deleted=include_deleted,
        limit=limit,
        offset=offset,
    )
    output_paged(_list(ctx, request), as_json=json_out, title="Schedules")


@app.command("show")
def show_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    upcoming: int = typer.Option(5, "--upcoming", min=0, help="Upcoming cron occurrences"),
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """Show schedule details and its next occurrences."""
    from mercato_scheduler.ops.requests import GetScheduleRequest
    from mercato_scheduler.ops.schedules import get_schedule as _get

    ctx = make_context(database)
    result = _get(ctx, GetScheduleRequest(schedule_id=schedule_id, upcoming=upcoming))
    output_result(result, as_json=json_out, title=f"Schedule: {schedule_id}")


@app.command("status")
def status(
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """Show schedule counts and runner state."""
    from mercato_scheduler.ops.schedules import scheduler_status

    ctx = make_context(database)
    output_result(scheduler_status(ctx), as_json=json_out, title="Scheduler Status")


@app.command("run")
def run_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    user: str | None = typer.Option(None, "--user", "-u", help="Acting user ID"),
    tenant: str | None = typer.Option(None, "--tenant", "-t", help="Restrict to tenant"),
    organization: str | None = typer.Option(None, "--organization", "-o"),
    superadmin: bool = typer.Option(False, "--superadmin", help="Allow system schedules"),
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """Trigger a schedule now (async strategy only)."""
    from mercato_scheduler.ops.requests import TriggerScheduleRequest
    from mercato_scheduler.ops.schedules import trigger_schedule

    ctx = make_context(
        database,
        tenant_id=tenant,
        organization_id=organization,
        user_id=user,
        superadmin=superadmin,
    )
    result = trigger_schedule(ctx, TriggerScheduleRequest(schedule_id=schedule_id))
    output_result(result, as_json=json_out, title="Schedule Triggered")


@app.command("delete")
def delete_schedule(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    user: str | None = typer.Option(None, "--user", "-u", help="Acting user ID"),
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """Soft-delete a schedule."""
    from mercato_scheduler.ops.requests import DeleteScheduleRequest
    from mercato_scheduler.ops.schedules import delete_schedule as _delete

    ctx = make_context(database, user_id=user)
    result = _delete(ctx, DeleteScheduleRequest(schedule_id=schedule_id))
    output_result(result, as_json=json_out, title="Schedule Deleted")


@app.command("sync")
def sync(
    database: str | None = DatabaseOption,
    json_out: bool = JsonOption,
) -> None:
    """Reconcile backend registrations with the store (async strategy only)."""
    from mercato_scheduler.ops.schedules import sync_schedules

    ctx = make_context(database)
    output_result(sync_schedules(ctx), as_json=json_out, title="Sync Report")


# ── Runner ───────────────────────────────────────────────────────────────


@app.command("start")
def start(
    database: str | None = DatabaseOption,
    worker: bool = typer.Option(
        True, "--worker/--no-worker", help="Async strategy: start a Celery worker with beat."
    ),
) -> None:
    """Run the scheduler for the configured queue strategy.

    Local: polls for due schedules until interrupted.
    Async: reconciles registrations, then hands over to a Celery worker
    with the embedded beat scheduler.
    """
    runtime = build_runtime(database, sync_on_start=True)
    settings = runtime.settings

    if runtime.local_runner is not None:
        runner = runtime.local_runner
        console.print(
            f"[green]✓[/green] Local scheduler polling every "
            f"{runner.poll_interval_seconds:g}s (Ctrl+C to stop)"
        )
        runner.start()
        try:
            while runner.is_running and not runner.ticker.wait(1.0):
                pass
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopping scheduler...[/yellow]")
        finally:
            runtime.close()
        return

    report = runtime.sync_report
    if report is not None:
        console.print(
            f"[green]✓[/green] Synced {len(report.registered)} schedule(s), "
            f"removed {len(report.removed)} stale registration(s)"
        )
        for schedule_id in report.failed:
            err_console.print(f"[yellow]Warning:[/yellow] failed to sync {schedule_id}")

    if not worker:
        runtime.close()
        return

    console.print(
        f"[green]✓[/green] Starting Celery worker on queue '{settings.execution_queue}'"
    )
    set_runtime(runtime)
    try:
        runtime.celery_app.worker_main(
            [
                "worker",
                "--beat",
                "--queues",
                settings.execution_queue,
                "--concurrency",
                str(settings.worker_concurrency),
                "--loglevel",
                settings.log_level,
            ]
        )
    finally:
        reset_runtime()

"""
ezcron CLI entry point.

Commands:
    ezcron start    — Start the daemon in the background
    ezcron stop     — Ask the running daemon to stop
    ezcron status   — Daemon liveness and last reload
    ezcron list     — Loaded jobs with next/last run
    ezcron logs     — Recent log lines (optionally one job)
    ezcron run ID   — Run a job now
    ezcron daemon   — Run the daemon in the foreground
    ezcron config   — Show the effective configuration
    ezcron version  — Show the version

Control errors (already running, not running, unknown job) go to stderr
with exit code 1.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ezcron.core.config import EzcronConfig
from ezcron.core.errors import ConfigError, ControlError, EzcronError

app = typer.Typer(
    name="ezcron",
    help="ezcron — a local job scheduler with hot-reloaded job definitions.",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)


@app.callback()
def main(
    ctx: typer.Context,
    base_dir: Optional[Path] = typer.Option(
        None, "--base-dir", "-d", help="Base directory (default: $EZCRON_HOME or ~/.ezcron)"
    ),
    json_output: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """ezcron — a local job scheduler with hot-reloaded job definitions."""
    ctx.obj = {"base_dir": base_dir, "json": json_output}


def _load_config(ctx: typer.Context) -> EzcronConfig:
    base_dir = (ctx.obj or {}).get("base_dir")
    overrides: dict[str, Any] = {}
    if base_dir is not None:
        overrides["paths"] = {"base_dir": str(base_dir)}
    try:
        return EzcronConfig.load(overrides=overrides or None)
    except ConfigError as e:
        _fail(e)


def _controller(ctx: typer.Context):
    from ezcron.daemon.controller import DaemonController

    return DaemonController(_load_config(ctx))


def _wants_json(ctx: typer.Context) -> bool:
    return bool((ctx.obj or {}).get("json"))


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _fail(error: EzcronError) -> None:
    err_console.print(f"[red]error:[/red] {error.message}", highlight=False)
    raise typer.Exit(1)


def _fmt_time(value: Any) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _fmt_uptime(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m{secs:02d}s"


# ━━━ Lifecycle ━━━


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the daemon in the background."""
    controller = _controller(ctx)
    try:
        pid = controller.start()
    except ControlError as e:
        _fail(e)
    if _wants_json(ctx):
        _print_json({"started": True, "pid": pid})
    else:
        console.print(f"daemon started (pid={pid})")


@app.command()
def stop(
    ctx: typer.Context,
    wait: float = typer.Option(0.0, "--wait", "-w", help="Seconds to wait for shutdown"),
) -> None:
    """Ask the running daemon to stop."""
    controller = _controller(ctx)
    try:
        pid = controller.stop(wait=wait)
    except ControlError as e:
        _fail(e)
    if _wants_json(ctx):
        _print_json({"stop_requested": True, "pid": pid})
    else:
        console.print(f"stop requested (pid={pid})")


@app.command()
def daemon(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Echo debug output to stderr"),
) -> None:
    """Run the daemon in the foreground (what 'start' spawns)."""
    from ezcron.daemon.runtime import Daemon
    from ezcron.logs.setup import setup_logging

    config = _load_config(ctx)
    paths = config.get_paths()
    setup_logging(
        log_dir=paths.logs_dir,
        console_level=logging.DEBUG if verbose else logging.WARNING,
        file_level=getattr(logging, config.logs.level),
    )
    try:
        asyncio.run(Daemon(config).serve())
    except ControlError as e:
        _fail(e)


# ━━━ Queries ━━━


@app.command()
def status(ctx: typer.Context) -> None:
    """Show daemon liveness and the last reload."""
    info = _controller(ctx).status()
    if _wants_json(ctx):
        _print_json(info)
        return

    if info["running"]:
        console.print(f"daemon: [green]running[/green] (pid={info['pid']})")
        console.print(f"uptime: {_fmt_uptime(info['uptime'])}")
    else:
        console.print("daemon: [yellow]stopped[/yellow]")
    console.print(f"loaded_jobs: {info['loaded_job_count']}")

    summary = info["last_reload_summary"]
    if summary:
        console.print(
            f"last_reload: added={summary['added']} updated={summary['updated']} "
            f"removed={summary['removed']} rejected={summary['rejected']}",
            highlight=False,
        )
        for error in summary["errors"]:
            console.print(f"  [red]{error}[/red]", highlight=False)


@app.command("list")
def list_jobs(ctx: typer.Context) -> None:
    """List jobs with their schedule, next run and last result."""
    snapshots = _controller(ctx).list()
    if _wants_json(ctx):
        _print_json([s.to_dict() for s in snapshots])
        return
    if not snapshots:
        console.print("[dim]No jobs found in jobs/[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("id")
    table.add_column("enabled")
    table.add_column("schedule")
    table.add_column("next run")
    table.add_column("last")
    for s in snapshots:
        last = s.last_run_result
        last_text = f"{last.status.value} ({_fmt_time(last.end_time)})" if last else "-"
        table.add_row(
            s.id,
            "yes" if s.enabled else "no",
            s.schedule,
            _fmt_time(s.next_run),
            last_text,
        )
    console.print(table)


@app.command()
def logs(
    ctx: typer.Context,
    job: Optional[str] = typer.Option(None, "--job", "-j", help="Only lines for this job id"),
    tail: int = typer.Option(50, "--tail", "-n", help="Number of lines to show"),
) -> None:
    """Show recent log lines."""
    lines = _controller(ctx).logs(job_id=job, tail=tail)
    if _wants_json(ctx):
        _print_json(lines)
        return
    if not lines:
        console.print("[dim]No logs found.[/dim]")
        return
    for line in lines:
        console.print(line, markup=False, highlight=False, soft_wrap=True)


# ━━━ Commands ━━━


@app.command()
def run(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Id of the job to run"),
) -> None:
    """Run a job now (through the daemon if it is running)."""
    try:
        record = _controller(ctx).run(job_id)
    except ControlError as e:
        _fail(e)

    if record is None:
        if _wants_json(ctx):
            _print_json({"submitted": True, "job_id": job_id})
        else:
            console.print(f"run request submitted for job={job_id}")
        return

    if _wants_json(ctx):
        _print_json(record.to_dict())
        return
    console.print(
        f"job={record.job_id} status={record.status.value} "
        f"exit_code={record.exit_code if record.exit_code is not None else '-'} "
        f"ended_at={_fmt_time(record.end_time)}",
        highlight=False,
        soft_wrap=True,
    )
    if record.stderr_summary:
        err_console.print(record.stderr_summary, markup=False, highlight=False)


@app.command()
def config(ctx: typer.Context) -> None:
    """Show the effective configuration."""
    cfg = _load_config(ctx)
    if _wants_json(ctx):
        _print_json(cfg.model_dump())
        return
    paths = cfg.get_paths()
    console.print(Panel("[bold]ezcron Configuration[/bold]", border_style="cyan"))
    console.print(f"[bold]Base dir:[/bold] {paths.base_dir}", soft_wrap=True)
    console.print(f"[bold]Jobs:[/bold] {paths.jobs_dir}", soft_wrap=True)
    console.print(f"[bold]Logs:[/bold] {paths.logs_dir}", soft_wrap=True)
    console.print(json.dumps(cfg.model_dump(), indent=2), markup=False, highlight=False)


@app.command()
def version() -> None:
    """Show ezcron version."""
    from ezcron import __version__
    console.print(f"ezcron {__version__}")


if __name__ == "__main__":
    app()

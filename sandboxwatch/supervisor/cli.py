"""CLI entry point for the sandbox process supervisor.

Results go to stdout (JSON by default); logs go to stderr. A failed
operation exits with status 1.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import signal
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from sandboxwatch.config import ErrorStoreOptions, LogStoreOptions, MonitoringOptions, get_settings
from sandboxwatch.logging_config import get_logger, setup_logging
from sandboxwatch.result import ErrorKind, Result
from sandboxwatch.supervisor.control import ControlSurface
from sandboxwatch.supervisor.models import (
    ErrorCategory,
    ErrorFilter,
    ErrorSeverity,
    LogFilter,
    LogLevel,
    LogStream,
    ProcessState,
    SortOrder,
)
from sandboxwatch.supervisor.runner import RunnerRegistry, StartRequest

app = typer.Typer(help="Sandbox process supervisor with error detection and log capture", no_args_is_help=True)
console = Console()
logger = get_logger(__name__)

process_app = typer.Typer(help="Start, stop and inspect supervised processes", no_args_is_help=True)
app.add_typer(process_app, name="process")

errors_app = typer.Typer(help="Query detected errors", no_args_is_help=True)
app.add_typer(errors_app, name="errors")

logs_app = typer.Typer(help="Query captured logs", no_args_is_help=True)
app.add_typer(logs_app, name="logs")


class OutputFormat(StrEnum):
    JSON = "json"
    TABLE = "table"
    RAW = "raw"


FORMAT_OPTION = typer.Option(OutputFormat.JSON, "--format", "-f", help="Output format: json, table or raw")
INSTANCE_OPTION = typer.Option(..., "--instance-id", "-i", help="Instance identifier")


@app.callback()
def main() -> None:
    """Configure logging before any command runs."""
    setup_logging()


def _async_run(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


async def _with_control(action: Callable[[ControlSurface], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    settings = get_settings()
    async with RunnerRegistry(settings, status_dir=settings.status_dir) as registry:
        return await action(ControlSurface(registry))


def _emit(
    response: dict[str, Any],
    fmt: OutputFormat,
    table: Optional[Callable[[dict[str, Any]], Table]] = None,
    raw: Optional[Callable[[dict[str, Any]], str]] = None,
) -> None:
    """Print ``response`` in the requested format and exit 1 on failure."""
    if not response.get("success"):
        typer.echo(json.dumps(response, indent=2, default=str))
        raise typer.Exit(code=1)
    if fmt == OutputFormat.TABLE and table is not None:
        console.print(table(response))
    elif fmt == OutputFormat.RAW and raw is not None:
        typer.echo(raw(response), nl=False)
    else:
        typer.echo(json.dumps(response, indent=2, default=str))


def _invalid(error: Exception | str) -> dict[str, Any]:
    return Result.fail(error, ErrorKind.INVALID_INPUT).to_response()


def _parse_env(pairs: Optional[list[str]]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


# ── Renderers ────────────────────────────────────────────────────────


def _status_table(response: dict[str, Any]) -> Table:
    table = Table(title="Supervised Instances")
    for column in ("Instance", "State", "PID", "Restarts", "Uptime", "Errors", "Last error"):
        table.add_column(column)
    for entry in response["instances"]:
        table.add_row(
            entry["instance_id"],
            str(entry["state"]) + (" (stale)" if entry.get("stale") else ""),
            str(entry["pid"] or "-"),
            str(entry["restart_count"]),
            f"{entry['uptime']:.0f}s",
            str(entry["errors_detected"]),
            (entry.get("last_error") or "")[:60],
        )
    return table


def _errors_table(response: dict[str, Any]) -> Table:
    table = Table(title=f"Errors ({response['summary']['total_errors']} total)")
    for column in ("Last seen", "Category", "Severity", "Count", "Location", "Message"):
        table.add_column(column)
    for error in response["errors"]:
        location = error.get("source_file") or "-"
        if error.get("line_number"):
            location += f":{error['line_number']}"
        table.add_row(
            error["last_occurrence"],
            error["category"],
            error["severity"],
            str(error["occurrence_count"]),
            location,
            error["message"][:80],
        )
    return table


def _errors_raw(response: dict[str, Any]) -> str:
    lines = []
    for error in response["errors"]:
        location = error.get("source_file") or ""
        if location and error.get("line_number"):
            location += f":{error['line_number']}"
        lines.append(f"[{error['severity']}] {error['category']} {location} {error['message']} "
                     f"(x{error['occurrence_count']})")
    return "".join(line + "\n" for line in lines)


def _summary_table(response: dict[str, Any]) -> Table:
    summary = response["summary"]
    table = Table(title=f"Error summary for {response['instance_id']}")
    table.add_column("Group")
    table.add_column("Value")
    table.add_column("Count", justify="right")
    table.add_row("total", "", str(summary["total_errors"]))
    for key, count in summary["errors_by_category"].items():
        table.add_row("category", key, str(count))
    for key, count in summary["errors_by_severity"].items():
        table.add_row("severity", key, str(count))
    return table


def _logs_table(response: dict[str, Any]) -> Table:
    table = Table(title="Logs")
    for column in ("Seq", "Time", "Level", "Stream", "Message"):
        table.add_column(column)
    for log in response["logs"]:
        table.add_row(str(log["sequence"]), log["timestamp"], log["level"], log["stream"], log["message"][:120])
    return table


def _logs_raw(response: dict[str, Any]) -> str:
    return "".join(f"[{log['timestamp']}] [{log['stream']}] {log['message']}\n" for log in response["logs"])


def _log_stats_table(response: dict[str, Any]) -> Table:
    stats = response["stats"]
    table = Table(title=f"Log statistics for {response['instance_id']}")
    table.add_column("Group")
    table.add_column("Value")
    table.add_column("Count", justify="right")
    table.add_row("total", "", str(stats["total_logs"]))
    for key, count in stats["logs_by_level"].items():
        table.add_row("level", key, str(count))
    for key, count in stats["logs_by_stream"].items():
        table.add_row("stream", key, str(count))
    table.add_row("last sequence", "", str(stats["last_sequence"]))
    return table


# ── process ──────────────────────────────────────────────────────────


async def _supervise(request: StartRequest, fmt: OutputFormat) -> int:
    """Run one instance in the foreground.

    Returns on SIGTERM/SIGINT/SIGHUP (after stopping the child) or once the
    child is done for good: 0 after a clean exit, 1 with a ``crash``
    response once restarts are exhausted.
    """
    settings = get_settings()
    registry = RunnerRegistry(settings, status_dir=settings.status_dir)
    await registry.init()
    try:
        control = ControlSurface(registry)
        response = await control.start(request)
        if not response["success"]:
            typer.echo(json.dumps(response, indent=2, default=str))
            return 1
        if fmt == OutputFormat.JSON:
            typer.echo(json.dumps(response, indent=2, default=str))
        else:
            console.print(f"[green]Supervising[/green] {request.instance_id} (pid {response.get('pid')})")

        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            loop.add_signal_handler(sig, shutdown.set)

        monitor = registry.get(request.instance_id).monitor
        signalled = asyncio.create_task(shutdown.wait())
        finished = asyncio.create_task(monitor.wait())
        await asyncio.wait({signalled, finished}, return_when=asyncio.FIRST_COMPLETED)
        for task in (signalled, finished):
            task.cancel()

        if shutdown.is_set():
            logger.info("supervisor_shutdown_requested", instance_id=request.instance_id)
            await control.stop(request.instance_id)
            return 0

        info = monitor.get_process_info()
        if info is None or info.state != ProcessState.CRASHED:
            logger.info("supervised_process_exited", instance_id=request.instance_id)
            return 0
        failure = Result.fail(info.last_error or "process crashed", ErrorKind.CRASH)
        typer.echo(json.dumps(failure.to_response(
            instance_id=request.instance_id,
            exit_code=info.exit_code,
            restart_count=info.restart_count,
        ), indent=2, default=str))
        return 1
    finally:
        await registry.teardown()


@process_app.command("start")
def process_start(
    command: list[str] = typer.Argument(..., help="Command and arguments to supervise (use -- before flags)"),
    instance_id: str = INSTANCE_OPTION,
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory for the child"),
    env: Optional[list[str]] = typer.Option(None, "--env", "-e", help="Extra environment variable KEY=VALUE"),
    max_restarts: int = typer.Option(3, "--max-restarts", help="Automatic restarts after a crash"),
    restart_delay: float = typer.Option(1.0, "--restart-delay", help="Seconds to wait before restarting"),
    kill_timeout: float = typer.Option(10.0, "--kill-timeout", help="Seconds between SIGTERM and SIGKILL"),
    health_check_interval: float = typer.Option(
        0.0, "--health-check-interval", help="Seconds between silence checks (0 disables)"
    ),
    max_errors: int = typer.Option(1000, "--max-errors", help="Stored errors kept per instance"),
    retention_days: int = typer.Option(7, "--retention-days", help="Days to keep errors"),
    log_retention_hours: int = typer.Option(168, "--log-retention-hours", help="Hours to keep logs"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Supervise a command in the foreground until signalled or until it ends for good."""
    try:
        request = StartRequest(
            instance_id=instance_id,
            command=command[0],
            args=command[1:],
            cwd=cwd,
            env=_parse_env(env),
            monitoring=MonitoringOptions(max_restarts=max_restarts, restart_delay=restart_delay,
                                         kill_timeout=kill_timeout, health_check_interval=health_check_interval),
            error_store=ErrorStoreOptions(max_errors=max_errors, retention_days=retention_days),
            log_store=LogStoreOptions(retention_hours=log_retention_hours),
        )
    except ValidationError as exc:
        _emit(_invalid(exc), fmt)
        return
    code = _async_run(_supervise(request, fmt))
    if code:
        raise typer.Exit(code=code)


@process_app.command("stop")
def process_stop(
    instance_id: str = INSTANCE_OPTION,
    force: bool = typer.Option(False, "--force", help="Kill immediately instead of terminating gracefully"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Stop a supervised process."""
    response = _async_run(_with_control(lambda control: control.stop(instance_id, force=force)))
    _emit(response, fmt)


@process_app.command("status")
def process_status(
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help="Limit to one instance"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Show the state of supervised processes."""

    async def _status(control: ControlSurface) -> dict[str, Any]:
        return control.status(instance_id)

    _emit(_async_run(_with_control(_status)), fmt, table=_status_table)


# ── errors ───────────────────────────────────────────────────────────


@errors_app.command("list")
def errors_list(
    instance_id: str = INSTANCE_OPTION,
    category: Optional[list[ErrorCategory]] = typer.Option(None, "--category", "-c", help="Filter by category"),
    severity: Optional[list[ErrorSeverity]] = typer.Option(None, "--severity", "-s", help="Filter by severity"),
    since: Optional[dt.datetime] = typer.Option(None, "--since", help="Only errors seen at or after (UTC)"),
    until: Optional[dt.datetime] = typer.Option(None, "--until", help="Only errors seen at or before (UTC)"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum errors to return"),
    offset: int = typer.Option(0, "--offset", help="Errors to skip"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """List stored errors for an instance, most recent first."""
    try:
        error_filter = ErrorFilter(instance_id=instance_id, categories=category or None, severities=severity or None,
                                   since=since, until=until, limit=limit, offset=offset)
    except ValidationError as exc:
        _emit(_invalid(exc), fmt)
        return
    response = _async_run(_with_control(lambda control: control.list_errors(error_filter)))
    _emit(response, fmt, table=_errors_table, raw=_errors_raw)


@errors_app.command("stats")
def errors_stats(instance_id: str = INSTANCE_OPTION, fmt: OutputFormat = FORMAT_OPTION) -> None:
    """Show error counts by category and severity."""
    response = _async_run(_with_control(lambda control: control.error_stats(instance_id)))
    _emit(response, fmt, table=_summary_table)


@errors_app.command("clear")
def errors_clear(
    instance_id: str = INSTANCE_OPTION,
    confirm: bool = typer.Option(False, "--confirm", help="Required: confirm deletion"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Delete all stored errors for an instance."""
    if not confirm:
        _emit(_invalid("refusing to clear errors without --confirm"), fmt)
        return
    _emit(_async_run(_with_control(lambda control: control.clear_errors(instance_id))), fmt)


# ── logs ─────────────────────────────────────────────────────────────


@logs_app.command("list")
def logs_list(
    instance_id: str = INSTANCE_OPTION,
    level: Optional[list[LogLevel]] = typer.Option(None, "--level", "-l", help="Filter by level"),
    stream: Optional[list[LogStream]] = typer.Option(None, "--stream", help="Filter by stream"),
    since: Optional[dt.datetime] = typer.Option(None, "--since", help="Only logs at or after (UTC)"),
    until: Optional[dt.datetime] = typer.Option(None, "--until", help="Only logs at or before (UTC)"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum logs to return"),
    offset: int = typer.Option(0, "--offset", help="Logs to skip"),
    sort: SortOrder = typer.Option(SortOrder.DESC, "--sort", help="asc or desc by sequence"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """List stored logs with filters and pagination."""
    try:
        log_filter = LogFilter(instance_id=instance_id, levels=level or None, streams=stream or None,
                               since=since, until=until, limit=limit, offset=offset, sort_order=sort)
    except ValidationError as exc:
        _emit(_invalid(exc), fmt)
        return
    response = _async_run(_with_control(lambda control: control.list_logs(log_filter)))
    _emit(response, fmt, table=_logs_table, raw=_logs_raw)


@logs_app.command("since")
def logs_since(
    instance_id: str = INSTANCE_OPTION,
    last_sequence: int = typer.Option(0, "--last-sequence", "-s", help="Return logs after this sequence"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum logs to return"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Incremental tail: logs after a cursor, oldest first."""
    response = _async_run(_with_control(lambda control: control.logs_since(instance_id, last_sequence, limit)))
    _emit(response, fmt, table=_logs_table, raw=_logs_raw)


@logs_app.command("recent")
def logs_recent(
    instance_id: str = INSTANCE_OPTION,
    count: int = typer.Option(50, "--count", "-n", help="Number of recent lines"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Most recent logs, newest first."""
    response = _async_run(_with_control(lambda control: control.recent_logs(instance_id, count)))
    _emit(response, fmt, table=_logs_table, raw=_logs_raw)


@logs_app.command("all")
def logs_all(
    instance_id: str = INSTANCE_OPTION,
    reset: bool = typer.Option(True, "--reset/--no-reset", help="Drain the file (default) or only read it"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Return the raw log file; by default it is atomically reset afterwards."""

    async def _all(control: ControlSurface) -> dict[str, Any]:
        if reset:
            return control.drain_logs(instance_id)
        return control.read_raw_logs(instance_id)

    _emit(_async_run(_with_control(_all)), fmt, raw=lambda response: response["logs"])


@logs_app.command("stats")
def logs_stats(instance_id: str = INSTANCE_OPTION, fmt: OutputFormat = FORMAT_OPTION) -> None:
    """Show log counts by level and stream."""
    response = _async_run(_with_control(lambda control: control.log_stats(instance_id)))
    _emit(response, fmt, table=_log_stats_table)


@logs_app.command("clear")
def logs_clear(
    instance_id: str = INSTANCE_OPTION,
    confirm: bool = typer.Option(False, "--confirm", help="Required: confirm deletion"),
    fmt: OutputFormat = FORMAT_OPTION,
) -> None:
    """Delete all stored logs for an instance."""
    if not confirm:
        _emit(_invalid("refusing to clear logs without --confirm"), fmt)
        return
    _emit(_async_run(_with_control(lambda control: control.clear_logs(instance_id))), fmt)


if __name__ == "__main__":
    app()

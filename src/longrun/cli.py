"""longrun CLI - resilient execution orchestrator.

Main entry point for the longrun command.
"""

from __future__ import annotations

import json
import signal
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from . import __version__
from .config import LongrunConfig, get_config
from .control import (
    CONTROL_DIR,
    ControlChannel,
    EngineLock,
    OperatorAction,
    OperatorCommand,
    active_engine_pid,
)
from .engine import ExitCode, RunResult, apply_retry_override, build_engine
from .exceptions import (
    EngineBusy,
    LongrunError,
    RecoveryPointError,
    StateCorrupted,
    StateNotFound,
    TaskGraphError,
)
from .executors import SubprocessExecutor
from .health import HealthMonitor, render_report, sample_resources
from .models import RecoveryReason, Run, RunStatus, Severity, TaskStatus, new_run
from .recovery.points import RecoveryPointManager, render_recovery_report
from .state import FileStateStore
from .tasks import load_task_specs
from .utils.errors import (
    error_engine_busy,
    error_state_missing,
    error_task_not_found,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)
from .utils.log import setup_logging

console = Console()

STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.READY: "cyan",
    TaskStatus.IN_PROGRESS: "bold blue",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.BLOCKED: "yellow",
    TaskStatus.NEEDS_REVIEW: "bold red",
}

RUN_STYLES = {
    RunStatus.READY: "cyan",
    RunStatus.RUNNING: "green",
    RunStatus.PAUSED: "yellow",
    RunStatus.RECOVERING: "magenta",
    RunStatus.COMPLETED: "bold green",
    RunStatus.FAILED: "bold red",
}


def _state_dir(ctx: click.Context) -> Path:
    return ctx.obj["state_dir"]


def _config(ctx: click.Context) -> LongrunConfig:
    return ctx.obj["config"]


def _points(state_dir: Path, config: LongrunConfig) -> RecoveryPointManager:
    return RecoveryPointManager.from_config(FileStateStore(state_dir).reader(), state_dir, config)


def _control(state_dir: Path) -> ControlChannel:
    return ControlChannel(state_dir / CONTROL_DIR)


def _send(state_dir: Path, action: OperatorAction, task_id: str | None = None, note: str | None = None) -> None:
    _control(state_dir).send(OperatorCommand(action=action, task_id=task_id, note=note))


def _load_run(ctx: click.Context, store: FileStateStore) -> Run:
    """Load the run or exit with a friendly error."""
    try:
        return store.load()
    except StateNotFound:
        format_error(error_state_missing(str(store.state_dir)), console)
        ctx.exit(1)
    except StateCorrupted as e:
        handle_exception(console, e, "loading state", exit_code=ExitCode.STATE_CORRUPTED)


def _refuse_if_active(ctx: click.Context, state_dir: Path) -> None:
    pid = active_engine_pid(state_dir)
    if pid is not None:
        format_error(error_engine_busy(pid), console)
        ctx.exit(1)


def _print_result(result: RunResult) -> None:
    style = {
        ExitCode.COMPLETED: "green",
        ExitCode.PAUSED: "yellow",
        ExitCode.RECOVERING: "magenta",
    }.get(result.exit_code, "red")
    console.print()
    console.print(f"[{style}]{result.summary}[/{style}]")
    if result.unresolved:
        console.print(f"[dim]Unresolved: {', '.join(result.unresolved)}[/dim]")
    if result.exit_code == ExitCode.PAUSED:
        console.print("[dim]Use 'longrun resume' to continue[/dim]")
    elif result.exit_code in (ExitCode.FAILED, ExitCode.RECOVERING, ExitCode.STATE_CORRUPTED):
        console.print("[dim]Use 'longrun status', 'longrun retry <task>' or 'longrun recover'[/dim]")


def _start_engine(ctx: click.Context, specs=None, cwd: Path | None = None) -> None:
    """Run an engine in the foreground and exit with its exit code."""
    state_dir = _state_dir(ctx)
    config = _config(ctx)
    setup_logging(
        config.core.log_level,
        state_dir / config.core.log_file,
        debug=is_debug_mode(),
        max_bytes=config.core.log_max_bytes,
        backups=config.core.log_backups,
    )

    try:
        with EngineLock(state_dir):
            engine = build_engine(state_dir, SubprocessExecutor(cwd), config, console=console)

            def _on_signal(signum, frame) -> None:
                engine.cancel(f"received {signal.Signals(signum).name}")

            previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
            try:
                result = engine.run(specs)
            finally:
                for sig, handler in previous.items():
                    signal.signal(sig, handler)
    except StateNotFound:
        format_error(error_state_missing(str(state_dir)), console)
        ctx.exit(1)
    except EngineBusy as e:
        format_error(error_engine_busy(e.pid), console)
        ctx.exit(1)

    _print_result(result)
    ctx.exit(int(result.exit_code))


@click.group(invoke_without_command=True)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="State directory (default: core.state_dir)",
)
@click.option("--version", "-v", is_flag=True, help="Show version and exit")
@click.option("--debug", "-d", is_flag=True, help="Enable debug mode with verbose error output")
@click.pass_context
def main(ctx: click.Context, state_dir: Path | None, version: bool, debug: bool) -> None:
    """longrun - resilient execution orchestrator.

    Runs a queue of long-running tasks with bounded retries, circuit
    breakers, recovery points and health monitoring.

    Use --debug for verbose error output with stack traces.
    """
    if debug:
        set_debug_mode(True)

    if version:
        console.print(f"longrun version {__version__}")
        return

    config = get_config()
    state_dir = state_dir or config.state_path
    ctx.obj = {"config": config, "state_dir": state_dir}

    log_file = state_dir / config.core.log_file if state_dir.exists() else None
    setup_logging(
        config.core.log_level,
        log_file,
        debug=is_debug_mode(),
        max_bytes=config.core.log_max_bytes,
        backups=config.core.log_backups,
    )

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Run Lifecycle
# =============================================================================


@main.command()
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--force", "-f", is_flag=True, help="Replace an existing run")
@click.pass_context
def init(ctx: click.Context, tasks_file: Path, force: bool) -> None:
    """Create a new run from a task definitions file.

    \\b
    Examples:
        longrun init tasks.toml
        longrun init tasks.json --force
    """
    state_dir = _state_dir(ctx)
    store = FileStateStore(state_dir)
    _refuse_if_active(ctx, state_dir)

    if store.exists() and not force:
        console.print(f"[yellow]A run already exists in {state_dir}[/yellow]")
        console.print("[dim]Use --force to replace it or 'longrun resume' to continue it[/dim]")
        ctx.exit(1)

    try:
        specs = load_task_specs(tasks_file)
    except TaskGraphError as e:
        handle_exception(console, e, "loading tasks")

    run = new_run(specs)
    with EngineLock(state_dir):
        store.save(run)
        _points(state_dir, _config(ctx)).create(RecoveryReason.MANUAL, note="initial state")

    console.print(f"[green]✓ Created run {run.run_id} with {run.total_tasks} tasks[/green]")
    console.print(f"[dim]State: {store.primary_path}[/dim]")
    console.print("[dim]Start it with 'longrun run'[/dim]")


@main.command("run")
@click.argument(
    "tasks_file",
    required=False,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--await-operator/--no-await-operator",
    default=None,
    help="Wait for an operator decision when a task needs review",
)
@click.option(
    "--cwd",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Working directory for task commands",
)
@click.pass_context
def run_cmd(ctx: click.Context, tasks_file: Path | None, await_operator: bool | None, cwd: Path | None) -> None:
    """Run tasks in the foreground until the run finishes or stops.

    With TASKS_FILE a new run is started when the state directory holds
    none; an existing run is always continued from its saved state.

    \\b
    Exit codes:
        0 completed, 1 failed, 2 state corrupted,
        3 aborted, 4 paused, 5 recovering

    \\b
    Examples:
        longrun run tasks.toml
        longrun run --await-operator
    """
    specs = None
    if tasks_file is not None:
        try:
            specs = load_task_specs(tasks_file)
        except TaskGraphError as e:
            handle_exception(console, e, "loading tasks")
        if FileStateStore(_state_dir(ctx)).exists():
            console.print(f"[dim]Continuing the existing run; {tasks_file} is ignored[/dim]")

    if await_operator is not None:
        _config(ctx).engine.await_operator = await_operator

    _start_engine(ctx, specs, cwd)


@main.command("resume")
@click.option(
    "--cwd",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Working directory for task commands",
)
@click.pass_context
def resume_cmd(ctx: click.Context, cwd: Path | None) -> None:
    """Resume the run.

    Answers a pending operator decision when an engine is active,
    otherwise starts an engine on the saved state.

    \\b
    Examples:
        longrun resume
    """
    state_dir = _state_dir(ctx)
    if active_engine_pid(state_dir) is not None:
        _send(state_dir, OperatorAction.RESUME)
        console.print("[green]▶️  Resume sent to the running engine[/green]")
        return
    _start_engine(ctx, None, cwd)


@main.command("pause")
@click.option("--reason", "-r", type=str, help="Reason recorded in the run")
@click.pass_context
def pause_cmd(ctx: click.Context, reason: str | None) -> None:
    """Pause the running engine.

    The engine stops at its next suspension point, creates a manual
    recovery point and exits with code 4.

    \\b
    Examples:
        longrun pause
    """
    state_dir = _state_dir(ctx)
    if active_engine_pid(state_dir) is None:
        console.print("[yellow]No engine is running[/yellow]")
        console.print("[dim]Start one with 'longrun run'[/dim]")
        return
    _send(state_dir, OperatorAction.PAUSE, note=reason)
    console.print("[green]⏸️  Pause requested[/green]")


@main.command("abort")
@click.option("--reason", "-r", type=str, default="aborted by operator", help="Reason recorded in the run")
@click.pass_context
def abort_cmd(ctx: click.Context, reason: str) -> None:
    """Abort the run.

    \\b
    Examples:
        longrun abort --reason "upstream data is wrong"
    """
    state_dir = _state_dir(ctx)
    if active_engine_pid(state_dir) is not None:
        _send(state_dir, OperatorAction.ABORT, note=reason)
        console.print("[yellow]Abort sent to the running engine[/yellow]")
        return

    store = FileStateStore(state_dir)
    run = _load_run(ctx, store)
    if run.is_finished:
        console.print(f"[yellow]Run is already {run.status.value}[/yellow]")
        return

    with EngineLock(state_dir):
        _points(state_dir, _config(ctx)).create(
            RecoveryReason.MANUAL, run.current_task, note=f"aborted: {reason}"
        )
        run.status = RunStatus.FAILED
        run.status_reason = reason
        store.save(run)

    console.print(f"[red]Run {run.run_id} aborted: {reason}[/red]")
    ctx.exit(int(ExitCode.ABORTED))


@main.command("retry")
@click.argument("task_id")
@click.pass_context
def retry_cmd(ctx: click.Context, task_id: str) -> None:
    """Reset a task's attempt counter and queue it again.

    The override is recorded in the task's attempt history. The global
    retry counter is not reset.

    \\b
    Examples:
        longrun retry fetch-data
    """
    state_dir = _state_dir(ctx)
    if active_engine_pid(state_dir) is not None:
        _send(state_dir, OperatorAction.RETRY, task_id=task_id)
        console.print(f"[green]✓ Retry of {task_id} sent to the running engine[/green]")
        return

    store = FileStateStore(state_dir)
    run = _load_run(ctx, store)
    try:
        task = apply_retry_override(run, task_id, datetime.now())
    except KeyError:
        format_error(error_task_not_found(task_id), console)
        ctx.exit(1)
    except ValueError as e:
        console.print(f"[yellow]{e}[/yellow]")
        ctx.exit(1)

    with EngineLock(state_dir):
        store.save(run)

    console.print(f"[green]✓ Task {task.id} queued for retry[/green]")
    console.print("[dim]Use 'longrun resume' to continue the run[/dim]")


# =============================================================================
# Status
# =============================================================================


def _task_table(run: Run) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Operation", style="dim")
    table.add_column("Last error")

    for task in sorted(run.tasks, key=lambda t: t.position):
        style = STATUS_STYLES.get(task.status, "")
        marker = " ◀" if task.id == run.current_task else ""
        error = ""
        if task.last_error is not None:
            error = f"{task.last_error.kind} ({task.last_error.error_class.value})"
        table.add_row(
            str(task.position + 1),
            f"{task.id}{marker}",
            f"[{style}]{task.status.value}[/{style}]",
            str(task.attempt_count),
            task.operation,
            error,
        )
    return table


@main.command("status")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status_cmd(ctx: click.Context, as_json: bool) -> None:
    """Show run progress, retry statistics and recovery points.

    \\b
    Examples:
        longrun status
        longrun status --json
    """
    state_dir = _state_dir(ctx)
    config = _config(ctx)
    run = _load_run(ctx, FileStateStore(state_dir))

    if as_json:
        click.echo(run.model_dump_json(indent=2))
        return

    style = RUN_STYLES.get(run.status, "")
    console.print(f"[bold]Run {run.run_id}:[/bold] [{style}]{run.status.value}[/{style}]")
    if run.status_reason:
        console.print(f"[dim]{run.status_reason}[/dim]")
    console.print(
        f"[dim]Started {run.started_at:%Y-%m-%d %H:%M:%S}, "
        f"updated {run.updated_at:%Y-%m-%d %H:%M:%S}[/dim]"
    )
    pid = active_engine_pid(state_dir)
    if pid is not None:
        console.print(f"[dim]Engine PID: {pid}[/dim]")
    console.print()

    console.print(_task_table(run))
    console.print()

    console.print("[bold]Progress:[/bold]")
    console.print(f"  Completed: {run.completed_count}/{run.total_tasks} ({run.progress:.0f}%)")
    console.print(f"  Failed:    {run.failed_count}")
    console.print(f"  Blocked:   {run.blocked_count}")
    console.print()

    console.print("[bold]Retries:[/bold]")
    console.print(f"  Global:    {run.global_retries}/{config.retry.max_total_retries}")
    console.print(f"  Per task:  max {config.retry.max_retries_per_task} attempts")
    retried = [t for t in run.tasks if t.retries]
    for task in retried:
        console.print(f"  [dim]{task.id}: {task.retries} retr{'y' if task.retries == 1 else 'ies'}[/dim]")

    open_circuits = [c for c in run.circuits.values() if c.status.value != "closed"]
    if open_circuits:
        console.print()
        console.print("[bold]Circuits:[/bold]")
        for circuit in open_circuits:
            console.print(
                f"  [yellow]{circuit.operation}[/yellow]: {circuit.status.value} "
                f"after {circuit.consecutive_failures} failure(s)"
            )

    if run.last_recovery:
        console.print()
        console.print(f"[dim]Last recovery: {run.last_recovery:%Y-%m-%d %H:%M:%S}[/dim]")

    points = _points(state_dir, config).list()[:3]
    if points:
        console.print()
        console.print("[bold]Latest recovery points:[/bold]")
        for meta in points:
            console.print(f"  {meta.point_id} [dim]{meta.reason.value} {meta.task_id or ''}[/dim]")

    pending = _control(state_dir).pending()
    if pending:
        console.print()
        console.print(f"[yellow]{len(pending)} operator command(s) waiting for the engine[/yellow]")


# =============================================================================
# Recovery Points
# =============================================================================


@main.command("points")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def points_cmd(ctx: click.Context, as_json: bool) -> None:
    """List recovery points, newest first.

    \\b
    Examples:
        longrun points
    """
    manager = _points(_state_dir(ctx), _config(ctx))
    points = manager.list()

    if as_json:
        click.echo(json.dumps([p.model_dump(mode="json") for p in points], indent=2))
        return

    if not points:
        console.print("[yellow]No recovery points[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Reason")
    table.add_column("Created")
    table.add_column("Task")
    table.add_column("Progress", justify="right")
    table.add_column("Valid")
    table.add_column("Note", style="dim")

    for meta in points:
        valid = "[green]yes[/green]" if manager.is_valid(meta.point_id) else "[red]no[/red]"
        table.add_row(
            meta.point_id,
            meta.reason.value,
            f"{meta.created_at:%Y-%m-%d %H:%M:%S}",
            meta.task_id or "-",
            f"{meta.completed_count}/{meta.total_tasks}",
            valid,
            meta.note or "",
        )
    console.print(table)


@main.command("checkpoint")
@click.option("--note", "-n", type=str, help="Note stored with the point")
@click.pass_context
def checkpoint_cmd(ctx: click.Context, note: str | None) -> None:
    """Create a manual recovery point.

    \\b
    Examples:
        longrun checkpoint --note "before schema change"
    """
    state_dir = _state_dir(ctx)
    if active_engine_pid(state_dir) is not None:
        _send(state_dir, OperatorAction.SNAPSHOT, note=note)
        console.print("[green]✓ Snapshot requested from the running engine[/green]")
        return

    try:
        point_id = _points(state_dir, _config(ctx)).create(RecoveryReason.MANUAL, note=note)
    except RecoveryPointError as e:
        handle_exception(console, e, "creating recovery point")
    console.print(f"[green]✓ Created recovery point {point_id}[/green]")


@main.command("prune")
@click.pass_context
def prune_cmd(ctx: click.Context) -> None:
    """Remove old recovery points.

    Keeps the newest recovery.keep_last points and recent on-error points.
    """
    state_dir = _state_dir(ctx)
    _refuse_if_active(ctx, state_dir)
    removed = _points(state_dir, _config(ctx)).prune()
    if removed:
        console.print(f"[green]✓ Removed {len(removed)} recovery point(s)[/green]")
    else:
        console.print("[dim]Nothing to prune[/dim]")


@main.command("recover")
@click.option("--auto", "mode", flag_value="auto", help="Restore the newest valid point (default)")
@click.option("--interactive", "-i", "mode", flag_value="interactive", help="Choose a point")
@click.option("--point", "-p", "point_id", type=str, help="Restore a specific point")
@click.option(
    "--report",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write a markdown recovery report",
)
@click.pass_context
def recover_cmd(ctx: click.Context, mode: str | None, point_id: str | None, report: Path | None) -> None:
    """Restore the run from a recovery point.

    The current state, when readable, is saved as a manual point first.
    Completed tasks are never reset; interrupted tasks become ready.

    \\b
    Examples:
        longrun recover --auto
        longrun recover --point rp_20250101T120000000000
        longrun recover --interactive
    """
    state_dir = _state_dir(ctx)
    _refuse_if_active(ctx, state_dir)
    store = FileStateStore(state_dir)
    manager = _points(state_dir, _config(ctx))

    if point_id is None:
        if mode == "interactive":
            points = manager.list()
            if not points:
                console.print("[yellow]No recovery points[/yellow]")
                ctx.exit(1)
            ctx.invoke(points_cmd)
            latest = manager.latest_valid()
            point_id = click.prompt(
                "Recovery point",
                type=click.Choice([p.point_id for p in points]),
                default=latest.point_id if latest else points[0].point_id,
                show_choices=False,
            )
        else:
            latest = manager.latest_valid()
            if latest is None:
                console.print("[red]No valid recovery point available[/red]")
                ctx.exit(1)
            point_id = latest.point_id

    try:
        meta = manager.get(point_id)
        restored = manager.restore(point_id)
    except RecoveryPointError as e:
        handle_exception(console, e, "restoring recovery point")

    before = None
    try:
        before = store.load()
    except StateNotFound:
        console.print("[dim]No current state to preserve[/dim]")
    except StateCorrupted as e:
        console.print(f"[yellow]Current state is unreadable and will be replaced: {e}[/yellow]")

    with EngineLock(state_dir):
        if before is not None:
            manager.create(RecoveryReason.MANUAL, before.current_task, note="before restore")
        if restored.status in (RunStatus.RUNNING, RunStatus.RECOVERING):
            restored.status = RunStatus.PAUSED
            restored.status_reason = f"restored from {point_id}"
        store.save(restored)

    text = render_recovery_report(before, restored, meta)
    console.print(Markdown(text))
    if report is not None:
        report.write_text(text, encoding="utf-8")
        console.print(f"[dim]Report written to {report}[/dim]")
    console.print("[dim]Use 'longrun resume' to continue the run[/dim]")


# =============================================================================
# Health
# =============================================================================


@main.command("health")
@click.option(
    "--report",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write a markdown health report",
)
@click.pass_context
def health_cmd(ctx: click.Context, report: Path | None) -> None:
    """Run the health checks once.

    Exits with code 1 when a check is critical.
    """
    state_dir = _state_dir(ctx)
    config = _config(ctx)
    store = FileStateStore(state_dir)
    disk_path = state_dir if state_dir.exists() else Path.cwd()
    monitor = HealthMonitor(
        store.reader(),
        config.health,
        default_timeout=config.engine.task_timeout,
        probe=lambda: sample_resources(disk_path, cpu_interval=0.5),
    )
    events = monitor.check_once()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Severity")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Message")
    for event in events:
        style = {Severity.CRITICAL: "bold red", Severity.WARNING: "yellow"}.get(event.severity, "green")
        table.add_row(
            f"[{style}]{event.severity.value}[/{style}]",
            event.metric,
            f"{event.value:.1f}",
            f"{event.threshold:.1f}",
            event.message,
        )
    console.print(table)

    if report is not None:
        try:
            run = store.load()
        except LongrunError:
            run = None
        report.write_text(render_report(run, events), encoding="utf-8")
        console.print(f"[dim]Report written to {report}[/dim]")

    if any(event.severity == Severity.CRITICAL for event in events):
        ctx.exit(1)


# =============================================================================
# Config Commands
# =============================================================================


@main.group()
def config() -> None:
    """View and manage longrun configuration.

    longrun uses a single configuration file at ~/.longrun/config.toml
    (or $LONGRUN_CONFIG).

    Configuration priority:
    1. Environment variables (highest)
    2. Config file
    3. Defaults (lowest)
    """
    pass


@config.command("show")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.option("--section", type=str, help="Show only a specific section")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool, section: str | None) -> None:
    """Show current configuration.

    \\b
    Examples:
        longrun config show
        longrun config show --section retry
    """
    from .config import format_config_for_display

    cfg = _config(ctx)

    if section and section not in cfg.SECTIONS:
        console.print(f"[red]Unknown section: {section}[/red]")
        console.print(f"[dim]Available: {', '.join(cfg.SECTIONS)}[/dim]")
        return

    if as_json:
        data = cfg.to_dict()
        if section:
            data = {section: data[section]}
        click.echo(json.dumps(data, indent=2, default=str))
        return

    if section:
        console.print(f"[bold][{section}][/bold]")
        for k, v in getattr(cfg, section).to_dict().items():
            console.print(f"  {k} = {v}")
        return

    console.print(format_config_for_display(cfg), markup=False)


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx: click.Context, key: str) -> None:
    """Get a specific configuration value.

    \\b
    Examples:
        longrun config get retry.max_total_retries
    """
    value = _config(ctx).get(key)

    if value is None:
        console.print(f"[yellow]Key not found: {key}[/yellow]")
        console.print("[dim]Use 'longrun config keys' to list available keys[/dim]")
        return

    console.print(f"{key} = {value}", markup=False)


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a configuration value and save it.

    \\b
    Examples:
        longrun config set retry.base_delay 5
        longrun config set engine.await_operator true
        longrun config set classification.kinds.QUOTA_EXCEEDED resource
    """
    from .config import save_config

    cfg = _config(ctx)

    parsed_value: str | int | float | bool
    if value.lower() in ("true", "yes"):
        parsed_value = True
    elif value.lower() in ("false", "no"):
        parsed_value = False
    elif value.isdigit():
        parsed_value = int(value)
    elif value.replace(".", "", 1).isdigit():
        parsed_value = float(value)
    else:
        parsed_value = value

    if cfg.set(key, parsed_value):
        if save_config(cfg):
            console.print(f"[green]✓ Set {key} = {parsed_value}[/green]")
        else:
            console.print("[red]Failed to save config[/red]")
    else:
        console.print(f"[red]Failed to set {key}[/red]")
        console.print("[dim]Use 'longrun config keys' to list available keys[/dim]")


@config.command("keys")
@click.option("--section", type=str, help="Filter by section")
def config_keys(section: str | None) -> None:
    """List all available configuration keys."""
    from .config import list_config_keys

    keys = list_config_keys()

    if section:
        keys = [k for k in keys if k.startswith(f"{section}.")]
        if not keys:
            console.print(f"[yellow]No keys found in section: {section}[/yellow]")
            return

    current_section = None
    for key in keys:
        parts = key.split(".")
        if parts[0] != current_section:
            current_section = parts[0]
            console.print(f"[cyan]\\[{current_section}][/cyan]")
        console.print(f"  {key}")


@config.command("path")
def config_path_cmd() -> None:
    """Show configuration file path."""
    from .config import get_config_path

    click.echo(str(get_config_path()))


if __name__ == "__main__":
    main()

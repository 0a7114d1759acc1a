"""Taskwarden CLI - task execution resilience supervisor.

Main entry point for the taskwarden command.
"""

from __future__ import annotations

import functools
import json
import logging
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import TaskwardenConfig, format_config_for_display, load_config
from .health.models import HealthCheckResult, Severity
from .recovery.actions import (
    RecoveryOutcome,
    auto_recovery,
    continue_task,
    smart_state_recovery,
    verify_task_artifacts,
)
from .retry.context import build_continue_instruction
from .retry.scheduler import RetryOutcome
from .state import (
    ExecutionState,
    TaskStatus,
    complete_task,
    fail_task,
    start_task,
)
from .supervisor import Runtime, Supervisor
from .utils.errors import TaskwardenError, handle_exception, set_debug_mode
from .utils.timing import Ticker

console = Console()

F = TypeVar("F", bound=Callable[..., Any])

_SEVERITY_STYLES = {
    Severity.LOW: "dim",
    Severity.MEDIUM: "yellow",
    Severity.HIGH: "red",
    Severity.CRITICAL: "bold red",
}

_STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.BLOCKED: "yellow",
}

# Handlers installed by setup_logging, replaced on each invocation
_log_handlers: list[logging.Handler] = []


def setup_logging(config: TaskwardenConfig) -> None:
    """Log to the console via rich and to the workspace log file."""
    package_logger = logging.getLogger("taskwarden")
    for handler in _log_handlers:
        package_logger.removeHandler(handler)
        handler.close()
    _log_handlers.clear()

    level = getattr(logging, config.ui.log_level.upper(), logging.INFO)
    package_logger.setLevel(level)
    package_logger.propagate = False

    console_handler = RichHandler(console=Console(stderr=True), show_path=False)
    console_handler.setLevel(max(level, logging.WARNING))
    _log_handlers.append(console_handler)

    log_path = config.workspace.log_path
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
        file_handler.setLevel(level)
        _log_handlers.append(file_handler)
    except OSError as e:
        console.print(f"[yellow]Warning:[/yellow] cannot write log file {log_path}: {e}")

    for handler in _log_handlers:
        package_logger.addHandler(handler)


def handle_errors(context: str) -> Callable[[F], F]:
    """Render supervisor and file errors consistently and exit with status 1."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except (TaskwardenError, OSError) as e:
                handle_exception(console, e, context)

        return wrapper  # type: ignore[return-value]

    return decorator


def get_runtime(ctx: click.Context) -> Runtime:
    """Build (once per invocation) the components for the workspace."""
    obj = ctx.ensure_object(dict)
    if "runtime" not in obj:
        obj["runtime"] = Runtime.from_config(obj["config"])
    return obj["runtime"]


def _install_stop_signal(runtime: Runtime) -> None:
    def _stop(signum: int, frame: Any) -> None:
        runtime.stop_event.set()

    try:
        signal.signal(signal.SIGTERM, _stop)
    except ValueError:
        # Not the main thread
        pass


@click.group()
@click.version_option(__version__, "--version", "-v", prog_name="taskwarden")
@click.option("--debug", "-d", is_flag=True, help="Enable debug mode with verbose error output")
@click.option(
    "--root",
    "-r",
    type=click.Path(file_okay=False, path_type=Path),
    help="Workspace root (default: [workspace].root or $TASKWARDEN_ROOT)",
)
@click.pass_context
def main(ctx: click.Context, debug: bool, root: Path | None) -> None:
    """Taskwarden - keep long-running agent pipelines alive.

    Tracks execution state, retries transient failures with backoff,
    snapshots recovery points and watches pipeline health.

    Use --debug for verbose error output with stack traces.
    """
    if debug:
        set_debug_mode(True)

    config = load_config()
    if root is not None:
        config.workspace.root = str(root)
    if debug:
        config.ui.log_level = "debug"

    ctx.ensure_object(dict)["config"] = config
    setup_logging(config)


# =============================================================================
# Rendering helpers
# =============================================================================


def _print_state(state: ExecutionState) -> None:
    console.print(f"[bold cyan]Pipeline:[/bold cyan] {state.status.value}")
    console.print(
        f"Progress: {state.progress_percent}% "
        f"({state.completed_tasks}/{state.total_tasks} completed, {state.failed_tasks} failed)"
    )
    console.print(f"Current task: {state.current_task_id or '-'}")
    console.print(f"Retries: {state.retry_info.total_retries}")
    if state.started_at:
        console.print(f"[dim]Started: {state.started_at.strftime('%Y-%m-%d %H:%M:%S')}[/dim]")
    console.print(f"[dim]Updated: {state.last_updated_at.strftime('%Y-%m-%d %H:%M:%S')}[/dim]")

    if not state.tasks:
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Started")
    for task in state.tasks.values():
        style = _STATUS_STYLES.get(task.status, "")
        table.add_row(
            escape(task.id),
            f"[{style}]{task.status.value}[/{style}]" if style else task.status.value,
            str(state.retry_info.for_task(task.id)),
            task.started_at.strftime("%H:%M:%S") if task.started_at else "-",
        )
    console.print()
    console.print(table)


def _print_findings(result: HealthCheckResult) -> None:
    if result.healthy:
        console.print("[green]✓ No anomalies detected[/green]")
        return

    console.print(f"[bold]Findings ({len(result.findings)})[/bold]")
    for finding in result.findings:
        style = _SEVERITY_STYLES[finding.severity]
        task = escape(f" [{finding.task_id}]") if finding.task_id else ""
        console.print(
            f"  [{style}]{finding.severity.value.upper():8}[/{style}] "
            f"{finding.kind.value}{task}: {escape(finding.message)}",
            highlight=False,
        )


def _print_outcome(outcome: RecoveryOutcome) -> None:
    if outcome.steps:
        for step in outcome.steps:
            console.print(f"  [green]•[/green] {escape(step)}")
    else:
        console.print("  [dim]No changes were needed[/dim]")
    if outcome.report_path:
        console.print(f"[dim]Report: {outcome.report_path}[/dim]")
    if outcome.instruction:
        console.print()
        console.print("[bold]Next step for the agent:[/bold]")
        console.print(outcome.instruction, markup=False)


def _unhealthy(result: HealthCheckResult) -> bool:
    worst = result.worst_severity
    return worst is not None and worst.rank >= Severity.HIGH.rank


# =============================================================================
# State Commands
# =============================================================================


@main.group()
def state() -> None:
    """Create and inspect the execution state document."""
    pass


@state.command("init")
@click.argument("task_ids", nargs=-1, required=True)
@click.option(
    "--artifact",
    "-a",
    "artifacts",
    multiple=True,
    metavar="TASK=PATH",
    help="Expected artifact of a task (repeatable)",
)
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing state document")
@click.pass_context
@handle_errors("state init")
def state_init(ctx: click.Context, task_ids: tuple[str, ...], artifacts: tuple[str, ...], force: bool) -> None:
    """Create a fresh execution state for TASK_IDS.

    \\b
    Examples:
        taskwarden state init task-1 task-2 task-3
        taskwarden state init build test -a build=dist/app.tar.gz
    """
    expected: dict[str, list[str]] = {}
    for item in artifacts:
        task_id, sep, path = item.partition("=")
        if not sep or not path:
            raise click.BadParameter(f"expected TASK=PATH, got '{item}'", param_hint="--artifact")
        expected.setdefault(task_id, []).append(path)

    runtime = get_runtime(ctx)
    state = runtime.store.initialize(list(task_ids), expected, force=force)
    console.print(f"[green]✓ Initialized {state.total_tasks} task(s)[/green]")
    console.print(f"[dim]{runtime.store.path}[/dim]")


@state.command("show")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors("state show")
def state_show(ctx: click.Context, as_json: bool) -> None:
    """Show the execution state."""
    state = get_runtime(ctx).store.read()
    if as_json:
        click.echo(state.model_dump_json(indent=2))
        return
    _print_state(state)


# =============================================================================
# Task Commands
# =============================================================================


@main.group()
def task() -> None:
    """Record task lifecycle events."""
    pass


def _checkpoint(runtime: Runtime, task_id: str, reason: str) -> None:
    if runtime.config.recovery.checkpoint_on_task_events:
        point_id = runtime.points.create(task_id, reason)
        runtime.points.prune()
        console.print(f"[dim]Recovery point {point_id}[/dim]")


@task.command("start")
@click.argument("task_id")
@click.pass_context
@handle_errors("task start")
def task_start(ctx: click.Context, task_id: str) -> None:
    """Mark TASK_ID as in progress and make it the current task."""
    runtime = get_runtime(ctx)
    runtime.store.update(lambda s: start_task(s, task_id))
    _checkpoint(runtime, task_id, "task_start")
    console.print(f"[cyan]▶ {task_id} started[/cyan]")


@task.command("complete")
@click.argument("task_id")
@click.pass_context
@handle_errors("task complete")
def task_complete(ctx: click.Context, task_id: str) -> None:
    """Mark TASK_ID as completed."""
    runtime = get_runtime(ctx)
    state = runtime.store.update(lambda s: complete_task(s, task_id))
    _checkpoint(runtime, task_id, "task_complete")
    console.print(f"[green]✓ {task_id} completed[/green] ({state.progress_percent}%)")


@task.command("fail")
@click.argument("task_id")
@click.option("--error", "-e", "error_message", default="", help="Failure text from the agent")
@click.option("--retry", is_flag=True, help="Hand the failure to the retry scheduler")
@click.pass_context
@handle_errors("task fail")
def task_fail(ctx: click.Context, task_id: str, error_message: str, retry: bool) -> None:
    """Mark TASK_ID as failed.

    \\b
    Examples:
        taskwarden task fail task-2 -e "429 Too Many Requests"
        taskwarden task fail task-2 -e "connection reset" --retry
    """
    runtime = get_runtime(ctx)
    runtime.store.update(lambda s: fail_task(s, task_id))
    console.print(f"[red]✗ {task_id} failed[/red]")

    if retry:
        _run_retry(runtime, task_id, error_message)


# =============================================================================
# Retry Commands
# =============================================================================


@main.group()
def retry() -> None:
    """Automatic and manual retries."""
    pass


def _run_retry(runtime: Runtime, task_id: str, error_message: str) -> None:
    _install_stop_signal(runtime)
    try:
        outcome = runtime.scheduler.handle_failure(task_id, error_message)
    except KeyboardInterrupt:
        runtime.stop_event.set()
        console.print("[yellow]Retry interrupted[/yellow]")
        sys.exit(1)

    if outcome == RetryOutcome.RETRIED_SUCCESS:
        console.print(f"[green]✓ Retry of {task_id} succeeded[/green]")
        return
    if outcome == RetryOutcome.RETRIED_FAILURE:
        console.print(f"[red]✗ Retry of {task_id} failed[/red]")
    else:
        console.print(f"[red]✗ Retry of {task_id} refused[/red]")
        console.print(f"[dim]See {runtime.config.workspace.alert_history} for manual options[/dim]")
    sys.exit(1)


@retry.command("handle")
@click.argument("task_id")
@click.argument("error_message")
@click.pass_context
@handle_errors("retry")
def retry_handle(ctx: click.Context, task_id: str, error_message: str) -> None:
    """Classify ERROR_MESSAGE for TASK_ID and retry if allowed.

    \\b
    Examples:
        taskwarden retry handle task-2 "API rate limit exceeded"
    """
    _run_retry(get_runtime(ctx), task_id, error_message)


@retry.command("run")
@click.argument("task_id")
@click.pass_context
@handle_errors("manual retry")
def retry_run(ctx: click.Context, task_id: str) -> None:
    """Re-run TASK_ID now, outside the automatic retry budget."""
    result = get_runtime(ctx).scheduler.manual_retry(task_id)
    if result is None:
        console.print("[green]Pipeline already completed; nothing to retry[/green]")
        return
    if result.success:
        console.print(f"[green]✓ {task_id} re-run succeeded[/green]")
        return
    console.print(f"[red]✗ {task_id} re-run failed:[/red] {escape(result.error_message)}")
    sys.exit(1)


@retry.command("monitor")
@click.option("--interval", "-i", type=float, default=30.0, help="Seconds between scans (default: 30)")
@click.pass_context
@handle_errors("retry monitor")
def retry_monitor(ctx: click.Context, interval: float) -> None:
    """Watch for failed tasks and retry them automatically."""
    runtime = get_runtime(ctx)
    _install_stop_signal(runtime)
    console.print(f"[cyan]Watching for failed tasks every {interval:.0f}s (Ctrl+C to stop)[/cyan]")
    try:
        runtime.scheduler.watch(interval)
    except KeyboardInterrupt:
        runtime.stop_event.set()
    console.print("[dim]Stopped[/dim]")


@retry.command("stats")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors("retry stats")
def retry_stats(ctx: click.Context, as_json: bool) -> None:
    """Show retry counters and recent recovery points."""
    stats = get_runtime(ctx).scheduler.stats()
    if as_json:
        click.echo(json.dumps(stats.to_dict(), indent=2))
        return

    console.print(
        f"[bold]Total retries:[/bold] {stats.total_retries}/{stats.max_total_retries} "
        f"({stats.remaining_total} remaining)"
    )
    console.print(f"[bold]Per-task ceiling:[/bold] {stats.max_retry_per_task}")
    for task_id, count in sorted(stats.per_task_retries.items()):
        console.print(f"  {task_id}: {count}")

    if stats.recent_points:
        console.print()
        console.print("[bold]Recent recovery points[/bold]")
        for point in stats.recent_points:
            console.print(f"  {point.id}  [dim]{point.task_id or '-'}  {point.reason}[/dim]")


@retry.command("prune")
@click.option("--keep", "-k", type=int, default=None, help="Points to keep (default: [recovery].max_points)")
@click.pass_context
@handle_errors("prune")
def retry_prune(ctx: click.Context, keep: int | None) -> None:
    """Delete the oldest recovery points beyond the retention cap."""
    removed = get_runtime(ctx).points.prune(keep)
    console.print(f"[green]✓ Removed {removed} recovery point(s)[/green]")


# =============================================================================
# Health Commands
# =============================================================================


@main.group()
def health() -> None:
    """Pipeline health checks."""
    pass


@health.command("check")
@click.option("--no-network", is_flag=True, help="Skip connectivity probes")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors("health check")
def health_check(ctx: click.Context, no_network: bool, as_json: bool) -> None:
    """Run all health checks once.

    Exits with status 1 when a high or critical finding is present.
    """
    monitor = get_runtime(ctx).monitor
    monitor.check_connectivity = not no_network
    result = monitor.check()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_findings(result)

    if _unhealthy(result):
        sys.exit(1)


@health.command("monitor")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between checks")
@click.option("--no-network", is_flag=True, help="Skip connectivity probes")
@click.pass_context
@handle_errors("health monitor")
def health_monitor(ctx: click.Context, interval: float | None, no_network: bool) -> None:
    """Run health checks periodically (findings are recorded, not retried)."""
    runtime = get_runtime(ctx)
    monitor = runtime.monitor
    monitor.check_connectivity = not no_network
    if interval is not None:
        monitor.interval = interval

    _install_stop_signal(runtime)
    console.print(f"[cyan]Health monitor every {monitor.interval:.0f}s (Ctrl+C to stop)[/cyan]")
    try:
        monitor.run(runtime.stop_event)
    except KeyboardInterrupt:
        runtime.stop_event.set()
    console.print("[dim]Stopped[/dim]")


@health.command("report")
@click.option("--no-network", is_flag=True, help="Skip connectivity probes")
@click.pass_context
@handle_errors("health report")
def health_report(ctx: click.Context, no_network: bool) -> None:
    """Run a health check and write a timestamped report."""
    runtime = get_runtime(ctx)
    monitor = runtime.monitor
    monitor.check_connectivity = not no_network
    result = monitor.check()
    path = runtime.reporter.write_health_report(
        result, monitor.last_system, monitor.last_connectivity
    )
    _print_findings(result)
    console.print(f"[dim]Report: {path}[/dim]")


# =============================================================================
# Recovery Commands
# =============================================================================


@main.group()
def recover() -> None:
    """Manual recovery: repair state, restore points, continue tasks."""
    pass


@recover.command("smart")
@click.pass_context
@handle_errors("smart recovery")
def recover_smart(ctx: click.Context) -> None:
    """Repair the state document, restoring the newest point if it is corrupt."""
    runtime = get_runtime(ctx)
    console.print("[bold cyan]Smart state recovery[/bold cyan]")
    _print_outcome(smart_state_recovery(runtime.store, runtime.points, runtime.reporter))


@recover.command("continue")
@click.argument("task_id", required=False)
@click.pass_context
@handle_errors("continue task")
def recover_continue(ctx: click.Context, task_id: str | None) -> None:
    """Resume TASK_ID (default: the current task) based on its artifacts."""
    runtime = get_runtime(ctx)
    outcome = continue_task(
        runtime.store, runtime.config.workspace.root_path, runtime.reporter, task_id
    )
    _print_outcome(outcome)


@recover.command("auto")
@click.pass_context
@handle_errors("auto recovery")
def recover_auto(ctx: click.Context) -> None:
    """Smart recovery followed by continuing the current task."""
    runtime = get_runtime(ctx)
    console.print("[bold cyan]Automatic recovery[/bold cyan]")
    outcome = auto_recovery(
        runtime.store, runtime.points, runtime.config.workspace.root_path, runtime.reporter
    )
    _print_outcome(outcome)


@recover.command("restore")
@click.argument("point_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
@handle_errors("restore")
def recover_restore(ctx: click.Context, point_id: str, yes: bool) -> None:
    """Replace the live state with recovery point POINT_ID.

    The current document is backed up first.
    """
    runtime = get_runtime(ctx)
    point = runtime.points.get(point_id)
    if not yes:
        click.confirm(
            f"Restore {point.id} ({point.reason}, progress {point.progress})?",
            abort=True,
        )
    state = runtime.points.restore(point.id)
    console.print(f"[green]✓ Restored {point.id}[/green]")
    _print_state(state)


@recover.command("verify")
@click.argument("task_id")
@click.pass_context
@handle_errors("verify")
def recover_verify(ctx: click.Context, task_id: str) -> None:
    """Check that TASK_ID's expected artifacts exist."""
    runtime = get_runtime(ctx)
    result = verify_task_artifacts(runtime.store, task_id, runtime.config.workspace.root_path)
    for path in result.present:
        console.print(f"  [green]✓[/green] {path}")
    for path in result.missing:
        console.print(f"  [red]✗[/red] {path}")

    if result.complete:
        console.print(f"[green]{task_id}: all {len(result.present)} artifact(s) present[/green]")
        return
    console.print(f"[red]{task_id}: {len(result.missing)} artifact(s) missing[/red]")
    sys.exit(1)


@recover.command("list")
@click.option("--limit", "-n", type=int, default=None, help="Show at most N points")
@click.pass_context
@handle_errors("list recovery points")
def recover_list(ctx: click.Context, limit: int | None) -> None:
    """List recovery points, newest first."""
    points = get_runtime(ctx).points.list(limit)
    if not points:
        console.print("[dim]No recovery points[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Created")
    table.add_column("Task")
    table.add_column("Reason")
    table.add_column("Progress", justify="right")
    for point in points:
        table.add_row(
            point.id,
            point.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            point.task_id or "-",
            point.reason,
            point.progress,
        )
    console.print(table)


@recover.command("prune")
@click.option("--keep", "-k", type=int, default=None, help="Points to keep (default: [recovery].max_points)")
@click.pass_context
@handle_errors("prune")
def recover_prune(ctx: click.Context, keep: int | None) -> None:
    """Delete the oldest recovery points beyond the retention cap."""
    removed = get_runtime(ctx).points.prune(keep)
    console.print(f"[green]✓ Removed {removed} recovery point(s)[/green]")


@recover.command("report")
@click.pass_context
@handle_errors("recovery report")
def recover_report(ctx: click.Context) -> None:
    """Write a recovery status report (state and available points)."""
    runtime = get_runtime(ctx)
    state = runtime.store.read()
    points = runtime.points.list(limit=10)
    steps = [f"Available recovery point: {p.id} ({p.reason}, {p.progress})" for p in points]
    if not points:
        steps = ["No recovery points available"]
    path = runtime.reporter.write_recovery_report(
        "manual",
        state,
        state,
        steps,
        build_continue_instruction(state.current_task_id, runtime.store.path.name),
    )
    console.print(f"[green]✓ Report written[/green] [dim]{path}[/dim]")


@recover.command("interactive")
@click.pass_context
@handle_errors("interactive recovery")
def recover_interactive(ctx: click.Context) -> None:
    """Menu-driven recovery."""
    runtime = get_runtime(ctx)
    root = runtime.config.workspace.root_path

    while True:
        console.print()
        console.print("[bold cyan]Recovery options[/bold cyan]")
        console.print("  1. Smart state recovery")
        console.print("  2. Continue the interrupted task")
        console.print("  3. Restore a recovery point")
        console.print("  4. Verify task artifacts")
        console.print("  5. Exit")
        choice = click.prompt("Select", type=click.IntRange(1, 5))

        if choice == 5:
            return
        try:
            if choice == 1:
                _print_outcome(smart_state_recovery(runtime.store, runtime.points, runtime.reporter))
            elif choice == 2:
                _print_outcome(continue_task(runtime.store, root, runtime.reporter))
            elif choice == 3:
                points = runtime.points.list(limit=10)
                if not points:
                    console.print("[dim]No recovery points[/dim]")
                    continue
                for i, point in enumerate(points, 1):
                    console.print(f"  {i}. {point.id}  [dim]{point.reason} ({point.progress})[/dim]")
                index = click.prompt("Point", type=click.IntRange(1, len(points)))
                runtime.points.restore(points[index - 1].id)
                console.print(f"[green]✓ Restored {points[index - 1].id}[/green]")
            elif choice == 4:
                task_id = click.prompt("Task id")
                result = verify_task_artifacts(runtime.store, task_id, root)
                console.print(
                    f"present: {len(result.present)}  missing: {', '.join(result.missing) or '-'}"
                )
        except TaskwardenError as e:
            handle_exception(console, e, "recovery", exit_on_error=False)


# =============================================================================
# Monitor Commands
# =============================================================================


@main.group()
def monitor() -> None:
    """Unified monitoring: dashboard, daemon and housekeeping."""
    pass


@monitor.command("daemon")
@click.pass_context
@handle_errors("monitor daemon")
def monitor_daemon(ctx: click.Context) -> None:
    """Run health monitoring and automatic retries until stopped."""
    runtime = get_runtime(ctx)
    supervisor = Supervisor(runtime)
    _install_stop_signal(runtime)
    console.print(f"[cyan]Supervising {runtime.store.path} (Ctrl+C to stop)[/cyan]")
    try:
        supervisor.run()
    except KeyboardInterrupt:
        supervisor.stop()

    if supervisor.halted_reason:
        console.print(f"[bold red]Halted:[/bold red] {supervisor.halted_reason}")
        sys.exit(1)
    console.print("[dim]Stopped[/dim]")


@monitor.command("check")
@click.option("--no-network", is_flag=True, help="Skip connectivity probes")
@click.option("--retry", is_flag=True, help="Carry out forwarded retries")
@click.pass_context
@handle_errors("monitor check")
def monitor_check(ctx: click.Context, no_network: bool, retry: bool) -> None:
    """Run one supervisor cycle: check, alert, refresh the dashboard."""
    runtime = get_runtime(ctx)
    runtime.monitor.check_connectivity = not no_network
    supervisor = Supervisor(runtime)
    result = supervisor.monitor_cycle()
    _print_findings(result)

    pending = supervisor.queue.qsize()
    if retry:
        for task_id, outcome in supervisor.drain():
            label = outcome.value if outcome else "ERROR"
            console.print(f"  retry {task_id}: {label}")
    elif pending:
        console.print(f"[yellow]{pending} task(s) need a retry; rerun with --retry[/yellow]")

    if supervisor.halted_reason:
        console.print(f"[bold red]Halted:[/bold red] {supervisor.halted_reason}")
        sys.exit(1)


@monitor.command("dashboard")
@click.option("--no-network", is_flag=True, help="Skip connectivity probes")
@click.option("--print", "-p", "print_it", is_flag=True, help="Also print the dashboard")
@click.pass_context
@handle_errors("dashboard")
def monitor_dashboard(ctx: click.Context, no_network: bool, print_it: bool) -> None:
    """Regenerate the dashboard file."""
    runtime = get_runtime(ctx)
    report = runtime.reporter.build_report(probe_network=not no_network)
    path = runtime.reporter.write_dashboard(report)
    if print_it:
        console.print(Markdown(report.to_markdown()))
    console.print(f"[green]✓ Dashboard written[/green] [dim]{path}[/dim]")


@monitor.command("live")
@click.option("--interval", "-i", type=float, default=None, help="Refresh interval in seconds")
@click.option("--no-network", is_flag=True, help="Skip connectivity probes")
@click.pass_context
@handle_errors("live monitor")
def monitor_live(ctx: click.Context, interval: float | None, no_network: bool) -> None:
    """Live terminal view of pipeline health."""
    runtime = get_runtime(ctx)
    monitor = runtime.monitor
    monitor.check_connectivity = not no_network
    refresh = interval or runtime.config.monitor.interval

    def render() -> Markdown:
        result = monitor.check()
        report = runtime.reporter.build_report(
            result.findings, monitor.last_system, monitor.last_connectivity, probe=False
        )
        return Markdown(report.to_markdown())

    _install_stop_signal(runtime)
    try:
        with Live(render(), console=console, auto_refresh=False) as live:
            for tick in Ticker(refresh, runtime.stop_event):
                if tick:
                    live.update(render(), refresh=True)
    except KeyboardInterrupt:
        runtime.stop_event.set()


@monitor.command("cleanup")
@click.pass_context
@handle_errors("cleanup")
def monitor_cleanup(ctx: click.Context) -> None:
    """Rotate logs, drop old reports and trim the alert history."""
    result = get_runtime(ctx).reporter.cleanup()
    console.print("[green]✓ Cleanup finished[/green]")
    console.print(f"  Log rotated: {'yes' if result.log_rotated else 'no'}")
    console.print(f"  Reports removed: {result.reports_removed}")
    console.print(f"  Alert lines removed: {result.alerts_removed}")


# =============================================================================
# Config Commands
# =============================================================================


@main.group()
def config() -> None:
    """View taskwarden configuration.

    Configuration lives at ~/.taskwarden/config.toml ($TASKWARDEN_CONFIG).

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
    """Show the active configuration.

    \\b
    Examples:
        taskwarden config show
        taskwarden config show --json
        taskwarden config show --section retry
    """
    cfg: TaskwardenConfig = ctx.obj["config"]
    data = cfg.to_dict()

    if section:
        if section not in data or section == "config":
            console.print(f"[red]Unknown section: {section}[/red]")
            console.print(
                "[dim]Available: workspace, retry, recovery, health, agent, monitor, ui[/dim]"
            )
            sys.exit(1)
        data = {section: data[section]}

    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return

    if section:
        console.print(f"[bold][{section}][/bold]")
        for key, value in data[section].items():
            console.print(f"  {key} = {value}", markup=False)
        return

    console.print(format_config_for_display(cfg), markup=False)


if __name__ == "__main__":
    main()

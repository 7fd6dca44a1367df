"""rollbackctl CLI - deployment rollback orchestrator.

Main entry point for the rollbackctl command.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from itertools import islice
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from . import __version__
from .config import (
    RollbackConfig,
    build_controller,
    format_config_for_display,
    get_config_path,
    load_config,
    save_config,
)
from .recovery import (
    ExecutionStatus,
    RecoveryController,
    RollbackExecution,
    RollbackOptions,
    RollbackPoint,
)
from .utils.errors import handle_exception, is_debug_mode, set_debug_mode

console = Console()

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    ExecutionStatus.SUCCEEDED: "green",
    ExecutionStatus.FAILED: "red",
}


def setup_logging(debug: bool = False) -> None:
    """Send rollbackctl logs to stderr through rich."""
    package_logger = logging.getLogger("rollbackctl")
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=debug,
        rich_tracebacks=debug,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)


def _load_config(ctx: click.Context) -> RollbackConfig:
    return load_config(ctx.obj.get("config_path"))


@contextmanager
def _controller(ctx: click.Context, context: str) -> Iterator[RecoveryController]:
    """Build a controller for one command and report failures consistently."""
    controller: RecoveryController | None = None
    try:
        controller = build_controller(_load_config(ctx))
        yield controller
    except Exception as e:
        handle_exception(console, e, context)
    finally:
        if controller is not None:
            controller.store.close()


def _take(records: Iterable[Any], limit: int | None) -> list[Any]:
    return list(islice(records, limit)) if limit else list(records)


def _format_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


# =============================================================================
# Main Group
# =============================================================================


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version and exit")
@click.option("--debug", "-d", is_flag=True, help="Enable debug mode with verbose error output")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ./rollbackctl.toml or $ROLLBACKCTL_CONFIG)",
)
@click.pass_context
def main(ctx: click.Context, version: bool, debug: bool, config_path: Path | None) -> None:
    """rollbackctl - Deployment rollback orchestrator.

    Capture rollback points of an environment (data store, configuration
    and application code) and safely revert the environment to one of them.

    Use --debug for verbose error output with stack traces.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path

    # Set debug mode globally
    if debug:
        set_debug_mode(True)
    setup_logging(is_debug_mode())

    if version:
        console.print(f"rollbackctl version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Rollback Points
# =============================================================================


@main.command("create-point")
@click.argument("environment")
@click.argument("description", required=False)
@click.option("--created-by", default="system", show_default=True, help="Who captured the point")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create_point_cmd(
    ctx: click.Context,
    environment: str,
    description: str | None,
    created_by: str,
    as_json: bool,
) -> None:
    """Capture a rollback point of an environment.

    Snapshots the data store, configuration files and application code
    revision. The point is only stored if all three captures succeed.

    \\b
    Examples:
        rollbackctl create-point staging
        rollbackctl create-point production "before 2.4.0 release"
    """
    metadata = {"description": description} if description else {}

    with _controller(ctx, "snapshot capture") as controller:
        point = controller.create_rollback_point(
            environment, created_by=created_by, metadata=metadata
        )

        if as_json:
            click.echo(point.model_dump_json(indent=2))
            return

        console.print(f"[green]✓ Rollback point created: [bold]{point.id}[/bold][/green]")
        console.print(f"[dim]  Environment: {point.environment}[/dim]")
        console.print(f"[dim]  Release: {point.release_version or 'unknown'}[/dim]")
        console.print(f"[dim]  Revision: {point.source_revision or 'unknown'}[/dim]")


@main.command("list-points")
@click.argument("environment", required=False)
@click.option("--limit", "-n", type=int, default=None, help="Show at most N points")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_points_cmd(
    ctx: click.Context, environment: str | None, limit: int | None, as_json: bool
) -> None:
    """List rollback points, newest first.

    \\b
    Examples:
        rollbackctl list-points
        rollbackctl list-points production -n 5
    """
    with _controller(ctx, "listing rollback points") as controller:
        points: list[RollbackPoint] = _take(controller.list_points(environment), limit)

        if as_json:
            click.echo(json.dumps([p.model_dump(mode="json") for p in points], indent=2))
            return

        if not points:
            where = f" for {environment}" if environment else ""
            console.print(f"[yellow]No rollback points found{where}[/yellow]")
            return

        for point in points:
            complete = "[green]✓[/green]" if point.is_complete() else "[red]✗[/red]"
            safety = " [dim](safety snapshot)[/dim]" if point.is_safety_point else ""
            console.print(f"{complete} [bold]{point.id}[/bold]{safety}")
            console.print(f"   Environment: {point.environment}")
            console.print(f"   Created: {_format_time(point.created_at)} by {point.created_by}")
            console.print(f"   Release: {point.release_version or 'unknown'}")
            if point.description:
                console.print(f"   Description: {escape(point.description)}")
            console.print()


# =============================================================================
# Rollback
# =============================================================================


def _print_execution(execution: RollbackExecution) -> None:
    style = STATUS_STYLES.get(execution.status, "yellow")
    console.print(f"[bold]{execution.id}[/bold] [{style}]{execution.status.value}[/{style}]")
    console.print(f"   Environment: {execution.environment}")
    console.print(f"   Rollback point: {execution.rollback_point_id}")
    console.print(f"   Requested by: {execution.requested_by}")
    if execution.reason:
        console.print(f"   Reason: {escape(execution.reason)}")
    console.print(f"   Started: {_format_time(execution.started_at)}")
    if execution.completed_at:
        console.print(f"   Completed: {_format_time(execution.completed_at)}")
    if execution.failed_at:
        console.print(f"   Failed: {_format_time(execution.failed_at)}")
    if execution.safety_point_id:
        console.print(f"   Safety point: {execution.safety_point_id}")

    if execution.steps:
        console.print()
        for step in execution.steps:
            icon = "[green]✓[/green]" if step.succeeded else "[red]✗[/red]"
            console.print(
                f"   {icon} [dim]{step.phase.value}[/dim] {step.name} "
                f"[dim]({step.duration_seconds:.1f}s)[/dim]"
            )

    cause = execution.error
    if cause:
        console.print()
        console.print(f"[red]Failed during:[/red] {cause.phase.value}")
        console.print(f"[red]Failed step:[/red] {cause.step or 'n/a'}")
        console.print(f"[red]Root cause:[/red] {cause.error_type}: {escape(cause.message)}")

    if execution.auto_restore:
        console.print()
        console.print("[bold]Auto-restore:[/bold]")
        for outcome in execution.auto_restore:
            if outcome.success:
                console.print(f"   [green]✓[/green] {outcome.kind.value} restored")
            else:
                error = escape(outcome.error or "unknown error")
                console.print(f"   [red]✗[/red] {outcome.kind.value}: {error}")
    elif execution.status == ExecutionStatus.FAILED and execution.safety_point_id:
        if not execution.auto_restore_enabled:
            console.print()
            console.print(
                "[yellow]Auto-restore disabled; environment left for manual inspection[/yellow]"
            )


@main.command("rollback")
@click.argument("environment")
@click.argument("point_id", required=False)
@click.option("--latest", is_flag=True, help="Use the newest usable rollback point")
@click.option(
    "--no-auto-restore",
    is_flag=True,
    help="Do not restore the safety snapshot if the rollback fails",
)
@click.option("--requested-by", default="system", show_default=True, help="Who asked for it")
@click.option("--reason", default=None, help="Why the rollback is happening")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.confirmation_option(prompt="Are you sure you want to roll back this environment?")
@click.pass_context
def rollback_cmd(
    ctx: click.Context,
    environment: str,
    point_id: str | None,
    latest: bool,
    no_auto_restore: bool,
    requested_by: str,
    reason: str | None,
    as_json: bool,
) -> None:
    """Revert an environment to a rollback point.

    Runs pre-checks, captures a safety snapshot of the current state,
    restores the target point and runs post-checks. If execution or
    post-checks fail, the safety snapshot is restored unless
    --no-auto-restore is given.

    \\b
    Examples:
        rollbackctl rollback staging rb-1718900000000-k3x9qa
        rollbackctl rollback production --latest --reason "bad release"
    """
    if not point_id and not latest:
        raise click.UsageError("Give a ROLLBACK_POINT_ID or --latest")
    if point_id and latest:
        raise click.UsageError("ROLLBACK_POINT_ID and --latest are mutually exclusive")

    with _controller(ctx, "rollback") as controller:
        if latest:
            point_id = controller.select_target(environment).id
            if not as_json:
                console.print(f"[dim]Using latest rollback point {point_id}[/dim]")

        if not as_json:
            console.print(f"[yellow]Rolling back {environment} to {point_id}...[/yellow]")
        execution = controller.request_rollback(
            environment,
            point_id,
            RollbackOptions(
                auto_restore=False if no_auto_restore else None,
                requested_by=requested_by,
                reason=reason,
            ),
        )

        if as_json:
            click.echo(execution.model_dump_json(indent=2))
        else:
            console.print()
            _print_execution(execution)
            console.print()

        if execution.status != ExecutionStatus.SUCCEEDED:
            if not as_json:
                console.print("[red]✗ Rollback failed[/red]")
            sys.exit(1)

        if not as_json:
            console.print("[green]✓ Rollback successful[/green]")


# =============================================================================
# Executions
# =============================================================================


@main.command("list-executions")
@click.argument("environment", required=False)
@click.option("--limit", "-n", type=int, default=None, help="Show at most N executions")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_executions_cmd(
    ctx: click.Context, environment: str | None, limit: int | None, as_json: bool
) -> None:
    """List rollback executions, newest first.

    \\b
    Examples:
        rollbackctl list-executions
        rollbackctl list-executions production -n 10
    """
    with _controller(ctx, "listing executions") as controller:
        executions: list[RollbackExecution] = _take(controller.list_executions(environment), limit)

        if as_json:
            click.echo(json.dumps([e.model_dump(mode="json") for e in executions], indent=2))
            return

        if not executions:
            where = f" for {environment}" if environment else ""
            console.print(f"[yellow]No rollback executions found{where}[/yellow]")
            return

        for execution in executions:
            style = STATUS_STYLES.get(execution.status, "yellow")
            console.print(
                f"[bold]{execution.id}[/bold] [{style}]{execution.status.value}[/{style}] "
                f"{execution.environment} → {execution.rollback_point_id}"
            )
            console.print(
                f"   [dim]{_format_time(execution.started_at)} by {execution.requested_by}[/dim]"
            )
            cause = execution.error
            if cause:
                where = cause.step or cause.phase.value
                console.print(f"   [red]{where}: {escape(cause.message)}[/red]")


@main.command("show-execution")
@click.argument("execution_id")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def show_execution_cmd(ctx: click.Context, execution_id: str, as_json: bool) -> None:
    """Show one rollback execution with every step outcome."""
    with _controller(ctx, "loading execution") as controller:
        execution = controller.get_execution(execution_id)
        if as_json:
            click.echo(execution.model_dump_json(indent=2))
            return
        _print_execution(execution)


@main.command("abandon-execution")
@click.argument("execution_id")
@click.option("--reason", default=None, help="Recorded as the failure message")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.confirmation_option(
    prompt="Only abandon an execution whose process is no longer running. Continue?"
)
@click.pass_context
def abandon_execution_cmd(
    ctx: click.Context, execution_id: str, reason: str | None, as_json: bool
) -> None:
    """Mark an unfinished execution failed so the environment is free again.

    Use this when the process running a rollback died (killed, host
    lost) and left its execution unfinished. Nothing is restored; the
    safety point, if any, is listed so it can be rolled back to manually.
    """
    with _controller(ctx, "abandoning execution") as controller:
        execution = controller.abandon_execution(execution_id, reason)
        if as_json:
            click.echo(execution.model_dump_json(indent=2))
            return
        _print_execution(execution)
        console.print()
        console.print(f"[yellow]Execution {execution.id} abandoned[/yellow]")
        if execution.safety_point_id:
            console.print(
                f"[dim]Pre-rollback state: rollbackctl rollback {execution.environment} "
                f"{execution.safety_point_id}[/dim]"
            )


# =============================================================================
# Configuration
# =============================================================================


@main.group()
def config() -> None:
    """View and manage rollbackctl configuration.

    Configuration priority:
    1. Environment variables (highest)
    2. Config file (./rollbackctl.toml, --config or $ROLLBACKCTL_CONFIG)
    3. Defaults (lowest)
    """
    pass


@config.command("show")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Show current configuration, including environment overrides."""
    try:
        cfg = _load_config(ctx)
    except ValueError as e:
        handle_exception(console, e, "loading config")
        return

    if as_json:
        click.echo(json.dumps(cfg.to_dict(), indent=2, default=str))
        return
    console.print(format_config_for_display(cfg), markup=False, highlight=False)


@config.command("init")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing config file")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write a config file with default settings."""
    path = ctx.obj.get("config_path") or get_config_path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists: {path}[/yellow]")
        console.print("[dim]Use --force to overwrite[/dim]")
        sys.exit(1)

    save_config(RollbackConfig(), path)
    console.print(f"[green]✓ Config written to {path}[/green]")
    console.print("[dim]Set the \\[commands] section before capturing rollback points[/dim]")


if __name__ == "__main__":
    main()

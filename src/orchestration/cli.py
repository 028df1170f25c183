"""CLI entry point for the orchestration core."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from orchestration import __version__
from orchestration.config import Settings
from orchestration.engine.orchestrator import OrchestratorService

console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "planned": "dim",
    "in_progress": "yellow",
    "completed": "green",
    "failed": "red",
    "blocked": "magenta",
}

PRIORITY_STYLES = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "dim"}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="orch")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="State directory (default: ~/.orchestration or $ORCH_DATA_DIR)",
)
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory snapshotted by checkpoints (default: current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.pass_context
def main(
    ctx: click.Context, data_dir: Path | None, project_root: Path | None, verbose: bool
) -> None:
    """Orchestration core: decompose, route, lock, checkpoint and learn."""
    _configure_logging(verbose)
    settings = Settings.load(data_dir)
    if project_root is not None:
        settings.project_root = project_root
    ctx.obj = settings


def _service(ctx: click.Context) -> OrchestratorService:
    return OrchestratorService.from_settings(ctx.obj)


def _check(result: dict[str, Any]) -> dict[str, Any]:
    """Return a successful result, or print the error and exit 1."""
    if result.get("success"):
        return result
    console.print(f"[red]{result['error']}[/red] {escape(result['message'])}")
    for key, value in result.get("details", {}).items():
        console.print(f"  {key}: {escape(str(value))}")
    raise click.exceptions.Exit(1)


def _parse_params(pairs: tuple[str, ...]) -> dict[str, str]:
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--param")
        params[key.strip()] = value.strip()
    return params


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize state directory and database."""
    from orchestration.storage.database import Database

    settings: Settings = ctx.obj
    db = Database(settings.data_dir)
    db.ensure_tables()
    console.print(f"[green]Orchestration initialized at {db.data_dir}[/green]")
    console.print(f"  Database: {db.db_path}")
    console.print(f"  Config:   {settings.config_path}")


@main.command()
@click.argument("task_type")
@click.option("-p", "--param", "params", multiple=True, help="Template parameter KEY=VALUE")
@click.option("--by", "initiated_by", default="cli", help="Initiating agent")
@click.pass_context
def decompose(
    ctx: click.Context, task_type: str, params: tuple[str, ...], initiated_by: str
) -> None:
    """Decompose a work request and make it the current execution."""
    result = _check(
        _service(ctx).decompose(
            {
                "task_type": task_type,
                "parameters": _parse_params(params),
                "initiated_by": initiated_by,
            }
        )
    )

    table = Table(title=f"Execution {result['execution_id']}")
    table.add_column("ID", style="cyan")
    table.add_column("Subtask", max_width=44)
    table.add_column("Agent", style="green")
    table.add_column("Depends on")
    table.add_column("Group")
    table.add_column("Estimate", justify="right")

    for subtask in result["subtasks"]:
        table.add_row(
            subtask["id"],
            escape(subtask["name"]),
            subtask["assigned_agent"],
            ", ".join(subtask["dependencies"]) or "-",
            subtask["parallel_group"] or "-",
            f"{subtask['estimated_duration_ms'] / 1000:.0f}s",
        )

    console.print(table)
    console.print(
        f"\nSubtasks: {result['subtask_count']} | "
        f"Parallel groups: {result['parallel_group_count']} | "
        f"Estimate: {result['estimated_total_time'] / 1000:.0f}s "
        f"(critical path {result['critical_path_ms'] / 1000:.0f}s) | "
        f"Manager: {result['manager'] or '-'}"
    )


@main.command()
@click.argument("task_id")
@click.option(
    "--status",
    type=click.Choice(["pending", "in_progress", "completed", "failed", "blocked"]),
    default=None,
)
@click.option("--progress", type=click.IntRange(0, 100), default=None)
@click.option("--agent", "assigned_agent", default=None, help="Reassign to agent")
@click.pass_context
def update(
    ctx: click.Context,
    task_id: str,
    status: str | None,
    progress: int | None,
    assigned_agent: str | None,
) -> None:
    """Update one subtask of the current execution."""
    fields: dict[str, Any] = {}
    if status is not None:
        fields["status"] = status
    if progress is not None:
        fields["progress"] = progress
    if assigned_agent is not None:
        fields["assigned_agent"] = assigned_agent
    if not fields:
        raise click.UsageError("Nothing to update: pass --status, --progress or --agent")

    result = _check(_service(ctx).update_task(task_id, fields))
    task = result["task"]
    console.print(
        f"[cyan]{task['id']}[/cyan] {_styled(task['status'])} {task['progress']}% "
        f"({task['assigned_agent']})"
    )
    console.print(
        f"Execution: {_styled(result['execution_status'])} {result['execution_progress']}%"
    )


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the current execution and lock summary."""
    result = _service(ctx).get_status()
    if not result["success"]:
        console.print("[dim]No active execution.[/dim]")
        return

    table = Table(title=f"Execution {result['execution_id']} ({result['task_type']})")
    table.add_column("ID", style="cyan")
    table.add_column("Subtask", max_width=44)
    table.add_column("Agent", style="green")
    table.add_column("State")
    table.add_column("Progress", justify="right")

    for subtask in result["subtasks"]:
        table.add_row(
            subtask["id"],
            escape(subtask["name"]),
            subtask["assigned_agent"],
            _styled(subtask["status"]),
            f"{subtask['progress']}%",
        )

    console.print(table)
    locks = result["locks"]
    console.print(
        f"\nStatus: {_styled(result['status'])} | Progress: {result['progress']}% | "
        f"Locks: {locks['total_locks']} | Queued: {locks['queued_requests']}"
    )


@main.command()
@click.pass_context
def realloc(ctx: click.Context) -> None:
    """List subtasks that are blocked or running over estimate."""
    result = _check(_service(ctx).check_reallocation())
    if not result["needs_reallocation"]:
        console.print("[green]No reallocation needed.[/green]")
        return

    table = Table(title="Reallocation Candidates")
    table.add_column("ID", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("Reason", style="yellow")
    table.add_column("Deviation", justify="right")
    table.add_column("Suggestion", max_width=50)

    for candidate in result["candidates"]:
        deviation = candidate["deviation"]
        table.add_row(
            candidate["task_id"],
            candidate["assigned_agent"],
            candidate["reason"],
            f"{deviation:+.0%}" if deviation is not None else "-",
            escape(candidate["suggestion"]),
        )
    console.print(table)


# -- Locks ---------------------------------------------------------------


@main.group()
def lock() -> None:
    """Acquire, release and list domain locks."""


@lock.command("acquire")
@click.argument("agent")
@click.argument("domain")
@click.option("--purpose", default="", help="Why the lock is needed")
@click.option("--duration", "estimated_duration_ms", type=int, default=None, help="Estimate (ms)")
@click.pass_context
def lock_acquire(
    ctx: click.Context, agent: str, domain: str, purpose: str, estimated_duration_ms: int | None
) -> None:
    """Acquire the lock on DOMAIN for AGENT."""
    result = _check(_service(ctx).acquire_lock(agent, domain, purpose, estimated_duration_ms))
    granted = result["lock"]
    console.print(f"[green]Lock {granted['id']} on {granted['domain']} held by {agent}[/green]")


@lock.command("release")
@click.argument("lock_id")
@click.argument("agent")
@click.pass_context
def lock_release(ctx: click.Context, lock_id: str, agent: str) -> None:
    """Release LOCK_ID as AGENT."""
    result = _check(_service(ctx).release_lock(lock_id, agent))
    released = result["released"]
    note = " (override)" if result["overridden"] else ""
    console.print(f"[green]Released {released['id']} on {released['domain']}{note}[/green]")
    if result["granted_to"]:
        console.print(f"  Handed off to {result['granted_to']['owner_agent']}")


@lock.command("list")
@click.pass_context
def lock_list(ctx: click.Context) -> None:
    """Show active locks and queued requests."""
    result = _check(_service(ctx).list_locks())
    if not result["locks"]:
        console.print("[dim]No active locks.[/dim]")
        return

    table = Table(title="Active Locks")
    table.add_column("Lock", style="cyan")
    table.add_column("Domain", style="bold")
    table.add_column("Owner", style="green")
    table.add_column("Purpose", max_width=40)
    table.add_column("Acquired")
    table.add_column("Queued", justify="right")

    for held in result["locks"]:
        table.add_row(
            held["id"],
            held["domain"],
            held["owner_agent"],
            escape(held["purpose"]),
            held["acquired_at"][:19],
            str(len(result["queues"].get(held["domain"], []))),
        )
    console.print(table)


# -- Checkpoints ---------------------------------------------------------


@main.group()
def checkpoint() -> None:
    """Create, inspect and compare checkpoints."""


@checkpoint.command("create")
@click.argument("agent")
@click.option("--trigger", default="manual", help="What prompted the checkpoint")
@click.option("--cleared", is_flag=True, help="Mark as having ethical clearance")
@click.option("--description", default="")
@click.pass_context
def checkpoint_create(
    ctx: click.Context, agent: str, trigger: str, cleared: bool, description: str
) -> None:
    """Snapshot project files and orchestration state."""
    result = _check(_service(ctx).create_checkpoint(agent, trigger, cleared, description))
    cp = result["checkpoint"]
    console.print(f"[green]Checkpoint {cp['id']} created[/green] ({cp['file_count']} files)")
    if cp["vcs_revision"]:
        console.print(f"  Revision: {cp['vcs_revision']}")


@checkpoint.command("list")
@click.pass_context
def checkpoint_list(ctx: click.Context) -> None:
    """List checkpoints, newest first."""
    result = _check(_service(ctx).list_checkpoints())
    if not result["checkpoints"]:
        console.print("[dim]No checkpoints yet.[/dim]")
        return

    table = Table(title="Checkpoints")
    table.add_column("ID", style="cyan")
    table.add_column("Created")
    table.add_column("Agent", style="green")
    table.add_column("Trigger")
    table.add_column("Cleared")
    table.add_column("Files", justify="right")

    for cp in result["checkpoints"]:
        table.add_row(
            cp["id"],
            cp["timestamp"][:19],
            cp["triggering_agent"],
            cp["trigger"],
            "[green]yes[/green]" if cp["ethical_clearance"] else "no",
            str(cp["file_count"]),
        )
    console.print(table)


@checkpoint.command("show")
@click.argument("checkpoint_id", required=False)
@click.option("--last-validated", is_flag=True, help="Show the newest cleared checkpoint")
@click.pass_context
def checkpoint_show(ctx: click.Context, checkpoint_id: str | None, last_validated: bool) -> None:
    """Show one checkpoint."""
    service = _service(ctx)
    if last_validated:
        cp = _check(service.get_last_validated_checkpoint())["checkpoint"]
    elif checkpoint_id:
        cp = _check(service.get_checkpoint(checkpoint_id))["checkpoint"]
    else:
        raise click.UsageError("Pass CHECKPOINT_ID or --last-validated")

    console.print(f"[bold]Checkpoint:[/bold] {cp['id']}")
    console.print(f"[bold]Created:[/bold] {cp['timestamp']} by {cp['triggering_agent']}")
    console.print(f"[bold]Trigger:[/bold] {cp['trigger']}")
    console.print(f"[bold]Cleared:[/bold] {'yes' if cp['ethical_clearance'] else 'no'}")
    console.print(f"[bold]Revision:[/bold] {cp['vcs_revision'] or '-'}")
    files = cp.get("file_count", len(cp.get("file_hashes", {})))
    console.print(f"[bold]Files:[/bold] {files}")
    if cp["description"]:
        console.print(f"[bold]Description:[/bold] {escape(cp['description'])}")


@checkpoint.command("compare")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_compare(ctx: click.Context, checkpoint_id: str) -> None:
    """Compare current files with a checkpoint."""
    diff = _check(_service(ctx).compare_with_checkpoint(checkpoint_id))["diff"]
    _print_diff(diff)


@checkpoint.command("rollback")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_rollback(ctx: click.Context, checkpoint_id: str) -> None:
    """Plan a rollback. Files are never changed."""
    plan = _check(_service(ctx).prepare_rollback(checkpoint_id))["plan"]
    console.print(f"[bold]Rollback target:[/bold] {plan['target']['id']}")
    _print_diff(plan["diff"])
    for warning in plan["warnings"]:
        console.print(f"[yellow]! {escape(warning)}[/yellow]")
    console.print("[bold yellow]Approval required before any rollback is applied.[/bold yellow]")


@checkpoint.command("delete")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_delete(ctx: click.Context, checkpoint_id: str) -> None:
    """Delete a checkpoint."""
    _check(_service(ctx).delete_checkpoint(checkpoint_id))
    console.print(f"[green]Deleted {checkpoint_id}[/green]")


def _print_diff(diff: dict[str, Any]) -> None:
    if not diff["has_changes"]:
        console.print("[green]No changes since checkpoint.[/green]")
    for path in diff["modified"]:
        console.print(f"  [yellow]M[/yellow] {escape(path)}")
    for path in diff["deleted"]:
        console.print(f"  [red]D[/red] {escape(path)}")
    console.print(
        f"Modified: {len(diff['modified'])} | Deleted: {len(diff['deleted'])} | "
        f"Unchanged: {diff['unchanged_count']}"
    )
    if diff["revision_changed"]:
        console.print(
            f"[yellow]Revision changed: {diff['recorded_revision']} -> "
            f"{diff['current_revision']}[/yellow]"
        )


# -- Telemetry and learning ----------------------------------------------


@main.group()
def telemetry() -> None:
    """Record execution metrics and review suggestions."""


@telemetry.command("record")
@click.argument("execution_id")
@click.argument("task_type")
@click.argument("agent")
@click.option("--failed", is_flag=True, help="Execution did not succeed")
@click.option("--duration", "duration_ms", type=click.IntRange(min=0), default=0)
@click.option("--errors", "error_count", type=click.IntRange(min=0), default=0)
@click.option("--conflicts", "conflict_count", type=click.IntRange(min=0), default=0)
@click.option("--parallel", "parallel_agents", type=click.IntRange(min=1), default=1)
@click.pass_context
def telemetry_record(
    ctx: click.Context,
    execution_id: str,
    task_type: str,
    agent: str,
    failed: bool,
    duration_ms: int,
    error_count: int,
    conflict_count: int,
    parallel_agents: int,
) -> None:
    """Record the outcome of one execution."""
    record = _check(
        _service(ctx).record_execution_metrics(
            {
                "execution_id": execution_id,
                "task_type": task_type,
                "agent": agent,
                "success": not failed,
                "duration_ms": duration_ms,
                "error_count": error_count,
                "conflict_count": conflict_count,
                "parallel_agents": parallel_agents,
            }
        )
    )["record"]
    console.print(
        f"[green]Recorded {record['id']}[/green] efficiency {record['efficiency_score']:.2f} "
        f"(layer: {record['layer']})"
    )


@telemetry.command("suggest")
@click.option("--cached", is_flag=True, help="Show the last generated set without regenerating")
@click.pass_context
def telemetry_suggest(ctx: click.Context, cached: bool) -> None:
    """Generate (or show) ranked improvement suggestions."""
    service = _service(ctx)
    if cached:
        result = _check(service.get_improvement_suggestions())
    else:
        result = _check(service.generate_improvement_suggestions())

    suggestions = result["suggestions"]
    if not suggestions:
        console.print("[dim]No suggestions. Record more executions or validate learnings.[/dim]")
        return

    table = Table(title="Improvement Suggestions")
    table.add_column("Priority")
    table.add_column("Type", style="cyan")
    table.add_column("Title", max_width=40)
    table.add_column("Action", max_width=50)

    for suggestion in suggestions:
        style = PRIORITY_STYLES.get(suggestion["priority"], "white")
        table.add_row(
            f"[{style}]{suggestion['priority']}[/{style}]",
            suggestion["type"],
            escape(suggestion["title"]),
            escape(suggestion["action"]),
        )
    console.print(table)


@telemetry.command("report")
@click.pass_context
def telemetry_report(ctx: click.Context) -> None:
    """Summary of recorded executions and learning."""
    report = _check(_service(ctx).generate_summary_report())["report"]
    executions = report["executions"]
    learning = report["learning"]

    console.print(f"[bold]Executions:[/bold] {executions['total']}")
    console.print(f"[bold]Success rate:[/bold] {executions['success_rate']:.0%}")
    console.print(f"[bold]Mean efficiency:[/bold] {executions['mean_efficiency']:.3f}")
    console.print(
        f"[bold]Errors / conflicts:[/bold] "
        f"{executions['total_errors']} / {executions['total_conflicts']}"
    )
    console.print(
        f"[bold]Learning:[/bold] {learning['total_events']} events, "
        f"{learning['validated_events']} validated, "
        f"{learning['pending_validation']} pending"
    )

    if report["top_task_types"]:
        table = Table(title="Top Task Types")
        table.add_column("Task type", style="cyan")
        table.add_column("Runs", justify="right")
        table.add_column("Successes", justify="right")
        table.add_column("Efficiency", justify="right")
        for row in report["top_task_types"]:
            table.add_row(
                row["task_type"],
                str(row["count"]),
                str(row["successes"]),
                f"{row['mean_efficiency']:.3f}",
            )
        console.print(table)


@main.group()
def learn() -> None:
    """Record and validate learning events."""


@learn.command("record")
@click.argument("event_type")
@click.argument("agent")
@click.argument("context")
@click.argument("insight")
@click.option("--confidence", type=click.FloatRange(0.0, 1.0), default=0.5)
@click.option("--samples", "sample_size", type=click.IntRange(min=1), default=1)
@click.pass_context
def learn_record(
    ctx: click.Context,
    event_type: str,
    agent: str,
    context: str,
    insight: str,
    confidence: float,
    sample_size: int,
) -> None:
    """Record a learning event."""
    event = _check(
        _service(ctx).record_learning_event(
            event_type, agent, context, insight, confidence, sample_size
        )
    )["event"]
    console.print(f"[green]Recorded {event['id']}[/green] ({event['type']})")


@learn.command("validate")
@click.argument("event_id")
@click.argument("validator")
@click.option("--disagree", is_flag=True, help="Record disagreement instead of agreement")
@click.option("--notes", default="")
@click.pass_context
def learn_validate(
    ctx: click.Context, event_id: str, validator: str, disagree: bool, notes: str
) -> None:
    """Add VALIDATOR's judgment of EVENT_ID."""
    event = _check(_service(ctx).validate_learning_event(event_id, validator, not disagree, notes))[
        "event"
    ]
    agree = sum(1 for v in event["validations"] if v["agrees"])
    console.print(
        f"{event['id']}: {agree}/{len(event['validations'])} agree, "
        f"confidence {event['confidence']:.2f}"
    )
    if event["validated"]:
        console.print("[green]Validated[/green]")

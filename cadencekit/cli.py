"""Command line interface for inspecting cadences and running scheduler ticks."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from cadencekit import (
    CadenceGraph,
    Compiler,
    ConditionContext,
    LeadProgress,
    ScheduleDispatcher,
    StepNode,
    get_repository,
    get_transport,
    load_config,
)
from cadencekit.errors import CadenceError
from cadencekit.persistence.models import EnrollmentStatus, ScheduleStatus, utcnow

app = typer.Typer(help="CLI for cadencekit outreach cadences")

cadence_app = typer.Typer(help="Commands for cadence definitions")
enrollment_app = typer.Typer(help="Commands for lead enrollments")
schedule_app = typer.Typer(help="Commands for schedule entries")

app.add_typer(cadence_app, name="cadence")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(schedule_app, name="schedule")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for cadencekit loggers"),
) -> None:
    """cadencekit CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_graph(path: Path, owner_id: str, cadence_id: Optional[str]) -> CadenceGraph:
    """Read a cadence file in graph, editor or linear-steps form (JSON or YAML)."""
    data = yaml.safe_load(path.read_text()) or {}
    cadence_id = cadence_id or data.get("cadence_id") or path.stem
    owner_id = data.get("owner_id") or owner_id
    nodes = data.get("nodes")
    if isinstance(nodes, dict):
        return CadenceGraph.model_validate(
            {**data, "cadence_id": cadence_id, "owner_id": owner_id}
        )
    if isinstance(nodes, list):
        return CadenceGraph.from_editor_json(
            cadence_id, owner_id, data, name=data.get("name", "")
        )
    steps = [
        StepNode.model_validate({**step, "cadence_id": cadence_id})
        for step in data.get("steps") or []
    ]
    return CadenceGraph.from_linear_steps(
        cadence_id, owner_id, steps, name=data.get("name", "")
    )


@cadence_app.command("validate")
def cadence_validate(
    path: Path,
    owner: str = typer.Option("local", help="Owner id recorded on the graph"),
    cadence_id: Optional[str] = typer.Option(None, help="Cadence id (default: file name)"),
) -> None:
    """
    Check a cadence file for integrity problems.

    Example:
        cadencekit cadence validate welcome.yaml
        # Output: Cadence welcome is valid (4 steps)
    """
    try:
        graph = _load_graph(path, owner, cadence_id)
    except (CadenceError, ValidationError) as exc:
        typer.echo(f"Invalid cadence: {exc}")
        raise typer.Exit(code=1)
    issues = graph.issues()
    if issues:
        typer.echo(f"Cadence {graph.cadence_id} has {len(issues)} issue(s):")
        for issue in issues:
            typer.echo(f"- {issue.node_id or '<graph>'}: {issue.message}")
        raise typer.Exit(code=1)
    typer.echo(f"Cadence {graph.cadence_id} is valid ({len(graph.nodes)} steps)")


@cadence_app.command("preview")
def cadence_preview(
    path: Path,
    context: str = typer.Option(
        "{}", help='JSON with optional "lead", "signals" and "outcomes" objects'
    ),
    owner: str = typer.Option("local", help="Owner id recorded on the graph"),
) -> None:
    """
    Print the path a lead with the given context would take.

    Example:
        cadencekit cadence preview welcome.yaml --context '{"signals": {"replied": true}}'
        # Output: day 0   intro      action  email
        #         day 0   replied?   condition -> yes
    """
    try:
        graph = _load_graph(path, owner, None)
        raw = json.loads(context)
        now = utcnow()
        snapshot = ConditionContext(
            lead=raw.get("lead", {}),
            signals=raw.get("signals", {}),
            outcomes=raw.get("outcomes", {}),
            enrolled_at=now,
            as_of=now,
        )
        steps = Compiler(get_repository()).preview(graph, snapshot)
    except json.JSONDecodeError as exc:
        typer.echo(f"Invalid context JSON: {exc}")
        raise typer.Exit(code=2)
    except CadenceError as exc:
        typer.echo(f"Cannot preview: {exc}")
        raise typer.Exit(code=1)
    for step in steps:
        suffix = f" -> {step.branch}" if step.branch else ""
        channel = f"  {step.channel}" if step.channel else ""
        typer.echo(f"day {step.day_offset}\t{step.node_id}\t{step.kind.value}{channel}{suffix}")


@enrollment_app.command("list")
def enrollment_list(
    owner: str = typer.Option(..., help="Owner whose enrollments to list"),
    cadence: Optional[str] = typer.Option(None, help="Only this cadence"),
    status: Optional[EnrollmentStatus] = typer.Option(None, help="Only this status"),
) -> None:
    """List enrollments with their status and current step."""
    repo = get_repository()
    enrollments = asyncio.run(repo.list_enrollments(owner, cadence, status))
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(
            f"{e.id}\t{e.cadence_id}\t{e.lead_id}\t{e.status.value}\t{e.current_step_id or '-'}"
        )


@enrollment_app.command("show")
def enrollment_show(
    enrollment_id: str,
    owner: str = typer.Option(..., help="Owner of the enrollment"),
) -> None:
    """Show one enrollment with its step instances and schedule entries."""
    repo = get_repository()
    enrollment = asyncio.run(repo.get_enrollment(owner, enrollment_id))
    if enrollment is None:
        typer.echo("Enrollment not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Enrollment {enrollment.id}: {enrollment.status.value} "
        f"(lead {enrollment.lead_id}, cadence {enrollment.cadence_id})"
    )
    if enrollment.last_error:
        typer.echo(f"Last error: {enrollment.last_error}")
    for instance in asyncio.run(repo.list_step_instances(owner, enrollment_id)):
        branch = f" [{instance.branch}]" if instance.branch else ""
        typer.echo(f"- {instance.step_id}: {instance.status.value}{branch}")
    for entry in asyncio.run(repo.list_schedule_entries(owner, enrollment_id)):
        typer.echo(
            f"  @ {entry.scheduled_at.isoformat()} {entry.step_id}: {entry.status.value}"
        )


@schedule_app.command("due")
def schedule_due(owner: str = typer.Option(..., help="Owner whose entries to list")) -> None:
    """List scheduled entries that are due now, without claiming them."""
    repo = get_repository()
    now = utcnow()
    entries = [
        e
        for e in asyncio.run(repo.list_schedule_entries(owner, status=ScheduleStatus.SCHEDULED))
        if e.scheduled_at <= now
    ]
    if not entries:
        typer.echo("No due entries")
        return
    for e in entries:
        typer.echo(f"{e.id}\t{e.scheduled_at.isoformat()}\t{e.lead_id}\t{e.step_id}\t{e.channel or e.node_kind}")


@schedule_app.command("tick")
def schedule_tick(
    limit: int = typer.Option(100, help="Maximum entries claimed in this tick"),
) -> None:
    """Claim due entries once: release delays and publish actions to executors."""
    config = load_config()
    repo = get_repository()
    transport = get_transport(config=config)
    progress = LeadProgress(repo, config)
    lease = config.scheduling.claim_lease_seconds
    dispatcher = ScheduleDispatcher(
        repo,
        progress,
        transport,
        batch_size=limit,
        claim_lease=timedelta(seconds=lease) if lease is not None else None,
    )

    async def _run():
        await transport.connect()
        try:
            return await dispatcher.tick()
        finally:
            await transport.disconnect()

    result = asyncio.run(_run())
    typer.echo(
        f"claimed={result.claimed} published={result.published} "
        f"delays_released={result.delays_released} skipped={result.skipped} errors={result.errors}"
    )


if __name__ == "__main__":
    app()

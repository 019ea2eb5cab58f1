"""Command line interface for operating opsflow."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer

from opsflow.app import OpsflowApp, create_app
from opsflow.catalog import seed_defaults
from opsflow.config import load_config
from opsflow.errors import OpsflowError
from opsflow.records import InMemoryRecordStore

T = TypeVar("T")

app = typer.Typer(help="CLI for opsflow workflow orchestration")

workflow_app = typer.Typer(help="Commands for managing workflows and runs")
approval_app = typer.Typer(help="Commands for the approval queue")
exception_app = typer.Typer(help="Commands for operational exceptions")
pipeline_app = typer.Typer(help="Commands for multi-workflow pipelines")
deadletter_app = typer.Typer(help="Commands for dead-lettered runs and breakers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(approval_app, name="approval")
app.add_typer(exception_app, name="exception")
app.add_typer(pipeline_app, name="pipeline")
app.add_typer(deadletter_app, name="deadletter")


class _Options:
    config_path: Optional[str] = None
    records_path: Optional[Path] = None


_options = _Options()


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to opsflow.yaml"),
    records: Optional[Path] = typer.Option(
        None, "--records", help="YAML/JSON file seeding the in-memory record store"
    ),
) -> None:
    """opsflow CLI entry point."""
    _options.config_path = config
    _options.records_path = records
    level = load_config(config).log_level.upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO))


def _run(fn: Callable[[OpsflowApp], Awaitable[T]]) -> T:
    """Build the app, run ``fn`` against it and turn opsflow errors into exit code 1."""

    async def runner() -> T:
        records = (
            InMemoryRecordStore.from_file(str(_options.records_path))
            if _options.records_path
            else None
        )
        ops = await create_app(load_config(_options.config_path), records=records)
        try:
            return await fn(ops)
        finally:
            await ops.close()

    try:
        return asyncio.run(runner())
    except OpsflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_input(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        typer.secho(f"--input is not valid JSON: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("--input must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# ----------------------------------------------------------------------
# Top level
@app.command("status")
def status() -> None:
    """Show breakers, capacity, queues and today's metrics."""

    async def show(ops: OpsflowApp):
        return await ops.orchestrator.get_system_status()

    _echo_json(_run(show).model_dump(mode="json"))


@app.command("seed")
def seed() -> None:
    """Install the default workflows, approval thresholds and exception rules."""

    async def install(ops: OpsflowApp):
        return await seed_defaults(ops.engine)

    report = _run(install)
    typer.echo(f"Workflows: {', '.join(report.workflows) or '(already present)'}")
    typer.echo(f"Thresholds: {', '.join(report.thresholds) or '(already present)'}")
    typer.echo(f"Exception rules: {', '.join(report.exception_rules) or '(already present)'}")


@app.command("run")
def run(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run the orchestrator loop.

    Example:
        opsflow run --lifespan 300
    """

    async def loop(ops: OpsflowApp):
        typer.echo("Starting orchestrator")
        await ops.orchestrator.run_forever(lifespan=lifespan)

    _run(loop)


@app.command("tick")
def tick() -> None:
    """Run a single orchestrator pass and print what it did."""

    async def once(ops: OpsflowApp):
        return await ops.orchestrator.tick()

    report = _run(once)
    typer.echo(
        f"Tick {report.tick}: {report.enqueued} enqueued, {len(report.runs)} run, "
        f"{report.events_drained} events drained, {report.escalated} escalated, "
        f"{report.reconciled} reconciled"
    )
    for result in report.runs:
        typer.echo(f"- {result.run_id}\t{result.status}")


# ----------------------------------------------------------------------
# Workflows
@workflow_app.command("list")
def workflow_list(
    active_only: bool = typer.Option(False, "--active", help="Only active workflows"),
) -> None:
    """List workflow definitions."""

    async def fetch(ops: OpsflowApp):
        return await ops.engine.list_definitions(active_only=active_only)

    definitions = _run(fetch)
    if not definitions:
        typer.echo("No workflows found")
        return
    for d in definitions:
        state = "active" if d.is_active else "inactive"
        typer.echo(
            f"{d.id}\t{d.workflow_type}\t{d.trigger}\t{state}\t"
            f"ok={d.success_count} failed={d.failure_count}"
        )


@workflow_app.command("start")
def workflow_start(
    workflow: str,
    input: Optional[str] = typer.Option(None, "--input", help="JSON object passed as input_data"),
    requested_by: Optional[str] = typer.Option(None, "--by"),
) -> None:
    """
    Start a workflow run now.

    Example:
        opsflow workflow start inventory_reorder --by alice
    """
    input_data = _parse_input(input)

    async def start(ops: OpsflowApp):
        return await ops.orchestrator.trigger_workflow(workflow, input_data, requested_by)

    result = _run(start)
    typer.echo(f"Run {result.run_id}: {result.status}")
    if result.pending_approvals:
        typer.echo(f"Waiting on {result.pending_approvals} approval(s)")
    if result.error:
        typer.echo(f"Error: {result.error}")


@workflow_app.command("runs")
def workflow_runs(
    workflow: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow id"),
    limit: int = typer.Option(50, help="Most recent runs to show"),
) -> None:
    """List recent runs."""

    async def fetch(ops: OpsflowApp):
        if workflow:
            runs = await ops.repository.list_runs(workflow_id=workflow)
            return sorted(runs, key=lambda r: r.created_at, reverse=True)[:limit]
        return await ops.orchestrator.workflow_history(limit)

    runs = _run(fetch)
    if not runs:
        typer.echo("No runs found")
        return
    for r in runs:
        flag = " [dead-letter]" if r.dead_letter else ""
        typer.echo(f"{r.id}\t{r.run_number}\t{r.workflow_type}\t{r.status}{flag}")


@workflow_app.command("show")
def workflow_show(run_id: str) -> None:
    """Show a run with its step history."""

    async def fetch(ops: OpsflowApp):
        return await ops.repository.get_run(run_id), await ops.repository.list_steps(run_id)

    run, steps = _run(fetch)
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_number} ({run.workflow_type}): {run.status}")
    typer.echo(
        f"Items: {run.items_processed} processed, {run.items_succeeded} succeeded, "
        f"{run.items_failed} failed; value {run.total_value:.2f}"
    )
    if run.error_message:
        typer.echo(f"Error: {run.error_message}")
    for step in steps:
        typer.echo(
            f"- {step.sequence}. {step.name} [{step.step_type}]: {step.status}"
            + (f" ({step.error})" if step.error else "")
        )


@workflow_app.command("cancel")
def workflow_cancel(run_id: str, reason: str = typer.Option("cancelled by operator")) -> None:
    """Cancel a pending, running or parked run."""

    async def cancel(ops: OpsflowApp):
        return await ops.engine.cancel_run(run_id, reason)

    result = _run(cancel)
    typer.echo(f"Run {result.run_id}: {result.status}")


@workflow_app.command("deactivate")
def workflow_deactivate(workflow_id: str) -> None:
    """Stop a workflow from being triggered."""

    async def deactivate(ops: OpsflowApp):
        return await ops.engine.deactivate_definition(workflow_id)

    definition = _run(deactivate)
    typer.echo(f"Workflow {definition.name} deactivated")


@workflow_app.command("override")
def workflow_override(
    decision_id: str,
    by: str = typer.Option(..., "--by"),
    reason: str = typer.Option(..., "--reason"),
    replacement: Optional[str] = typer.Option(None, help="JSON value replacing the AI choice"),
) -> None:
    """Record a human override of an AI decision."""
    value = json.loads(replacement) if replacement else None

    async def override(ops: OpsflowApp):
        return await ops.engine.override_decision(decision_id, by, reason, value)

    decision = _run(override)
    typer.echo(f"Decision {decision.id} ({decision.decision_type}) overridden by {by}")


# ----------------------------------------------------------------------
# Approvals
@approval_app.command("list")
def approval_list(role: Optional[str] = typer.Option(None, help="Only tickets visible to role")) -> None:
    """List open approval tickets, highest tier first."""

    async def fetch(ops: OpsflowApp):
        return await ops.engine.approvals.list_open(role)

    tickets = _run(fetch)
    if not tickets:
        typer.echo("No open approvals")
        return
    for t in tickets:
        typer.echo(
            f"{t.id}\tL{t.level}\t{t.status}\t{t.amount:.2f}\t{t.title}\t"
            f"roles={','.join(t.target_roles)}"
        )


def _decide(ticket_id: str, approved: bool, by: str, notes: Optional[str]) -> None:
    async def decide(ops: OpsflowApp):
        return await ops.engine.approvals.process_approval_decision(ticket_id, approved, by, notes)

    ticket = _run(decide)
    typer.echo(f"Ticket {ticket.id}: {ticket.status}")


@approval_app.command("approve")
def approval_approve(
    ticket_id: str,
    by: str = typer.Option(..., "--by"),
    notes: Optional[str] = typer.Option(None),
) -> None:
    """Approve a ticket; a run waiting only on it resumes."""
    _decide(ticket_id, True, by, notes)


@approval_app.command("reject")
def approval_reject(
    ticket_id: str,
    by: str = typer.Option(..., "--by"),
    notes: Optional[str] = typer.Option(None),
) -> None:
    """Reject a ticket."""
    _decide(ticket_id, False, by, notes)


@approval_app.command("bulk-approve")
def approval_bulk(
    ticket_ids: List[str],
    by: str = typer.Option(..., "--by"),
    notes: Optional[str] = typer.Option(None),
) -> None:
    """Approve several tickets; each one succeeds or fails on its own."""

    async def approve(ops: OpsflowApp):
        return await ops.engine.approvals.bulk_approve(ticket_ids, by, notes)

    for outcome in _run(approve):
        detail = outcome.status if outcome.success else f"error: {outcome.error}"
        typer.echo(f"{outcome.ticket_id}\t{detail}")


@approval_app.command("escalate")
def approval_escalate() -> None:
    """Escalate every open ticket that is past its deadline."""

    async def escalate(ops: OpsflowApp):
        return await ops.engine.approvals.escalate_due()

    tickets = _run(escalate)
    typer.echo(f"Escalated {len(tickets)} ticket(s)")


# ----------------------------------------------------------------------
# Exceptions
@exception_app.command("list")
def exception_list(status: Optional[str] = typer.Option(None, help="open, escalated or resolved")) -> None:
    """List operational exceptions."""

    async def fetch(ops: OpsflowApp):
        return await ops.engine.exceptions.list_exceptions(status)

    records = _run(fetch)
    if not records:
        typer.echo("No exceptions found")
        return
    for r in records:
        typer.echo(f"{r.id}\t{r.exception_type}\t{r.severity}\t{r.status}\t{r.title}")


@exception_app.command("resolve")
def exception_resolve(
    exception_id: str,
    by: str = typer.Option(..., "--by"),
    action: Optional[str] = typer.Option(None, help="JSON object describing the action taken"),
    notes: Optional[str] = typer.Option(None),
) -> None:
    """Mark an exception resolved by a human."""
    action_data = _parse_input(action)

    async def resolve(ops: OpsflowApp):
        return await ops.engine.exceptions.resolve_exception(exception_id, by, action_data, notes)

    record = _run(resolve)
    typer.echo(f"Exception {record.id}: {record.status} ({record.resolution_type})")


@exception_app.command("escalate")
def exception_escalate(exception_id: str, notes: Optional[str] = typer.Option(None)) -> None:
    """Escalate an exception to the escalation roles."""

    async def escalate(ops: OpsflowApp):
        return await ops.engine.exceptions.escalate_exception(exception_id, notes)

    record = _run(escalate)
    typer.echo(f"Exception {record.id}: {record.status}")


# ----------------------------------------------------------------------
# Pipelines
@pipeline_app.command("list")
def pipeline_list() -> None:
    """List available pipelines."""

    async def fetch(ops: OpsflowApp):
        return ops.pipelines.list_pipelines()

    for p in _run(fetch):
        stages = " -> ".join(s.workflow for s in p.stages)
        typer.echo(f"{p.id}\t{p.name}\t{stages}")


@pipeline_app.command("plan")
def pipeline_plan(pipeline_id: str) -> None:
    """Show how a pipeline's stages resolve to workflow definitions."""

    async def fetch(ops: OpsflowApp):
        return await ops.pipelines.get_execution_plan(pipeline_id)

    for stage in _run(fetch):
        state = "ready" if stage["active"] else "missing or inactive"
        after = ", ".join(stage["depends_on"]) or "-"
        typer.echo(f"{stage['stage']}. {stage['workflow']}\t{state}\twave {stage['wave']}\tafter {after}")


@pipeline_app.command("run")
def pipeline_run(
    pipeline_id: str,
    input: Optional[str] = typer.Option(None, "--input", help="JSON object passed to the first stage"),
    requested_by: Optional[str] = typer.Option(None, "--by"),
) -> None:
    """Execute a pipeline from its first stage."""
    input_data = _parse_input(input)

    async def execute(ops: OpsflowApp):
        return await ops.orchestrator.trigger_pipeline(pipeline_id, input_data, requested_by)

    result = _run(execute)
    typer.echo(
        f"Pipeline run {result.pipeline_run_id}: {result.status} "
        f"({result.stages_completed}/{result.stages_total} stages)"
    )
    if result.error:
        typer.echo(f"Stopped at {result.failed_stage}: {result.error}")


@pipeline_app.command("resume")
def pipeline_resume(pipeline_run_id: str) -> None:
    """Re-enter a pipeline parked on approvals."""

    async def resume(ops: OpsflowApp):
        return await ops.pipelines.resume_pipeline(pipeline_run_id)

    result = _run(resume)
    typer.echo(
        f"Pipeline run {result.pipeline_run_id}: {result.status} "
        f"({result.stages_completed}/{result.stages_total} stages)"
    )


# ----------------------------------------------------------------------
# Dead letters and breakers
@deadletter_app.command("list")
def deadletter_list() -> None:
    """List dead-lettered runs that have not been replayed."""

    async def fetch(ops: OpsflowApp):
        return await ops.engine.list_dead_letters()

    runs = _run(fetch)
    if not runs:
        typer.echo("No dead letters")
        return
    for r in runs:
        typer.echo(f"{r.id}\t{r.workflow_type}\tattempt {r.attempt}\t{r.error_message}")


@deadletter_app.command("retry")
def deadletter_retry(run_id: str, requested_by: Optional[str] = typer.Option(None, "--by")) -> None:
    """Replay a dead letter as a fresh attempt chain."""

    async def replay(ops: OpsflowApp):
        return await ops.engine.retry_dead_letter(run_id, requested_by)

    result = _run(replay)
    typer.echo(f"Replay run {result.run_id}: {result.status} after {result.attempts} attempt(s)")


@deadletter_app.command("reset-breaker")
def deadletter_reset_breaker(workflow_id: str) -> None:
    """Close a workflow's circuit breaker."""

    async def reset(ops: OpsflowApp):
        ops.engine.reset_breaker(workflow_id)

    _run(reset)
    typer.echo(f"Breaker for {workflow_id} reset")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

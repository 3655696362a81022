"""Command line interface for the automation engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml

from intentflow import AutomationEngine, JobWorker, get_repository, get_transport
from intentflow.errors import LookupFailure
from intentflow.persistence import (
    Business,
    BusinessAutomationSettings,
    IntentRecipeMapping,
    RunStatus,
    WorkflowDefinition,
)

app = typer.Typer(help="CLI for intentflow automations")

event_app = typer.Typer(help="Commands for submitting events")
run_app = typer.Typer(help="Commands for inspecting and processing runs")
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
scheduler_app = typer.Typer(help="Commands for the scheduler")

app.add_typer(event_app, name="event")
app.add_typer(run_app, name="run")
app.add_typer(workflow_app, name="workflow")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """Intentflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_payload(payload: Optional[str]) -> dict:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


@event_app.command("submit")
def event_submit(
    business_id: str,
    intent: str,
    payload: Optional[str] = typer.Option(None, help="JSON object payload"),
    dedupe_key: Optional[str] = None,
    contact_id: Optional[str] = None,
    source: str = "api",
    source_url: Optional[str] = None,
) -> None:
    """
    Submit an event and trigger the workflows its intent routes to.

    Example:
        intentflow event submit b1 contact.submit --payload '{"email": "a@b.co"}'
    """
    engine = AutomationEngine.from_config()
    try:
        result = asyncio.run(
            engine.submit_event(
                business_id,
                intent,
                _parse_payload(payload),
                dedupe_key=dedupe_key,
                contact_id=contact_id,
                source=source,
                source_url=source_url,
            )
        )
    except LookupFailure as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(result.model_dump_json(indent=2))


@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = None,
    workflow_id: Optional[str] = None,
) -> None:
    """List runs with their status."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(status=status, workflow_id=workflow_id))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show a run and each of its jobs."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    jobs = asyncio.run(repo.list_jobs(run_id))
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Workflow: {run.workflow_id}")
    typer.echo(f"Context: {json.dumps(run.context, default=str)}")
    for job in jobs:
        line = f"- {job.step_index} {job.action_type}: {job.status.value}"
        if job.retry_count:
            line += f" (retries: {job.retry_count})"
        if job.error_message:
            line += f" error: {job.error_message}"
        typer.echo(line)


@run_app.command("process")
def run_process(run_id: str) -> None:
    """Process the due jobs of a run now."""
    engine = AutomationEngine.from_config()
    try:
        result = asyncio.run(engine.processor.process_run(run_id))
    except LookupFailure as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(result.model_dump_json(indent=2))


@workflow_app.command("list")
def workflow_list(business_id: Optional[str] = None) -> None:
    """List workflow definitions."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows(business_id=business_id))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.is_active else "inactive"
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.trigger_type.value}\t{state}")


@workflow_app.command("import")
def workflow_import(path: Path) -> None:
    """
    Load businesses, settings, intent mappings and workflows from a YAML file.

    Top-level keys: ``businesses``, ``settings``, ``intent_mappings`` and
    ``workflows``, each a list of records.
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or {}
    repo = get_repository()

    async def _load() -> int:
        count = 0
        for item in data.get("businesses", []):
            await repo.save_business(Business(**item))
            count += 1
        for item in data.get("settings", []):
            await repo.save_automation_settings(BusinessAutomationSettings(**item))
            count += 1
        for item in data.get("intent_mappings", []):
            await repo.save_intent_mapping(IntentRecipeMapping(**item))
            count += 1
        for item in data.get("workflows", []):
            await repo.save_workflow(WorkflowDefinition(**item))
            count += 1
        return count

    count = asyncio.run(_load())
    typer.echo(f"Imported {count} records")


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """Fire due schedule workflows and sweep queued jobs once."""
    engine = AutomationEngine.from_config()
    result = asyncio.run(engine.scheduler.tick())
    typer.echo(
        f"Triggered {len(result.triggered_workflow_ids)} workflows, "
        f"swept {len(result.swept_run_ids)} runs, "
        f"released {result.released_jobs} stale jobs"
    )


@app.command("worker")
def worker(lifespan: Optional[float] = None) -> None:
    """
    Run a worker consuming process-run requests from the configured transport.

    Example:
        intentflow worker --lifespan 300
    """
    engine = AutomationEngine.from_config(inline=True)
    job_worker = JobWorker(get_transport(), engine.processor)
    typer.echo("Starting worker")
    asyncio.run(job_worker.start(lifespan=lifespan))


if __name__ == "__main__":
    app()

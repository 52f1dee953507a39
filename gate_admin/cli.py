"""
Admin CLI for inspecting workflows and managing stored gate runs.

Operates directly on the SQLite database; no server required.
"""

import asyncio
import json
import os
import sys

import click

from gate_common.errors import WorkflowError
from gate_common.models import Workflow
from gate_common.workflow import code_quality_workflow, load_workflow
from gate_persistence.sqlite_repository import SQLiteGateRunRepository


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("GATE_DB_PATH", "ci_gate.db")


def get_repository() -> SQLiteGateRunRepository:
    """Get the repository instance."""
    return SQLiteGateRunRepository(get_db_path())


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def describe_workflow(workflow: Workflow) -> list[str]:
    """Render a workflow as human-readable lines."""
    lines = [f"Workflow: {workflow.name}", "Triggers:"]
    for trigger in workflow.triggers:
        branches = ", ".join(trigger.branches) if trigger.branches is not None else "any"
        lines.append(f"  {trigger.event} (branches: {branches})")

    lines.append("Jobs:")
    for job in workflow.jobs.values():
        lines.append(
            f"  {job.id} [{job.check}] name={job.name} timeout={job.timeout_minutes:g}m"
        )
        for key, value in job.env.items():
            lines.append(f"    env {key}={value}")
        for service in job.services:
            ports = ", ".join(str(p) for p in service.ports) or "none"
            lines.append(f"    service {service.name}: {service.image} (ports: {ports})")
        for step in job.steps:
            action = f"run: {step.run}" if step.run else f"uses: {step.uses}"
            lines.append(f"    - {step.display_name} ({action})")
    return lines


@click.group()
def cli():
    """CI Gate Admin - Inspect workflows and manage gate runs."""
    pass


@cli.group()
def workflow():
    """Inspect workflow definitions."""
    pass


@cli.group()
def runs():
    """Manage stored gate runs."""
    pass


# ============================================================================
# Workflow Commands
# ============================================================================


@workflow.command("show")
@click.option("--file", "path", help="Workflow YAML (default: built-in gate)")
def workflow_show(path: str | None):
    """Show the jobs, services and steps of a workflow."""
    try:
        wf = load_workflow(path) if path else code_quality_workflow()
    except WorkflowError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for line in describe_workflow(wf):
        click.echo(line)


@workflow.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def workflow_validate(path: str):
    """Validate a workflow YAML file."""
    try:
        wf = load_workflow(path)
    except WorkflowError as e:
        click.echo(f"✗ Invalid workflow: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Workflow '{wf.name}' is valid ({len(wf.jobs)} jobs: {', '.join(wf.jobs)})")


# ============================================================================
# Run Commands
# ============================================================================


@runs.command("list")
@click.option("--ref", help="Only list runs for this branch")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def runs_list(ref: str | None, json_output: bool):
    """List gate runs, newest first."""

    async def list_runs():
        repo = get_repository()
        await repo.initialize()

        try:
            gate_runs = await repo.list_runs(ref=ref)

            if json_output:
                click.echo(json.dumps([r.to_dict() for r in gate_runs], indent=2))
                return

            if not gate_runs:
                click.echo("No runs found.")
                return

            click.echo(f"\n{'ID':<38} {'Event':<13} {'Ref':<20} {'Status':<10} {'Jobs':<30}")
            click.echo("-" * 114)
            for r in gate_runs:
                jobs = " ".join(
                    f"{j.job_id}:{'ok' if j.success else 'fail' if j.success is False else '..'}"
                    for j in r.jobs
                )
                click.echo(f"{r.id:<38} {r.event:<13} {r.ref[:20]:<20} {r.status:<10} {jobs:<30}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_runs())


@runs.command("delete")
@click.argument("run_id")
def runs_delete(run_id: str):
    """Delete a run with its job results and events."""

    async def delete():
        repo = get_repository()
        await repo.initialize()

        try:
            gate_run = await repo.get_run(run_id)
            if gate_run is None:
                click.echo(f"Error: Run not found: {run_id}", err=True)
                sys.exit(1)

            if not gate_run.is_terminal:
                click.echo(f"Error: Run {run_id} is still {gate_run.status}", err=True)
                sys.exit(1)

            await repo.delete_run(run_id)
            click.echo(f"✓ Run {run_id} deleted")

        finally:
            await repo.close()

    run_async(delete())


@runs.command("prune")
@click.option("--keep", type=int, default=50, show_default=True, help="Finished runs to keep")
def runs_prune(keep: int):
    """Delete the oldest finished runs, keeping the newest KEEP."""
    if keep < 0:
        click.echo("Error: --keep must be zero or more", err=True)
        sys.exit(1)

    async def prune():
        repo = get_repository()
        await repo.initialize()

        try:
            finished = [r for r in await repo.list_runs() if r.is_terminal]
            removed = 0
            for gate_run in finished[keep:]:
                if await repo.delete_run(gate_run.id):
                    removed += 1
            click.echo(f"✓ Pruned {removed} run(s)")

        finally:
            await repo.close()

    run_async(prune())


if __name__ == "__main__":
    cli()

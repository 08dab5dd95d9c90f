"""Command line interface for inspecting adxflow executions."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

import typer

from adxflow.contracts import ExecutionStatus
from adxflow.persistence import WorkflowExecution, get_repository

app = typer.Typer(help="CLI for adxflow workflow executions")

# Command groups
execution_app = typer.Typer(help="Commands for inspecting executions")

app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Root logging level"),
) -> None:
    """adxflow CLI entry point."""
    logging.basicConfig(level=log_level.upper())


async def _list_executions(
    tenant: Optional[str], statuses: Optional[List[ExecutionStatus]]
) -> List[WorkflowExecution]:
    repo = get_repository()
    await repo.open()
    try:
        return await repo.list_executions(tenant, statuses)
    finally:
        await repo.close()


async def _get_execution(execution_id: str) -> Optional[WorkflowExecution]:
    repo = get_repository()
    await repo.open()
    try:
        return await repo.get_execution(execution_id)
    finally:
        await repo.close()


@execution_app.command("list")
def execution_list(
    tenant: Optional[str] = typer.Option(None, "--tenant", help="Only this tenant"),
    status: Optional[List[ExecutionStatus]] = typer.Option(
        None, "--status", help="Only executions in these statuses"
    ),
) -> None:
    """
    List executions with their current status.

    Reads the configured repository (ADXFLOW_DATABASE_URL, DATABASE_URL or
    config.yaml).

    Example:
        adxflow execution list --tenant acme
        # Output: 3f2a...    acme    user_onboarding@1.0.0    running    step 1
    """
    executions = asyncio.run(_list_executions(tenant, status or None))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.execution_id}\t{execution.tenant_id}\t"
            f"{execution.workflow_type}@{execution.version}\t"
            f"{execution.status.value}\tstep {execution.current_step_index}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show one execution with its step history."""
    execution = asyncio.run(_get_execution(execution_id))
    if execution is None:
        typer.secho(f"Execution {execution_id} not found", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Execution: {execution.execution_id}")
    typer.echo(f"Workflow: {execution.workflow_type} v{execution.version}")
    typer.echo(f"Tenant: {execution.tenant_id}")
    typer.echo(f"Status: {execution.status.value}")
    typer.echo(f"Current step: {execution.current_step_index}")
    if execution.resume_point:
        typer.echo(f"Resume point: {execution.resume_point}")
    if execution.error is not None:
        typer.echo(
            f"Error: {execution.error.kind.value} at {execution.error.step_name}: "
            f"{execution.error.message}"
        )
    if execution.result is not None:
        typer.echo(f"Result: {execution.result}")
    typer.echo("History:")
    if not execution.history:
        typer.echo("  (none)")
    for record in execution.history:
        line = (
            f"  {record.sequence}. {record.step_name} "
            f"attempt {record.attempt_count}: {record.status.value}"
        )
        if record.last_error is not None:
            line += f" ({record.last_error.kind.value}: {record.last_error.message})"
        typer.echo(line)


if __name__ == "__main__":
    app()

"""CLI commands for inspecting jobs and queues.

Usage:
    cartojobs status export 5b1e4c2a-...
    cartojobs stats import
"""

from __future__ import annotations

import asyncio
import json

import typer
from rich.console import Console
from rich.table import Table

from cartojobs.config import Settings
from cartojobs.jobs.families import TaskFamily
from cartojobs.jobs.record import JobRecord
from cartojobs.runtime import create_job_system

STATE_STYLES = {
    "queued": "yellow",
    "active": "cyan",
    "completed": "green",
    "failed": "red",
}


def status(
    family: TaskFamily = typer.Argument(..., help="Task family the job belongs to"),
    job_id: str = typer.Argument(..., help="Job id returned at submission"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw record as JSON"),
) -> None:
    """Show a job's state, attempts and outcome."""
    job = asyncio.run(_find_job(family, job_id))
    if job is None:
        typer.echo(f"Job not found: {job_id}", err=True)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(job.to_dict(), indent=2))
        return

    console = Console()
    style = STATE_STYLES.get(job.state.value, "white")
    console.print(f"[bold]{job.id}[/bold] ({job.task}) [{style}]{job.state.value}[/{style}]")
    console.print(f"  attempts: {job.attempts}/{job.max_attempts}")
    console.print(f"  enqueued: {job.enqueued_at.isoformat()}")
    if job.finished_at:
        console.print(f"  finished: {job.finished_at.isoformat()}")
    if job.result is not None:
        console.print(f"  result:   {json.dumps(job.result)}")
    if job.error:
        kind = job.failure_kind.value if job.failure_kind else "unknown"
        console.print(f"  error:    [red]{job.error}[/red] ({kind})")


def stats(
    family: TaskFamily | None = typer.Argument(None, help="Task family (all if omitted)"),
) -> None:
    """Show pending, delayed, active and failed counts."""
    families = [family] if family else list(TaskFamily)
    counts = asyncio.run(_queue_stats(families))

    table = Table(title="Job queues")
    table.add_column("Queue", style="cyan")
    for column in ("pending", "delayed", "active", "failed"):
        table.add_column(column.capitalize(), justify="right")

    for fam in families:
        row = counts[fam]
        table.add_row(
            fam.queue_name,
            *(str(row[c]) for c in ("pending", "delayed", "active", "failed")),
        )

    Console().print(table)


async def _find_job(family: TaskFamily, job_id: str) -> JobRecord | None:
    system = create_job_system(Settings())
    try:
        return await system.submitter.find_job(family, job_id)
    finally:
        await system.close()


async def _queue_stats(families: list[TaskFamily]) -> dict[TaskFamily, dict[str, int]]:
    system = create_job_system(Settings())
    try:
        return {fam: await system.queue(fam).get_queue_stats() for fam in families}
    finally:
        await system.close()

"""CLI command for running a job worker.

Usage:
    cartojobs worker import
    cartojobs worker export --concurrency 2
    cartojobs worker ai --once
"""

from __future__ import annotations

import asyncio

import typer

from cartojobs.config import Settings
from cartojobs.jobs.families import TaskFamily
from cartojobs.observability.logging import configure_logging
from cartojobs.runtime import create_job_system


def worker(
    family: TaskFamily = typer.Argument(..., help="Task family to process"),
    concurrency: int | None = typer.Option(
        None,
        "--concurrency",
        "-c",
        min=1,
        help="Handlers run at once (defaults to the family's setting)",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Process everything currently claimable, then exit",
    ),
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="Override log level"),
) -> None:
    """Claim and execute jobs until interrupted."""
    settings = Settings()
    configure_logging(json_format=settings.log_json, level=log_level or settings.log_level)
    asyncio.run(_run_worker(settings, family, concurrency, once))


async def _run_worker(
    settings: Settings,
    family: TaskFamily,
    concurrency: int | None,
    once: bool,
) -> None:
    system = create_job_system(settings)
    try:
        worker = system.create_worker(family, concurrency=concurrency)
        if once:
            count = await worker.run_until_empty()
            typer.echo(f"Processed {count} job(s) from {family.queue_name}")
        else:
            await worker.run()
    finally:
        await system.close()

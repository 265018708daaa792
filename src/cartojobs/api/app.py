"""FastAPI application factory for job submission.

Creates the application with:
- Job submission and status routers
- Health and Prometheus endpoints
- Error handlers mapping submission errors to HTTP statuses
- Lifecycle management for the broker connection
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, cast

from fastapi import FastAPI
from starlette.types import ExceptionHandler

from cartojobs.api.errors import generic_exception_handler, submission_exception_handler
from cartojobs.api.routers import health, jobs
from cartojobs.config import Settings
from cartojobs.jobs.errors import SubmissionError
from cartojobs.observability.logging import configure_logging
from cartojobs.runtime import JobSystem, create_job_system

logger = logging.getLogger(__name__)


def create_app(system: JobSystem | None = None, settings: Settings | None = None) -> FastAPI:
    """Create the job API.

    Args:
        system: Job system to serve; when omitted one is built from
            ``settings`` at startup and closed at shutdown
        settings: Settings used when no system is given
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = system is None
        if owned:
            app_settings = settings or Settings()
            configure_logging(json_format=app_settings.log_json, level=app_settings.log_level)
            app.state.job_system = create_job_system(app_settings)
        else:
            app.state.job_system = system
        logger.info("Job API started")
        try:
            yield
        finally:
            if owned:
                await app.state.job_system.close()
            logger.info("Job API stopped")

    app = FastAPI(
        title="cartojobs",
        description="Asynchronous import, export and AI job submission",
        version="0.1.0",
        lifespan=lifespan,
    )
    if system is not None:
        # Available before startup, e.g. for test clients without lifespan
        app.state.job_system = system

    app.add_exception_handler(
        SubmissionError, cast(ExceptionHandler, submission_exception_handler)
    )
    app.add_exception_handler(Exception, cast(ExceptionHandler, generic_exception_handler))

    app.include_router(health.router)
    app.include_router(jobs.router)

    return app

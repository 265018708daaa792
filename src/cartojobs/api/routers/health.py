"""Health and metrics endpoints.

- /health/live  - Liveness probe (always OK while the process runs)
- /health/ready - Readiness probe (checks broker connectivity)
- /metrics      - Prometheus exposition
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from cartojobs.api.deps import get_job_system
from cartojobs.observability.metrics import CONTENT_TYPE
from cartojobs.runtime import JobSystem

router = APIRouter(tags=["health"])

System = Annotated[JobSystem, Depends(get_job_system)]


@router.get("/health/live")
async def liveness() -> dict[str, str]:
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness(system: System) -> JSONResponse:
    """Ready when the broker answers a ping."""
    if await system.broker.ping():
        return JSONResponse({"status": "ready"})
    return JSONResponse({"status": "unavailable", "broker": "unreachable"}, status_code=503)


@router.get("/metrics")
async def metrics(system: System) -> Response:
    return Response(content=system.metrics.render(), media_type=CONTENT_TYPE)

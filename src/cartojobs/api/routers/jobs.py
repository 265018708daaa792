"""API router for job submission and status.

Provides endpoints for:
- Submitting import, export and AI jobs (returns the job id immediately)
- Polling a job's status and outcome
- Queue statistics per task family
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from cartojobs.api.deps import Caller, get_job_system, get_submitter
from cartojobs.jobs import JobRecord, TaskFamily
from cartojobs.runtime import JobSystem
from cartojobs.submission import JobSubmitter

router = APIRouter(prefix="/jobs", tags=["Jobs"])


class JobSubmitRequest(BaseModel):
    """Submission body shared by all task families."""

    id: str | None = Field(default=None, description="Caller-chosen id for idempotent retries")
    payload: dict[str, Any] = Field(default_factory=dict, description="Task-specific data")


class JobSubmitResponse(BaseModel):
    job_id: str = Field(serialization_alias="jobId")


class JobStatusResponse(BaseModel):
    """Job status as seen by a polling client."""

    id: str
    family: TaskFamily
    task: str
    state: str
    attempts: int
    max_attempts: int
    result: Any = None
    error: str | None = None
    failure_kind: str | None = None
    enqueued_at: str
    started_at: str | None = None
    finished_at: str | None = None

    @classmethod
    def from_record(cls, family: TaskFamily, job: JobRecord) -> JobStatusResponse:
        return cls(
            id=job.id,
            family=family,
            task=job.task,
            state=job.state.value,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            result=job.result,
            error=job.error,
            failure_kind=job.failure_kind.value if job.failure_kind else None,
            enqueued_at=job.enqueued_at.isoformat(),
            started_at=job.started_at.isoformat() if job.started_at else None,
            finished_at=job.finished_at.isoformat() if job.finished_at else None,
        )


class QueueStatsResponse(BaseModel):
    pending: int
    delayed: int
    active: int
    failed: int


Submitter = Annotated[JobSubmitter, Depends(get_submitter)]
CallerDep = Annotated[Caller, Depends()]


@router.post("/import", response_model=JobSubmitResponse, status_code=202)
async def submit_import(
    request: JobSubmitRequest, submitter: Submitter, caller: CallerDep
) -> JobSubmitResponse:
    """Queue a dataset import."""
    job_id = await submitter.enqueue_import(caller.stamp(request.payload), job_id=request.id)
    return JobSubmitResponse(job_id=job_id)


@router.post("/export", response_model=JobSubmitResponse, status_code=202)
async def submit_export(
    request: JobSubmitRequest, submitter: Submitter, caller: CallerDep
) -> JobSubmitResponse:
    """Queue a cartographic export."""
    job_id = await submitter.enqueue_export(
        caller.stamp(request.payload), job_id=request.id, plan_tier=caller.plan_tier
    )
    return JobSubmitResponse(job_id=job_id)


@router.post("/ai", response_model=JobSubmitResponse, status_code=202)
async def submit_ai_task(
    request: JobSubmitRequest, submitter: Submitter, caller: CallerDep
) -> JobSubmitResponse:
    """Queue an AI-assisted generation task."""
    job_id = await submitter.enqueue_ai_task(
        caller.stamp(request.payload), job_id=request.id, plan_tier=caller.plan_tier
    )
    return JobSubmitResponse(job_id=job_id)


@router.get("/stats/{family}", response_model=QueueStatsResponse)
async def queue_stats(
    family: TaskFamily, system: Annotated[JobSystem, Depends(get_job_system)]
) -> QueueStatsResponse:
    """Job counts for one family's queue."""
    stats = await system.queue(family).get_queue_stats()
    return QueueStatsResponse(**stats)


@router.get("/{family}/{job_id}", response_model=JobStatusResponse)
async def get_job_status(family: TaskFamily, job_id: str, submitter: Submitter) -> JobStatusResponse:
    """Current status of a job, including its result or last error."""
    job = await submitter.find_job(family, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return JobStatusResponse.from_record(family, job)

"""Job submission boundary used by request handlers.

Request handlers call ``enqueue_import``, ``enqueue_export`` or
``enqueue_ai_task``; each validates the payload for its family, checks the
caller's plan when one is given, and hands the job to the family's queue.
Submission returns the job id as soon as the job is durably recorded;
outcomes are read back later through ``find_job``/``find_job_status``.

Caller identity (``orgId``/``userId``) is resolved upstream and trusted.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cartojobs.jobs.errors import EntitlementError, SubmissionError
from cartojobs.jobs.families import TaskFamily, TaskKind
from cartojobs.jobs.queue import JobQueue
from cartojobs.jobs.record import JobRecord, JobState

logger = logging.getLogger(__name__)

PREMIUM_EXPORT_FORMATS = frozenset({"svg", "pdf", "geotiff", "shp"})


class PlanTier(str, Enum):
    """Subscription tier of the submitting organisation."""

    BASIC = "BASIC"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    org_id: str | None = Field(default=None, alias="orgId")
    user_id: str | None = Field(default=None, alias="userId")


class ImportPayload(_Payload):
    source_type: str = Field(default="geojson", alias="sourceType", min_length=1)
    file_name: str = Field(alias="fileName", min_length=1)


class ExportPayload(_Payload):
    project_id: str = Field(alias="projectId", min_length=1)
    format: str = Field(min_length=1)
    dpi: int = Field(ge=72, le=600)


class AiTaskPayload(_Payload):
    project_id: str = Field(alias="projectId", min_length=1)
    task: Literal["text2map", "ocr2vector", "styleFromPrompt"]
    prompt: str = Field(min_length=1)


P = TypeVar("P", bound=_Payload)


def _validate(model: type[P], payload: Mapping[str, Any]) -> P:
    try:
        return model.model_validate(dict(payload))
    except ValidationError as e:
        details = e.errors(include_url=False, include_context=False)
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "payload" for err in details)
        raise SubmissionError(f"Invalid {model.__name__} ({fields})", details=details) from e


def _plan(plan_tier: PlanTier | str | None) -> PlanTier:
    # Organizations without a recorded plan are on the free tier
    if plan_tier is None:
        return PlanTier.BASIC
    try:
        return PlanTier(plan_tier)
    except ValueError as e:
        raise SubmissionError(f"Unknown plan tier: {plan_tier}") from e


def _dump(model: _Payload) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True)


class JobSubmitter:
    """Validates and enqueues jobs on the per-family queues."""

    def __init__(self, queues: Mapping[TaskFamily, JobQueue]) -> None:
        missing = set(TaskFamily) - set(queues)
        if missing:
            raise ValueError(f"No queue for families: {sorted(f.value for f in missing)}")
        self.queues = dict(queues)

    def queue_for(self, family: TaskFamily) -> JobQueue:
        return self.queues[family]

    async def enqueue_import(
        self,
        payload: Mapping[str, Any],
        job_id: str | None = None,
    ) -> str:
        """Queue a dataset import.

        Raises:
            SubmissionError: ``fileName`` missing or payload malformed
        """
        data = _validate(ImportPayload, payload)
        return await self._submit(TaskFamily.IMPORT, TaskKind.IMPORT, _dump(data), job_id)

    async def enqueue_export(
        self,
        payload: Mapping[str, Any],
        job_id: str | None = None,
        plan_tier: PlanTier | str | None = None,
    ) -> str:
        """Queue a cartographic export.

        Raises:
            SubmissionError: Missing ``projectId``/``format`` or ``dpi``
                outside 72-600
            EntitlementError: Premium format requested on the BASIC plan
                (the default when no plan is given)
        """
        data = _validate(ExportPayload, payload)
        if (
            _plan(plan_tier) is PlanTier.BASIC
            and data.format.lower() in PREMIUM_EXPORT_FORMATS
        ):
            raise EntitlementError(f"Export format '{data.format}' requires a paid plan")
        return await self._submit(TaskFamily.EXPORT, TaskKind.EXPORT, _dump(data), job_id)

    async def enqueue_ai_task(
        self,
        payload: Mapping[str, Any],
        job_id: str | None = None,
        plan_tier: PlanTier | str | None = None,
    ) -> str:
        """Queue an AI-assisted generation task.

        The job's task name is the AI task kind (``text2map``,
        ``ocr2vector`` or ``styleFromPrompt``).

        Raises:
            SubmissionError: Unknown task kind, missing prompt or project
            EntitlementError: Plan below PREMIUM, or no plan given
        """
        data = _validate(AiTaskPayload, payload)
        if _plan(plan_tier) in (PlanTier.BASIC, PlanTier.STANDARD):
            raise EntitlementError("AI tasks require the PREMIUM plan or above")
        return await self._submit(TaskFamily.AI, TaskKind(data.task), _dump(data), job_id)

    async def _submit(
        self,
        family: TaskFamily,
        kind: TaskKind,
        payload: dict[str, Any],
        job_id: str | None,
    ) -> str:
        queue = self.queues[family]
        job_id = await queue.submit(kind.value, payload, job_id=job_id)
        logger.info(
            f"Enqueued {kind.value} job {job_id}",
            extra={"family": family.value, "org_id": payload.get("orgId")},
        )
        return job_id

    async def find_job(self, family: TaskFamily, job_id: str) -> JobRecord | None:
        """Stored record of a job, for status queries."""
        return await self.queues[family].get_job(job_id)

    async def find_job_status(self, family: TaskFamily, job_id: str) -> JobState | None:
        return await self.queues[family].find_job_status(job_id)

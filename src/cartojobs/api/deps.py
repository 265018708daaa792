"""Shared FastAPI dependencies for the job routers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request

from cartojobs.runtime import JobSystem
from cartojobs.submission import JobSubmitter, PlanTier


def get_job_system(request: Request) -> JobSystem:
    """The process's job system, attached to the app at startup."""
    system: JobSystem = request.app.state.job_system
    return system


def get_submitter(system: Annotated[JobSystem, Depends(get_job_system)]) -> JobSubmitter:
    return system.submitter


class Caller:
    """Identity resolved by the authentication layer in front of this API."""

    def __init__(
        self,
        org_id: Annotated[str | None, Header(alias="X-Org-Id")] = None,
        user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
        plan_tier: Annotated[PlanTier | None, Header(alias="X-Plan-Tier")] = None,
    ) -> None:
        self.org_id = org_id
        self.user_id = user_id
        self.plan_tier = plan_tier

    def stamp(self, payload: dict[str, object]) -> dict[str, object]:
        """Payload with the caller's tenant and user ids filled in."""
        stamped = dict(payload)
        if self.org_id:
            stamped["orgId"] = self.org_id
        if self.user_id:
            stamped["userId"] = self.user_id
        return stamped

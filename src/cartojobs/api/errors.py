"""Error responses for the job API.

Submission failures are reported synchronously; job failures never are
(they surface through the status endpoint once the job has run).
"""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cartojobs.jobs.errors import EntitlementError, SubmissionError

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Body of every error response."""

    code: str
    message: str
    details: list[dict[str, object]] = []


async def submission_exception_handler(request: Request, exc: SubmissionError) -> JSONResponse:
    """Map submission errors to 402 (plan) or 422 (payload)."""
    if isinstance(exc, EntitlementError):
        status_code, code = 402, "UpgradeRequired"
    else:
        status_code, code = 422, "InvalidSubmission"

    body = ErrorResponse(code=code, message=str(exc), details=exc.details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected errors without leaking internals to the client."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = ErrorResponse(code="InternalError", message="Internal server error")
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

"""Error taxonomy for job submission and execution."""

from __future__ import annotations


class JobError(Exception):
    """Base class for all job layer errors."""


class SubmissionError(JobError):
    """Invalid payload or task name; raised to the submitter, never queued."""

    def __init__(self, message: str, details: list[dict[str, object]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class EntitlementError(SubmissionError):
    """The caller's plan does not include the requested job type."""


class ClaimConflictError(JobError):
    """Lost a race for a claim. Internal only; the claimant retries."""


class ClaimNotHeldError(JobError):
    """Ack or nack attempted by a worker that no longer holds the claim."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Claim not held for job: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(JobError):
    """State change not permitted by the job state machine."""


class TaskError(JobError):
    """Base class for errors raised by task handlers."""


class TransientTaskError(TaskError):
    """Retryable failure (network hiccup, upstream timeout)."""


class TerminalTaskError(TaskError):
    """Non-retryable failure; the job is failed with this detail."""


class UnknownTaskError(TerminalTaskError):
    """No handler is registered for the job's task name."""

    def __init__(self, task: str) -> None:
        super().__init__(f"Unknown task type: {task}")
        self.task = task


class ReclaimTimeout(TransientTaskError):
    """The claim holder went silent past the visibility timeout."""

    def __init__(self, job_id: str, timeout: float) -> None:
        super().__init__(f"Visibility timeout ({timeout:g}s) elapsed without ack for job: {job_id}")
        self.job_id = job_id
        self.timeout = timeout

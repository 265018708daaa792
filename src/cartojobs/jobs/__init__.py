"""Background job processing for cartojobs.

Provides a per-family job queue with:
- Idempotent submission
- Atomic claims with a visibility timeout
- Retry with exponential backoff, terminal failure after max attempts
- Workers with bounded concurrency and handler timeouts

Example:
    # Submit a job
    from cartojobs.jobs import JobQueue

    queue = JobQueue("EXPORT_QUEUE", broker)
    job_id = await queue.submit("export", {"projectId": "p1", "format": "png", "dpi": 150})

    # Process jobs with a worker
    from cartojobs.jobs import JobWorker, default_registry

    worker = JobWorker(queue, default_registry())
    await worker.run()
"""

from cartojobs.jobs.errors import (
    ClaimConflictError,
    ClaimNotHeldError,
    EntitlementError,
    InvalidTransitionError,
    JobError,
    ReclaimTimeout,
    SubmissionError,
    TaskError,
    TerminalTaskError,
    TransientTaskError,
    UnknownTaskError,
)
from cartojobs.jobs.families import TaskFamily, TaskKind
from cartojobs.jobs.queue import (
    DEFAULT_JOB_TTL,
    DEFAULT_RESULT_TTL,
    DEFAULT_VISIBILITY_TIMEOUT,
    JobQueue,
)
from cartojobs.jobs.record import FailureKind, JobRecord, JobState
from cartojobs.jobs.retry import RetryPolicy
from cartojobs.jobs.tasks import BUILTIN_HANDLERS, default_registry
from cartojobs.jobs.worker import (
    HandlerRegistry,
    JobWorker,
    TaskHandler,
    WorkerConfig,
    create_worker,
    current_job,
    task_handler,
)

__all__ = [
    # Errors
    "JobError",
    "SubmissionError",
    "EntitlementError",
    "ClaimConflictError",
    "ClaimNotHeldError",
    "InvalidTransitionError",
    "TaskError",
    "TransientTaskError",
    "TerminalTaskError",
    "UnknownTaskError",
    "ReclaimTimeout",
    # Families
    "TaskFamily",
    "TaskKind",
    # Record
    "JobRecord",
    "JobState",
    "FailureKind",
    # Queue
    "JobQueue",
    "RetryPolicy",
    "DEFAULT_JOB_TTL",
    "DEFAULT_RESULT_TTL",
    "DEFAULT_VISIBILITY_TIMEOUT",
    # Worker
    "JobWorker",
    "WorkerConfig",
    "HandlerRegistry",
    "TaskHandler",
    "task_handler",
    "current_job",
    "create_worker",
    # Tasks
    "BUILTIN_HANDLERS",
    "default_registry",
]

"""Durable per-family job queue.

Provides:
- Idempotent job submission (same id, same job)
- Atomic claims with a visibility timeout and claim token
- Ack/nack guarded by the claim token
- Retry with exponential backoff, terminal failure after max attempts
- Reclaim of jobs whose holder went silent

Example:
    queue = JobQueue("IMPORT_QUEUE", broker)

    job_id = await queue.submit("import", {"fileName": "a.json"})

    job = await queue.claim_next(wait=1.0)
    if job is not None:
        await queue.ack(job, {"status": "completed"})

Ordering is best-effort FIFO. Retried and reclaimed jobs go to the back
of the queue once their backoff delay has passed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from cartojobs.broker.base import Broker, Bucket
from cartojobs.jobs.errors import (
    ClaimConflictError,
    ClaimNotHeldError,
    InvalidTransitionError,
    ReclaimTimeout,
    SubmissionError,
)
from cartojobs.jobs.record import FailureKind, JobRecord, JobState
from cartojobs.jobs.retry import RetryPolicy
from cartojobs.observability.metrics import JobMetrics

logger = logging.getLogger(__name__)

DEFAULT_JOB_TTL = 86400 * 7  # 7 days
DEFAULT_RESULT_TTL = 86400  # 24 hours
DEFAULT_VISIBILITY_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_POLL_STEP = 0.25

_STATE_BUCKETS: dict[JobState, tuple[Bucket, ...]] = {
    JobState.QUEUED: (Bucket.PENDING, Bucket.DELAYED),
    JobState.ACTIVE: (Bucket.ACTIVE,),
    JobState.FAILED: (Bucket.FAILED,),
    JobState.COMPLETED: (),
}


def _encode(record: JobRecord) -> bytes:
    return json.dumps(record.to_dict()).encode()


def _decode(data: bytes | str) -> JobRecord:
    return JobRecord.from_dict(json.loads(data))


class JobQueue:
    """Holding area for the jobs of one task family.

    Args:
        name: Queue name (e.g. ``IMPORT_QUEUE``)
        broker: Shared broker connection
        retry_policy: Attempts and backoff for this family
        visibility_timeout: Seconds a claim may be held before reclaim
        job_ttl: Retention of queued, active and failed records
        result_ttl: Retention of completed records
        poll_interval: Default bound on how long ``claim_next`` waits
        poll_step: Sleep between claim attempts while waiting
        clock: Source of epoch seconds (injectable for tests)
        metrics: Optional Prometheus metrics
    """

    def __init__(
        self,
        name: str,
        broker: Broker,
        retry_policy: RetryPolicy | None = None,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        job_ttl: int = DEFAULT_JOB_TTL,
        result_ttl: int = DEFAULT_RESULT_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_step: float = DEFAULT_POLL_STEP,
        clock: Callable[[], float] = time.time,
        metrics: JobMetrics | None = None,
    ) -> None:
        if visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be positive")
        self.name = name
        self.broker = broker
        self.retry_policy = retry_policy or RetryPolicy()
        self.visibility_timeout = visibility_timeout
        self.job_ttl = job_ttl
        self.result_ttl = result_ttl
        self.poll_interval = poll_interval
        self.poll_step = poll_step
        self.metrics = metrics
        self._clock = clock

    def __repr__(self) -> str:
        return f"JobQueue({self.name!r})"

    def _now(self) -> tuple[float, datetime]:
        ts = self._clock()
        return ts, datetime.fromtimestamp(ts, timezone.utc)

    async def submit(
        self,
        task: str,
        payload: dict[str, Any] | None = None,
        job_id: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Record a new job in the ``queued`` state.

        Args:
            task: Task name selecting the handler
            payload: Task-specific data, must be JSON-serializable
            job_id: Caller-chosen id; generated when omitted
            max_attempts: Override the family's attempt limit

        Returns:
            Job id. Resubmitting an id that is still stored returns it
            again without creating a second entry.

        Raises:
            SubmissionError: Empty task name or id, or a payload that is
                not a JSON-serializable mapping
        """
        if not task or not task.strip():
            raise SubmissionError("Task name cannot be empty")
        if job_id is not None and not job_id.strip():
            raise SubmissionError("Job id cannot be blank")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise SubmissionError("Payload must be a mapping")
        if max_attempts is not None and max_attempts < 1:
            raise SubmissionError("max_attempts must be at least 1")

        _, now = self._now()
        record = JobRecord(
            id=job_id or str(uuid4()),
            task=task,
            payload=payload,
            max_attempts=max_attempts or self.retry_policy.max_attempts,
            enqueued_at=now,
        )
        record.history.append(
            {"from": None, "to": JobState.QUEUED.value, "at": now.isoformat(), "reason": "submitted"}
        )

        try:
            data = _encode(record)
        except (TypeError, ValueError) as e:
            raise SubmissionError(f"Payload is not serializable: {e}") from e

        inserted = await self.broker.insert_job(self.name, record.id, data, self.job_ttl)
        if not inserted:
            logger.info(f"Duplicate submission ignored: {record.id} ({self.name})")
            return record.id

        if self.metrics:
            self.metrics.inc(self.metrics.jobs_submitted_total, queue=self.name, task=task)
        logger.info(f"Job submitted: {record.id} ({task})")
        return record.id

    async def get_job(self, job_id: str) -> JobRecord | None:
        """Get a job by id, or None if unknown or expired."""
        data = await self.broker.load_job(self.name, job_id)
        if data is None:
            return None
        return _decode(data)

    async def find_job_status(self, job_id: str) -> JobState | None:
        """Current state of a job, for status polling."""
        job = await self.get_job(job_id)
        return job.state if job else None

    async def claim_next(self, wait: float | None = None) -> JobRecord | None:
        """Claim the next available job.

        Polls for at most ``wait`` seconds (the queue's poll interval by
        default) and returns None if nothing became available. The
        returned record is ``active``, has one more attempt counted and
        carries the claim token needed to ack or nack it.
        """
        wait = self.poll_interval if wait is None else wait
        give_up_at = time.monotonic() + wait

        while True:
            try:
                job = await self._try_claim()
            except ClaimConflictError as e:
                logger.debug(f"Claim lost, retrying: {e}")
                continue

            if job is not None:
                return job

            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_step, remaining))

    async def _try_claim(self) -> JobRecord | None:
        while True:
            token = uuid4().hex
            ts, now = self._now()
            job_id = await self.broker.claim(self.name, token, ts, ts + self.visibility_timeout)
            if job_id is None:
                return None

            data = await self.broker.load_job(self.name, job_id)
            if data is None:
                # Record expired while waiting in the queue
                await self.broker.release(self.name, job_id, token, None, self.job_ttl)
                logger.warning(f"Dropped expired job: {job_id}")
                continue

            job = _decode(data)
            try:
                job.mark_active(now)
            except InvalidTransitionError as e:
                await self.broker.release(self.name, job_id, token, None, self.job_ttl)
                logger.error(f"Dropped job in unexpected state: {e}")
                continue

            if not await self.broker.write_job(self.name, job_id, token, _encode(job), self.job_ttl):
                raise ClaimConflictError(f"Claim on {job_id} was reclaimed before activation")

            job.claim_token = token
            logger.info(f"Job claimed: {job.id} (attempt {job.attempts}/{job.max_attempts})")
            return job

    def _holder_copy(self, job: JobRecord) -> tuple[JobRecord, str]:
        if job.claim_token is None:
            raise ClaimNotHeldError(job.id)
        copy = JobRecord.from_dict(job.to_dict())
        return copy, job.claim_token

    async def ack(self, job: JobRecord, result: Any = None) -> JobRecord:
        """Mark a claimed job completed.

        Raises:
            ClaimNotHeldError: The claim expired or was never held
        """
        record, token = self._holder_copy(job)
        _, now = self._now()
        record.mark_completed(result, now)

        released = await self.broker.release(
            self.name, record.id, token, _encode(record), self.result_ttl
        )
        if not released:
            raise ClaimNotHeldError(record.id)

        if self.metrics:
            self.metrics.inc(self.metrics.jobs_completed_total, queue=self.name, task=record.task)
        logger.info(f"Job completed: {record.id}")
        return record

    async def nack(
        self,
        job: JobRecord,
        error: str,
        retryable: bool = True,
        kind: FailureKind | None = None,
    ) -> JobRecord:
        """Record a failed attempt on a claimed job.

        Retryable failures with attempts left go back to ``queued`` after
        the policy's backoff delay; everything else ends in ``failed``.

        Args:
            job: Claimed job
            error: Failure detail kept on the record
            retryable: Whether the failure is transient
            kind: Failure kind to record (derived when omitted)

        Raises:
            ClaimNotHeldError: The claim expired or was never held
        """
        record, token = self._holder_copy(job)
        ts, now = self._now()

        if retryable and record.attempts_left > 0:
            delay = self.retry_policy.delay_for(record.attempts)
            record.mark_retry(
                error,
                kind or FailureKind.TRANSIENT,
                now,
                available_at=now + timedelta(seconds=delay),
            )
            released = await self.broker.release(
                self.name, record.id, token, _encode(record), self.job_ttl, requeue_at=ts + delay
            )
            if not released:
                raise ClaimNotHeldError(record.id)
            if self.metrics:
                self.metrics.inc(self.metrics.jobs_retried_total, queue=self.name, task=record.task)
            logger.info(
                f"Job queued for retry: {record.id} "
                f"(attempt {record.attempts}/{record.max_attempts}, delay {delay:.2f}s)"
            )
            return record

        if kind is None:
            kind = FailureKind.EXHAUSTED if retryable else FailureKind.TERMINAL
        record.mark_failed(error, kind, now)
        released = await self.broker.release(
            self.name,
            record.id,
            token,
            _encode(record),
            self.job_ttl,
            failed_until=ts + self.job_ttl,
        )
        if not released:
            raise ClaimNotHeldError(record.id)
        if self.metrics:
            self.metrics.inc(
                self.metrics.jobs_failed_total, queue=self.name, task=record.task, kind=kind.value
            )
        logger.warning(f"Job failed: {record.id} ({kind.value}): {error}")
        return record

    async def extend_claim(self, job: JobRecord, visibility_timeout: float | None = None) -> None:
        """Push the claim deadline forward (heartbeat for long handlers).

        Raises:
            ClaimNotHeldError: The claim expired or was never held
        """
        if job.claim_token is None:
            raise ClaimNotHeldError(job.id)
        ts, _ = self._now()
        timeout = visibility_timeout or self.visibility_timeout
        if not await self.broker.extend_claim(self.name, job.id, job.claim_token, ts + timeout):
            raise ClaimNotHeldError(job.id)

    async def reclaim_expired(self) -> list[str]:
        """Return jobs whose claim outlived the visibility timeout.

        A silent holder counts as a transient failure: the job goes back
        to ``queued`` (attempts were counted at claim time), or to
        ``failed`` when no attempts are left. Safe to call from many
        workers at once; each expired claim is reclaimed exactly once.

        Returns:
            Ids reclaimed by this call
        """
        ts, _ = self._now()
        reclaimed: list[str] = []

        for job_id in await self.broker.expired_claims(self.name, ts):
            try:
                if await self._reclaim_one(job_id, ts):
                    reclaimed.append(job_id)
            except ClaimConflictError as e:
                logger.debug(f"Reclaim skipped: {e}")

        return reclaimed

    async def _reclaim_one(self, job_id: str, ts: float) -> bool:
        token = await self.broker.current_claim(self.name, job_id)
        if token is None:
            return False

        _, now = self._now()
        data = await self.broker.load_job(self.name, job_id)
        job = _decode(data) if data is not None else None
        reason = str(ReclaimTimeout(job_id, self.visibility_timeout))
        failed_until: float | None = None
        requeue_at: float | None = ts
        new_data: bytes | None = None

        if job is None:
            # Record expired under the claim; nothing left to run
            requeue_at = None
        elif job.state is JobState.ACTIVE:
            if job.attempts_left > 0:
                job.mark_retry(reason, FailureKind.RECLAIMED, now, available_at=now)
            else:
                job.mark_failed(reason, FailureKind.RECLAIMED, now)
                failed_until = ts + self.job_ttl
                requeue_at = None
            new_data = _encode(job)
        # A claim that never got activated keeps its queued record as is

        released = await self.broker.release(
            self.name,
            job_id,
            token,
            new_data,
            self.job_ttl,
            requeue_at=requeue_at,
            failed_until=failed_until,
            expired_before=ts,
        )
        if not released:
            raise ClaimConflictError(f"Claim on {job_id} changed during reclaim")

        if self.metrics:
            self.metrics.inc(self.metrics.jobs_reclaimed_total, queue=self.name)
        logger.warning(f"Job reclaimed after visibility timeout: {job_id}")
        return True

    async def list_jobs(self, state: JobState | None = None, limit: int = 100) -> list[JobRecord]:
        """List jobs, optionally filtered by state.

        Completed jobs are not indexed; they can only be looked up by id.
        """
        buckets = _STATE_BUCKETS[state] if state is not None else tuple(Bucket)
        ts, _ = self._now()
        jobs: list[JobRecord] = []

        for bucket in buckets:
            for job_id in await self.broker.list_ids(self.name, bucket, ts, limit):
                job = await self.get_job(job_id)
                if job is not None and (state is None or job.state == state):
                    jobs.append(job)
                if len(jobs) >= limit:
                    return jobs

        return jobs

    async def get_queue_stats(self) -> dict[str, int]:
        """Counts of pending, delayed, active and failed jobs."""
        ts, _ = self._now()
        return await self.broker.stats(self.name, ts)

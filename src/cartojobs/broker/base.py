"""Broker interface backing every job queue.

A broker stores job records and the per-queue bookkeeping structures:

- pending:   FIFO of job ids ready to be claimed
- delayed:   job ids waiting out a retry backoff, scored by ready time
- claims:    job id -> claim token of the current holder
- deadlines: job id -> visibility deadline of the current claim
- failed:    job ids that reached the terminal failed state, scored by
             the expiry of their record

Every method that touches more than one of these is atomic. Record
payloads are opaque bytes; the broker never parses them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum


class Bucket(str, Enum):
    """Bookkeeping structure a job id can sit in."""

    PENDING = "pending"
    DELAYED = "delayed"
    ACTIVE = "active"
    FAILED = "failed"


class Broker(ABC):
    """Abstract durable store shared by all queues of a process."""

    @abstractmethod
    async def insert_job(self, queue: str, job_id: str, data: bytes, ttl: int) -> bool:
        """Store a new record and append its id to pending.

        Returns False, changing nothing, if a record with this id exists.
        Leftovers of an expired record with the same id (queue entries,
        claim, failed index) are removed first.
        """

    @abstractmethod
    async def load_job(self, queue: str, job_id: str) -> bytes | None:
        """Return the stored record, or None if absent or expired."""

    @abstractmethod
    async def claim(self, queue: str, token: str, now: float, deadline: float) -> str | None:
        """Claim the next pending job without blocking.

        Due delayed jobs are promoted to the back of pending first and
        expired entries are pruned from the failed index. Popped ids that
        are already claimed are dropped. The claimed id is bound to
        ``token`` with visibility ``deadline``. Returns None when nothing
        is claimable.
        """

    @abstractmethod
    async def write_job(self, queue: str, job_id: str, token: str, data: bytes, ttl: int) -> bool:
        """Overwrite a claimed record if ``token`` still holds the claim."""

    @abstractmethod
    async def release(
        self,
        queue: str,
        job_id: str,
        token: str,
        data: bytes | None,
        ttl: int,
        *,
        requeue_at: float | None = None,
        failed_until: float | None = None,
        expired_before: float | None = None,
    ) -> bool:
        """End a claim and persist the outcome in one step.

        Args:
            queue: Queue name
            job_id: Claimed job
            token: Claim token that must still hold the claim
            data: New record bytes (None leaves the record untouched)
            ttl: Record time-to-live in seconds
            requeue_at: Put the id in delayed, ready at this time
            failed_until: Index the id as failed until this time (the
                record's expiry)
            expired_before: Only release if the claim deadline is at or
                before this time (used by reclaim)

        Returns:
            False if the claim was not held (or not yet expired)
        """

    @abstractmethod
    async def current_claim(self, queue: str, job_id: str) -> str | None:
        """Token of the claim currently held on a job, if any."""

    @abstractmethod
    async def expired_claims(self, queue: str, now: float) -> list[str]:
        """Ids whose claim deadline is at or before ``now``."""

    @abstractmethod
    async def extend_claim(self, queue: str, job_id: str, token: str, deadline: float) -> bool:
        """Move a held claim's deadline."""

    @abstractmethod
    async def list_ids(
        self, queue: str, bucket: Bucket, now: float, limit: int = 100
    ) -> list[str]:
        """Job ids in a bucket, oldest first for pending, newest first for failed.

        Failed entries whose record expired before ``now`` are skipped.
        """

    @abstractmethod
    async def stats(self, queue: str, now: float) -> dict[str, int]:
        """Sizes of each bucket, not counting failed entries expired at ``now``."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check broker connectivity."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""

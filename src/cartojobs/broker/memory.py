"""In-process broker with the same semantics as the Redis broker.

For single-process deployments, local development and tests. All state
lives in dictionaries guarded by one ``asyncio.Lock``, so every operation
is atomic with respect to other coroutines on the same event loop.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from cartojobs.broker.base import Broker, Bucket


def _by_score(scores: dict[str, float]) -> list[str]:
    """Ids ordered by ascending score, like a Redis sorted set."""
    return sorted(scores, key=lambda job_id: (scores[job_id], job_id))


@dataclass
class _QueueState:
    records: dict[str, tuple[bytes, float]] = field(default_factory=dict)
    pending: deque[str] = field(default_factory=deque)
    delayed: dict[str, float] = field(default_factory=dict)
    claims: dict[str, str] = field(default_factory=dict)
    deadlines: dict[str, float] = field(default_factory=dict)
    failed: dict[str, float] = field(default_factory=dict)


class InMemoryBroker(Broker):
    """Simulated broker.

    Args:
        clock: Source of epoch seconds for record expiry (defaults to
            ``time.time``; tests pass a controllable clock)
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._queues: dict[str, _QueueState] = {}
        self._lock = asyncio.Lock()

    def _state(self, queue: str) -> _QueueState:
        return self._queues.setdefault(queue, _QueueState())

    def _live_record(self, state: _QueueState, job_id: str) -> bytes | None:
        entry = state.records.get(job_id)
        if entry is None:
            return None
        data, expires_at = entry
        if expires_at <= self._clock():
            del state.records[job_id]
            return None
        return data

    def _forget(self, state: _QueueState, job_id: str) -> None:
        """Drop index entries left behind by an expired record."""
        if job_id in state.pending:
            state.pending = deque(i for i in state.pending if i != job_id)
        state.delayed.pop(job_id, None)
        state.claims.pop(job_id, None)
        state.deadlines.pop(job_id, None)
        state.failed.pop(job_id, None)

    def _expire(self, state: _QueueState, now: float) -> None:
        """Drop expired records and failed entries whose record expired."""
        for job_id in [i for i, until in state.failed.items() if until <= now]:
            del state.failed[job_id]
        wall = self._clock()
        for job_id in [i for i, (_, expires_at) in state.records.items() if expires_at <= wall]:
            del state.records[job_id]

    def _store(self, state: _QueueState, job_id: str, data: bytes, ttl: int) -> None:
        state.records[job_id] = (data, self._clock() + ttl)

    async def insert_job(self, queue: str, job_id: str, data: bytes, ttl: int) -> bool:
        async with self._lock:
            state = self._state(queue)
            if self._live_record(state, job_id) is not None:
                return False
            self._forget(state, job_id)
            self._store(state, job_id, data, ttl)
            state.pending.append(job_id)
            return True

    async def load_job(self, queue: str, job_id: str) -> bytes | None:
        async with self._lock:
            return self._live_record(self._state(queue), job_id)

    async def claim(self, queue: str, token: str, now: float, deadline: float) -> str | None:
        async with self._lock:
            state = self._state(queue)
            due = [job_id for job_id in _by_score(state.delayed) if state.delayed[job_id] <= now]
            for job_id in due:
                del state.delayed[job_id]
                state.pending.append(job_id)

            self._expire(state, now)

            while state.pending:
                job_id = state.pending.popleft()
                if job_id in state.claims:
                    continue
                state.claims[job_id] = token
                state.deadlines[job_id] = deadline
                return job_id
            return None

    async def write_job(self, queue: str, job_id: str, token: str, data: bytes, ttl: int) -> bool:
        async with self._lock:
            state = self._state(queue)
            if state.claims.get(job_id) != token:
                return False
            self._store(state, job_id, data, ttl)
            return True

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
        async with self._lock:
            state = self._state(queue)
            if state.claims.get(job_id) != token:
                return False
            if expired_before is not None:
                deadline = state.deadlines.get(job_id)
                if deadline is None or deadline > expired_before:
                    return False

            del state.claims[job_id]
            state.deadlines.pop(job_id, None)
            if data is not None:
                self._store(state, job_id, data, ttl)
            if requeue_at is not None:
                state.delayed[job_id] = requeue_at
            if failed_until is not None:
                state.failed[job_id] = failed_until
            return True

    async def current_claim(self, queue: str, job_id: str) -> str | None:
        async with self._lock:
            return self._state(queue).claims.get(job_id)

    async def expired_claims(self, queue: str, now: float) -> list[str]:
        async with self._lock:
            deadlines = self._state(queue).deadlines
            return [job_id for job_id in _by_score(deadlines) if deadlines[job_id] <= now]

    async def extend_claim(self, queue: str, job_id: str, token: str, deadline: float) -> bool:
        async with self._lock:
            state = self._state(queue)
            if state.claims.get(job_id) != token:
                return False
            state.deadlines[job_id] = deadline
            return True

    async def list_ids(
        self, queue: str, bucket: Bucket, now: float, limit: int = 100
    ) -> list[str]:
        async with self._lock:
            state = self._state(queue)
            self._expire(state, now)
            if bucket is Bucket.PENDING:
                return list(state.pending)[:limit]
            if bucket is Bucket.DELAYED:
                return _by_score(state.delayed)[:limit]
            if bucket is Bucket.ACTIVE:
                return _by_score(state.deadlines)[:limit]
            return _by_score(state.failed)[::-1][:limit]

    async def stats(self, queue: str, now: float) -> dict[str, int]:
        async with self._lock:
            state = self._state(queue)
            self._expire(state, now)
            return {
                "pending": len(state.pending),
                "delayed": len(state.delayed),
                "active": len(state.deadlines),
                "failed": len(state.failed),
            }

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._queues.clear()

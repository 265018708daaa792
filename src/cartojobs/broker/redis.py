"""Redis broker for job queues.

Uses Redis structures per queue (``<prefix>:<queue>:...``):
- ``job:<id>`` strings holding JSON records with a TTL
- ``pending`` list (LPUSH to enqueue, RPOP to claim)
- ``delayed`` and ``deadlines`` sorted sets scored by epoch seconds
- ``claims`` hash of job id -> claim token
- ``failed`` sorted set of terminally failed job ids scored by record expiry

Multi-key updates run as Lua scripts so each is atomic on the server,
which is what makes concurrent claims from many workers safe.

Example:
    broker = RedisBroker.from_url("redis://localhost:6379/0")
    queue = JobQueue("IMPORT_QUEUE", broker)
    ...
    await broker.close()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, TypeVar, cast

import redis.asyncio as redis
from redis.exceptions import RedisError

from cartojobs.broker.base import Broker, Bucket

if TYPE_CHECKING:
    from redis.asyncio import Redis

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _await_redis(result: Awaitable[T] | T) -> Awaitable[T]:
    """Cast redis-py async results to an awaitable for mypy."""
    return cast(Awaitable[T], result)


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


# KEYS: job key, pending, delayed, claims, deadlines, failed
# ARGV: job id, data, ttl
INSERT_SCRIPT = """
if not redis.call('SET', KEYS[1], ARGV[2], 'NX', 'EX', ARGV[3]) then
    return 0
end
redis.call('LREM', KEYS[2], 0, ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
redis.call('ZREM', KEYS[5], ARGV[1])
redis.call('ZREM', KEYS[6], ARGV[1])
redis.call('LPUSH', KEYS[2], ARGV[1])
return 1
"""

# KEYS: pending, delayed, claims, deadlines, failed | ARGV: token, now, deadline
CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[2])
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[2], id)
    redis.call('LPUSH', KEYS[1], id)
end
redis.call('ZREMRANGEBYSCORE', KEYS[5], '-inf', ARGV[2])
local id = redis.call('RPOP', KEYS[1])
while id and redis.call('HEXISTS', KEYS[3], id) == 1 do
    id = redis.call('RPOP', KEYS[1])
end
if not id then
    return false
end
redis.call('HSET', KEYS[3], id, ARGV[1])
redis.call('ZADD', KEYS[4], ARGV[3], id)
return id
"""

# KEYS: claims, job key | ARGV: job id, token, data, ttl
WRITE_SCRIPT = """
if redis.call('HGET', KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('SET', KEYS[2], ARGV[3], 'EX', ARGV[4])
return 1
"""

# KEYS: claims, deadlines, job key, delayed, failed
# ARGV: job id, token, data, ttl, requeue_at, failed_until, expired_before
RELEASE_SCRIPT = """
if redis.call('HGET', KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
if ARGV[7] ~= '' then
    local deadline = redis.call('ZSCORE', KEYS[2], ARGV[1])
    if (not deadline) or tonumber(deadline) > tonumber(ARGV[7]) then
        return 0
    end
end
redis.call('HDEL', KEYS[1], ARGV[1])
redis.call('ZREM', KEYS[2], ARGV[1])
if ARGV[3] ~= '' then
    redis.call('SET', KEYS[3], ARGV[3], 'EX', ARGV[4])
end
if ARGV[5] ~= '' then
    redis.call('ZADD', KEYS[4], ARGV[5], ARGV[1])
end
if ARGV[6] ~= '' then
    redis.call('ZADD', KEYS[5], ARGV[6], ARGV[1])
end
return 1
"""

# KEYS: claims, deadlines | ARGV: job id, token, deadline
EXTEND_SCRIPT = """
if redis.call('HGET', KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('ZADD', KEYS[2], 'XX', ARGV[3], ARGV[1])
return 1
"""


class RedisBroker(Broker):
    """Broker on a single shared ``redis.asyncio`` client.

    The client pools connections internally and is safe to share between
    every queue and worker in the process.
    """

    def __init__(self, client: Redis, prefix: str = "cartojobs") -> None:
        self.client = client
        self.prefix = prefix
        self._insert = client.register_script(INSERT_SCRIPT)
        self._claim = client.register_script(CLAIM_SCRIPT)
        self._write = client.register_script(WRITE_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)

    @classmethod
    def from_url(cls, url: str, prefix: str = "cartojobs") -> RedisBroker:
        """Open a client for ``url`` (e.g. the process's REDIS_URL)."""
        client = redis.from_url(  # type: ignore[no-untyped-call]
            url,
            encoding="utf-8",
            decode_responses=False,  # Records are stored as bytes
        )
        logger.info("Redis broker created", extra={"prefix": prefix})
        return cls(client, prefix=prefix)

    def _key(self, queue: str, name: str) -> str:
        return f"{self.prefix}:{queue}:{name}"

    def _job_key(self, queue: str, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    async def insert_job(self, queue: str, job_id: str, data: bytes, ttl: int) -> bool:
        inserted = await self._insert(
            keys=[
                self._job_key(queue, job_id),
                self._key(queue, "pending"),
                self._key(queue, "delayed"),
                self._key(queue, "claims"),
                self._key(queue, "deadlines"),
                self._key(queue, "failed"),
            ],
            args=[job_id, data, ttl],
        )
        return bool(inserted)

    async def load_job(self, queue: str, job_id: str) -> bytes | None:
        return cast(bytes | None, await self.client.get(self._job_key(queue, job_id)))

    async def claim(self, queue: str, token: str, now: float, deadline: float) -> str | None:
        job_id = await self._claim(
            keys=[
                self._key(queue, "pending"),
                self._key(queue, "delayed"),
                self._key(queue, "claims"),
                self._key(queue, "deadlines"),
                self._key(queue, "failed"),
            ],
            args=[token, now, deadline],
        )
        return _decode(job_id) if job_id else None

    async def write_job(self, queue: str, job_id: str, token: str, data: bytes, ttl: int) -> bool:
        written = await self._write(
            keys=[self._key(queue, "claims"), self._job_key(queue, job_id)],
            args=[job_id, token, data, ttl],
        )
        return bool(written)

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
        released = await self._release(
            keys=[
                self._key(queue, "claims"),
                self._key(queue, "deadlines"),
                self._job_key(queue, job_id),
                self._key(queue, "delayed"),
                self._key(queue, "failed"),
            ],
            args=[
                job_id,
                token,
                data if data is not None else "",
                ttl,
                repr(requeue_at) if requeue_at is not None else "",
                repr(failed_until) if failed_until is not None else "",
                repr(expired_before) if expired_before is not None else "",
            ],
        )
        return bool(released)

    async def current_claim(self, queue: str, job_id: str) -> str | None:
        token = await _await_redis(self.client.hget(self._key(queue, "claims"), job_id))
        return _decode(token) if token else None

    async def expired_claims(self, queue: str, now: float) -> list[str]:
        ids = await self.client.zrangebyscore(self._key(queue, "deadlines"), "-inf", now)
        return [_decode(job_id) for job_id in ids]

    async def extend_claim(self, queue: str, job_id: str, token: str, deadline: float) -> bool:
        extended = await self._extend(
            keys=[self._key(queue, "claims"), self._key(queue, "deadlines")],
            args=[job_id, token, deadline],
        )
        return bool(extended)

    async def list_ids(
        self, queue: str, bucket: Bucket, now: float, limit: int = 100
    ) -> list[str]:
        ids: list[Any]
        if bucket is Bucket.PENDING:
            # Oldest entries sit at the tail
            ids = await _await_redis(self.client.lrange(self._key(queue, "pending"), -limit, -1))
            ids = list(reversed(ids))
        elif bucket is Bucket.DELAYED:
            ids = await self.client.zrange(self._key(queue, "delayed"), 0, limit - 1)
        elif bucket is Bucket.ACTIVE:
            ids = await self.client.zrange(self._key(queue, "deadlines"), 0, limit - 1)
        else:
            # Newest first, skipping entries whose record has expired
            ids = await self.client.zrevrangebyscore(
                self._key(queue, "failed"), "+inf", f"({now!r}", start=0, num=limit
            )
        return [_decode(job_id) for job_id in ids]

    async def stats(self, queue: str, now: float) -> dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self._key(queue, "pending"))
            pipe.zcard(self._key(queue, "delayed"))
            pipe.zcard(self._key(queue, "deadlines"))
            pipe.zcount(self._key(queue, "failed"), f"({now!r}", "+inf")
            pending, delayed, active, failed = await pipe.execute()

        return {
            "pending": int(pending),
            "delayed": int(delayed),
            "active": int(active),
            "failed": int(failed),
        }

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            await _await_redis(self.client.ping())
            return True
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()

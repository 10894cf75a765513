"""Durable job stores backing the capture, upload and retry queues."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel, Field

from adcapture.schemas import AdRecord
from adcapture.settings import QueueSettings

LOGGER = logging.getLogger(__name__)

MAX_PRIORITY = 100
_SEQ_SPAN = 10**10


class QueueName(str, Enum):
    """Logical queues; each drains independently."""

    CAPTURE = "capture"
    UPLOAD = "upload"
    RETRY = "retry"


class JobPriority(int, Enum):
    """Job priority levels (higher number = served first)."""

    LOW = 1
    NORMAL = 5
    HIGH = 10
    CRITICAL = 20


class QueueJob(BaseModel):
    """Unit of queued work; attempt counters are only touched by the queue manager."""

    id: str
    queue: QueueName = QueueName.CAPTURE
    record: Optional[AdRecord] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    batch_id: Optional[str] = None
    priority: int = Field(default=JobPriority.NORMAL.value, ge=0, le=MAX_PRIORITY)
    attempt: int = Field(default=1, ge=1, description="Attempts across all queues, 1-based")
    queue_attempt: int = Field(default=1, ge=1, description="Attempts on the current queue")
    retry_count: int = Field(default=0, ge=0)
    created_at: float
    updated_at: float
    delay_ms: int = 0
    last_error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass(slots=True)
class QueueStats:
    """Point-in-time counters for one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"


class QueueStore(ABC):
    """Atomic primitives the queue manager composes into queue semantics.

    ``claim`` is the single removal point out of the active/failed sets, so
    whichever of ack, nack or requeue claims a job first wins and the others
    become no-ops.
    """

    @abstractmethod
    async def push(self, job: QueueJob, *, ready_at: float, now: float) -> None:
        """Make ``job`` available on ``job.queue`` once ``ready_at`` passes."""

    @abstractmethod
    async def pop(self, queue: QueueName, *, now: float) -> QueueJob | None:
        """Promote due delayed jobs, then move the best waiting job to active."""

    @abstractmethod
    async def claim(self, queue: QueueName, job_id: str, state: str) -> QueueJob | None:
        """Remove ``job_id`` from ``state`` (active or failed) if still present."""

    @abstractmethod
    async def claim_stalled(self, queue: QueueName, *, before: float) -> list[QueueJob]:
        """Claim every active job popped before ``before`` so it can be redelivered."""

    @abstractmethod
    async def record(self, job: QueueJob, state: str, *, finished_at: float) -> None:
        """Store a finished job under ``completed`` or ``failed``."""

    @abstractmethod
    async def counts(self, queue: QueueName) -> QueueStats: ...

    @abstractmethod
    async def list_jobs(self, queue: QueueName, state: str) -> list[QueueJob]: ...

    @abstractmethod
    async def purge(self, queue: QueueName, state: str, *, before: float) -> int:
        """Drop finished jobs in ``state`` that finished before ``before``."""

    @abstractmethod
    async def set_paused(self, queue: QueueName, paused: bool) -> None: ...

    @abstractmethod
    async def is_paused(self, queue: QueueName) -> bool: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


@dataclass(slots=True)
class _MemoryQueue:
    waiting: List[tuple[int, int, str]] = field(default_factory=list)
    delayed: List[tuple[float, int, str]] = field(default_factory=list)
    pending: Dict[str, QueueJob] = field(default_factory=dict)
    active: Dict[str, QueueJob] = field(default_factory=dict)
    popped_at: Dict[str, float] = field(default_factory=dict)
    finished: Dict[str, Dict[str, tuple[float, QueueJob]]] = field(
        default_factory=lambda: {COMPLETED: {}, FAILED: {}}
    )
    paused: bool = False


class MemoryQueueStore(QueueStore):
    """Process-local store for tests and single-node runs without Redis."""

    def __init__(self) -> None:
        self._queues = {name: _MemoryQueue() for name in QueueName}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()

    async def push(self, job: QueueJob, *, ready_at: float, now: float) -> None:
        async with self._lock:
            bucket = self._queues[job.queue]
            bucket.pending[job.id] = job
            if ready_at > now:
                heapq.heappush(bucket.delayed, (ready_at, next(self._sequence), job.id))
            else:
                heapq.heappush(bucket.waiting, (-job.priority, next(self._sequence), job.id))

    async def pop(self, queue: QueueName, *, now: float) -> QueueJob | None:
        async with self._lock:
            bucket = self._queues[queue]
            while bucket.delayed and bucket.delayed[0][0] <= now:
                _, _, job_id = heapq.heappop(bucket.delayed)
                job = bucket.pending.get(job_id)
                if job is not None:
                    heapq.heappush(bucket.waiting, (-job.priority, next(self._sequence), job_id))
            while bucket.waiting:
                _, _, job_id = heapq.heappop(bucket.waiting)
                job = bucket.pending.pop(job_id, None)
                if job is not None:
                    bucket.active[job_id] = job
                    bucket.popped_at[job_id] = now
                    return job
            return None

    async def claim(self, queue: QueueName, job_id: str, state: str) -> QueueJob | None:
        async with self._lock:
            bucket = self._queues[queue]
            if state == ACTIVE:
                bucket.popped_at.pop(job_id, None)
                return bucket.active.pop(job_id, None)
            entry = bucket.finished[state].pop(job_id, None)
            return entry[1] if entry else None

    async def claim_stalled(self, queue: QueueName, *, before: float) -> list[QueueJob]:
        async with self._lock:
            bucket = self._queues[queue]
            stale = [job_id for job_id, popped in bucket.popped_at.items() if popped < before]
            for job_id in stale:
                del bucket.popped_at[job_id]
            return [job for job in (bucket.active.pop(job_id, None) for job_id in stale) if job is not None]

    async def record(self, job: QueueJob, state: str, *, finished_at: float) -> None:
        async with self._lock:
            self._queues[job.queue].finished[state][job.id] = (finished_at, job)

    async def counts(self, queue: QueueName) -> QueueStats:
        async with self._lock:
            bucket = self._queues[queue]
            return QueueStats(
                waiting=len(bucket.waiting),
                active=len(bucket.active),
                completed=len(bucket.finished[COMPLETED]),
                failed=len(bucket.finished[FAILED]),
                delayed=len(bucket.delayed),
                paused=bucket.paused,
            )

    async def list_jobs(self, queue: QueueName, state: str) -> list[QueueJob]:
        async with self._lock:
            bucket = self._queues[queue]
            if state == ACTIVE:
                return list(bucket.active.values())
            return [job for _, job in bucket.finished[state].values()]

    async def purge(self, queue: QueueName, state: str, *, before: float) -> int:
        async with self._lock:
            entries = self._queues[queue].finished[state]
            stale = [job_id for job_id, (finished_at, _) in entries.items() if finished_at < before]
            for job_id in stale:
                del entries[job_id]
            return len(stale)

    async def set_paused(self, queue: QueueName, paused: bool) -> None:
        self._queues[queue].paused = paused

    async def is_paused(self, queue: QueueName) -> bool:
        return self._queues[queue].paused

    async def ping(self) -> bool:
        return True


# Promote due delayed jobs and pop the best waiting job in one atomic step.
_POP_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, job_id in ipairs(due) do
  if redis.call('ZREM', KEYS[2], job_id) == 1 then
    if redis.call('HEXISTS', KEYS[3], job_id) == 1 then
      local priority = tonumber(redis.call('HGET', KEYS[6], job_id)) or 0
      local seq = redis.call('INCR', KEYS[5])
      redis.call('ZADD', KEYS[1], (tonumber(ARGV[3]) - priority) * tonumber(ARGV[2]) + seq, job_id)
    end
  end
end
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
  return false
end
redis.call('HSET', KEYS[4], popped[1], ARGV[1])
return redis.call('HGET', KEYS[3], popped[1])
"""


def get_redis_settings(config: QueueSettings) -> RedisSettings:
    """Get Redis connection settings for the arq pool."""

    return RedisSettings(
        host=config.redis_host,
        port=config.redis_port,
        database=config.redis_database,
        password=config.redis_password,
    )


class RedisQueueStore(QueueStore):
    """Sorted-set queues on a Redis pool created through arq.

    Per queue: ``waiting`` (zset, priority then sequence), ``delayed`` (zset,
    ready time in ms), ``active`` (hash), ``completed``/``failed`` (zset,
    finish time), ``jobs`` (hash of serialized jobs) and ``priority`` (hash
    read when a delayed job is promoted).
    """

    def __init__(self, config: QueueSettings, *, pool: ArqRedis | None = None) -> None:
        self.config = config
        self.redis_settings = get_redis_settings(config)
        self._pool = pool
        self._pop_script: Any = None

    async def get_pool(self) -> ArqRedis:
        """Get or create the Redis connection pool."""
        if self._pool is None:
            self._pool = await create_pool(self.redis_settings)
        if self._pop_script is None:
            self._pop_script = self._pool.register_script(_POP_SCRIPT)
        return self._pool

    def _key(self, queue: QueueName, part: str) -> str:
        return f"{self.config.prefix}:{queue.value}:{part}"

    async def push(self, job: QueueJob, *, ready_at: float, now: float) -> None:
        pool = await self.get_pool()
        sequence = await pool.incr(self._key(job.queue, "seq"))
        async with pool.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(job.queue, "jobs"), job.id, job.model_dump_json())
            pipe.hset(self._key(job.queue, "priority"), job.id, job.priority)
            if ready_at > now:
                pipe.zadd(self._key(job.queue, "delayed"), {job.id: int(ready_at * 1000)})
            else:
                score = (MAX_PRIORITY - job.priority) * _SEQ_SPAN + sequence
                pipe.zadd(self._key(job.queue, "waiting"), {job.id: score})
            await pipe.execute()

    async def pop(self, queue: QueueName, *, now: float) -> QueueJob | None:
        await self.get_pool()
        raw = await self._pop_script(
            keys=[
                self._key(queue, "waiting"),
                self._key(queue, "delayed"),
                self._key(queue, "jobs"),
                self._key(queue, ACTIVE),
                self._key(queue, "seq"),
                self._key(queue, "priority"),
            ],
            args=[int(now * 1000), _SEQ_SPAN, MAX_PRIORITY],
        )
        if not raw:
            return None
        return QueueJob.model_validate_json(raw)

    async def claim(self, queue: QueueName, job_id: str, state: str) -> QueueJob | None:
        pool = await self.get_pool()
        if state == ACTIVE:
            removed = await pool.hdel(self._key(queue, ACTIVE), job_id)
        else:
            removed = await pool.zrem(self._key(queue, state), job_id)
        if not removed:
            return None
        raw = await pool.hget(self._key(queue, "jobs"), job_id)
        return QueueJob.model_validate_json(raw) if raw else None

    async def claim_stalled(self, queue: QueueName, *, before: float) -> list[QueueJob]:
        pool = await self.get_pool()
        active_key = self._key(queue, ACTIVE)
        cutoff_ms = int(before * 1000)
        claimed: list[QueueJob] = []
        for job_id, popped_ms in (await pool.hgetall(active_key)).items():
            if int(popped_ms) >= cutoff_ms:
                continue
            # a concurrent ack or nack that removes the entry first wins
            if not await pool.hdel(active_key, job_id):
                continue
            raw = await pool.hget(self._key(queue, "jobs"), job_id)
            if raw:
                claimed.append(QueueJob.model_validate_json(raw))
        return claimed

    async def record(self, job: QueueJob, state: str, *, finished_at: float) -> None:
        pool = await self.get_pool()
        async with pool.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(job.queue, "jobs"), job.id, job.model_dump_json())
            pipe.zadd(self._key(job.queue, state), {job.id: finished_at})
            await pipe.execute()

    async def counts(self, queue: QueueName) -> QueueStats:
        pool = await self.get_pool()
        async with pool.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key(queue, "waiting"))
            pipe.hlen(self._key(queue, ACTIVE))
            pipe.zcard(self._key(queue, COMPLETED))
            pipe.zcard(self._key(queue, FAILED))
            pipe.zcard(self._key(queue, "delayed"))
            pipe.exists(self._key(queue, "paused"))
            waiting, active, completed, failed, delayed, paused = await pipe.execute()
        return QueueStats(
            waiting=int(waiting),
            active=int(active),
            completed=int(completed),
            failed=int(failed),
            delayed=int(delayed),
            paused=bool(paused),
        )

    async def list_jobs(self, queue: QueueName, state: str) -> list[QueueJob]:
        pool = await self.get_pool()
        if state == ACTIVE:
            job_ids = list(await pool.hkeys(self._key(queue, ACTIVE)))
        else:
            job_ids = list(await pool.zrange(self._key(queue, state), 0, -1))
        if not job_ids:
            return []
        payloads = await pool.hmget(self._key(queue, "jobs"), job_ids)
        return [QueueJob.model_validate_json(raw) for raw in payloads if raw]

    async def purge(self, queue: QueueName, state: str, *, before: float) -> int:
        pool = await self.get_pool()
        key = self._key(queue, state)
        job_ids = await pool.zrangebyscore(key, "-inf", f"({before}")
        if not job_ids:
            return 0
        async with pool.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *job_ids)
            pipe.hdel(self._key(queue, "jobs"), *job_ids)
            pipe.hdel(self._key(queue, "priority"), *job_ids)
            await pipe.execute()
        return len(job_ids)

    async def set_paused(self, queue: QueueName, paused: bool) -> None:
        pool = await self.get_pool()
        if paused:
            await pool.set(self._key(queue, "paused"), "1")
        else:
            await pool.delete(self._key(queue, "paused"))

    async def is_paused(self, queue: QueueName) -> bool:
        pool = await self.get_pool()
        return bool(await pool.exists(self._key(queue, "paused")))

    async def ping(self) -> bool:
        try:
            pool = await self.get_pool()
            return bool(await pool.ping())
        except Exception as exc:  # pragma: no cover - depends on Redis availability
            LOGGER.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            self._pop_script = None


def build_store(config: QueueSettings) -> QueueStore:
    if config.backend == "memory":
        return MemoryQueueStore()
    return RedisQueueStore(config)

"""Priority queue manager and per-queue worker pools."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

from adcapture import metrics
from adcapture.errors import StalledJobError, classify, should_retry
from adcapture.queue_store import (
    ACTIVE,
    COMPLETED,
    FAILED,
    JobPriority,
    QueueJob,
    QueueName,
    QueueStats,
    QueueStore,
    build_store,
)
from adcapture.schemas import AdRecord
from adcapture.settings import QueuePolicy, QueueSettings

LOGGER = logging.getLogger(__name__)

JobHandler = Callable[[QueueJob], Awaitable[Any]]
FailureHook = Callable[[QueueJob, BaseException, bool], Awaitable[None]]


def batch_job_id(record: AdRecord, index: int, *, now: float | None = None) -> str:
    """``{PID}_{UID}_{epoch_ms}_{index}``; unique within a batch submission."""

    stamp = int((now if now is not None else time.time()) * 1000)
    return f"{record.pid}_{record.uid}_{stamp}_{index}"


class QueueManager:
    """High-level interface for the capture, upload and retry queues."""

    def __init__(
        self,
        store: QueueStore,
        config: QueueSettings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config
        self._clock = clock
        self._wakeups: Dict[QueueName, asyncio.Event] = {name: asyncio.Event() for name in QueueName}

    @classmethod
    def from_settings(cls, config: QueueSettings) -> QueueManager:
        return cls(build_store(config), config)

    def policy(self, queue: QueueName) -> QueuePolicy:
        return {
            QueueName.CAPTURE: self.config.capture,
            QueueName.UPLOAD: self.config.upload,
            QueueName.RETRY: self.config.retry,
        }[queue]

    async def enqueue(
        self,
        job: QueueJob,
        *,
        priority: int | None = None,
        delay_ms: int = 0,
    ) -> QueueJob:
        """Persist ``job`` on its queue, optionally deferred by ``delay_ms``."""

        now = self._clock()
        updates: dict[str, Any] = {"delay_ms": max(0, delay_ms), "updated_at": now}
        if priority is not None:
            updates["priority"] = int(priority)
        queued = job.model_copy(update=updates)
        await self.store.push(queued, ready_at=now + queued.delay_ms / 1000.0, now=now)
        self._wakeups[queued.queue].set()
        LOGGER.debug(
            "Enqueued job %s on %s (priority=%s delay=%sms)",
            queued.id,
            queued.queue.value,
            queued.priority,
            queued.delay_ms,
        )
        return queued

    async def enqueue_capture(
        self,
        record: AdRecord,
        *,
        batch_id: str | None = None,
        priority: int = JobPriority.NORMAL,
        delay_ms: int = 0,
        index: int = 0,
    ) -> QueueJob:
        now = self._clock()
        job = QueueJob(
            id=batch_job_id(record, index, now=now),
            queue=QueueName.CAPTURE,
            record=record,
            batch_id=batch_id,
            priority=int(priority),
            created_at=now,
            updated_at=now,
        )
        return await self.enqueue(job, delay_ms=delay_ms)

    async def enqueue_batch(
        self,
        records: Iterable[AdRecord],
        *,
        batch_id: str,
        priority: int = JobPriority.NORMAL,
    ) -> list[QueueJob]:
        """Enqueue one capture job per record, staggering job ``i`` by ``i * stagger``."""

        jobs = []
        for index, record in enumerate(records):
            jobs.append(
                await self.enqueue_capture(
                    record,
                    batch_id=batch_id,
                    priority=priority,
                    delay_ms=index * self.config.batch_stagger_ms,
                    index=index,
                )
            )
        LOGGER.info("Enqueued batch %s with %d jobs", batch_id, len(jobs))
        return jobs

    async def enqueue_upload(
        self,
        artifact_ref: str,
        file_name_hint: str,
        metadata: Mapping[str, Any],
        priority: int = JobPriority.LOW,
        *,
        batch_id: str | None = None,
    ) -> QueueJob:
        """Hand a stored artifact to the downstream upload stage."""

        now = self._clock()
        job = QueueJob(
            id=f"upload_{file_name_hint}_{int(now * 1000)}",
            queue=QueueName.UPLOAD,
            payload={
                "artifact_ref": artifact_ref,
                "file_name": file_name_hint,
                "metadata": dict(metadata),
            },
            batch_id=batch_id,
            priority=int(priority),
            created_at=now,
            updated_at=now,
        )
        return await self.enqueue(job)

    def retry_delay_ms(self, retry_count: int) -> int:
        return min(self.config.retry_base_delay_ms * 2**retry_count, self.config.retry_max_delay_ms)

    async def requeue_for_retry(self, job: QueueJob, *, from_state: str = ACTIVE) -> QueueJob | None:
        """Move ``job`` onto the retry queue with exponential delay.

        Returns None when the job was already acked, failed or moved by
        another caller.
        """

        claimed = await self.store.claim(job.queue, job.id, from_state)
        if claimed is None:
            LOGGER.debug("Job %s no longer %s on %s; skipping retry", job.id, from_state, job.queue.value)
            return None
        delay_ms = self.retry_delay_ms(claimed.retry_count)
        moved = claimed.model_copy(
            update={
                "queue": QueueName.RETRY,
                "retry_count": claimed.retry_count + 1,
                "attempt": claimed.attempt + 1,
                "queue_attempt": 1,
                "last_error": job.last_error or claimed.last_error,
                "error_type": job.error_type or claimed.error_type,
            }
        )
        queued = await self.enqueue(moved, delay_ms=delay_ms)
        LOGGER.info("Moved job %s to retry queue (retry %s, delay %sms)", job.id, queued.retry_count, delay_ms)
        return queued

    async def dequeue(self, queue: QueueName) -> QueueJob | None:
        if await self.store.is_paused(queue):
            return None
        return await self.store.pop(queue, now=self._clock())

    async def complete(self, job: QueueJob, result: Any = None) -> bool:
        """Ack ``job``; False when it was already settled elsewhere."""

        claimed = await self.store.claim(job.queue, job.id, ACTIVE)
        if claimed is None:
            LOGGER.debug("Ack for job %s ignored; not active", job.id)
            return False
        now = self._clock()
        await self.store.record(claimed.model_copy(update={"updated_at": now}), COMPLETED, finished_at=now)
        metrics.record_job_outcome(job.queue.value, "completed")
        return True

    async def fail(self, job: QueueJob, error: BaseException, *, retryable: bool) -> bool:
        """Nack ``job``: redeliver with the queue's backoff or mark it failed.

        Returns True when the job will be attempted again on the same queue.
        """

        claimed = await self.store.claim(job.queue, job.id, ACTIVE)
        if claimed is None:
            LOGGER.debug("Nack for job %s ignored; not active", job.id)
            return False
        return await self._settle_failure(claimed, error, retryable=retryable)

    async def recover_stalled(self, older_than_s: float | None = None) -> int:
        """Redeliver active jobs whose worker vanished without ack or nack.

        A job still active ``older_than_s`` after it was popped counts as a
        failed attempt and goes through the queue's normal backoff.
        """

        threshold = self.config.stalled_after_s if older_than_s is None else older_than_s
        cutoff = self._clock() - threshold
        recovered = 0
        for name in QueueName:
            for claimed in await self.store.claim_stalled(name, before=cutoff):
                error = StalledJobError(f"Job {claimed.id} stalled on {name.value} for over {threshold}s")
                await self._settle_failure(claimed, error, retryable=True)
                recovered += 1
        if recovered:
            LOGGER.warning("Recovered %d stalled jobs", recovered)
        return recovered

    async def _settle_failure(self, claimed: QueueJob, error: BaseException, *, retryable: bool) -> bool:
        queue = claimed.queue
        policy = self.policy(queue)
        now = self._clock()
        updates: dict[str, Any] = {
            "updated_at": now,
            "last_error": str(error) or error.__class__.__name__,
            "error_type": classify(error).value,
        }
        if retryable and claimed.queue_attempt < policy.max_attempts:
            delay_ms = policy.backoff_delay_ms(claimed.queue_attempt)
            updates.update(attempt=claimed.attempt + 1, queue_attempt=claimed.queue_attempt + 1)
            await self.enqueue(claimed.model_copy(update=updates), delay_ms=delay_ms)
            metrics.record_job_outcome(queue.value, "retried")
            LOGGER.info(
                "Job %s failed attempt %s on %s; redelivering in %sms",
                claimed.id,
                claimed.queue_attempt,
                queue.value,
                delay_ms,
            )
            return True
        await self.store.record(claimed.model_copy(update=updates), FAILED, finished_at=now)
        metrics.record_job_outcome(queue.value, "failed")
        return False

    async def stats(self) -> dict[str, QueueStats]:
        return {name.value: await self.store.counts(name) for name in QueueName}

    async def failed_jobs(self, queue: QueueName) -> list[QueueJob]:
        return await self.store.list_jobs(queue, FAILED)

    async def pause_all(self) -> None:
        for name in QueueName:
            await self.store.set_paused(name, True)
        LOGGER.info("All queues paused")

    async def resume_all(self) -> None:
        for name in QueueName:
            await self.store.set_paused(name, False)
            self._wakeups[name].set()
        LOGGER.info("All queues resumed")

    async def purge_old(
        self,
        completed_ttl_s: Optional[int] = None,
        failed_ttl_s: Optional[int] = None,
    ) -> dict[str, int]:
        """Drop finished jobs older than their TTL; defaults come from each queue policy."""

        now = self._clock()
        removed: dict[str, int] = {}
        for name in QueueName:
            policy = self.policy(name)
            completed_ttl = completed_ttl_s if completed_ttl_s is not None else policy.completed_ttl_s
            failed_ttl = failed_ttl_s if failed_ttl_s is not None else policy.failed_ttl_s
            removed[name.value] = await self.store.purge(
                name, COMPLETED, before=now - completed_ttl
            ) + await self.store.purge(name, FAILED, before=now - failed_ttl)
        if any(removed.values()):
            LOGGER.info("Purged finished jobs: %s", removed)
        return removed

    async def wait_for_work(self, queue: QueueName, timeout: float) -> None:
        event = self._wakeups[queue]
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return
        event.clear()

    async def ping(self) -> bool:
        return await self.store.ping()

    async def close(self) -> None:
        await self.store.close()


class WorkerPool:
    """Bounded set of asyncio workers draining one queue.

    Handlers that raise are nacked through the queue policy; pausing the
    queue stops new dispatch but never cancels running handlers.
    """

    def __init__(
        self,
        manager: QueueManager,
        queue: QueueName,
        handler: JobHandler,
        *,
        concurrency: int | None = None,
        on_failure: FailureHook | None = None,
    ) -> None:
        self.manager = manager
        self.queue = queue
        self._handler = handler
        self._on_failure = on_failure
        self.concurrency = concurrency or manager.policy(queue).concurrency
        self._tasks: list[asyncio.Task[None]] = []
        self._in_flight = 0
        self._stopping = False

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"{self.queue.value}-worker-{index}")
            for index in range(self.concurrency)
        ]
        LOGGER.info("Started %d %s workers", self.concurrency, self.queue.value)

    async def stop(self) -> None:
        """Cancel the worker tasks; callers drain in-flight work first."""
        self._stopping = True
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        LOGGER.info("Stopped %s workers", self.queue.value)

    async def _worker_loop(self, index: int) -> None:
        poll_interval = self.manager.config.poll_interval_ms / 1000.0
        while not self._stopping:
            try:
                job = await self.manager.dequeue(self.queue)
                if job is None:
                    await self.manager.wait_for_work(self.queue, poll_interval)
                    continue
                await self._run(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - store outages
                LOGGER.exception("%s worker %d loop error: %s", self.queue.value, index, exc)
                await asyncio.sleep(poll_interval)

    async def _run(self, job: QueueJob) -> None:
        self._in_flight += 1
        started = datetime.now(timezone.utc)
        try:
            try:
                result = await self._handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                policy = self.manager.policy(self.queue)
                retryable = should_retry(exc, job.queue_attempt, max_attempts=policy.max_attempts)
                will_retry = await self.manager.fail(job, exc, retryable=retryable)
                if self._on_failure is not None:
                    await self._on_failure(job, exc, will_retry)
            else:
                await self.manager.complete(job, result)
        finally:
            self._in_flight -= 1
            LOGGER.debug(
                "Job %s on %s finished in %.2fs",
                job.id,
                self.queue.value,
                (datetime.now(timezone.utc) - started).total_seconds(),
            )

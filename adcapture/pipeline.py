"""Per-job capture state machine and batch orchestration on top of the queues."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence
from uuid import uuid4

from adcapture import metrics
from adcapture.artifacts import ArtifactStore, HandoffSink, build_handoff_sink, file_name_hint
from adcapture.bridge import BridgeServer, OverlayBridge
from adcapture.browser import Session, SessionManager
from adcapture.driver import CaptureDriver, CaptureOptions
from adcapture.errors import (
    BatchTimeoutError,
    CaptureError,
    ErrorType,
    classify,
    describe_error,
)
from adcapture.injection import AdInjector
from adcapture.queue import QueueManager, WorkerPool
from adcapture.queue_store import FAILED, JobPriority, QueueJob, QueueName
from adcapture.schemas import AdRecord
from adcapture.settings import Settings

LOGGER = logging.getLogger(__name__)

_NON_RETRYABLE_TYPES = frozenset({ErrorType.PARSING_ERROR.value, ErrorType.AUTHENTICATION_ERROR.value})


class JobState(str, Enum):
    """Lifecycle states of one capture attempt."""

    ENQUEUED = "ENQUEUED"
    SESSION_CREATED = "SESSION_CREATED"
    NAVIGATED = "NAVIGATED"
    INJECTED = "INJECTED"
    SELECTOR_READY = "SELECTOR_READY"
    CAPTURED = "CAPTURED"
    HANDED_OFF = "HANDED_OFF"
    FAILED = "FAILED"


@dataclass(slots=True)
class CaptureResult:
    """Outcome of one attempt; ``artifact`` is only populated on success."""

    job_id: str
    success: bool
    state: JobState
    artifact: bytes | None = None
    artifact_ref: str | None = None
    error: str | None = None
    error_type: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("artifact", None)
        payload["state"] = self.state.value
        return payload


class JobAttemptFailed(CaptureError):
    """Raised into the worker pool so the queue policy can decide on redelivery."""

    def __init__(self, result: CaptureResult) -> None:
        error_type = ErrorType(result.error_type) if result.error_type else ErrorType.NETWORK_ERROR
        super().__init__(result.error or "Capture attempt failed", error_type, context={"job_id": result.job_id})
        self.result = result


@dataclass(slots=True)
class BatchResult:
    batch_id: str
    total_records: int
    success_count: int
    error_count: int
    skipped_count: int
    errors: List[Dict[str, Any]]
    duration_s: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BatchTracker:
    """Terminal outcomes of one batch; ``done`` fires once every job is accounted for."""

    batch_id: str
    expected: int
    skipped: int = 0
    active: int = 0
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None
    successes: Dict[str, CaptureResult] = field(default_factory=dict)
    errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def completed(self) -> int:
        return len(self.successes) + len(self.errors)

    def record_success(self, job: QueueJob, result: CaptureResult) -> None:
        self.errors.pop(job.id, None)
        self.successes[job.id] = result
        self.check_done()

    def record_failure(self, job: QueueJob, error: str, error_type: str) -> None:
        self.errors[job.id] = {
            "job_id": job.id,
            "record": job.record.model_dump(mode="json") if job.record else None,
            "error": error,
            "error_type": error_type,
        }
        self.check_done()

    def reopen(self, job_id: str) -> None:
        """Forget a terminal failure that is being retried."""
        if self.errors.pop(job_id, None) is not None:
            self.finished_at = None
            self.done.clear()

    def enter(self) -> None:
        self.active += 1

    def leave(self) -> None:
        self.active = max(0, self.active - 1)
        self.check_done()

    def result(self) -> BatchResult:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return BatchResult(
            batch_id=self.batch_id,
            total_records=self.expected,
            success_count=len(self.successes),
            error_count=len(self.errors),
            skipped_count=self.skipped,
            errors=list(self.errors.values()),
            duration_s=round(end - self.started_at, 3),
        )

    def check_done(self) -> None:
        if self.completed >= self.expected and self.active == 0 and not self.done.is_set():
            self.finished_at = time.monotonic()
            self.done.set()


class Pipeline:
    """Drives capture jobs from the queues through browser sessions to handoff."""

    def __init__(
        self,
        settings: Settings,
        *,
        queue: QueueManager,
        sessions: SessionManager,
        driver: CaptureDriver,
        injector: AdInjector | None = None,
        artifacts: ArtifactStore | None = None,
        bridge: OverlayBridge | None = None,
        bridge_server: BridgeServer | None = None,
        handoff: HandoffSink | None = None,
    ) -> None:
        self.settings = settings
        self.queue = queue
        self.sessions = sessions
        self.driver = driver
        self.injector = injector or AdInjector(driver, settings.pipeline)
        self.artifacts = artifacts or ArtifactStore(settings.storage)
        self.bridge = bridge
        self.bridge_server = bridge_server
        self.handoff = handoff or build_handoff_sink(settings.storage)
        self._batches: Dict[str, BatchTracker] = {}
        self._pools: Dict[QueueName, WorkerPool] = {
            name: WorkerPool(queue, name, self._handle_capture, on_failure=self._on_capture_failure)
            for name in (QueueName.CAPTURE, QueueName.RETRY)
        }
        self._pools[QueueName.UPLOAD] = WorkerPool(
            queue, QueueName.UPLOAD, self._handle_upload, on_failure=self._on_upload_failure
        )
        self._purge_task: asyncio.Task[None] | None = None
        self._shutdown = False

    @classmethod
    def from_settings(cls, settings: Settings) -> Pipeline:
        driver = CaptureDriver(settings.browser)
        bridge = OverlayBridge(settings.bridge) if settings.bridge.enabled else None
        return cls(
            settings,
            queue=QueueManager.from_settings(settings.queue),
            sessions=SessionManager(settings.browser),
            driver=driver,
            bridge=bridge,
            bridge_server=BridgeServer(bridge) if bridge is not None else None,
        )

    @property
    def in_flight(self) -> int:
        return sum(pool.in_flight for pool in self._pools.values())

    async def process_job(self, job: QueueJob) -> CaptureResult:
        """Run one capture attempt end to end. Never raises."""

        record = job.record
        log_extra = {"job_id": job.id, "batch_id": job.batch_id}
        if record is None:
            return CaptureResult(
                job_id=job.id,
                success=False,
                state=JobState.FAILED,
                error="Capture job has no ad record",
                error_type=ErrorType.PARSING_ERROR.value,
            )
        log_extra.update(pid=record.pid, uid=record.uid)
        device_type = record.device_ui.device_type
        metadata: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "device_type": device_type,
            "pid": record.pid,
            "uid": record.uid,
            "ad_type": record.ad_type,
            "url": record.website_url,
            "job_id": job.id,
            "attempt": job.attempt,
        }
        loop = asyncio.get_running_loop()
        started = loop.time()
        state = JobState.ENQUEUED
        session: Session | None = None
        try:
            session = await self.sessions.create_session(device_type)
            state = JobState.SESSION_CREATED
            metadata["device"] = session.device_profile.name

            await self.driver.navigate(session, record.website_url)
            state = JobState.NAVIGATED

            if record.has_injection:
                ad_format = await self.injector.inject(session, record)
                state = JobState.INJECTED
                if ad_format:
                    await self.injector.wait_for_ad_render(session, ad_format)

            await self.driver.wait_for_selector(session, record.selector)
            state = JobState.SELECTOR_READY
            await asyncio.sleep(self.settings.pipeline.screenshot_delay_ms / 1000)

            artifact = await self._capture(session, record)
            state = JobState.CAPTURED

            file_name = file_name_hint(record, device_name=session.device_profile.name)
            path = await self.artifacts.save(artifact, file_name)
            await self.queue.enqueue_upload(
                str(path), file_name, metadata, JobPriority.LOW, batch_id=job.batch_id
            )
            state = JobState.HANDED_OFF
            result = CaptureResult(
                job_id=job.id,
                success=True,
                state=state,
                artifact=artifact,
                artifact_ref=str(path),
                metadata=metadata,
            )
            LOGGER.info("Captured %s/%s on %s", record.pid, record.uid, device_type, extra=log_extra)
        except Exception as exc:
            error_type = classify(exc)
            LOGGER.warning(
                "Capture of %s/%s failed in state %s (%s): %s",
                record.pid,
                record.uid,
                state.value,
                error_type.value,
                exc,
                extra=log_extra,
            )
            result = CaptureResult(
                job_id=job.id,
                success=False,
                state=JobState.FAILED,
                error=str(exc) or exc.__class__.__name__,
                error_type=error_type.value,
                metadata={**metadata, "failed_in": state.value},
            )
        finally:
            if session is not None:
                try:
                    await self.sessions.destroy_session(session)
                except Exception as exc:
                    LOGGER.warning("Destroying session %s failed: %s", session.id, exc, extra=log_extra)

        metrics.observe_capture(
            device_type,
            "success" if result.success else (result.error_type or "unknown"),
            loop.time() - started,
        )
        return result

    async def _capture(self, session: Session, record: AdRecord) -> bytes:
        if record.device_ui.is_mobile and self.bridge is not None:
            image = await self.bridge.request_mobile_capture(record.device_ui.device_type, url=record.website_url)
            if image is not None:
                return image
            LOGGER.info("Bridge capture unavailable for %s/%s; capturing directly", record.pid, record.uid)
        return await self.driver.capture(session, CaptureOptions(selector=record.selector))

    async def _handle_capture(self, job: QueueJob) -> CaptureResult:
        tracker = self._batches.get(job.batch_id) if job.batch_id else None
        if tracker is not None:
            tracker.enter()
        try:
            result = await self.process_job(job)
            if not result.success:
                raise JobAttemptFailed(result)
            if tracker is not None:
                tracker.record_success(job, result)
            return result
        finally:
            if tracker is not None:
                tracker.leave()

    async def _on_capture_failure(self, job: QueueJob, exc: BaseException, will_retry: bool) -> None:
        if will_retry:
            return
        if isinstance(exc, JobAttemptFailed):
            error, error_type = exc.result.error or str(exc), exc.result.error_type or exc.error_type.value
        else:
            summary = describe_error(exc)
            error, error_type = summary["message"], summary["type"]
        LOGGER.error(
            "Job %s failed permanently after %s attempts: %s",
            job.id,
            job.attempt,
            error,
            extra={"job_id": job.id, "batch_id": job.batch_id},
        )
        tracker = self._batches.get(job.batch_id) if job.batch_id else None
        if tracker is not None:
            tracker.record_failure(job, error, error_type)

    async def _handle_upload(self, job: QueueJob) -> dict[str, Any]:
        return await self.handoff(job)

    async def _on_upload_failure(self, job: QueueJob, exc: BaseException, will_retry: bool) -> None:
        if not will_retry:
            LOGGER.error("Upload handoff for %s abandoned: %s", job.payload.get("file_name"), exc)

    async def submit_batch(
        self,
        records: Iterable[AdRecord],
        priority: int = JobPriority.NORMAL,
        *,
        batch_id: str | None = None,
    ) -> str:
        """De-duplicate on ``(pid, uid)``, register a tracker and enqueue with stagger."""

        unique: Dict[tuple[str, str], AdRecord] = {}
        skipped = 0
        for record in records:
            if record.key in unique:
                skipped += 1
                LOGGER.info("Skipping duplicate record %s/%s", record.pid, record.uid)
                continue
            unique[record.key] = record

        batch_id = batch_id or f"batch_{uuid4().hex[:12]}"
        tracker = BatchTracker(batch_id=batch_id, expected=len(unique), skipped=skipped)
        self._batches[batch_id] = tracker
        tracker.check_done()
        await self.queue.enqueue_batch(list(unique.values()), batch_id=batch_id, priority=priority)
        LOGGER.info(
            "Submitted batch %s (%d jobs, %d duplicates skipped)",
            batch_id,
            tracker.expected,
            skipped,
            extra={"batch_id": batch_id},
        )
        return batch_id

    def batch_status(self, batch_id: str) -> BatchResult:
        """Current (possibly partial) result; raises KeyError for unknown batches."""
        return self._batches[batch_id].result()

    def batch_finished(self, batch_id: str) -> bool:
        return self._batches[batch_id].done.is_set()

    async def wait_for_batch(self, batch_id: str, timeout: float | None = None) -> BatchResult:
        tracker = self._batches[batch_id]
        limit = timeout if timeout is not None else self.settings.pipeline.batch_timeout_s
        try:
            await asyncio.wait_for(tracker.done.wait(), limit)
        except asyncio.TimeoutError as exc:
            partial = tracker.result()
            raise BatchTimeoutError(
                f"Batch {batch_id} not finished after {limit}s "
                f"({tracker.completed}/{tracker.expected} done, {tracker.active} active)",
                partial=partial,
            ) from exc
        result = tracker.result()
        LOGGER.info(
            "Batch %s finished: %d ok, %d failed, %d skipped in %.1fs",
            batch_id,
            result.success_count,
            result.error_count,
            result.skipped_count,
            result.duration_s,
            extra={"batch_id": batch_id},
        )
        return result

    async def process_batch(
        self,
        records: Sequence[AdRecord],
        priority: int = JobPriority.NORMAL,
        *,
        timeout: float | None = None,
    ) -> BatchResult:
        batch_id = await self.submit_batch(records, priority)
        return await self.wait_for_batch(batch_id, timeout)

    async def process_single(self, record: AdRecord, *, timeout: float | None = None) -> CaptureResult:
        """Capture one record ahead of normal traffic and return its final attempt."""

        batch_id = await self.submit_batch([record], JobPriority.HIGH)
        await self.wait_for_batch(batch_id, timeout)
        tracker = self._batches.pop(batch_id)
        for result in tracker.successes.values():
            return result
        failure = next(iter(tracker.errors.values()))
        return CaptureResult(
            job_id=failure["job_id"],
            success=False,
            state=JobState.FAILED,
            error=failure["error"],
            error_type=failure["error_type"],
        )

    async def retry_failed(self, batch_id: str) -> int:
        """Move a batch's transient terminal failures onto the retry queue once."""

        tracker = self._batches[batch_id]
        moved = 0
        for job in await self.queue.failed_jobs(QueueName.CAPTURE):
            if job.batch_id != batch_id or job.retry_count > 0:
                continue
            if job.error_type in _NON_RETRYABLE_TYPES:
                continue
            if await self.queue.requeue_for_retry(job, from_state=FAILED) is not None:
                tracker.reopen(job.id)
                moved += 1
        LOGGER.info("Requeued %d failed jobs from batch %s", moved, batch_id, extra={"batch_id": batch_id})
        return moved

    async def get_stats(self) -> dict[str, Any]:
        queues = await self.queue.stats()
        return {
            "queues": {name: stats.as_dict() for name, stats in queues.items()},
            "sessions": self.sessions.active_count,
            "bridge_connections": self.bridge.connection_count if self.bridge is not None else 0,
            "in_flight": {name.value: pool.in_flight for name, pool in self._pools.items()},
            "open_batches": sum(1 for tracker in self._batches.values() if not tracker.done.is_set()),
        }

    async def health_check(self) -> dict[str, bool]:
        try:
            queue_ok = await self.queue.ping()
        except Exception as exc:
            LOGGER.warning("Queue store ping failed: %s", exc)
            queue_ok = False
        browser_ok = self.sessions.is_healthy()
        return {
            "healthy": browser_ok and queue_ok,
            "browser": browser_ok,
            "queue": queue_ok,
            "bridge": self.bridge is not None and self.bridge.is_connected(),
        }

    async def start(self) -> None:
        self._shutdown = False
        await self.sessions.start()
        await self.queue.recover_stalled()
        if self.bridge_server is not None:
            self.bridge_server.start()
        for pool in self._pools.values():
            pool.start()
        self.sessions.start_reaper(
            self.settings.pipeline.session_reap_interval_s,
            self.settings.pipeline.session_max_idle_s,
        )
        if self._purge_task is None or self._purge_task.done():
            self._purge_task = asyncio.create_task(self._purge_loop())
        LOGGER.info("Capture pipeline started")

    async def shutdown(self, timeout: float | None = None, *, poll_interval_s: float = 1.0) -> None:
        """Pause dispatch, drain in-flight jobs up to ``timeout`` then force-close."""

        limit = timeout if timeout is not None else self.settings.pipeline.shutdown_timeout_s
        self._shutdown = True
        await self.queue.pause_all()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        while self.in_flight > 0 and loop.time() < deadline:
            LOGGER.info("Waiting for %d in-flight jobs", self.in_flight)
            await asyncio.sleep(poll_interval_s)
        if self.in_flight > 0:
            LOGGER.warning("Shutdown timeout reached with %d jobs in flight; forcing close", self.in_flight)

        for pool in self._pools.values():
            await pool.stop()
        await self._stop_purge()
        await self.sessions.close()
        if self.bridge_server is not None:
            await self.bridge_server.stop()
        elif self.bridge is not None:
            await self.bridge.close()
        await self.queue.close()
        LOGGER.info("Capture pipeline stopped")

    async def _stop_purge(self) -> None:
        if self._purge_task and not self._purge_task.done():
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
        self._purge_task = None

    async def _purge_loop(self) -> None:
        interval = self.settings.pipeline.purge_interval_s
        while not self._shutdown:
            try:
                await asyncio.sleep(interval)
                await self.queue.purge_old()
                await self.queue.recover_stalled()
                self._forget_finished_batches(self.settings.queue.capture.completed_ttl_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover
                LOGGER.exception("Queue purge loop error: %s", exc)

    def _forget_finished_batches(self, ttl_s: float) -> None:
        cutoff = time.monotonic() - ttl_s
        stale = [
            batch_id
            for batch_id, tracker in self._batches.items()
            if tracker.finished_at is not None and tracker.finished_at < cutoff
        ]
        for batch_id in stale:
            del self._batches[batch_id]

from __future__ import annotations

import asyncio
import inspect
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, List

import pytest

from adcapture.bridge import OverlayBridge
from adcapture.errors import BatchTimeoutError, CaptureError, ErrorType, SelectorNotFoundError
from adcapture.injection import RENDER_DETECTION_SCRIPT, AdInjector
from adcapture.pipeline import JobState, Pipeline
from adcapture.queue import QueueManager
from adcapture.queue_store import JobPriority, MemoryQueueStore, QueueJob, QueueName
from adcapture.settings import Settings

from conftest import CountingSessionManager, FakeBrowser, FakeDriver, fake_launcher, make_record


async def _no_sleep(_: float) -> None:
    return None


async def _eventually(predicate: Callable[[], Any], timeout: float = 3.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        outcome = predicate()
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if outcome:
            return True
        await asyncio.sleep(0.01)
    return False


class GatedDriver(FakeDriver):
    """Blocks every navigation until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = 0

    async def navigate(self, session: Any, url: str, **kwargs: Any) -> None:
        await super().navigate(session, url, **kwargs)
        self.waiting += 1
        try:
            await self.gate.wait()
        finally:
            self.waiting -= 1


class StubBridge:
    def __init__(self, image: bytes | None) -> None:
        self.image = image
        self.requests: List[str] = []
        self.connection_count = 1

    def is_connected(self) -> bool:
        return True

    async def request_mobile_capture(self, device_type: str, *, url: str | None = None) -> bytes | None:
        self.requests.append(device_type)
        return self.image

    async def close(self) -> None:
        return None


class Harness:
    def __init__(self, settings: Settings, driver: FakeDriver, *, bridge: Any = None) -> None:
        self.settings = settings
        self.driver = driver
        self.browser = FakeBrowser()
        self.sessions = CountingSessionManager(settings.browser, launcher=fake_launcher(self.browser))
        self.queue = QueueManager(MemoryQueueStore(), settings.queue)
        self.handoffs: List[QueueJob] = []
        self.pipeline = Pipeline(
            settings,
            queue=self.queue,
            sessions=self.sessions,
            driver=driver,
            injector=AdInjector(driver, settings.pipeline, sleep=_no_sleep),
            bridge=bridge,
            handoff=self._handoff,
        )

    async def _handoff(self, job: QueueJob) -> dict[str, Any]:
        self.handoffs.append(job)
        return {"delivered": True}

    def capture_job(self, record: Any, job_id: str = "job-1") -> QueueJob:
        return QueueJob(id=job_id, record=record, created_at=0.0, updated_at=0.0)

    def assert_sessions_balanced(self) -> None:
        assert sorted(self.sessions.destroy_calls) == sorted(self.sessions.created)
        assert len(set(self.sessions.destroy_calls)) == len(self.sessions.destroy_calls)
        assert self.sessions.active_count == 0


@pytest.fixture
def fast_settings(settings: Settings) -> Settings:
    return replace(settings, queue=replace(settings.queue, retry_base_delay_ms=5, retry_max_delay_ms=50))


@pytest.mark.asyncio
async def test_process_job_captures_and_hands_off(fast_settings: Settings) -> None:
    harness = Harness(fast_settings, FakeDriver())
    await harness.sessions.start()
    record = make_record()

    result = await harness.pipeline.process_job(harness.capture_job(record))

    assert result.success
    assert result.state is JobState.HANDED_OFF
    assert result.artifact == harness.driver.image
    artifact_path = Path(result.artifact_ref)
    assert artifact_path.read_bytes() == harness.driver.image
    assert artifact_path.name.endswith("_Desktop_P1_U1_Display_Desktop.png")
    assert str(fast_settings.storage.cache_root) in str(artifact_path)
    assert [name for name, _ in harness.driver.calls] == ["navigate", "wait_for_selector", "capture"]
    assert result.metadata["device_type"] == "desktop"
    assert (await harness.queue.stats())["upload"].waiting == 1
    harness.assert_sessions_balanced()
    assert len(harness.sessions.destroy_calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("operation", "record_extra", "error", "failed_in", "error_type"),
    [
        (
            "navigate",
            {},
            CaptureError("Navigation to page timed out after 30000ms", ErrorType.TIMEOUT_ERROR),
            "SESSION_CREATED",
            "TIMEOUT_ERROR",
        ),
        (
            "run_script",
            {"ad_type": "AD543"},
            CaptureError("Script execution failed: AD543 not loaded", ErrorType.BROWSER_CRASH),
            "NAVIGATED",
            "BROWSER_CRASH",
        ),
        ("wait_for_selector", {}, SelectorNotFoundError("Selector #ad not visible"), "NAVIGATED", "SELECTOR_NOT_FOUND"),
        ("capture", {}, RuntimeError("Target closed"), "SELECTOR_READY", "BROWSER_CRASH"),
    ],
)
async def test_process_job_destroys_the_session_exactly_once_on_failure(
    fast_settings: Settings,
    operation: str,
    record_extra: dict[str, Any],
    error: Exception,
    failed_in: str,
    error_type: str,
) -> None:
    driver = FakeDriver()
    driver.behaviors[operation] = error
    harness = Harness(fast_settings, driver)
    await harness.sessions.start()

    result = await harness.pipeline.process_job(harness.capture_job(make_record(**record_extra)))

    assert not result.success
    assert result.state is JobState.FAILED
    assert result.error_type == error_type
    assert result.metadata["failed_in"] == failed_in
    assert len(harness.sessions.destroy_calls) == 1
    harness.assert_sessions_balanced()
    assert (await harness.queue.stats())["upload"].waiting == 0


@pytest.mark.asyncio
async def test_process_job_reports_session_creation_failures(fast_settings: Settings) -> None:
    harness = Harness(fast_settings, FakeDriver())
    await harness.sessions.start()
    harness.browser.connected = False

    result = await harness.pipeline.process_job(harness.capture_job(make_record()))

    assert not result.success
    assert result.error_type == "BROWSER_CRASH"
    assert harness.sessions.destroy_calls == []
    assert harness.driver.calls == []


@pytest.mark.asyncio
async def test_missing_ad_render_does_not_fail_the_job(fast_settings: Settings) -> None:
    driver = FakeDriver()
    driver.script_results[RENDER_DETECTION_SCRIPT] = False
    harness = Harness(fast_settings, driver)
    await harness.sessions.start()
    record = make_record(selector="bookmarklet:highlighter:selector=#ad")

    result = await harness.pipeline.process_job(harness.capture_job(record))

    assert result.success
    assert driver.count("run_script") >= 2
    assert ("wait_for_selector", "#ad") in driver.calls


@pytest.mark.asyncio
async def test_unknown_bookmarklet_template_still_captures(fast_settings: Settings) -> None:
    driver = FakeDriver()
    harness = Harness(fast_settings, driver)
    await harness.sessions.start()
    record = make_record(selector="bookmarklet:element-highlight:selector=#ad")

    result = await harness.pipeline.process_job(harness.capture_job(record))

    assert result.success
    assert result.state is JobState.HANDED_OFF
    assert ("wait_for_selector", "#ad") in driver.calls
    assert ("capture", "#ad") in driver.calls
    harness.assert_sessions_balanced()


@pytest.mark.asyncio
async def test_mobile_capture_falls_back_when_bridge_has_no_renderers(fast_settings: Settings) -> None:
    bridge = OverlayBridge(fast_settings.bridge)
    harness = Harness(fast_settings, FakeDriver(), bridge=bridge)
    await harness.sessions.start()

    result = await harness.pipeline.process_job(harness.capture_job(make_record(device="Android")))

    assert result.success
    assert result.artifact == harness.driver.image
    assert ("capture", "#ad") in harness.driver.calls
    harness.assert_sessions_balanced()


@pytest.mark.asyncio
async def test_mobile_capture_uses_bridge_image(fast_settings: Settings) -> None:
    bridge = StubBridge(b"mobile-ui-shot")
    harness = Harness(fast_settings, FakeDriver(), bridge=bridge)
    await harness.sessions.start()

    result = await harness.pipeline.process_job(harness.capture_job(make_record(device="iOS")))

    assert result.success
    assert result.artifact == b"mobile-ui-shot"
    assert bridge.requests == ["ios"]
    assert harness.driver.count("capture") == 0


@pytest.mark.asyncio
async def test_desktop_capture_skips_the_bridge(fast_settings: Settings) -> None:
    bridge = StubBridge(b"never")
    harness = Harness(fast_settings, FakeDriver(), bridge=bridge)
    await harness.sessions.start()

    result = await harness.pipeline.process_job(harness.capture_job(make_record(device="Desktop")))

    assert result.artifact == harness.driver.image
    assert bridge.requests == []


@pytest.mark.asyncio
async def test_timeouts_are_retried_three_times_then_reported(fast_settings: Settings) -> None:
    driver = FakeDriver()
    driver.behaviors["navigate"] = CaptureError("Navigation to page timed out after 30000ms", ErrorType.TIMEOUT_ERROR)
    harness = Harness(fast_settings, driver)
    await harness.pipeline.start()
    try:
        result = await harness.pipeline.process_batch([make_record()], timeout=5)
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)

    assert driver.count("navigate") == 3
    assert result.total_records == 1
    assert (result.success_count, result.error_count) == (0, 1)
    assert result.errors[0]["error_type"] == "TIMEOUT_ERROR"
    assert result.errors[0]["record"]["pid"] == "P1"
    assert len(harness.sessions.destroy_calls) == 3
    harness.assert_sessions_balanced()


@pytest.mark.asyncio
async def test_timeouts_on_urls_with_user_error_words_are_still_retried(fast_settings: Settings) -> None:
    driver = FakeDriver()
    url = "https://publisher.example/invalid-ads?conflict=1"
    driver.behaviors["navigate"] = CaptureError(f"Navigation to {url} timed out after 30000ms", ErrorType.TIMEOUT_ERROR)
    harness = Harness(fast_settings, driver)
    await harness.pipeline.start()
    try:
        result = await harness.pipeline.process_batch([make_record(WebsiteURL=url)], timeout=5)
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)

    assert driver.count("navigate") == 3
    assert result.errors[0]["error_type"] == "TIMEOUT_ERROR"
    harness.assert_sessions_balanced()


@pytest.mark.asyncio
async def test_batch_respects_worker_concurrency(fast_settings: Settings) -> None:
    driver = GatedDriver()
    harness = Harness(fast_settings, driver)
    await harness.pipeline.start()
    try:
        records = [make_record("P1", str(index)) for index in range(3)]
        batch_id = await harness.pipeline.submit_batch(records)

        async def two_running() -> bool:
            stats = (await harness.queue.stats())["capture"]
            return driver.waiting == 2 and stats.active == 2 and stats.waiting == 1

        assert await _eventually(two_running)
        await asyncio.sleep(0.05)
        stats = (await harness.queue.stats())["capture"]
        assert (stats.active, stats.waiting) == (2, 1)

        driver.gate.set()
        result = await harness.pipeline.wait_for_batch(batch_id, timeout=5)
    finally:
        driver.gate.set()
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)

    assert result.total_records == 3
    assert result.success_count == 3
    harness.assert_sessions_balanced()


@pytest.mark.asyncio
async def test_submit_batch_deduplicates_on_pid_and_uid(fast_settings: Settings) -> None:
    harness = Harness(fast_settings, FakeDriver())
    await harness.pipeline.start()
    try:
        records = [
            make_record("P1", "U1"),
            make_record("P1", "U1", selector="#other"),
            make_record("P1", "U2"),
            make_record("P2", "U1"),
        ]
        result = await harness.pipeline.process_batch(records, timeout=5)
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)

    assert result.total_records == 3
    assert result.skipped_count == 1
    assert result.success_count == 3
    assert harness.driver.count("navigate") == 3
    assert ("wait_for_selector", "#other") not in harness.driver.calls


@pytest.mark.asyncio
async def test_wait_for_batch_timeout_carries_partial_result(fast_settings: Settings) -> None:
    driver = GatedDriver()
    harness = Harness(fast_settings, driver)
    await harness.pipeline.start()
    try:
        batch_id = await harness.pipeline.submit_batch([make_record()])
        with pytest.raises(BatchTimeoutError) as excinfo:
            await harness.pipeline.wait_for_batch(batch_id, timeout=0.05)
        partial = excinfo.value.partial
        assert partial.batch_id == batch_id
        assert partial.total_records == 1
        assert partial.success_count == 0
        assert excinfo.value.error_type is ErrorType.TIMEOUT_ERROR
    finally:
        driver.gate.set()
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)


@pytest.mark.asyncio
async def test_retry_failed_moves_transient_failures_to_retry_queue(fast_settings: Settings) -> None:
    driver = FakeDriver()
    driver.behaviors["wait_for_selector"] = SelectorNotFoundError("Selector #ad not visible after 10000ms")
    harness = Harness(fast_settings, driver)
    await harness.pipeline.start()
    try:
        batch_id = await harness.pipeline.submit_batch([make_record()])
        first = await harness.pipeline.wait_for_batch(batch_id, timeout=5)
        assert first.error_count == 1

        driver.behaviors.pop("wait_for_selector")
        assert await harness.pipeline.retry_failed(batch_id) == 1
        assert not harness.pipeline.batch_finished(batch_id)
        second = await harness.pipeline.wait_for_batch(batch_id, timeout=5)

        assert (second.success_count, second.error_count) == (1, 0)
        assert await harness.pipeline.retry_failed(batch_id) == 0
        assert await _eventually(lambda: _retry_completed(harness.queue))
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)


async def _retry_completed(queue: QueueManager) -> bool:
    return (await queue.stats())[QueueName.RETRY.value].completed == 1


@pytest.mark.asyncio
async def test_retry_failed_skips_non_retryable_failures(fast_settings: Settings) -> None:
    driver = FakeDriver()
    harness = Harness(fast_settings, driver)
    await harness.pipeline.start()
    try:
        driver.behaviors["capture"] = CaptureError("Publisher page requires login", ErrorType.AUTHENTICATION_ERROR)
        record = make_record()
        result = await harness.pipeline.process_batch([record], timeout=5)
        assert result.errors[0]["error_type"] == "AUTHENTICATION_ERROR"
        assert driver.count("navigate") == 1
        assert await harness.pipeline.retry_failed(result.batch_id) == 0
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)


@pytest.mark.asyncio
async def test_process_single_runs_at_high_priority(fast_settings: Settings) -> None:
    harness = Harness(fast_settings, FakeDriver())
    seen: List[int] = []
    original = harness.pipeline.process_job

    async def spy(job: QueueJob):
        seen.append(job.priority)
        return await original(job)

    harness.pipeline.process_job = spy  # type: ignore[method-assign]
    await harness.pipeline.start()
    try:
        result = await harness.pipeline.process_single(make_record(), timeout=5)
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)

    assert result.success
    assert seen == [JobPriority.HIGH]


@pytest.mark.asyncio
async def test_upload_worker_hands_artifacts_to_the_sink(fast_settings: Settings) -> None:
    harness = Harness(fast_settings, FakeDriver())
    await harness.pipeline.start()
    try:
        result = await harness.pipeline.process_batch([make_record()], timeout=5)
        assert await _eventually(lambda: len(harness.handoffs) == 1)
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)

    job = harness.handoffs[0]
    assert job.queue is QueueName.UPLOAD
    assert job.batch_id == result.batch_id
    assert job.payload["metadata"]["pid"] == "P1"
    assert Path(job.payload["artifact_ref"]).exists()


@pytest.mark.asyncio
async def test_stats_and_health(fast_settings: Settings) -> None:
    harness = Harness(fast_settings, FakeDriver(), bridge=OverlayBridge(fast_settings.bridge))

    assert (await harness.pipeline.health_check())["browser"] is False
    await harness.sessions.start()
    health = await harness.pipeline.health_check()
    stats = await harness.pipeline.get_stats()

    assert health == {"healthy": True, "browser": True, "queue": True, "bridge": False}
    assert set(stats["queues"]) == {"capture", "upload", "retry"}
    assert stats["sessions"] == 0
    assert stats["bridge_connections"] == 0
    assert stats["in_flight"] == {"capture": 0, "retry": 0, "upload": 0}


@pytest.mark.asyncio
async def test_shutdown_pauses_then_force_closes(fast_settings: Settings) -> None:
    driver = GatedDriver()
    harness = Harness(fast_settings, driver)
    await harness.pipeline.start()
    await harness.pipeline.submit_batch([make_record()])
    assert await _eventually(lambda: driver.waiting == 1)

    await harness.pipeline.shutdown(timeout=0.05, poll_interval_s=0.01)

    stats = await harness.queue.stats()
    assert all(entry.paused for entry in stats.values())
    assert harness.pipeline.in_flight == 0
    assert harness.browser.closed
    harness.assert_sessions_balanced()
    assert len(harness.sessions.destroy_calls) == 1


@pytest.mark.asyncio
async def test_start_redelivers_jobs_stalled_by_a_previous_worker(fast_settings: Settings) -> None:
    settings = replace(fast_settings, queue=replace(fast_settings.queue, stalled_after_s=0))
    harness = Harness(settings, FakeDriver())
    orphan = await harness.queue.enqueue_capture(make_record())
    assert await harness.queue.dequeue(QueueName.CAPTURE) is not None
    await asyncio.sleep(0.01)

    await harness.pipeline.start()
    try:
        async def settled() -> bool:
            stats = (await harness.queue.stats())["capture"]
            return len(harness.handoffs) == 1 and stats.completed == 1

        assert await _eventually(settled)
    finally:
        await harness.pipeline.shutdown(timeout=1, poll_interval_s=0.01)

    assert harness.driver.count("navigate") == 1
    assert harness.handoffs[0].payload["metadata"]["job_id"] == orphan.id
    assert harness.handoffs[0].payload["metadata"]["attempt"] == 2

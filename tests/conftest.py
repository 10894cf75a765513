from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover
    sys.path.append(str(ROOT))

from adcapture.browser import Session, SessionManager  # noqa: E402
from adcapture.driver import CaptureOptions  # noqa: E402
from adcapture.schemas import AdRecord  # noqa: E402
from adcapture.settings import Settings, get_settings  # noqa: E402


class FakePage:
    def __init__(self) -> None:
        self.init_scripts: List[str] = []

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)


class FakeContext:
    def __init__(self, options: Dict[str, Any]) -> None:
        self.options = options
        self.closed = 0
        self.navigation_timeout: int | None = None
        self.default_timeout: int | None = None

    def set_default_navigation_timeout(self, timeout: int) -> None:
        self.navigation_timeout = timeout

    def set_default_timeout(self, timeout: int) -> None:
        self.default_timeout = timeout

    async def new_page(self) -> FakePage:
        return FakePage()

    async def close(self) -> None:
        self.closed += 1


class FakeBrowser:
    def __init__(self) -> None:
        self.connected = True
        self.contexts: List[FakeContext] = []
        self.handlers: Dict[str, Callable[..., Any]] = {}
        self.fail_new_context = False
        self.closed = False

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers[event] = handler

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options: Any) -> FakeContext:
        if self.fail_new_context:
            raise RuntimeError("Target closed")
        context = FakeContext(options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        self.connected = False


def fake_launcher(browser: FakeBrowser):
    async def _launch(_config: Any) -> tuple[Any, FakeBrowser]:
        return None, browser

    return _launch


class CountingSessionManager(SessionManager):
    """Session manager that remembers every create and destroy call."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.created: List[str] = []
        self.destroy_calls: List[str] = []

    async def create_session(self, device_type: str) -> Session:
        session = await super().create_session(device_type)
        self.created.append(session.id)
        return session

    async def destroy_session(self, session: Session) -> None:
        self.destroy_calls.append(session.id)
        await super().destroy_session(session)


class FakeDriver:
    """Scriptable stand-in for CaptureDriver.

    ``behaviors`` maps an operation name to an exception to raise or a
    callable producing one, checked on every call.
    """

    def __init__(self) -> None:
        self.calls: List[tuple[str, Any]] = []
        self.behaviors: Dict[str, Any] = {}
        self.script_results: Dict[str, Any] = {}
        self.image = b"\x89PNG-direct"

    def _maybe_raise(self, operation: str) -> None:
        behavior = self.behaviors.get(operation)
        if behavior is None:
            return
        error = behavior() if callable(behavior) else behavior
        if error is not None:
            raise error

    async def navigate(self, session: Session, url: str, **_: Any) -> None:
        self.calls.append(("navigate", url))
        self._maybe_raise("navigate")

    async def wait_for_selector(self, session: Session, selector: str, **_: Any) -> None:
        self.calls.append(("wait_for_selector", selector))
        self._maybe_raise("wait_for_selector")

    async def run_script(self, session: Session, code: str, params: Any = None, **_: Any) -> Any:
        self.calls.append(("run_script", params))
        self._maybe_raise("run_script")
        for marker, result in self.script_results.items():
            if marker in code:
                return result
        return True

    async def capture(self, session: Session, options: CaptureOptions | None = None) -> bytes:
        self.calls.append(("capture", options.selector if options else None))
        self._maybe_raise("capture")
        return self.image

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    base = get_settings()
    queue = base.queue
    return replace(
        base,
        queue=replace(
            queue,
            backend="memory",
            poll_interval_ms=10,
            batch_stagger_ms=0,
            capture=replace(queue.capture, concurrency=2, backoff_ms=1),
            upload=replace(queue.upload, backoff_ms=1),
            retry=replace(queue.retry, backoff_ms=1),
        ),
        pipeline=replace(
            base.pipeline,
            screenshot_delay_ms=0,
            ad_render_timeout_ms=50,
            ad_render_poll_ms=10,
            injection_settle_ms=0,
            ad543_loader_url=None,
            purge_interval_s=3600,
        ),
        bridge=replace(base.bridge, enabled=True, mobile_settle_ms=0, response_timeout_ms=200),
        storage=replace(base.storage, cache_root=tmp_path / "cache", handoff_webhook_url=None),
    )


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


def make_record(pid: str = "P1", uid: str = "U1", device: str = "Desktop", **extra: Any) -> AdRecord:
    payload = {
        "WebsiteURL": f"https://publisher.example/{pid}",
        "PID": pid,
        "UID": uid,
        "AdType": extra.pop("ad_type", "Display"),
        "Selector": extra.pop("selector", "#ad"),
        "DeviceUI": device,
    }
    payload.update(extra)
    return AdRecord.model_validate(payload)

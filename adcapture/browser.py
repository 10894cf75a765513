"""Shared Chromium process and the per-job sessions carved out of it."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from adcapture import metrics
from adcapture.devices import DeviceProfile, profile_for
from adcapture.errors import BrowserCrashError
from adcapture.settings import BrowserSettings

LOGGER = logging.getLogger(__name__)

BrowserLauncher = Callable[[BrowserSettings], Awaitable[tuple[Any, Browser]]]

_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


@dataclass(slots=True)
class Session:
    """Isolated context + page owned by exactly one job."""

    id: str
    device_profile: DeviceProfile
    context: BrowserContext
    page: Page
    created_at: float
    last_activity: float
    is_active: bool = True
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def touch(self) -> None:
        self.last_activity = self.clock()


async def launch_chromium(config: BrowserSettings) -> tuple[Any, Browser]:
    """Start Playwright and launch the shared browser process."""

    playwright = await async_playwright().start()
    channel = _normalize_channel(config.playwright_channel)
    if channel != config.playwright_channel:
        LOGGER.warning(
            "Playwright channel '%s' is not supported; falling back to '%s'",
            config.playwright_channel,
            channel,
        )
    LOGGER.debug("launching chromium", extra={"channel": channel})
    try:
        browser = await playwright.chromium.launch(
            channel=channel,
            headless=config.headless,
            args=list(config.args),
        )
    except Exception:
        await playwright.stop()
        raise
    return playwright, browser


class SessionManager:
    """Owns the browser process and every session created from it."""

    def __init__(
        self,
        config: BrowserSettings,
        *,
        launcher: BrowserLauncher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._launcher = launcher or launch_chromium
        self._clock = clock
        self._playwright: Any = None
        self._browser: Optional[Browser] = None
        self._sessions: Dict[str, Session] = {}
        self._reaper_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def start(self) -> None:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return
            self._playwright, self._browser = await self._launcher(self.config)
            self._browser.on("disconnected", self._on_disconnected)
            LOGGER.info("Browser launched (headless=%s)", self.config.headless)

    def is_healthy(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def create_session(self, device_type: str) -> Session:
        """Open a context + page emulating ``device_type``.

        Raises :class:`BrowserCrashError` when the shared browser is gone or
        refuses a new context.
        """

        profile = profile_for(device_type)
        browser = self._browser
        if browser is None or not browser.is_connected():
            raise BrowserCrashError("Browser is not running")

        context: BrowserContext | None = None
        try:
            context = await browser.new_context(**profile.context_options())
            context.set_default_navigation_timeout(self.config.navigation_timeout_ms)
            context.set_default_timeout(self.config.selector_timeout_ms)
            page = await context.new_page()
            await _mask_automation(page)
        except Exception as exc:
            if context is not None:
                await _close_quietly(context)
            raise BrowserCrashError(f"Failed to create {device_type} session: {exc}") from exc

        now = self._clock()
        session = Session(
            id=uuid4().hex,
            device_profile=profile,
            context=context,
            page=page,
            created_at=now,
            last_activity=now,
            clock=self._clock,
        )
        self._sessions[session.id] = session
        metrics.set_active_sessions(self.active_count)
        LOGGER.debug("Created session %s (%s)", session.id, profile.name)
        return session

    async def destroy_session(self, session: Session) -> None:
        """Close the session's context; repeated calls are no-ops."""

        if not session.is_active:
            return
        session.is_active = False
        self._sessions.pop(session.id, None)
        metrics.set_active_sessions(self.active_count)
        await _close_quietly(session.context)
        LOGGER.debug("Destroyed session %s", session.id)

    async def reap_idle_sessions(self, max_idle_s: float = 600) -> int:
        now = self._clock()
        stale = [session for session in list(self._sessions.values()) if now - session.last_activity > max_idle_s]
        for session in stale:
            LOGGER.warning("Reaping idle session %s (idle %.0fs)", session.id, now - session.last_activity)
            await self.destroy_session(session)
        return len(stale)

    def start_reaper(self, interval_s: float = 300, max_idle_s: float = 600) -> None:
        """Start the background sweep for sessions nobody cleaned up."""
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper_loop(interval_s, max_idle_s))
            LOGGER.info("Session reaper started (interval=%ss, max idle=%ss)", interval_s, max_idle_s)

    async def stop_reaper(self) -> None:
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            LOGGER.info("Session reaper stopped")
        self._reaper_task = None

    async def _reaper_loop(self, interval_s: float, max_idle_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                reaped = await self.reap_idle_sessions(max_idle_s)
                if reaped:
                    LOGGER.info("Reaped %d idle sessions", reaped)
            except Exception as exc:  # pragma: no cover
                LOGGER.exception("Session reaper error: %s", exc)

    async def close(self) -> None:
        """Destroy all sessions, then the browser and Playwright driver."""

        await self.stop_reaper()
        for session in list(self._sessions.values()):
            await self.destroy_session(session)
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:
                LOGGER.warning("Browser close failed: %s", exc)
        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as exc:
                LOGGER.warning("Playwright stop failed: %s", exc)
        LOGGER.info("Browser closed")

    def _on_disconnected(self, *_: Any) -> None:
        LOGGER.error("Browser disconnected; %d sessions orphaned", self.active_count)


async def _mask_automation(page: Page) -> None:
    await page.add_init_script(
        """
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined,
        });
        """
    )


async def _close_quietly(context: BrowserContext) -> None:
    try:
        await context.close()
    except Exception as exc:
        LOGGER.warning("Closing browser context failed: %s", exc)


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)

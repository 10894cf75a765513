"""Navigation, waits, script execution and pixel capture on a session."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from adcapture.browser import Session
from adcapture.errors import (
    CaptureError,
    ErrorType,
    NavigationError,
    ScriptTimeoutError,
    SelectorNotFoundError,
    classify,
)
from adcapture.settings import BrowserSettings

LOGGER = logging.getLogger(__name__)

_PARAMS_SETTER = "(params) => { window.__adcaptureParams = params; }"


@dataclass(slots=True)
class CaptureOptions:
    """What to capture: an element, the full page, a clip or the viewport."""

    selector: str | None = None
    full_page: bool = False
    clip: Mapping[str, float] | None = None
    format: str = "png"
    quality: int | None = None


class CaptureDriver:
    """Thin Playwright wrapper that enforces timeouts and maps failures to the taxonomy."""

    def __init__(self, config: BrowserSettings) -> None:
        self.config = config

    async def navigate(
        self,
        session: Session,
        url: str,
        *,
        timeout_ms: int | None = None,
        wait_until: str = "networkidle",
    ) -> None:
        session.touch()
        timeout = timeout_ms or self.config.navigation_timeout_ms
        context = {"url": url, "session_id": session.id}
        try:
            response = await session.page.goto(url, wait_until=wait_until, timeout=timeout)
        except PlaywrightTimeoutError as exc:
            raise CaptureError(
                f"Navigation to {url} timed out after {timeout}ms",
                ErrorType.TIMEOUT_ERROR,
                context=context,
            ) from exc
        except PlaywrightError as exc:
            raise CaptureError(f"Navigation to {url} failed: {exc}", classify(exc), context=context) from exc
        finally:
            session.touch()

        if response is None:
            raise NavigationError(f"No response received for {url}", context=context)
        if not response.ok:
            raise NavigationError(f"HTTP {response.status} received for {url}", context=context)
        LOGGER.debug("Navigated session %s to %s", session.id, url)

    async def wait_for_selector(self, session: Session, selector: str, *, timeout_ms: int | None = None) -> None:
        session.touch()
        timeout = timeout_ms or self.config.selector_timeout_ms
        try:
            await session.page.wait_for_selector(selector, state="visible", timeout=timeout)
        except PlaywrightTimeoutError as exc:
            raise SelectorNotFoundError(
                f"Selector {selector} not visible after {timeout}ms",
                context={"selector": selector},
            ) from exc
        except PlaywrightError as exc:
            raise CaptureError(f"Waiting for selector {selector} failed: {exc}", classify(exc)) from exc
        finally:
            session.touch()

    async def run_script(
        self,
        session: Session,
        code: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        """Evaluate ``code`` in the page.

        With ``params`` the code must be a function expression; it receives
        the params as its argument and they are also exposed as
        ``window.__adcaptureParams``.
        """

        session.touch()
        timeout = timeout_ms or self.config.script_timeout_ms
        page = session.page

        async def _evaluate() -> Any:
            if params is None:
                return await page.evaluate(code)
            payload = dict(params)
            await page.evaluate(_PARAMS_SETTER, payload)
            return await page.evaluate(code, payload)

        try:
            return await asyncio.wait_for(_evaluate(), timeout / 1000)
        except asyncio.TimeoutError as exc:
            raise ScriptTimeoutError(f"Script execution exceeded {timeout}ms") from exc
        except PlaywrightError as exc:
            raise CaptureError(f"Script execution failed: {exc}", classify(exc)) from exc
        finally:
            session.touch()

    async def capture(self, session: Session, options: CaptureOptions | None = None) -> bytes:
        """Return image bytes for the requested region."""

        options = options or CaptureOptions()
        session.touch()
        page = session.page
        kwargs: dict[str, Any] = {
            "type": options.format,
            "timeout": self.config.screenshot_timeout_ms,
            "animations": "disabled",
        }
        if options.format == "jpeg":
            kwargs["quality"] = options.quality or self.config.jpeg_quality

        try:
            if options.selector:
                element = await page.query_selector(options.selector)
                if element is None:
                    raise SelectorNotFoundError(
                        f"Element not found: {options.selector}",
                        context={"selector": options.selector},
                    )
                return await element.screenshot(**kwargs)
            if options.clip:
                kwargs["clip"] = dict(options.clip)
            return await page.screenshot(full_page=options.full_page, **kwargs)
        except PlaywrightTimeoutError as exc:
            raise CaptureError(
                f"Screenshot exceeded {self.config.screenshot_timeout_ms}ms",
                ErrorType.TIMEOUT_ERROR,
            ) from exc
        except PlaywrightError as exc:
            raise CaptureError(f"Screenshot failed: {exc}", classify(exc)) from exc
        finally:
            session.touch()

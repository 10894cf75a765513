"""Ad-injection scripts: bookmarklet templates, AD543 automation and render polling."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from adcapture import metrics
from adcapture.browser import Session
from adcapture.driver import CaptureDriver
from adcapture.errors import CaptureError, DirectiveParseError, RetryStrategy, with_retry
from adcapture.schemas import AdRecord, InjectionDirective
from adcapture.settings import PipelineSettings

LOGGER = logging.getLogger(__name__)

OUTSTREAM = "outstream"
INSTREAM = "instream"
DV360 = "dv360"
ANY_FORMAT = "any"
_AD_FORMATS = (OUTSTREAM, INSTREAM, DV360)
_SELECTOR_PLAY_MODES = ("MIR", "TD", "IP", "IR")

# Linear 1s, 2s between bookmarklet tries.
_BOOKMARKLET_RETRY = RetryStrategy(max_attempts=3, delay_ms=1000, max_delay_ms=2000, linear=True)


@dataclass(frozen=True, slots=True)
class TemplateParam:
    name: str
    kind: str = "string"
    required: bool = False
    default: Any = None

    def coerce(self, raw: Any) -> Any:
        if not isinstance(raw, str):
            return raw
        if self.kind == "number":
            try:
                return float(raw) if "." in raw else int(raw)
            except ValueError as exc:
                raise DirectiveParseError(f"Parameter {self.name} must be numeric, got {raw!r}") from exc
        if self.kind == "boolean":
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        if self.kind == "list":
            return [part.strip() for part in raw.split("|") if part.strip()]
        return raw


@dataclass(frozen=True, slots=True)
class BookmarkletTemplate:
    """Named in-page script with typed, defaulted parameters."""

    name: str
    description: str
    body: str
    params: tuple[TemplateParam, ...] = field(default_factory=tuple)

    def resolve_params(self, supplied: Mapping[str, Any]) -> dict[str, Any]:
        missing = [param.name for param in self.params if param.required and param.name not in supplied]
        if missing:
            raise DirectiveParseError(f"Missing required parameters for {self.name}: {', '.join(missing)}")
        resolved: dict[str, Any] = {}
        for param in self.params:
            if param.name in supplied:
                resolved[param.name] = param.coerce(supplied[param.name])
            elif isinstance(param.default, list):
                resolved[param.name] = list(param.default)
            elif param.default is not None:
                resolved[param.name] = param.default
        for key, value in supplied.items():
            resolved.setdefault(key, value)
        return resolved

    def script(self) -> str:
        """Function expression receiving the resolved params."""

        return f"""(params) => {{
  const getParam = (name, fallback = null) =>
    Object.prototype.hasOwnProperty.call(params, name) ? params[name] : fallback;
  const describe = (el) => {{
    const rect = el.getBoundingClientRect();
    return {{
      tag: el.tagName,
      id: el.id || null,
      className: el.className || null,
      rect: {{ x: rect.x, y: rect.y, width: rect.width, height: rect.height }},
      visible: rect.width > 0 && rect.height > 0,
    }};
  }};
  window.__bookmarkletParams = params;
{self.body}
}}"""


_HIGHLIGHTER = BookmarkletTemplate(
    name="highlighter",
    description="Outline elements matching a selector",
    body="""
  const selector = getParam('selector', '.ad');
  const color = getParam('color', '#ff0000');
  const duration = getParam('duration', 5000);
  const elements = document.querySelectorAll(selector);
  elements.forEach((el) => {
    const previous = el.style.outline;
    el.style.outline = `3px solid ${color}`;
    setTimeout(() => { el.style.outline = previous; }, duration);
  });
  return { elementsFound: elements.length, selector };
""",
    params=(
        TemplateParam("selector", required=True),
        TemplateParam("color", default="#ff0000"),
        TemplateParam("duration", kind="number", default=5000),
    ),
)

_AD_EXTRACTOR = BookmarkletTemplate(
    name="ad-extractor",
    description="Collect text, links and attributes from ad elements",
    body="""
  const selector = getParam('selector', '.ad');
  const includeMetadata = getParam('include_metadata', true);
  const results = Array.from(document.querySelectorAll(selector)).map((el, index) => {
    const info = {
      index,
      text: (el.textContent || '').trim(),
      attributes: Object.fromEntries(Array.from(el.attributes).map((attr) => [attr.name, attr.value])),
      links: Array.from(el.querySelectorAll('a[href]')).map((link) => ({ text: (link.textContent || '').trim(), href: link.href })),
    };
    if (includeMetadata) {
      info.metadata = describe(el);
    }
    return info;
  });
  return { elementsFound: results.length, data: results, extractedAt: new Date().toISOString() };
""",
    params=(
        TemplateParam("selector", required=True),
        TemplateParam("include_metadata", kind="boolean", default=True),
    ),
)

_PAGE_SCANNER = BookmarkletTemplate(
    name="page-scanner",
    description="Count ad-like elements across common selectors",
    body="""
  const adSelectors = getParam('ad_selectors', []);
  const results = { url: window.location.href, title: document.title, adElements: {}, totalAds: 0 };
  adSelectors.forEach((selector) => {
    const elements = document.querySelectorAll(selector);
    if (elements.length > 0) {
      results.adElements[selector] = { count: elements.length, elements: Array.from(elements).map(describe) };
      results.totalAds += elements.length;
    }
  });
  return results;
""",
    params=(
        TemplateParam(
            "ad_selectors",
            kind="list",
            default=[".ad", ".advertisement", '[class*="ad-"]', '[id*="ad-"]', ".banner", ".sponsored", "[data-ad]"],
        ),
    ),
)

TEMPLATES: Mapping[str, BookmarkletTemplate] = MappingProxyType(
    {
        "highlighter": _HIGHLIGHTER,
        "element-highlighter": _HIGHLIGHTER,
        "ad-extractor": _AD_EXTRACTOR,
        "page-scanner": _PAGE_SCANNER,
    }
)


def get_template(name: str) -> BookmarkletTemplate:
    template = TEMPLATES.get(name.strip().lower())
    if template is None:
        raise DirectiveParseError(f"Unknown bookmarklet template: {name}")
    return template


RENDER_DETECTION_SCRIPT = """(params) => {
  const format = params.format;
  const outstream = () => Array.from(document.querySelectorAll('[id*="onead"], [class*="onead"]'))
    .some((el) => el.innerHTML.trim().length > 100);
  const instream = () => Boolean(
    document.querySelector('.gliaplayer-container video') || document.querySelector('.trv-player-container video')
  );
  const dv360 = () => Array.from(document.querySelectorAll('iframe'))
    .some((frame) => (frame.src || '').includes('doubleclick'));
  if (format === 'outstream') return outstream();
  if (format === 'instream') return instream();
  if (format === 'dv360') return dv360();
  return outstream() || instream() || dv360();
}"""

_AD543_LOAD_SCRIPT = """(params) => {
  if (window.AD543Loaded) {
    return true;
  }
  const script = document.createElement('script');
  script.src = params.url;
  script.async = true;
  document.head.appendChild(script);
  return false;
}"""

_AD543_READY_SCRIPT = "() => window.AD543Loaded === true"

_AD543_CONFIGURE_SCRIPT = """(params) => {
  if (!window.AD543Loaded) {
    throw new Error('AD543 not loaded');
  }
  const store = (key, value) => {
    const payload = JSON.stringify(value);
    if (typeof GM_setValue === 'function') {
      GM_setValue(key, payload);
    } else {
      sessionStorage.setItem('AD543_' + key, payload);
    }
  };
  if (params.format === 'instream') {
    store('svInfo', { playerValue: params.player === 'glia' ? '1' : '0', url: params.video_url, link: params.click_url });
  } else if (params.format === 'dv360') {
    store('dv360Info', { url: params.campaign_url, target: params.target_iframe });
  } else {
    store('adInfo', { sourceValue: params.source, playmodeValue: params.play_mode, pid: params.pid, uid: params.uid });
  }
  return true;
}"""

_AD543_TRIGGER_SCRIPT = """(params) => {
  if (!window.AD543Loaded) {
    throw new Error('AD543 not loaded');
  }
  let adInfo = {};
  try {
    const raw = typeof GM_getValue === 'function' ? GM_getValue('adInfo') : sessionStorage.getItem('AD543_adInfo');
    adInfo = JSON.parse(raw || '{}');
  } catch (e) {
    adInfo = {};
  }
  if (params.clear_modes.includes(adInfo.playmodeValue)) {
    const target = document.querySelector(params.selector);
    if (!target) {
      throw new Error('Target element not found: ' + params.selector);
    }
    target.innerHTML = '';
  }
  document.dispatchEvent(new KeyboardEvent('keydown', {
    key: 'R', keyCode: 82, shiftKey: true, bubbles: true, cancelable: true,
  }));
  return true;
}"""


class AdInjector:
    """Runs a record's injection directive and waits for the ad to show up."""

    def __init__(
        self,
        driver: CaptureDriver,
        config: PipelineSettings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.driver = driver
        self.config = config
        self._sleep = sleep

    async def inject(self, session: Session, record: AdRecord) -> str | None:
        """Run whatever injection ``record`` asks for; returns the ad format to poll for."""

        if record.named_injection:
            return await self.run_named_injection(session, record)
        if record.injection is not None:
            await self.run_bookmarklet(session, record.injection)
            return ANY_FORMAT
        return None

    async def run_bookmarklet(self, session: Session, directive: InjectionDirective) -> Any:
        """Execute a template directive; failures are logged, never raised."""

        try:
            template = get_template(directive.template)
            params = template.resolve_params(directive.params)
            result = await with_retry(
                lambda: self.driver.run_script(session, template.script(), params),
                _BOOKMARKLET_RETRY,
                label=f"bookmarklet {template.name}",
                sleep=self._sleep,
            )
        except CaptureError as exc:
            LOGGER.warning("Bookmarklet %s failed on session %s: %s", directive.template, session.id, exc)
            return None
        LOGGER.debug("Bookmarklet %s returned %s", template.name, result)
        return result

    async def run_named_injection(self, session: Session, record: AdRecord) -> str:
        """Load, configure and trigger AD543; errors propagate to fail the attempt."""

        ad_format = (record.ad_format or OUTSTREAM).strip().lower()
        if ad_format not in _AD_FORMATS:
            LOGGER.warning("Unknown AD543 format %r for %s/%s; using outstream", ad_format, record.pid, record.uid)
            ad_format = OUTSTREAM

        await self._load_ad543(session)
        await self.driver.run_script(
            session,
            _AD543_CONFIGURE_SCRIPT,
            {
                "format": ad_format,
                "source": record.source or "staging",
                "play_mode": record.play_mode or "MIR",
                "pid": record.pid,
                "uid": record.uid,
                "player": record.player or "glia",
                "video_url": record.video_url or "",
                "click_url": record.click_url or "",
                "campaign_url": record.campaign_url or "",
                "target_iframe": record.target_iframe or "",
            },
        )
        await self.driver.run_script(
            session,
            _AD543_TRIGGER_SCRIPT,
            {"selector": record.selector or ".content-area", "clear_modes": list(_SELECTOR_PLAY_MODES)},
        )
        await asyncio.sleep(self.config.injection_settle_ms / 1000)
        LOGGER.debug("AD543 %s injection triggered for %s/%s", ad_format, record.pid, record.uid)
        return ad_format

    async def _load_ad543(self, session: Session) -> None:
        loader_url = self.config.ad543_loader_url
        if not loader_url:
            LOGGER.debug("AD543_LOADER_URL not set; expecting the page to ship AD543")
            return
        already_loaded = await self.driver.run_script(session, _AD543_LOAD_SCRIPT, {"url": loader_url})
        if already_loaded:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.injection_settle_ms / 1000
        while loop.time() < deadline:
            if await self.driver.run_script(session, _AD543_READY_SCRIPT):
                return
            await asyncio.sleep(0.25)
        LOGGER.warning("AD543 loader did not report ready within %sms", self.config.injection_settle_ms)

    async def wait_for_ad_render(
        self,
        session: Session,
        ad_format: str = ANY_FORMAT,
        *,
        timeout_ms: int | None = None,
        poll_ms: int | None = None,
    ) -> bool:
        """Poll the render-detection script until it reports an ad or time runs out.

        Returns False on timeout; a missing render is only a warning. Total
        time is bounded by the timeout plus one poll interval.
        """

        timeout = (timeout_ms if timeout_ms is not None else self.config.ad_render_timeout_ms) / 1000
        interval = (poll_ms if poll_ms is not None else self.config.ad_render_poll_ms) / 1000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            try:
                rendered = await self.driver.run_script(
                    session,
                    RENDER_DETECTION_SCRIPT,
                    {"format": ad_format},
                    timeout_ms=max(1, int(min(interval, max(remaining, 0)) * 1000)),
                )
            except CaptureError as exc:
                LOGGER.debug("Render check failed on session %s: %s", session.id, exc)
                rendered = False
            if rendered:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))
        metrics.record_ad_render_timeout()
        LOGGER.warning(
            "Ad render not detected on session %s within %.1fs; capturing anyway", session.id, timeout
        )
        return False

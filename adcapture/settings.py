"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "BrowserSettings",
    "QueuePolicy",
    "QueueSettings",
    "PipelineSettings",
    "BridgeSettings",
    "StorageSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]

DEFAULT_BROWSER_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-sync",
)


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Chromium launch options and per-operation timeouts."""

    playwright_channel: str
    headless: bool
    args: tuple[str, ...]
    navigation_timeout_ms: int
    selector_timeout_ms: int
    screenshot_timeout_ms: int
    script_timeout_ms: int
    jpeg_quality: int


@dataclass(frozen=True, slots=True)
class QueuePolicy:
    """Concurrency, attempt cap, backoff and retention for one logical queue."""

    concurrency: int
    max_attempts: int
    backoff_type: str
    backoff_ms: int
    completed_ttl_s: int
    failed_ttl_s: int

    def backoff_delay_ms(self, queue_attempt: int) -> int:
        """Delay before redelivering a job that just failed ``queue_attempt``."""

        if self.backoff_type == "fixed":
            return self.backoff_ms
        return self.backoff_ms * 2 ** max(0, queue_attempt - 1)


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Queue backend selection plus the three queue policies."""

    backend: str
    prefix: str
    redis_host: str
    redis_port: int
    redis_database: int
    redis_password: str | None
    poll_interval_ms: int
    batch_stagger_ms: int
    retry_base_delay_ms: int
    retry_max_delay_ms: int
    stalled_after_s: int
    capture: QueuePolicy
    upload: QueuePolicy
    retry: QueuePolicy


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Per-job state machine knobs."""

    screenshot_delay_ms: int
    ad_render_timeout_ms: int
    ad_render_poll_ms: int
    injection_settle_ms: int
    ad543_loader_url: str | None
    batch_timeout_s: int
    session_max_idle_s: int
    session_reap_interval_s: int
    purge_interval_s: int
    shutdown_timeout_s: int


@dataclass(frozen=True, slots=True)
class BridgeSettings:
    """UI-overlay bridge endpoint and circuit breaker limits."""

    enabled: bool
    host: str
    port: int
    response_timeout_ms: int
    mobile_settle_ms: int
    breaker_threshold: int
    breaker_reset_s: int
    breaker_window_s: int


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem layout for captured artifacts and handoff delivery."""

    cache_root: Path
    date_folders: bool
    handoff_webhook_url: str | None
    handoff_webhook_secret: str | None


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Logging level and Prometheus exporter port."""

    log_level: str
    prometheus_port: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    browser: BrowserSettings
    queue: QueueSettings
    pipeline: PipelineSettings
    bridge: BridgeSettings
    storage: StorageSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to ``env_path`` when it exists.

    Without the file only process environment variables are consulted.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _optional(cfg: DecoupleConfig, key: str) -> str | None:
    raw = cfg(key, default="")
    return raw or None


def _csv_tuple(cfg: DecoupleConfig, key: str) -> tuple[str, ...]:
    raw = cfg(key, default="")
    if not raw:
        return tuple()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _policy(
    cfg: DecoupleConfig,
    prefix: str,
    *,
    concurrency: int,
    max_attempts: int,
    backoff_type: str,
    backoff_ms: int,
    completed_ttl_s: int,
    failed_ttl_s: int,
) -> QueuePolicy:
    backoff = cfg(f"{prefix}_BACKOFF_TYPE", default=backoff_type).strip().lower()
    if backoff not in {"fixed", "exponential"}:
        msg = f"{prefix}_BACKOFF_TYPE must be 'fixed' or 'exponential'"
        raise ValueError(msg)
    policy = QueuePolicy(
        concurrency=_int(cfg, f"{prefix}_CONCURRENCY", default=concurrency),
        max_attempts=_int(cfg, f"{prefix}_MAX_ATTEMPTS", default=max_attempts),
        backoff_type=backoff,
        backoff_ms=_int(cfg, f"{prefix}_BACKOFF_MS", default=backoff_ms),
        completed_ttl_s=_int(cfg, f"{prefix}_COMPLETED_TTL_S", default=completed_ttl_s),
        failed_ttl_s=_int(cfg, f"{prefix}_FAILED_TTL_S", default=failed_ttl_s),
    )
    if policy.concurrency < 1 or policy.max_attempts < 1:
        msg = f"{prefix} concurrency and max attempts must be >= 1"
        raise ValueError(msg)
    return policy


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    browser = BrowserSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        headless=_bool(cfg, "BROWSER_HEADLESS", default=True),
        args=_csv_tuple(cfg, "BROWSER_ARGS") or DEFAULT_BROWSER_ARGS,
        navigation_timeout_ms=_int(cfg, "BROWSER_TIMEOUT", default=30000),
        selector_timeout_ms=_int(cfg, "SELECTOR_TIMEOUT", default=10000),
        screenshot_timeout_ms=_int(cfg, "SCREENSHOT_TIMEOUT", default=10000),
        script_timeout_ms=_int(cfg, "SCRIPT_TIMEOUT", default=10000),
        jpeg_quality=_int(cfg, "JPEG_QUALITY", default=90),
    )
    queue = QueueSettings(
        backend=cfg("QUEUE_BACKEND", default="redis").strip().lower(),
        prefix=cfg("QUEUE_PREFIX", default="adcapture"),
        redis_host=cfg("REDIS_HOST", default="localhost"),
        redis_port=_int(cfg, "REDIS_PORT", default=6379),
        redis_database=_int(cfg, "REDIS_DB", default=0),
        redis_password=_optional(cfg, "REDIS_PASSWORD"),
        poll_interval_ms=_int(cfg, "QUEUE_POLL_INTERVAL_MS", default=500),
        batch_stagger_ms=_int(cfg, "BATCH_STAGGER_MS", default=100),
        retry_base_delay_ms=_int(cfg, "RETRY_BASE_DELAY_MS", default=1000),
        retry_max_delay_ms=_int(cfg, "RETRY_MAX_DELAY_MS", default=30000),
        stalled_after_s=_int(cfg, "QUEUE_STALLED_AFTER_S", default=600),
        capture=_policy(
            cfg,
            "CAPTURE",
            concurrency=_int(cfg, "CONCURRENT_JOBS", default=3),
            max_attempts=3,
            backoff_type="exponential",
            backoff_ms=2000,
            completed_ttl_s=24 * 3600,
            failed_ttl_s=48 * 3600,
        ),
        upload=_policy(
            cfg,
            "UPLOAD",
            concurrency=2,
            max_attempts=4,
            backoff_type="exponential",
            backoff_ms=1500,
            completed_ttl_s=12 * 3600,
            failed_ttl_s=24 * 3600,
        ),
        retry=_policy(
            cfg,
            "RETRY",
            concurrency=1,
            max_attempts=2,
            backoff_type="fixed",
            backoff_ms=5000,
            completed_ttl_s=6 * 3600,
            failed_ttl_s=12 * 3600,
        ),
    )
    if queue.backend not in {"redis", "memory"}:
        msg = "QUEUE_BACKEND must be 'redis' or 'memory'"
        raise ValueError(msg)

    pipeline = PipelineSettings(
        screenshot_delay_ms=_int(cfg, "SCREENSHOT_DELAY_MS", default=2000),
        ad_render_timeout_ms=_int(cfg, "AD_RENDER_TIMEOUT_MS", default=15000),
        ad_render_poll_ms=_int(cfg, "AD_RENDER_POLL_MS", default=1000),
        injection_settle_ms=_int(cfg, "INJECTION_SETTLE_MS", default=3000),
        ad543_loader_url=_optional(cfg, "AD543_LOADER_URL"),
        batch_timeout_s=_int(cfg, "BATCH_TIMEOUT_S", default=1800),
        session_max_idle_s=_int(cfg, "SESSION_MAX_IDLE_S", default=600),
        session_reap_interval_s=_int(cfg, "SESSION_REAP_INTERVAL_S", default=300),
        purge_interval_s=_int(cfg, "QUEUE_PURGE_INTERVAL_S", default=3600),
        shutdown_timeout_s=_int(cfg, "SHUTDOWN_TIMEOUT_S", default=60),
    )
    bridge = BridgeSettings(
        enabled=_bool(cfg, "BRIDGE_ENABLED", default=True),
        host=cfg("EXTENSION_HOST", default="127.0.0.1"),
        port=_int(cfg, "EXTENSION_PORT", default=9222),
        response_timeout_ms=_int(cfg, "BRIDGE_RESPONSE_TIMEOUT_MS", default=15000),
        mobile_settle_ms=_int(cfg, "BRIDGE_MOBILE_SETTLE_MS", default=500),
        breaker_threshold=_int(cfg, "BRIDGE_BREAKER_THRESHOLD", default=5),
        breaker_reset_s=_int(cfg, "BRIDGE_BREAKER_RESET_S", default=60),
        breaker_window_s=_int(cfg, "BRIDGE_BREAKER_WINDOW_S", default=120),
    )
    storage = StorageSettings(
        cache_root=Path(cfg("CACHE_ROOT", default=".cache")),
        date_folders=_bool(cfg, "CREATE_DATE_FOLDERS", default=True),
        handoff_webhook_url=_optional(cfg, "HANDOFF_WEBHOOK_URL"),
        handoff_webhook_secret=_optional(cfg, "HANDOFF_WEBHOOK_SECRET"),
    )
    telemetry = TelemetrySettings(
        log_level=cfg("LOG_LEVEL", default="INFO").upper(),
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
    )

    return Settings(
        env_path=env_path,
        browser=browser,
        queue=queue,
        pipeline=pipeline,
        bridge=bridge,
        storage=storage,
        telemetry=telemetry,
    )


# Statically importable settings singleton for modules that prefer constants over DI.
settings: Final[Settings] = get_settings()

"""Prometheus collectors for queue, session and bridge activity."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

JOB_OUTCOMES = Counter(
    "adcapture_jobs_total",
    "Queue job outcomes by queue name",
    labelnames=("queue", "outcome"),
)
CAPTURE_SECONDS = Histogram(
    "adcapture_capture_seconds",
    "Wall time of one capture attempt from session creation to teardown",
    buckets=(1, 2.5, 5, 10, 20, 30, 60, 120),
)
CAPTURE_RESULTS = Counter(
    "adcapture_capture_results_total",
    "Capture attempts by device type and error class",
    labelnames=("device_type", "result"),
)
ACTIVE_SESSIONS = Gauge(
    "adcapture_active_sessions",
    "Browser sessions currently open",
)
BRIDGE_FALLBACKS = Counter(
    "adcapture_bridge_fallback_total",
    "Mobile captures that fell back to direct capture",
    labelnames=("reason",),
)
AD_RENDER_TIMEOUTS = Counter(
    "adcapture_ad_render_timeouts_total",
    "Injected ads that never signalled a render before the poll deadline",
)


def record_job_outcome(queue: str, outcome: str) -> None:
    JOB_OUTCOMES.labels(queue=queue, outcome=outcome).inc()


def observe_capture(device_type: str, result: str, seconds: float) -> None:
    CAPTURE_RESULTS.labels(device_type=device_type, result=result).inc()
    CAPTURE_SECONDS.observe(max(0.0, seconds))


def set_active_sessions(count: int) -> None:
    ACTIVE_SESSIONS.set(count)


def record_bridge_fallback(reason: str) -> None:
    BRIDGE_FALLBACKS.labels(reason=reason).inc()


def record_ad_render_timeout() -> None:
    AD_RENDER_TIMEOUTS.inc()

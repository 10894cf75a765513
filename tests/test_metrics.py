from __future__ import annotations

from typing import Any, Mapping

from adcapture import metrics


def _sample_value(metric: Any, sample_name: str, labels: Mapping[str, str] | None = None) -> float:
    for collected in metric.collect():
        for sample in collected.samples:
            if sample.name != sample_name:
                continue
            if labels is not None and sample.labels != labels:
                continue
            return float(sample.value)
    return 0.0


def test_observe_capture_updates_histogram_and_result_counter() -> None:
    labels = {"device_type": "ios", "result": "TIMEOUT_ERROR"}
    before_results = _sample_value(metrics.CAPTURE_RESULTS, "adcapture_capture_results_total", labels)
    before_count = _sample_value(metrics.CAPTURE_SECONDS, "adcapture_capture_seconds_count")
    before_sum = _sample_value(metrics.CAPTURE_SECONDS, "adcapture_capture_seconds_sum")

    metrics.observe_capture("ios", "TIMEOUT_ERROR", 4.5)
    metrics.observe_capture("ios", "TIMEOUT_ERROR", -1.0)

    assert _sample_value(metrics.CAPTURE_RESULTS, "adcapture_capture_results_total", labels) == before_results + 2
    assert _sample_value(metrics.CAPTURE_SECONDS, "adcapture_capture_seconds_count") == before_count + 2
    assert _sample_value(metrics.CAPTURE_SECONDS, "adcapture_capture_seconds_sum") == before_sum + 4.5


def test_job_outcomes_are_labelled_by_queue() -> None:
    labels = {"queue": "upload", "outcome": "retried"}
    before = _sample_value(metrics.JOB_OUTCOMES, "adcapture_jobs_total", labels)

    metrics.record_job_outcome("upload", "retried")

    assert _sample_value(metrics.JOB_OUTCOMES, "adcapture_jobs_total", labels) == before + 1


def test_session_gauge_and_fallback_counters() -> None:
    metrics.set_active_sessions(3)
    assert _sample_value(metrics.ACTIVE_SESSIONS, "adcapture_active_sessions") == 3
    metrics.set_active_sessions(0)
    assert _sample_value(metrics.ACTIVE_SESSIONS, "adcapture_active_sessions") == 0

    before_fallback = _sample_value(
        metrics.BRIDGE_FALLBACKS, "adcapture_bridge_fallback_total", {"reason": "timeout"}
    )
    before_render = _sample_value(metrics.AD_RENDER_TIMEOUTS, "adcapture_ad_render_timeouts_total")

    metrics.record_bridge_fallback("timeout")
    metrics.record_ad_render_timeout()

    assert (
        _sample_value(metrics.BRIDGE_FALLBACKS, "adcapture_bridge_fallback_total", {"reason": "timeout"})
        == before_fallback + 1
    )
    assert _sample_value(metrics.AD_RENDER_TIMEOUTS, "adcapture_ad_render_timeouts_total") == before_render + 1

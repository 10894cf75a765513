"""Entry point for the capture service API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from prometheus_client import REGISTRY, CollectorRegistry, start_http_server
from prometheus_fastapi_instrumentator import Instrumentator

from adcapture.pipeline import Pipeline
from adcapture.queue_store import JobPriority
from adcapture.schemas import BatchSubmitRequest, BatchSubmitResponse
from adcapture.settings import Settings, load_config, settings as global_settings

LOGGER = logging.getLogger(__name__)
_PROMETHEUS_EXPORTER_STARTED = False
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Apply ``LOG_LEVEL`` to the root logger once per process."""

    logging.basicConfig(level=(level or global_settings.telemetry.log_level), format=_LOG_FORMAT)


def _start_prometheus_exporter(active_settings: Settings) -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED:
        return
    port = active_settings.telemetry.prometheus_port
    if port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


def create_app(
    pipeline: Pipeline | None = None,
    *,
    active_settings: Settings | None = None,
    registry: CollectorRegistry | None = None,
) -> FastAPI:
    """Build the API around ``pipeline``; the default pipeline is assembled from settings."""

    config = active_settings or global_settings

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        _start_prometheus_exporter(config)
        runner = pipeline or Pipeline.from_settings(config)
        app.state.pipeline = runner
        await runner.start()
        yield
        await runner.shutdown()

    app = FastAPI(title="adcapture", lifespan=_lifespan)
    # the in-progress gauge ignores ``registry`` and always lands on the default one
    instrumentator = Instrumentator(
        should_instrument_requests_inprogress=registry is None,
        registry=registry or REGISTRY,
    )
    instrumentator.instrument(app)
    try:
        instrumentator.expose(app, include_in_schema=False, should_gzip=True)
    except ValueError:  # pragma: no cover - already registered
        LOGGER.debug("Prometheus /metrics endpoint already exposed")

    _register_routes(app)
    return app


def _pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        checks = await _pipeline(request).health_check()
        return {
            "status": "healthy" if checks["healthy"] else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        }

    @app.get("/stats")
    async def stats(request: Request) -> dict[str, Any]:
        return await _pipeline(request).get_stats()

    @app.post("/batches", response_model=BatchSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
    async def submit_batch(request: Request, body: BatchSubmitRequest) -> BatchSubmitResponse:
        pipeline = _pipeline(request)
        priority = body.priority if body.priority is not None else JobPriority.NORMAL
        batch_id = await pipeline.submit_batch(body.records, priority)
        result = pipeline.batch_status(batch_id)
        return BatchSubmitResponse(
            batch_id=batch_id,
            enqueued=result.total_records,
            skipped=result.skipped_count,
        )

    @app.get("/batches/{batch_id}")
    async def batch_status(request: Request, batch_id: str) -> dict[str, Any]:
        pipeline = _pipeline(request)
        try:
            result = pipeline.batch_status(batch_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Batch not found") from exc
        return {**result.as_dict(), "finished": pipeline.batch_finished(batch_id)}

    @app.post("/batches/{batch_id}/retry")
    async def retry_batch(request: Request, batch_id: str) -> dict[str, Any]:
        try:
            moved = await _pipeline(request).retry_failed(batch_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Batch not found") from exc
        return {"batch_id": batch_id, "requeued": moved}

    @app.post("/queues/pause")
    async def pause_queues(request: Request) -> dict[str, Any]:
        await _pipeline(request).queue.pause_all()
        return {"paused": True}

    @app.post("/queues/resume")
    async def resume_queues(request: Request) -> dict[str, Any]:
        await _pipeline(request).queue.resume_all()
        return {"paused": False}


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using ``HOST``/``PORT`` from the environment."""

    configure_logging()
    cfg = load_config(global_settings.env_path)
    uvicorn.run(
        app,
        host=cfg("HOST", default="127.0.0.1"),
        port=cfg("PORT", cast=int, default=8000),
        log_level=global_settings.telemetry.log_level.lower(),
    )


if __name__ == "__main__":  # pragma: no cover - manual launch
    run()

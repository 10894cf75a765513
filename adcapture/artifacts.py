"""Local artifact persistence and the handoff to the downstream upload stage."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from adcapture.errors import CaptureError, ErrorType
from adcapture.queue_store import QueueJob
from adcapture.schemas import AdRecord
from adcapture.settings import StorageSettings

LOGGER = logging.getLogger(__name__)

HandoffSink = Callable[[QueueJob], Awaitable[dict[str, Any]]]

_SLUG_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")
_PLATFORM_LABELS = {"android": "Android", "ios": "iOS", "desktop": "Desktop"}


def file_name_hint(
    record: AdRecord,
    *,
    device_name: str,
    extension: str = "png",
    now: datetime | None = None,
) -> str:
    """``{YYYY-MM-DD}_{platform}_{pid}_{uid}_{ad_type}_{device}.{ext}`` with unsafe characters squashed."""

    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    platform = _PLATFORM_LABELS.get(record.device_ui.device_type, record.device_ui.value)
    parts = [stamp, platform, record.pid, record.uid, record.ad_type or "ad", device_name.replace(" ", "")]
    return "_".join(_slug(part) for part in parts) + f".{extension}"


def _slug(value: str) -> str:
    return _SLUG_PATTERN.sub("-", value).strip("-") or "unknown"


class ArtifactStore:
    """Writes capture bytes under ``cache_root`` (optionally in date folders)."""

    def __init__(self, config: StorageSettings) -> None:
        self.config = config

    def path_for(self, file_name: str, *, now: datetime | None = None) -> Path:
        root = self.config.cache_root
        if self.config.date_folders:
            root = root / (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
        return root / file_name

    async def save(self, data: bytes, file_name: str) -> Path:
        path = self.path_for(file_name)
        await asyncio.to_thread(_write_bytes, path, data)
        LOGGER.debug("Stored artifact %s (%d bytes)", path, len(data))
        return path


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_bytes(data)
    tmp_path.replace(path)


async def log_handoff(job: QueueJob) -> dict[str, Any]:
    """Default sink: the artifact stays on disk for an external uploader to pick up."""

    LOGGER.info(
        "Artifact ready for upload: %s",
        job.payload.get("artifact_ref"),
        extra={"job_id": job.id, "file_name": job.payload.get("file_name")},
    )
    return {"delivered": False, "artifact_ref": job.payload.get("artifact_ref")}


def build_webhook_handoff(url: str, *, secret: str | None = None, version: str = "v1") -> HandoffSink:
    """Return a sink that POSTs upload jobs to ``url``, HMAC-signed when ``secret`` is set.

    Non-2xx responses and transport errors raise ``UPLOAD_ERROR`` so the
    upload queue retries with its own backoff.
    """

    secret_bytes = secret.encode("utf-8") if secret else None

    async def _sender(job: QueueJob) -> dict[str, Any]:
        payload = {"job_id": job.id, "batch_id": job.batch_id, **job.payload}
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if secret_bytes:
            signature = hmac.new(secret_bytes, body, hashlib.sha256).hexdigest()
            headers["X-Adcapture-Signature"] = f"{version}={signature}"
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CaptureError(f"Upload handoff to {url} failed: {exc}", ErrorType.UPLOAD_ERROR) from exc
        return {"delivered": True, "status_code": response.status_code}

    return _sender


def build_handoff_sink(config: StorageSettings) -> HandoffSink:
    if config.handoff_webhook_url:
        return build_webhook_handoff(config.handoff_webhook_url, secret=config.handoff_webhook_secret)
    return log_handoff

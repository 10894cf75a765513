"""Websocket bridge to remote UI-overlay renderers used for mobile captures."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect

from adcapture import metrics
from adcapture.errors import CircuitBreaker
from adcapture.schemas import (
    BridgeCommand,
    BridgeCommandType,
    BroadcastResult,
    CommandResult,
    SendCommandRequest,
)
from adcapture.settings import BridgeSettings

LOGGER = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Message types renderers may send; anything else is logged and ignored."""

    SCREENSHOT_COMPLETE = "screenshot_complete"
    MOBILE_SCREENSHOT_COMPLETE = "mobile_screenshot_complete"
    MOBILE_UI_CONFIGURED = "mobile_ui_configured"
    AD543_STATUS = "ad543_status"
    AD543_INJECTION_COMPLETE = "ad543_injection_complete"
    ELEMENT_HIGHLIGHTED = "element_highlighted"
    DATA_EXTRACTED = "data_extracted"
    ERROR_REPORT = "error_report"
    STATUS_UPDATE = "status_update"


MessageHandler = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass(slots=True)
class _Connection:
    id: str
    socket: Any
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class OverlayBridge:
    """Broadcast commands to connected renderers and collect their replies.

    Replies are matched to commands through ``command_id``; a renderer that
    does not answer within the timeout counts as a failed result.
    """

    def __init__(self, config: BridgeSettings, *, breaker: CircuitBreaker | None = None) -> None:
        self.config = config
        self.breaker = breaker or CircuitBreaker(
            "overlay-bridge",
            failure_threshold=config.breaker_threshold,
            recovery_timeout_s=config.breaker_reset_s,
            monitoring_period_s=config.breaker_window_s,
        )
        self._connections: Dict[str, _Connection] = {}
        self._pending: Dict[str, Dict[str, asyncio.Future[CommandResult]]] = {}
        self._started_at = time.monotonic()
        self._handlers: Dict[MessageType, MessageHandler] = {
            MessageType.SCREENSHOT_COMPLETE: self._on_screenshot_complete,
            MessageType.MOBILE_SCREENSHOT_COMPLETE: self._on_mobile_screenshot_complete,
            MessageType.MOBILE_UI_CONFIGURED: self._on_acknowledged,
            MessageType.AD543_STATUS: self._on_acknowledged,
            MessageType.AD543_INJECTION_COMPLETE: self._on_acknowledged,
            MessageType.ELEMENT_HIGHLIGHTED: self._on_acknowledged,
            MessageType.DATA_EXTRACTED: self._on_data_extracted,
            MessageType.ERROR_REPORT: self._on_error_report,
            MessageType.STATUS_UPDATE: self._on_acknowledged,
        }

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def is_connected(self) -> bool:
        return bool(self._connections)

    def connection_stats(self) -> dict[str, Any]:
        return {
            "total": len(self._connections),
            "connections": [
                {"id": conn.id, "status": "active", "connected_at": conn.connected_at.isoformat()}
                for conn in self._connections.values()
            ],
            "breaker": self.breaker.snapshot(),
        }

    def uptime_s(self) -> float:
        return time.monotonic() - self._started_at

    async def register(self, socket: Any) -> str:
        connection_id = f"conn_{uuid4().hex[:12]}"
        self._connections[connection_id] = _Connection(id=connection_id, socket=socket)
        LOGGER.info("Renderer %s connected (%d total)", connection_id, len(self._connections))
        await self.send_message(connection_id, "connection_established", {"connectionId": connection_id})
        return connection_id

    async def unregister(self, connection_id: str) -> None:
        if self._connections.pop(connection_id, None) is None:
            return
        for waiters in self._pending.values():
            future = waiters.get(connection_id)
            if future is not None and not future.done():
                future.set_result(CommandResult(connection_id=connection_id, success=False, error="Connection closed"))
        LOGGER.info("Renderer %s disconnected (%d total)", connection_id, len(self._connections))

    async def send_message(self, connection_id: str, message_type: str, data: Any = None) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            LOGGER.warning("Cannot send %s: connection %s not available", message_type, connection_id)
            return False
        envelope = {"type": message_type, "data": data, "timestamp": datetime.now(timezone.utc).isoformat()}
        try:
            await connection.socket.send_json(envelope)
        except Exception as exc:
            LOGGER.warning("Failed to send %s to %s: %s", message_type, connection_id, exc)
            return False
        return True

    async def broadcast(
        self,
        command: BridgeCommand,
        *,
        wait_for_response: bool = False,
        timeout_ms: int | None = None,
    ) -> BroadcastResult:
        """Send ``command`` to every connection.

        Without ``wait_for_response`` a result is successful once the send
        succeeds; otherwise it reflects the renderer's reply.
        """

        payload = command.model_dump(mode="json")
        results: list[CommandResult] = []
        waiters: Dict[str, asyncio.Future[CommandResult]] = {}
        if wait_for_response:
            self._pending[command.command_id] = waiters
        loop = asyncio.get_running_loop()
        delivered = 0
        try:
            for connection_id in list(self._connections):
                if wait_for_response:
                    waiters[connection_id] = loop.create_future()
                if await self.send_message(connection_id, "command", payload):
                    delivered += 1
                    if not wait_for_response:
                        results.append(CommandResult(connection_id=connection_id, success=True))
                else:
                    waiters.pop(connection_id, None)
                    results.append(CommandResult(connection_id=connection_id, success=False, error="Send failed"))

            if waiters:
                timeout = (timeout_ms or self.config.response_timeout_ms) / 1000
                await asyncio.wait(list(waiters.values()), timeout=timeout)
                for connection_id, future in waiters.items():
                    if future.done():
                        results.append(future.result())
                    else:
                        future.cancel()
                        results.append(
                            CommandResult(
                                connection_id=connection_id,
                                success=False,
                                error=f"No response within {int(timeout * 1000)}ms",
                            )
                        )
        finally:
            self._pending.pop(command.command_id, None)

        failed = sum(1 for result in results if not result.success)
        outcome = BroadcastResult(sent=delivered, failed=failed, results=results)
        LOGGER.info(
            "Command %s sent to renderers (sent=%d failed=%d)", command.type.value, outcome.sent, outcome.failed
        )
        return outcome

    async def handle_message(self, connection_id: str, raw: str | Mapping[str, Any]) -> None:
        """Route one inbound message through the handler table."""

        try:
            message = json.loads(raw) if isinstance(raw, str) else dict(raw)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Dropping malformed message from %s: %s", connection_id, exc)
            return
        if not isinstance(message, dict):
            LOGGER.warning("Dropping non-object message from %s", connection_id)
            return

        payload = message.get("payload") or message.get("data") or {}
        if not isinstance(payload, dict):
            payload = {"value": payload}
        self._resolve_pending(connection_id, message, payload)

        raw_type = str(message.get("type", ""))
        try:
            message_type = MessageType(raw_type)
        except ValueError:
            LOGGER.warning("Unhandled message type %r from %s", raw_type, connection_id)
            return
        response = await self._handlers[message_type](connection_id, payload)
        await self.send_message(connection_id, f"{message_type.value}_response", response)

    async def configure_mobile_ui(self, device_type: str, *, time_label: str | None = None, url: str | None = None) -> BroadcastResult:
        command = BridgeCommand(
            type=BridgeCommandType.CONFIGURE_MOBILE_UI,
            options={"deviceType": device_type, "time": time_label or _clock_label(), "url": url},
        )
        return await self.broadcast(command)

    async def request_mobile_capture(self, device_type: str, *, url: str | None = None) -> bytes | None:
        """Ask renderers for a mobile-styled capture; None means use the direct fallback.

        Never raises. Repeated failures from connected renderers trip the
        circuit breaker so later jobs skip the round-trip.
        """

        if not self.config.enabled or not self.is_connected():
            metrics.record_bridge_fallback("no_connections")
            return None
        if not self.breaker.can_execute():
            metrics.record_bridge_fallback("circuit_open")
            return None

        image: bytes | None = None
        reason = "no_success"
        try:
            await self.configure_mobile_ui(device_type, url=url)
            await asyncio.sleep(self.config.mobile_settle_ms / 1000)
            result = await self.broadcast(
                BridgeCommand(
                    type=BridgeCommandType.MOBILE_SCREENSHOT,
                    options={"deviceType": device_type, "url": url, "saveToFile": False, "returnAsBuffer": True},
                ),
                wait_for_response=True,
            )
            image = _first_image(result)
            if image is None and result.any_success:
                reason = "malformed_response"
        except Exception as exc:
            LOGGER.warning("Mobile capture through bridge failed: %s", exc)
            reason = "error"

        if image is None:
            self.breaker.record_failure()
            metrics.record_bridge_fallback(reason)
            return None
        self.breaker.record_success()
        return image

    async def close(self) -> None:
        for connection in list(self._connections.values()):
            try:
                await connection.socket.close()
            except Exception as exc:
                LOGGER.debug("Closing renderer %s failed: %s", connection.id, exc)
            await self.unregister(connection.id)
        LOGGER.info("Overlay bridge closed")

    def _resolve_pending(self, connection_id: str, message: Mapping[str, Any], payload: Mapping[str, Any]) -> None:
        command_id = message.get("command_id") or payload.get("command_id")
        if not command_id:
            return
        future = self._pending.get(str(command_id), {}).get(connection_id)
        if future is None or future.done():
            return
        success = bool(payload.get("success", True)) and not payload.get("error")
        future.set_result(
            CommandResult(
                connection_id=connection_id,
                success=success,
                error=payload.get("error"),
                data=dict(payload),
            )
        )

    async def _on_screenshot_complete(self, connection_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        LOGGER.info("Renderer %s finished a screenshot", connection_id)
        return {"received": True}

    async def _on_mobile_screenshot_complete(self, connection_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        LOGGER.info("Renderer %s finished a mobile screenshot", connection_id)
        return {"received": True, "imageData": payload.get("imageData")}

    async def _on_data_extracted(self, connection_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        LOGGER.info("Renderer %s extracted %d fields", connection_id, len(payload))
        return {"received": True}

    async def _on_error_report(self, connection_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        LOGGER.warning("Renderer %s reported an error: %s", connection_id, payload.get("error") or payload)
        return {"received": True}

    async def _on_acknowledged(self, connection_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        LOGGER.debug("Renderer %s status: %s", connection_id, payload)
        return {"received": True}


def _first_image(result: BroadcastResult) -> bytes | None:
    for entry in result.results:
        if not entry.success or not entry.data:
            continue
        encoded = entry.data.get("imageData") or entry.data.get("data")
        if not isinstance(encoded, str) or not encoded:
            continue
        if encoded.startswith("data:") and "," in encoded:
            encoded = encoded.split(",", 1)[1]
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            LOGGER.warning("Renderer %s returned undecodable image data", entry.connection_id)
    return None


def _clock_label() -> str:
    return datetime.now().strftime("%H:%M")


router = APIRouter()


def _bridge(request: Request) -> OverlayBridge:
    return request.app.state.bridge


@router.get("/health")
async def bridge_health(request: Request) -> dict[str, Any]:
    bridge = _bridge(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "connections": bridge.connection_count,
        "uptime": round(bridge.uptime_s(), 3),
    }


@router.get("/connections")
async def bridge_connections(request: Request) -> dict[str, Any]:
    return _bridge(request).connection_stats()


@router.post("/send-command", response_model=BroadcastResult)
async def send_command(request: Request, body: SendCommandRequest) -> BroadcastResult:
    command = BridgeCommand.model_validate(body.model_dump(exclude={"wait_for_response", "timeout_ms"}))
    return await _bridge(request).broadcast(
        command, wait_for_response=body.wait_for_response, timeout_ms=body.timeout_ms
    )


@router.websocket("/")
@router.websocket("/extension-bridge")
async def renderer_socket(websocket: WebSocket) -> None:
    bridge: OverlayBridge = websocket.app.state.bridge
    await websocket.accept()
    connection_id = await bridge.register(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            try:
                await bridge.handle_message(connection_id, message)
            except Exception as exc:  # pragma: no cover - logging only
                LOGGER.exception("Handling message from %s failed: %s", connection_id, exc)
    except WebSocketDisconnect:
        pass
    finally:
        await bridge.unregister(connection_id)


def create_bridge_app(bridge: OverlayBridge) -> FastAPI:
    app = FastAPI(title="adcapture overlay bridge")
    app.state.bridge = bridge
    app.include_router(router)
    return app


class BridgeServer:
    """Serve the bridge app with uvicorn inside the running event loop."""

    def __init__(self, bridge: OverlayBridge) -> None:
        self.bridge = bridge
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        config = uvicorn.Config(
            create_bridge_app(self.bridge),
            host=self.bridge.config.host,
            port=self.bridge.config.port,
            log_level="warning",
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(), name="overlay-bridge")
        LOGGER.info("Overlay bridge listening on %s:%s", self.bridge.config.host, self.bridge.config.port)

    async def stop(self) -> None:
        await self.bridge.close()
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            except Exception as exc:  # pragma: no cover - server shutdown noise
                LOGGER.warning("Overlay bridge server stopped with error: %s", exc)
        self._server = None
        self._task = None

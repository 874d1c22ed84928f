"""HTTP and WebSocket surface for devices and operators.

Devices stream audio on ``/ws/audio/{device_id}`` and receive ``ALARM`` and
``transcription`` frames back on the same socket. Devices that miss the push
poll ``/api/device/{device_id}/status`` (or send a heartbeat) to collect the
pending result exactly once.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.websockets import WebSocketState

from voice_alarm import __version__
from voice_alarm.app.wiring import AppServices
from voice_alarm.core.audio.format import wrap_pcm16_wav
from voice_alarm.core.auth import extract_token
from voice_alarm.core.session.device import CLOSE_NORMAL
from voice_alarm.domain.events import SessionState
from voice_alarm.domain.protocol import dumps

logger = logging.getLogger(__name__)

CLOSE_POLICY_VIOLATION = 1008
DEVICE_TOKEN_HEADER = "x-device-token"
DEVICE_ID_HEADER = "x-device-id"

RAW_PCM_CONTENT_TYPES = ("audio/raw", "audio/l16", "audio/pcm")


class HeartbeatReport(BaseModel):
    """Liveness metadata reported by a device. Logged, not interpreted."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    rssi: int | None = None
    ip: str | None = None
    uptime_ms: int | None = Field(default=None, alias="uptimeMs")
    firmware: str | None = None


@dataclass(slots=True)
class WebSocketDeviceConnection:
    """Adapts a Starlette WebSocket to the session's DeviceConnection protocol."""

    websocket: WebSocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, payload: dict[str, Any]) -> None:
        await self.websocket.send_text(dumps(payload))

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


def create_app(services: AppServices) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"[API] Ready (backend={services.backend.variant.value}, "
            f"triggers={', '.join(services.triggers.snapshot())})"
        )
        try:
            yield
        finally:
            logger.info("[API] Shutting down")
            await services.aclose()

    app = FastAPI(title="voice-alarm", version=__version__, lifespan=lifespan)
    app.state.services = services

    def _authorized(device_id: str, *, headers: Any, query_params: Any) -> bool:
        token = extract_token(
            header_token=headers.get(DEVICE_TOKEN_HEADER),
            query_token=query_params.get("token"),
        )
        return services.authenticator.authorize(device_id, token)

    @app.websocket("/ws/audio/{device_id}")
    async def audio_stream(websocket: WebSocket, device_id: str) -> None:
        if not _authorized(device_id, headers=websocket.headers, query_params=websocket.query_params):
            logger.warning(f"[API] Rejected stream for device={device_id}: unauthorized")
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Unauthorized")
            return

        await websocket.accept()
        client = websocket.client.host if websocket.client else "unknown"
        logger.info(f"[API] Stream connected device={device_id} from {client}")

        session = services.new_session(device_id, WebSocketDeviceConnection(websocket))
        await services.registry.install(session)
        try:
            await session.start()
            while session.state != SessionState.CLOSED:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                frame = message.get("bytes")
                if frame is not None:
                    await session.handle_audio(frame)
                    continue
                text = message.get("text")
                if text is not None:
                    await session.handle_text(text)
        except WebSocketDisconnect as exc:
            logger.info(f"[API] Stream disconnected device={device_id} (code={exc.code})")
        finally:
            await services.registry.release(session)

    @app.get("/api/device/{device_id}/status")
    async def device_status(device_id: str) -> dict[str, Any]:
        result = services.mailbox.take(device_id)
        if result is None:
            return {"triggered": False, "message": "No pending triggers"}
        return result.to_payload()

    @app.post("/api/device/{device_id}/clear")
    async def device_clear(device_id: str) -> dict[str, Any]:
        services.mailbox.clear(device_id)
        return {"success": True}

    @app.post("/api/device/{device_id}/heartbeat")
    async def device_heartbeat(
        device_id: str, request: Request, report: HeartbeatReport | None = None
    ) -> Any:
        if not _authorized(device_id, headers=request.headers, query_params=request.query_params):
            logger.warning(f"[API] Rejected heartbeat for device={device_id}: unauthorized")
            return _error(401, "Unauthorized")

        report = report or HeartbeatReport()
        logger.info(
            f"[API] Heartbeat device={device_id} rssi={report.rssi} ip={report.ip} "
            f"uptimeMs={report.uptime_ms} firmware={report.firmware}"
        )
        session = services.registry.get(device_id)
        response: dict[str, Any] = {
            "success": True,
            "serverTime": services.clock.timestamp(),
            "streaming": session is not None and session.is_active,
        }
        result = services.mailbox.take(device_id)
        if result is None:
            response["triggered"] = False
        else:
            response.update(result.to_payload())
        return response

    @app.get("/api/config")
    async def get_config() -> dict[str, Any]:
        settings = services.settings
        return {
            "triggerWords": list(services.triggers.snapshot()),
            "model": settings.deepgram.model,
            "language": settings.deepgram.language,
            "backend": services.backend.variant.value,
            "flushIntervalS": settings.transcription.flush_interval_s,
            "fuzzyThreshold": services.triggers.fuzzy_threshold,
        }

    @app.post("/api/config/trigger-words")
    async def update_trigger_words(request: Request) -> Any:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(400, "Invalid words array")
        if not isinstance(body, dict):
            return _error(400, "Invalid words array")
        try:
            words = services.triggers.replace(body.get("words"))
        except ValueError as exc:
            return _error(400, str(exc))
        return {"success": True, "triggerWords": list(words)}

    @app.post("/api/process-audio")
    async def process_audio(request: Request) -> Any:
        started = time.perf_counter()
        device_id = request.headers.get(DEVICE_ID_HEADER)
        content_type = (request.headers.get("content-type") or "audio/webm").split(";")[0].strip().lower()
        audio = await request.body()
        logger.info(
            f"[API] Upload device={device_id or 'unknown'} type={content_type} bytes={len(audio)}"
        )
        if not audio:
            return _error(400, "No audio data provided")

        if content_type in RAW_PCM_CONTENT_TYPES:
            audio = wrap_pcm16_wav(
                audio, sample_rate_hz=services.settings.transcription.sample_rate_hz
            )
            content_type = "audio/wav"

        try:
            event = await services.transcriber.transcribe(audio, content_type=content_type)
        except Exception as exc:
            logger.error(f"[API] Transcription failed for upload: {exc}")
            return _error(500, "Transcription failed", details=str(exc))

        evaluation = services.evaluator.evaluate(device_id, event.text, event.confidence)
        return {
            "success": True,
            "transcription": event.text,
            "confidence": event.confidence,
            "triggered": evaluation.triggered,
            "triggeredWords": list(evaluation.triggered_words),
            "processingTime": int((time.perf_counter() - started) * 1000),
            "timestamp": services.clock.timestamp(),
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": services.clock.timestamp(),
            "triggerWords": list(services.triggers.snapshot()),
            "activeSessions": len(services.registry),
        }

    return app

"""Deepgram transcription provider.

Live streaming goes over Deepgram's raw WebSocket API (``/v1/listen`` with
linear16 audio and interim results), with a KeepAlive message every 5 seconds
to prevent the 10-second idle timeout. Buffered windows and one-shot uploads
go through the prerecorded REST endpoint.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator
from urllib.parse import urlencode

import httpx

from voice_alarm.core.stt.backend import (
    BatchTranscriber,
    StreamingChannel,
    StreamingConnector,
    TranscriptEvent,
)

logger = logging.getLogger(__name__)

DEEPGRAM_LIVE_ENDPOINT = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_REST_ENDPOINT = "https://api.deepgram.com/v1/listen"
DEEPGRAM_PROJECTS_ENDPOINT = "https://api.deepgram.com/v1/projects"


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def parse_prerecorded_response(data: dict[str, Any]) -> TranscriptEvent:
    """Extract the first alternative of the first channel (empty when absent)."""
    channels = (data.get("results") or {}).get("channels") or []
    alternatives = (channels[0].get("alternatives") or []) if channels else []
    if not alternatives:
        return TranscriptEvent(text="", confidence=0.0, is_final=True)
    best = alternatives[0]
    return TranscriptEvent(
        text=str(best.get("transcript") or "").strip(),
        confidence=_clamp_confidence(best.get("confidence")),
        is_final=True,
    )


def parse_live_message(message: str | bytes) -> TranscriptEvent | None:
    """Map one live WebSocket message to a TranscriptEvent.

    Returns None for messages that carry no transcript (Metadata,
    SpeechStarted, UtteranceEnd, empty results). Raises RuntimeError for
    provider error messages.
    """
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="ignore")
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        logger.debug("Deepgram message parse error")
        return None
    if not isinstance(data, dict):
        return None

    msg_type = data.get("type")
    if msg_type == "Error" or "err_code" in data:
        description = data.get("description") or data.get("err_msg") or data.get("message") or "unknown"
        raise RuntimeError(f"Deepgram error: {description}")
    if msg_type != "Results":
        return None

    alternatives = (data.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    best = alternatives[0]
    text = str(best.get("transcript") or "").strip()
    if not text:
        return None
    return TranscriptEvent(
        text=text,
        confidence=_clamp_confidence(best.get("confidence")),
        is_final=bool(data.get("is_final") or data.get("speech_final")),
    )


@dataclass(slots=True)
class DeepgramLiveConnector(StreamingConnector):
    """Opens one Deepgram live WebSocket per device session."""

    api_key: str
    model: str = "nova-2"
    language: str = "en"
    sample_rate_hz: int = 16000
    endpoint: str = DEEPGRAM_LIVE_ENDPOINT
    open_timeout_s: float = 5.0
    keepalive_interval_s: float = 5.0

    def __post_init__(self) -> None:
        if self.sample_rate_hz not in (8000, 16000):
            raise ValueError("sample_rate_hz must be 8000 or 16000")
        if not self.api_key:
            raise ValueError("api_key must be non-empty")
        if self.open_timeout_s <= 0:
            raise ValueError("open_timeout_s must be > 0")
        if self.keepalive_interval_s <= 0:
            raise ValueError("keepalive_interval_s must be > 0")

    def build_uri(self) -> str:
        params = {
            "model": self.model,
            "language": self.language,
            "encoding": "linear16",
            "sample_rate": self.sample_rate_hz,
            "channels": 1,
            "interim_results": "true",
            "punctuate": "true",
            "smart_format": "true",
        }
        return f"{self.endpoint}?{urlencode(params)}"

    async def connect(self, device_id: str) -> StreamingChannel:
        import websockets

        uri = self.build_uri()
        logger.info(f"[STT] Connecting Deepgram live for device={device_id}: {uri}")
        ws = await websockets.connect(
            uri,
            additional_headers={"Authorization": f"Token {self.api_key}"},
            open_timeout=self.open_timeout_s,
            max_size=2 * 1024 * 1024,
            ping_interval=20,
            ping_timeout=20,
        )
        channel = _DeepgramLiveChannel(
            ws=ws, device_id=device_id, keepalive_interval_s=self.keepalive_interval_s
        )
        channel.start()
        return channel


@dataclass(slots=True)
class _DeepgramLiveChannel(StreamingChannel):
    ws: Any
    device_id: str
    keepalive_interval_s: float

    _keepalive_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _last_send_at: float = field(init=False, default=0.0)
    _closed: bool = field(init=False, default=False)

    def start(self) -> None:
        self._last_send_at = asyncio.get_running_loop().time()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def _keepalive_loop(self) -> None:
        try:
            while not self._closed:
                await asyncio.sleep(self.keepalive_interval_s)
                now = asyncio.get_running_loop().time()
                if now - self._last_send_at >= self.keepalive_interval_s:
                    await self.ws.send(json.dumps({"type": "KeepAlive"}))
                    self._last_send_at = now
                    logger.debug(f"[STT] KeepAlive sent for device={self.device_id}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug(f"Deepgram keepalive failed: {exc}")

    async def send_audio(self, frame: bytes) -> None:
        await self.ws.send(frame)
        self._last_send_at = asyncio.get_running_loop().time()

    async def finish(self) -> None:
        if self._closed:
            return
        await self.ws.send(json.dumps({"type": "CloseStream"}))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            await asyncio.gather(self._keepalive_task, return_exceptions=True)
            self._keepalive_task = None
        with contextlib.suppress(Exception):
            await self.ws.close()

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        from websockets.exceptions import ConnectionClosedOK

        try:
            async for message in self.ws:
                event = parse_live_message(message)
                if event is not None:
                    yield event
        except ConnectionClosedOK:
            return


@dataclass(slots=True)
class DeepgramPrerecordedTranscriber(BatchTranscriber):
    """One blocking transcription request per audio payload."""

    api_key: str
    model: str = "nova-2"
    language: str = "en"
    endpoint: str = DEEPGRAM_REST_ENDPOINT
    timeout_s: float = 10.0
    client: httpx.AsyncClient | None = None

    _owns_client: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("api_key must be non-empty")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

    def _client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self.client

    async def transcribe(self, audio: bytes, *, content_type: str = "audio/wav") -> TranscriptEvent:
        if not audio:
            raise ValueError("audio must be non-empty")
        params = {
            "model": self.model,
            "language": self.language,
            "smart_format": "true",
            "punctuate": "true",
        }
        response = await self._client().post(
            self.endpoint,
            params=params,
            content=audio,
            headers={
                "Authorization": f"Token {self.api_key}",
                "Content-Type": content_type,
            },
        )
        if response.status_code != 200:
            raise RuntimeError(f"Deepgram HTTP {response.status_code}: {response.text[:200]}")
        event = parse_prerecorded_response(response.json())
        logger.info(
            f"[STT] Prerecorded transcript: '{event.text}' (confidence={event.confidence:.2f}, "
            f"{len(audio)} bytes)"
        )
        return event

    async def aclose(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
            self._owns_client = False


async def verify_api_key(api_key: str, *, client: httpx.AsyncClient | None = None) -> bool:
    if not api_key:
        return False

    async def _check(http: httpx.AsyncClient) -> bool:
        try:
            response = await http.get(
                DEEPGRAM_PROJECTS_ENDPOINT,
                headers={"Authorization": f"Token {api_key}"},
            )
        except httpx.HTTPError as exc:
            raise Exception(f"Connection failed: {exc}") from exc
        if response.status_code == 200:
            return True
        if response.status_code in (401, 403):
            return False
        raise Exception(f"HTTP {response.status_code}: {response.reason_phrase}")

    if client is not None:
        return await _check(client)
    async with httpx.AsyncClient(timeout=5.0) as http:
        return await _check(http)

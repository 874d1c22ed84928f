from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from voice_alarm.core.audio.format import dbfs, frame_level
from voice_alarm.core.stt.backend import (
    TranscriptEvent,
    TranscriptionBackend,
    TranscriptionError,
    TranscriptionSession,
)
from voice_alarm.core.trigger.evaluator import TriggerEvaluator
from voice_alarm.domain.events import AlarmCommand, SessionState, TranscriptionNotice
from voice_alarm.domain.protocol import parse_control_message

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011
CLOSE_SUPERSEDED = 4000


class DeviceConnection(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> None: ...
    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


@dataclass(slots=True)
class SessionStats:
    frames: int = 0
    bytes: int = 0
    dropped_frames: int = 0
    transcripts: int = 0
    alarms: int = 0
    backend_errors: int = 0
    ignored_frames: int = 0
    peak_level: float = 0.0


@dataclass(slots=True)
class DeviceSession:
    """Live processing context for one device connection.

    CONNECTING -> ACTIVE once the transcription session is open; ACTIVE is the
    only state that forwards audio and acts on transcripts. Any close path
    goes through CLOSING to the terminal CLOSED state.
    """

    device_id: str
    backend: TranscriptionBackend
    connection: DeviceConnection
    evaluator: TriggerEvaluator
    send_interim_transcripts: bool = True

    stats: SessionStats = field(default_factory=SessionStats)
    announced_id: str | None = None

    _state: SessionState = SessionState.CONNECTING
    _transcription: TranscriptionSession | None = None
    _consumer_task: asyncio.Task[None] | None = None
    _close_callbacks: list[Callable[["DeviceSession"], None]] = field(default_factory=list)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == SessionState.ACTIVE

    def add_close_callback(self, callback: Callable[["DeviceSession"], None]) -> None:
        self._close_callbacks.append(callback)

    async def start(self) -> None:
        if self._state != SessionState.CONNECTING:
            return
        try:
            transcription = await self.backend.open_session(self.device_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"[Session] Failed to open transcription for device={self.device_id}: {exc}")
            await self.close(reason=f"transcription unavailable: {exc}", code=CLOSE_INTERNAL_ERROR)
            return

        if self._state != SessionState.CONNECTING:
            # Closed while the backend was opening.
            with contextlib.suppress(Exception):
                await transcription.close()
            return

        self._transcription = transcription
        self._consumer_task = asyncio.create_task(
            self._consume_events(transcription), name=f"session-{self.device_id}"
        )
        self._set_state(SessionState.ACTIVE)
        logger.info(
            f"[Session] device={self.device_id} active (backend={self.backend.variant.value})"
        )

    async def handle_text(self, text: str) -> None:
        if not self.is_active:
            self.stats.ignored_frames += 1
            return
        try:
            announcement = parse_control_message(text)
        except ValueError as exc:
            logger.warning(f"[Session] Ignoring malformed control frame from device={self.device_id}: {exc}")
            return

        self.announced_id = announcement.device_id
        if announcement.device_id != self.device_id:
            logger.info(
                f"[Session] device={self.device_id} announced as '{announcement.device_id}' "
                "(path identity kept)"
            )
        else:
            logger.info(f"[Session] device={self.device_id} identified")

    async def handle_audio(self, frame: bytes) -> bool:
        if not self.is_active or self._transcription is None:
            self.stats.ignored_frames += 1
            return False
        if not frame:
            return False

        self.stats.frames += 1
        self.stats.bytes += len(frame)
        level = frame_level(frame)
        if level > self.stats.peak_level:
            self.stats.peak_level = level

        await self._transcription.send_audio(bytes(frame))
        return True

    async def close(self, *, reason: str = "closed", code: int = CLOSE_NORMAL) -> None:
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self._set_state(SessionState.CLOSING)

        consumer = self._consumer_task
        self._consumer_task = None
        if consumer is not None and consumer is not asyncio.current_task():
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

        if self._transcription is not None:
            self.stats.dropped_frames = getattr(self._transcription, "frames_dropped", 0)
            with contextlib.suppress(Exception):
                await self._transcription.close()
            self._transcription = None

        if self.connection.is_open:
            with contextlib.suppress(Exception):
                await self.connection.close(code=code, reason=reason[:120])

        self._set_state(SessionState.CLOSED)
        logger.info(
            f"[Session] device={self.device_id} closed ({reason}) frames={self.stats.frames} "
            f"bytes={self.stats.bytes} transcripts={self.stats.transcripts} alarms={self.stats.alarms} "
            f"dropped={self.stats.dropped_frames} peak={dbfs(self.stats.peak_level):.1f}dBFS"
        )

        for callback in self._close_callbacks:
            callback(self)
        self._close_callbacks.clear()

    async def _consume_events(self, transcription: TranscriptionSession) -> None:
        try:
            async for event in transcription.events():
                if not self.is_active:
                    continue
                if isinstance(event, TranscriptionError):
                    self.stats.backend_errors += 1
                    if event.fatal:
                        logger.error(f"[Session] device={self.device_id} backend failed: {event.message}")
                        await self.close(reason=event.message, code=CLOSE_INTERNAL_ERROR)
                        return
                    logger.warning(f"[Session] device={self.device_id} backend error: {event.message}")
                    continue
                await self._handle_transcript(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"[Session] device={self.device_id} event loop failed")
            await self.close(reason=f"session error: {exc}", code=CLOSE_INTERNAL_ERROR)

    async def _handle_transcript(self, event: TranscriptEvent) -> None:
        text = event.text.strip()
        if not text:
            return
        self.stats.transcripts += 1
        logger.info(
            f"[Session] device={self.device_id} transcript: '{text}' "
            f"(confidence={event.confidence:.2f}, final={event.is_final})"
        )

        evaluation = self.evaluator.evaluate(self.device_id, text, event.confidence)
        if evaluation.triggered:
            self.stats.alarms += 1
            await self._push(AlarmCommand(transcription=text, confidence=event.confidence).to_payload())
        elif self.send_interim_transcripts:
            await self._push(
                TranscriptionNotice(transcription=text, confidence=event.confidence).to_payload()
            )

    async def _push(self, payload: dict[str, Any]) -> None:
        if not self.connection.is_open:
            return
        try:
            await self.connection.send_json(payload)
        except Exception as exc:
            logger.debug(f"[Session] Push to device={self.device_id} failed: {exc}")

    def _set_state(self, state: SessionState) -> None:
        if self._state == state:
            return
        old_state = self._state
        self._state = state
        logger.debug(f"[Session] device={self.device_id} state: {old_state.name} -> {state.name}")

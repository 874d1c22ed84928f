"""Buffered transcription: fixed-window batches sent to a request/response provider.

Each session accumulates raw PCM16 audio and, on every timer tick, hands the
accumulated window (WAV-wrapped) to the batch transcriber. At most one flush
is outstanding per session; ticks that land while one is running are skipped.
Audio still in the accumulator when the session closes is discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from voice_alarm.core.audio.format import wrap_pcm16_wav
from voice_alarm.core.stt.backend import (
    BackendVariant,
    BatchTranscriber,
    SessionEvent,
    TranscriptionBackend,
    TranscriptionError,
    TranscriptionSession,
)

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_S = 3.0


@dataclass(slots=True)
class BufferedTranscriptionBackend(TranscriptionBackend):
    transcriber: BatchTranscriber
    flush_interval_s: float = DEFAULT_FLUSH_INTERVAL_S
    sample_rate_hz: int = 16000

    def __post_init__(self) -> None:
        if self.flush_interval_s <= 0:
            raise ValueError("flush_interval_s must be > 0")
        if self.sample_rate_hz not in (8000, 16000):
            raise ValueError("sample_rate_hz must be 8000 or 16000")

    @property
    def variant(self) -> BackendVariant:
        return BackendVariant.BUFFERED

    async def open_session(self, device_id: str) -> TranscriptionSession:
        session = BufferedSession(
            device_id=device_id,
            transcriber=self.transcriber,
            flush_interval_s=self.flush_interval_s,
            sample_rate_hz=self.sample_rate_hz,
        )
        session.start()
        return session

    async def aclose(self) -> None:
        await self.transcriber.aclose()


@dataclass(slots=True)
class BufferedSession(TranscriptionSession):
    device_id: str
    transcriber: BatchTranscriber
    flush_interval_s: float
    sample_rate_hz: int

    flushes_started: int = field(init=False, default=0)
    ticks_skipped: int = field(init=False, default=0)

    _buffer: bytearray = field(init=False, default_factory=bytearray, repr=False)
    _events: asyncio.Queue[SessionEvent | None] = field(init=False, repr=False)
    _timer_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _flush_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _closed: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._events = asyncio.Queue()

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    @property
    def flush_in_flight(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def start(self) -> None:
        if self._timer_task is None:
            self._timer_task = asyncio.create_task(
                self._timer_loop(), name=f"buffered-timer-{self.device_id}"
            )

    async def send_audio(self, frame: bytes) -> None:
        if self._closed:
            return
        self._buffer.extend(frame)

    def tick(self) -> bool:
        """Start a flush of the current window; return True if one was started."""
        if self._closed:
            return False
        if self.flush_in_flight:
            self.ticks_skipped += 1
            logger.debug(
                f"[STT] Buffered tick skipped for device={self.device_id}: previous flush still running"
            )
            return False
        if not self._buffer:
            return False

        window = bytes(self._buffer)
        self._buffer = bytearray()
        self.flushes_started += 1
        self._flush_task = asyncio.create_task(
            self._flush(window), name=f"buffered-flush-{self.device_id}"
        )
        return True

    async def _timer_loop(self) -> None:
        try:
            while not self._closed:
                await asyncio.sleep(self.flush_interval_s)
                self.tick()
        except asyncio.CancelledError:
            raise

    async def _flush(self, pcm16le: bytes) -> None:
        wav = wrap_pcm16_wav(pcm16le, sample_rate_hz=self.sample_rate_hz, channels=1)
        logger.debug(f"[STT] Flushing {len(pcm16le)} bytes for device={self.device_id}")
        try:
            event = await self.transcriber.transcribe(wav, content_type="audio/wav")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"[STT] Buffered transcription failed for device={self.device_id}: {exc}")
            self._put_event(TranscriptionError(f"Buffered transcription failed: {exc}", fatal=False))
            return
        self._put_event(event)

    def _put_event(self, event: SessionEvent | None) -> None:
        if self._closed and event is not None:
            return
        self._events.put_nowait(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        discarded = len(self._buffer)
        self._buffer = bytearray()
        if discarded:
            logger.info(
                f"[STT] Discarding {discarded} unflushed bytes for device={self.device_id}"
            )

        tasks = [t for t in (self._timer_task, self._flush_task) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._timer_task = None
        self._flush_task = None
        self._events.put_nowait(None)

    async def events(self) -> AsyncIterator[SessionEvent]:
        while True:
            item = await self._events.get()
            if item is None:
                return
            yield item

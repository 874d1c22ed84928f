"""Streaming transcription over one long-lived provider channel per session.

``open_session`` returns immediately and connects in the background. Frames
sent before the channel is open wait, in order, in the session's send queue;
if the channel cannot be opened they are discarded and the discard is
reported through a fatal TranscriptionError.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from voice_alarm.core.stt.backend import (
    BackendVariant,
    SessionEvent,
    StreamingChannel,
    StreamingConnector,
    TranscriptionBackend,
    TranscriptionError,
    TranscriptionSession,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING_FRAMES = 500


@dataclass(slots=True)
class StreamingTranscriptionBackend(TranscriptionBackend):
    connector: StreamingConnector
    max_pending_frames: int = DEFAULT_MAX_PENDING_FRAMES

    def __post_init__(self) -> None:
        if self.max_pending_frames <= 0:
            raise ValueError("max_pending_frames must be > 0")

    @property
    def variant(self) -> BackendVariant:
        return BackendVariant.STREAMING

    async def open_session(self, device_id: str) -> TranscriptionSession:
        session = StreamingSession(
            device_id=device_id,
            connector=self.connector,
            max_pending_frames=self.max_pending_frames,
        )
        session.start()
        return session

    async def aclose(self) -> None:
        close = getattr(self.connector, "aclose", None)
        if close is not None:
            await close()


@dataclass(slots=True)
class StreamingSession(TranscriptionSession):
    device_id: str
    connector: StreamingConnector
    max_pending_frames: int = DEFAULT_MAX_PENDING_FRAMES

    frames_sent: int = field(init=False, default=0)
    frames_dropped: int = field(init=False, default=0)

    _audio_q: asyncio.Queue[bytes] = field(init=False, repr=False)
    _events: asyncio.Queue[SessionEvent | None] = field(init=False, repr=False)
    _channel: StreamingChannel | None = field(init=False, default=None, repr=False)
    _connect_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _send_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _recv_task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _opened: asyncio.Event = field(init=False, repr=False)
    _stopped: bool = field(init=False, default=False)
    _finished: bool = field(init=False, default=False)
    _closed: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._audio_q = asyncio.Queue()
        self._events = asyncio.Queue()
        self._opened = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return self._opened.is_set() and not self._stopped

    @property
    def pending_frames(self) -> int:
        return self._audio_q.qsize()

    def start(self) -> None:
        if self._connect_task is None:
            self._connect_task = asyncio.create_task(
                self._connect(), name=f"streaming-connect-{self.device_id}"
            )

    async def wait_open(self, timeout_s: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._opened.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return False
        return True

    async def _connect(self) -> None:
        try:
            channel = await self.connector.connect(self.device_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            discarded = self._drain_pending()
            logger.warning(
                f"[STT] Streaming channel failed to open for device={self.device_id}: {exc} "
                f"(discarded {discarded} buffered frames)"
            )
            self._finish(
                TranscriptionError(
                    f"Streaming channel failed to open: {exc} (discarded {discarded} buffered frames)",
                    fatal=True,
                )
            )
            return

        if self._stopped:
            with contextlib.suppress(Exception):
                await channel.close()
            return

        self._channel = channel
        self._opened.set()
        pending = self._audio_q.qsize()
        logger.info(
            f"[STT] Streaming channel open for device={self.device_id} (buffered frames={pending})"
        )
        self._send_task = asyncio.create_task(
            self._send_loop(channel), name=f"streaming-send-{self.device_id}"
        )
        self._recv_task = asyncio.create_task(
            self._recv_loop(channel), name=f"streaming-recv-{self.device_id}"
        )

    async def _send_loop(self, channel: StreamingChannel) -> None:
        try:
            while True:
                data = await self._audio_q.get()
                await channel.send_audio(data)
                self.frames_sent += 1
                if self.frames_sent == 1:
                    logger.info(
                        f"[STT] First audio frame sent for device={self.device_id} ({len(data)} bytes)"
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"[STT] Streaming send failed for device={self.device_id}")
            self._finish(TranscriptionError(f"Streaming send failed: {exc}", fatal=True))

    async def _recv_loop(self, channel: StreamingChannel) -> None:
        try:
            async for event in channel.events():
                self._put_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"[STT] Streaming channel error for device={self.device_id}")
            self._finish(TranscriptionError(f"Streaming channel error: {exc}", fatal=True))
            return

        if not self._stopped:
            logger.warning(f"[STT] Streaming channel closed by provider for device={self.device_id}")
            self._finish(TranscriptionError("Streaming channel closed by provider", fatal=True))

    def _drain_pending(self) -> int:
        discarded = 0
        while True:
            try:
                self._audio_q.get_nowait()
            except asyncio.QueueEmpty:
                return discarded
            discarded += 1

    def _put_event(self, event: SessionEvent) -> None:
        if self._finished:
            return
        self._events.put_nowait(event)

    def _finish(self, event: SessionEvent | None = None) -> None:
        if self._finished:
            return
        if event is not None:
            self._events.put_nowait(event)
        self._finished = True
        self._stopped = True
        self._events.put_nowait(None)

    async def send_audio(self, frame: bytes) -> None:
        if self._stopped:
            if not self._closed:
                # Provider side already failed; frames until close are lost.
                self._count_drop("Streaming session stopped; dropped frame")
            return
        if self._audio_q.qsize() >= self.max_pending_frames:
            with contextlib.suppress(asyncio.QueueEmpty):
                self._audio_q.get_nowait()
                self._count_drop("Send queue full; dropped oldest frame")
        self._audio_q.put_nowait(frame)

    def _count_drop(self, reason: str) -> None:
        self.frames_dropped += 1
        if self.frames_dropped <= 3 or self.frames_dropped % 50 == 0:
            logger.warning(
                f"[STT] {reason} for device={self.device_id} (dropped={self.frames_dropped})"
            )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stopped = True

        current = asyncio.current_task()
        tasks = [
            t
            for t in (self._connect_task, self._send_task, self._recv_task)
            if t is not None and t is not current
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        unsent = self._drain_pending()
        if unsent:
            logger.info(f"[STT] Abandoned {unsent} unsent frames for device={self.device_id}")

        if self._channel is not None:
            with contextlib.suppress(Exception):
                await self._channel.finish()
            with contextlib.suppress(Exception):
                await self._channel.close()
            self._channel = None

        self._finish()

    async def events(self) -> AsyncIterator[SessionEvent]:
        while True:
            item = await self._events.get()
            if item is None:
                return
            yield item

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Protocol


class BackendVariant(str, Enum):
    STREAMING = "streaming"
    BUFFERED = "buffered"


@dataclass(frozen=True, slots=True)
class TranscriptEvent:
    text: str
    confidence: float = 0.0
    is_final: bool = True

    def __post_init__(self) -> None:
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError("confidence must be in 0.0..1.0")


@dataclass(frozen=True, slots=True)
class TranscriptionError:
    message: str
    fatal: bool = False


SessionEvent = TranscriptEvent | TranscriptionError


class TranscriptionSession(Protocol):
    async def send_audio(self, frame: bytes) -> None: ...
    async def close(self) -> None: ...
    def events(self) -> AsyncIterator[SessionEvent]: ...


class TranscriptionBackend(Protocol):
    @property
    def variant(self) -> BackendVariant: ...

    async def open_session(self, device_id: str) -> TranscriptionSession: ...
    async def aclose(self) -> None: ...


class BatchTranscriber(Protocol):
    async def transcribe(self, audio: bytes, *, content_type: str = "audio/wav") -> TranscriptEvent: ...
    async def aclose(self) -> None: ...


class StreamingChannel(Protocol):
    async def send_audio(self, frame: bytes) -> None: ...
    async def finish(self) -> None: ...
    async def close(self) -> None: ...
    def events(self) -> AsyncIterator[TranscriptEvent]: ...


class StreamingConnector(Protocol):
    async def connect(self, device_id: str) -> StreamingChannel: ...

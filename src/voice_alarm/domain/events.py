from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    CONNECTING = "CONNECTING"
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class DeviceFrameType(str, Enum):
    ALARM = "ALARM"
    TRANSCRIPTION = "transcription"


@dataclass(frozen=True, slots=True)
class AlarmCommand:
    transcription: str
    confidence: float
    type: DeviceFrameType = DeviceFrameType.ALARM

    def to_payload(self) -> dict[str, Any]:
        return {
            "command": self.type.value,
            "transcription": self.transcription,
            "confidence": self.confidence,
        }


@dataclass(frozen=True, slots=True)
class TranscriptionNotice:
    transcription: str
    confidence: float
    type: DeviceFrameType = DeviceFrameType.TRANSCRIPTION

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "transcription": self.transcription,
            "confidence": self.confidence,
        }


@dataclass(frozen=True, slots=True)
class DeviceAnnouncement:
    device_id: str

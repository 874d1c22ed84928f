from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class MatchKind(str, Enum):
    EXACT = "exact"
    SUBSTRING = "substring"
    FUZZY = "fuzzy"


@dataclass(frozen=True, slots=True)
class TriggerMatch:
    phrase: str
    kind: MatchKind
    matched_word: str | None = None
    score: float | None = None


@dataclass(frozen=True, slots=True)
class PendingResult:
    device_id: str
    transcription: str
    confidence: float
    triggered_words: tuple[str, ...]
    timestamp: str  # ISO 8601 UTC (Clock.timestamp)
    triggered: bool = True

    def __post_init__(self) -> None:
        if not self.triggered:
            raise ValueError("PendingResult is only created for triggered transcripts")
        if not self.triggered_words:
            raise ValueError("triggered_words must be non-empty")

    def to_payload(self) -> dict[str, Any]:
        return {
            "triggered": True,
            "transcription": self.transcription,
            "confidence": self.confidence,
            "triggeredWords": list(self.triggered_words),
            "timestamp": self.timestamp,
        }

from __future__ import annotations

import logging
from dataclasses import dataclass

from voice_alarm.core.clock import Clock, SystemClock
from voice_alarm.core.mailbox import ResultMailbox
from voice_alarm.core.trigger.detector import TriggerWordList, triggered_phrases
from voice_alarm.domain.models import PendingResult, TriggerMatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Evaluation:
    transcription: str
    confidence: float
    matches: tuple[TriggerMatch, ...]
    result: PendingResult | None = None

    @property
    def triggered(self) -> bool:
        return bool(self.matches)

    @property
    def triggered_words(self) -> tuple[str, ...]:
        return triggered_phrases(self.matches)


@dataclass(slots=True)
class TriggerEvaluator:
    """Runs trigger detection on a transcript and records hits in the mailbox.

    Shared by streaming sessions and one-shot uploads.
    """

    triggers: TriggerWordList
    mailbox: ResultMailbox
    clock: Clock = SystemClock()

    def evaluate(self, device_id: str | None, text: str, confidence: float) -> Evaluation:
        if not text.strip():
            return Evaluation(transcription=text, confidence=confidence, matches=())

        matches = tuple(self.triggers.detect(text))
        if not matches:
            return Evaluation(transcription=text, confidence=confidence, matches=())

        words = triggered_phrases(matches)
        logger.warning(
            f"[Trigger] TRIGGER DETECTED device={device_id or '-'} words={', '.join(words)} "
            f"text='{text}'"
        )

        if not device_id:
            return Evaluation(transcription=text, confidence=confidence, matches=matches)

        result = PendingResult(
            device_id=device_id,
            transcription=text,
            confidence=confidence,
            triggered_words=words,
            timestamp=self.clock.timestamp(),
        )
        self.mailbox.set(device_id, result)
        return Evaluation(transcription=text, confidence=confidence, matches=matches, result=result)

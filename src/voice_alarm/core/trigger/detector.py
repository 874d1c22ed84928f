from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from voice_alarm.core.trigger.similarity import similarity
from voice_alarm.domain.models import MatchKind, TriggerMatch

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_WORDS: tuple[str, ...] = ("alarm", "emergency", "help", "fire")
DEFAULT_FUZZY_THRESHOLD = 0.70

MIN_SUBSTRING_LEN = 2
MIN_FUZZY_LEN = 3


def normalize_trigger_words(words: Iterable[str]) -> tuple[str, ...]:
    normalized: list[str] = []
    for word in words:
        cleaned = word.strip().lower()
        if cleaned:
            normalized.append(cleaned)
    return tuple(normalized)


def detect(
    transcript: str,
    trigger_words: Sequence[str],
    *,
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> list[TriggerMatch]:
    """Return every trigger match found in ``transcript``.

    For each trigger word the exact and substring strategies are tried in
    order (the first hit wins); the fuzzy strategy runs independently, so a
    single word can contribute more than one descriptor.
    """
    text = transcript.lower()
    if not text.strip():
        return []

    words = text.split()
    matches: list[TriggerMatch] = []

    for trigger in trigger_words:
        if not trigger:
            continue

        if trigger in text:
            matches.append(TriggerMatch(phrase=trigger, kind=MatchKind.EXACT))
        elif len(trigger) >= MIN_SUBSTRING_LEN:
            for word in words:
                if len(word) < MIN_SUBSTRING_LEN:
                    continue
                if trigger in word or word in trigger:
                    matches.append(
                        TriggerMatch(phrase=trigger, kind=MatchKind.SUBSTRING, matched_word=word)
                    )
                    break

        if len(trigger) >= MIN_FUZZY_LEN:
            for word in words:
                if len(word) < MIN_FUZZY_LEN:
                    continue
                score = similarity(word, trigger)
                if score >= fuzzy_threshold:
                    matches.append(
                        TriggerMatch(
                            phrase=trigger,
                            kind=MatchKind.FUZZY,
                            matched_word=word,
                            score=score,
                        )
                    )
                    break

    return matches


def triggered_phrases(matches: Iterable[TriggerMatch]) -> tuple[str, ...]:
    """Distinct matched phrases in first-seen order."""
    seen: dict[str, None] = {}
    for match in matches:
        seen.setdefault(match.phrase, None)
    return tuple(seen)


@dataclass(slots=True)
class TriggerWordList:
    """Runtime-replaceable list of trigger words.

    Readers get an immutable snapshot; ``replace`` swaps the whole list and
    leaves the current one untouched when the update is rejected.
    """

    words: tuple[str, ...] = DEFAULT_TRIGGER_WORDS
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not (0.0 < self.fuzzy_threshold <= 1.0):
            raise ValueError("fuzzy_threshold must be in (0.0, 1.0]")
        self.words = normalize_trigger_words(self.words)

    def snapshot(self) -> tuple[str, ...]:
        with self._lock:
            return self.words

    def replace(self, words: object) -> tuple[str, ...]:
        if not isinstance(words, (list, tuple)):
            raise ValueError("Invalid words array")
        if any(not isinstance(w, str) for w in words):
            raise ValueError("Invalid words array: every entry must be a string")

        updated = normalize_trigger_words(words)
        with self._lock:
            self.words = updated
        logger.info(f"[Trigger] Trigger words updated: {', '.join(updated) or '(none)'}")
        return updated

    def detect(self, transcript: str) -> list[TriggerMatch]:
        return detect(transcript, self.snapshot(), fuzzy_threshold=self.fuzzy_threshold)

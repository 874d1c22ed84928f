from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from voice_alarm.domain.models import PendingResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResultMailbox:
    """Single-slot-per-device store of pending trigger results.

    A new result overwrites an unconsumed one; ``take`` removes and returns
    the entry atomically, so each result is delivered at most once. Entries
    never expire.
    """

    _results: dict[str, PendingResult] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set(self, device_id: str, result: PendingResult) -> None:
        with self._lock:
            replaced = self._results.get(device_id)
            self._results[device_id] = result
        if replaced is not None:
            logger.info(f"[Mailbox] Overwrote unconsumed result for device={device_id}")
        else:
            logger.info(f"[Mailbox] Stored result for device={device_id}")

    def take(self, device_id: str) -> PendingResult | None:
        with self._lock:
            result = self._results.pop(device_id, None)
        if result is not None:
            logger.info(f"[Mailbox] Delivered result to device={device_id}")
        return result

    def clear(self, device_id: str) -> bool:
        with self._lock:
            removed = self._results.pop(device_id, None)
        return removed is not None

    def peek(self, device_id: str) -> PendingResult | None:
        with self._lock:
            return self._results.get(device_id)

    def pending_device_ids(self) -> list[str]:
        with self._lock:
            return list(self._results)

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def timestamp(self) -> str:
        """Return wall-clock time as ISO 8601 UTC (e.g. 2024-01-01T00:00:00.000Z)."""


def format_timestamp(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SystemClock:
    def timestamp(self) -> str:
        return format_timestamp(datetime.now(timezone.utc))


@dataclass(slots=True)
class FakeClock:
    _elapsed_s: float = 0.0
    _epoch: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def timestamp(self) -> str:
        return format_timestamp(self._epoch + timedelta(seconds=self._elapsed_s))

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._elapsed_s += seconds

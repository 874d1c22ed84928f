from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from voice_alarm.core.session.device import CLOSE_NORMAL, CLOSE_SUPERSEDED, DeviceSession

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionRegistry:
    """Process-wide map of device id to its single live session."""

    _sessions: dict[str, DeviceSession] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def install(self, session: DeviceSession) -> DeviceSession | None:
        """Install ``session`` and close any prior session for the same device.

        Only the map swap runs under the lock; the prior session is closed
        after it is released.
        Returns the superseded session, if there was one.
        """
        async with self._lock:
            prior = self._sessions.get(session.device_id)
            self._sessions[session.device_id] = session
            if prior is not session:
                session.add_close_callback(self._discard)
        if prior is None or prior is session:
            return None
        logger.info(f"[Registry] Superseding existing session for device={session.device_id}")
        await prior.close(reason="superseded by new connection", code=CLOSE_SUPERSEDED)
        return prior

    async def release(self, session: DeviceSession, *, reason: str = "connection closed") -> None:
        await session.close(reason=reason, code=CLOSE_NORMAL)
        self._discard(session)

    def _discard(self, session: DeviceSession) -> None:
        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]

    def get(self, device_id: str) -> DeviceSession | None:
        return self._sessions.get(device_id)

    def device_ids(self) -> list[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._sessions

    async def close_all(self, *, reason: str = "server shutdown") -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
        if not sessions:
            return
        logger.info(f"[Registry] Closing {len(sessions)} active session(s)")
        await asyncio.gather(
            *(s.close(reason=reason, code=CLOSE_NORMAL) for s in sessions),
            return_exceptions=True,
        )
        self._sessions.clear()

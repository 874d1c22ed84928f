from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from voice_alarm.core.clock import FakeClock
from voice_alarm.core.mailbox import ResultMailbox
from voice_alarm.core.session.device import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    DeviceSession,
)
from voice_alarm.core.session.registry import SessionRegistry
from voice_alarm.core.stt.backend import BackendVariant, TranscriptEvent, TranscriptionError
from voice_alarm.core.trigger.detector import TriggerWordList
from voice_alarm.core.trigger.evaluator import TriggerEvaluator
from voice_alarm.domain.events import SessionState


@dataclass
class FakeTranscription:
    audio: list[bytes] = field(default_factory=list)
    closed: bool = False
    close_delay_s: float = 0.0
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)

    def push(self, event) -> None:
        self.queue.put_nowait(event)

    async def send_audio(self, frame: bytes) -> None:
        self.audio.append(frame)

    async def close(self) -> None:
        if self.close_delay_s:
            await asyncio.sleep(self.close_delay_s)
        self.closed = True
        self.queue.put_nowait(None)

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item


@dataclass
class FakeBackend:
    fail: bool = False
    close_delay_s: float = 0.0
    sessions: list[FakeTranscription] = field(default_factory=list)

    @property
    def variant(self) -> BackendVariant:
        return BackendVariant.STREAMING

    async def open_session(self, device_id: str) -> FakeTranscription:
        if self.fail:
            raise ConnectionError("provider unreachable")
        session = FakeTranscription(close_delay_s=self.close_delay_s)
        self.sessions.append(session)
        return session

    async def aclose(self) -> None:
        return None


@dataclass
class FakeConnection:
    sent: list[dict] = field(default_factory=list)
    open: bool = True
    close_code: int | None = None
    close_reason: str = ""

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, payload: dict) -> None:
        self.sent.append(payload)

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        self.open = False
        self.close_code = code
        self.close_reason = reason


async def _until(predicate, *, timeout_s: float = 1.0) -> None:
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_wait(), timeout=timeout_s)


def _session(
    backend: FakeBackend,
    connection: FakeConnection,
    mailbox: ResultMailbox,
    *,
    device_id: str = "esp-1",
    send_interim_transcripts: bool = True,
) -> DeviceSession:
    evaluator = TriggerEvaluator(triggers=TriggerWordList(), mailbox=mailbox, clock=FakeClock())
    return DeviceSession(
        device_id=device_id,
        backend=backend,
        connection=connection,
        evaluator=evaluator,
        send_interim_transcripts=send_interim_transcripts,
    )


def test_trigger_pushes_alarm_and_stores_result():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)
        await session.start()
        assert session.state == SessionState.ACTIVE

        backend.sessions[0].push(TranscriptEvent(text="There is a fire", confidence=0.93))
        await _until(lambda: connection.sent)

        assert connection.sent == [
            {"command": "ALARM", "transcription": "There is a fire", "confidence": 0.93}
        ]
        result = mailbox.take("esp-1")
        assert result is not None
        assert result.triggered_words == ("fire",)
        assert result.timestamp == "2024-01-01T00:00:00.000Z"
        assert session.stats.alarms == 1

        await session.close()
        assert session.state == SessionState.CLOSED
        assert connection.close_code == CLOSE_NORMAL
        assert backend.sessions[0].closed

    asyncio.run(run())


def test_non_trigger_transcript_sends_interim_notice():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)
        await session.start()

        backend.sessions[0].push(TranscriptEvent(text="hello world", confidence=0.6))
        await _until(lambda: connection.sent)

        assert connection.sent == [
            {"type": "transcription", "transcription": "hello world", "confidence": 0.6}
        ]
        assert len(mailbox) == 0
        await session.close()

    asyncio.run(run())


def test_interim_notices_can_be_disabled():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox, send_interim_transcripts=False)
        await session.start()

        backend.sessions[0].push(TranscriptEvent(text="hello world", confidence=0.6))
        backend.sessions[0].push(TranscriptEvent(text="help now", confidence=0.9))
        await _until(lambda: connection.sent)

        assert [p.get("command") for p in connection.sent] == ["ALARM"]
        await session.close()

    asyncio.run(run())


def test_empty_transcripts_are_skipped():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)
        await session.start()

        backend.sessions[0].push(TranscriptEvent(text="   ", confidence=0.0))
        backend.sessions[0].push(TranscriptEvent(text="hello world", confidence=0.6))
        await _until(lambda: connection.sent)

        assert len(connection.sent) == 1
        assert session.stats.transcripts == 1
        await session.close()

    asyncio.run(run())


def test_audio_only_forwarded_while_active():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)

        assert await session.handle_audio(b"\x00\x00" * 4) is False
        assert session.stats.ignored_frames == 1

        await session.start()
        assert await session.handle_audio(b"\x10\x00" * 4) is True
        assert backend.sessions[0].audio == [b"\x10\x00" * 4]
        assert session.stats.frames == 1
        assert session.stats.bytes == 8
        assert session.stats.peak_level > 0.0

        await session.close()
        assert await session.handle_audio(b"\x10\x00" * 4) is False
        assert backend.sessions[0].audio == [b"\x10\x00" * 4]

    asyncio.run(run())


def test_malformed_control_frame_is_ignored(caplog):
    caplog.set_level(logging.WARNING, logger="voice_alarm.core.session.device")

    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)
        await session.start()

        await session.handle_text("not json")
        assert session.state == SessionState.ACTIVE
        assert session.announced_id is None

        await session.handle_text('{"type": "device_id", "deviceId": "esp-2"}')
        assert session.announced_id == "esp-2"
        assert session.device_id == "esp-1"
        await session.close()

    asyncio.run(run())

    assert any("malformed control frame" in r.getMessage() for r in caplog.records)


def test_fatal_backend_error_closes_session():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)
        await session.start()

        backend.sessions[0].push(TranscriptionError("channel dropped", fatal=True))
        await _until(lambda: session.state == SessionState.CLOSED)

        assert connection.close_code == CLOSE_INTERNAL_ERROR
        assert backend.sessions[0].closed
        assert session.stats.backend_errors == 1

    asyncio.run(run())


def test_non_fatal_backend_error_keeps_session_alive():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)
        await session.start()

        backend.sessions[0].push(TranscriptionError("window failed", fatal=False))
        backend.sessions[0].push(TranscriptEvent(text="help now", confidence=0.9))
        await _until(lambda: connection.sent)

        assert session.state == SessionState.ACTIVE
        assert session.stats.backend_errors == 1
        assert connection.sent[0]["command"] == "ALARM"
        await session.close()

    asyncio.run(run())


def test_backend_open_failure_closes_connection():
    async def run():
        backend, connection, mailbox = FakeBackend(fail=True), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)

        await session.start()

        assert session.state == SessionState.CLOSED
        assert connection.close_code == CLOSE_INTERNAL_ERROR

    asyncio.run(run())


def test_push_skipped_when_connection_already_closed():
    async def run():
        backend, connection, mailbox = FakeBackend(), FakeConnection(), ResultMailbox()
        session = _session(backend, connection, mailbox)
        await session.start()
        connection.open = False

        backend.sessions[0].push(TranscriptEvent(text="There is a fire", confidence=0.9))
        await _until(lambda: session.stats.alarms == 1)

        assert connection.sent == []
        # The mailbox still holds the result for polling.
        assert mailbox.peek("esp-1") is not None
        await session.close()

    asyncio.run(run())


def test_registry_supersedes_existing_session():
    async def run():
        backend, mailbox = FakeBackend(), ResultMailbox()
        registry = SessionRegistry()
        first_conn, second_conn = FakeConnection(), FakeConnection()

        first = _session(backend, first_conn, mailbox)
        assert await registry.install(first) is None
        await first.start()

        second = _session(backend, second_conn, mailbox)
        assert await registry.install(second) is first
        await second.start()

        assert first.state == SessionState.CLOSED
        assert first_conn.close_code == 4000
        assert registry.get("esp-1") is second

        assert await first.handle_audio(b"\x01\x00") is False
        assert await second.handle_audio(b"\x02\x00") is True
        assert backend.sessions[0].audio == []
        assert backend.sessions[1].audio == [b"\x02\x00"]

        # The superseded connection's cleanup must not evict the new session.
        await registry.release(first)
        assert registry.get("esp-1") is second
        assert len(registry) == 1

        await registry.release(second)
        assert "esp-1" not in registry

    asyncio.run(run())


def test_registry_drops_session_closed_by_backend_failure():
    async def run():
        backend, mailbox = FakeBackend(), ResultMailbox()
        registry = SessionRegistry()
        session = _session(backend, FakeConnection(), mailbox)
        await registry.install(session)
        await session.start()

        backend.sessions[0].push(TranscriptionError("gone", fatal=True))
        await _until(lambda: "esp-1" not in registry)

        assert registry.device_ids() == []

    asyncio.run(run())


def test_registry_close_all():
    async def run():
        backend, mailbox = FakeBackend(), ResultMailbox()
        registry = SessionRegistry()
        connections = [FakeConnection(), FakeConnection()]
        sessions = [
            _session(backend, conn, mailbox, device_id=f"esp-{i}")
            for i, conn in enumerate(connections)
        ]
        for session in sessions:
            await registry.install(session)
            await session.start()
        assert sorted(registry.device_ids()) == ["esp-0", "esp-1"]

        await registry.close_all()

        assert len(registry) == 0
        assert all(s.state == SessionState.CLOSED for s in sessions)
        assert all(not c.is_open for c in connections)

    asyncio.run(run())


def test_registry_slow_supersede_does_not_block_other_devices():
    async def run():
        slow_backend, fast_backend, mailbox = FakeBackend(close_delay_s=0.5), FakeBackend(), ResultMailbox()
        registry = SessionRegistry()

        old_a = _session(slow_backend, FakeConnection(), mailbox, device_id="esp-a")
        await registry.install(old_a)
        await old_a.start()

        new_a = _session(fast_backend, FakeConnection(), mailbox, device_id="esp-a")
        supersede = asyncio.create_task(registry.install(new_a))
        await _until(lambda: old_a.state == SessionState.CLOSING)

        loop = asyncio.get_running_loop()
        started = loop.time()
        device_b = _session(fast_backend, FakeConnection(), mailbox, device_id="esp-b")
        assert await asyncio.wait_for(registry.install(device_b), timeout=0.2) is None
        assert loop.time() - started < 0.2

        assert registry.get("esp-a") is new_a
        assert registry.get("esp-b") is device_b
        assert not supersede.done()

        assert await supersede is old_a
        assert old_a.state == SessionState.CLOSED
        assert registry.get("esp-a") is new_a

        await registry.close_all()

    asyncio.run(run())

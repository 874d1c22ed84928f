from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from voice_alarm.core.stt.backend import BackendVariant
from voice_alarm.core.trigger.detector import (
    DEFAULT_FUZZY_THRESHOLD,
    DEFAULT_TRIGGER_WORDS,
    normalize_trigger_words,
)


class SecretsBackend(str, Enum):
    ENV = "env"
    KEYRING = "keyring"
    ENCRYPTED_FILE = "encrypted_file"


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 3000
    device_token: str = ""

    def validate(self) -> None:
        if not self.host:
            raise ValueError("host must be non-empty")
        if not (0 < self.port <= 65535):
            raise ValueError("port must be in 1..65535")


@dataclass(slots=True)
class TriggerSettings:
    words: list[str] = field(default_factory=lambda: list(DEFAULT_TRIGGER_WORDS))
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD
    send_interim_transcripts: bool = True

    def validate(self) -> None:
        if not isinstance(self.words, list) or any(not isinstance(w, str) for w in self.words):
            raise ValueError("words must be a list of strings")
        if not (0.0 < self.fuzzy_threshold <= 1.0):
            raise ValueError("fuzzy_threshold must be in (0.0, 1.0]")


@dataclass(slots=True)
class TranscriptionSettings:
    backend: BackendVariant = BackendVariant.STREAMING
    flush_interval_s: float = 3.0
    sample_rate_hz: int = 16000
    max_pending_frames: int = 500
    open_timeout_s: float = 5.0
    request_timeout_s: float = 10.0

    def validate(self) -> None:
        if not isinstance(self.backend, BackendVariant):
            raise ValueError("invalid transcription backend")
        if self.flush_interval_s <= 0:
            raise ValueError("flush_interval_s must be > 0")
        if self.sample_rate_hz not in (8000, 16000):
            raise ValueError("sample_rate_hz must be 8000 or 16000")
        if self.max_pending_frames <= 0:
            raise ValueError("max_pending_frames must be > 0")
        if self.open_timeout_s <= 0:
            raise ValueError("open_timeout_s must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be > 0")


@dataclass(slots=True)
class DeepgramSettings:
    model: str = "nova-2"
    language: str = "en"
    live_endpoint: str = "wss://api.deepgram.com/v1/listen"
    rest_endpoint: str = "https://api.deepgram.com/v1/listen"

    def validate(self) -> None:
        if not self.model:
            raise ValueError("model must be non-empty")
        if not self.language:
            raise ValueError("language must be non-empty")
        if not self.live_endpoint.startswith(("ws://", "wss://")):
            raise ValueError("live_endpoint must be a ws:// or wss:// URL")
        if not self.rest_endpoint.startswith(("http://", "https://")):
            raise ValueError("rest_endpoint must be an http:// or https:// URL")


@dataclass(slots=True)
class SecretsSettings:
    backend: SecretsBackend = SecretsBackend.ENV
    encrypted_file_path: str = "secrets.json"

    def validate(self) -> None:
        if not isinstance(self.backend, SecretsBackend):
            raise ValueError("invalid secrets backend")
        if self.backend == SecretsBackend.ENCRYPTED_FILE and not self.encrypted_file_path:
            raise ValueError("encrypted_file_path must be set for encrypted_file backend")


@dataclass(slots=True)
class LoggingSettings:
    level: str = "INFO"
    file: str = ""
    max_bytes: int = 1_000_000
    backup_count: int = 3

    def validate(self) -> None:
        if self.level.upper() not in _LOG_LEVELS:
            raise ValueError(f"level must be one of {', '.join(_LOG_LEVELS)}")
        if self.max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        if self.backup_count < 0:
            raise ValueError("backup_count must be >= 0")


@dataclass(slots=True)
class AppSettings:
    server: ServerSettings = field(default_factory=ServerSettings)
    triggers: TriggerSettings = field(default_factory=TriggerSettings)
    transcription: TranscriptionSettings = field(default_factory=TranscriptionSettings)
    deepgram: DeepgramSettings = field(default_factory=DeepgramSettings)
    secrets: SecretsSettings = field(default_factory=SecretsSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def validate(self) -> None:
        self.server.validate()
        self.triggers.validate()
        self.transcription.validate()
        self.deepgram.validate()
        self.secrets.validate()
        self.logging.validate()


def to_dict(settings: AppSettings) -> dict[str, Any]:
    return {
        "server": {
            "host": settings.server.host,
            "port": settings.server.port,
            "device_token": settings.server.device_token,
        },
        "triggers": {
            "words": list(settings.triggers.words),
            "fuzzy_threshold": settings.triggers.fuzzy_threshold,
            "send_interim_transcripts": settings.triggers.send_interim_transcripts,
        },
        "transcription": {
            "backend": settings.transcription.backend.value,
            "flush_interval_s": settings.transcription.flush_interval_s,
            "sample_rate_hz": settings.transcription.sample_rate_hz,
            "max_pending_frames": settings.transcription.max_pending_frames,
            "open_timeout_s": settings.transcription.open_timeout_s,
            "request_timeout_s": settings.transcription.request_timeout_s,
        },
        "deepgram": {
            "model": settings.deepgram.model,
            "language": settings.deepgram.language,
            "live_endpoint": settings.deepgram.live_endpoint,
            "rest_endpoint": settings.deepgram.rest_endpoint,
        },
        "secrets": {
            "backend": settings.secrets.backend.value,
            "encrypted_file_path": settings.secrets.encrypted_file_path,
        },
        "logging": {
            "level": settings.logging.level,
            "file": settings.logging.file,
            "max_bytes": settings.logging.max_bytes,
            "backup_count": settings.logging.backup_count,
        },
    }


def from_dict(data: dict[str, Any]) -> AppSettings:
    server_data = data.get("server") or {}
    trigger_data = data.get("triggers") or {}
    stt_data = data.get("transcription") or {}
    deepgram_data = data.get("deepgram") or {}
    secrets_data = data.get("secrets") or {}
    logging_data = data.get("logging") or {}

    words_raw = trigger_data.get("words", list(DEFAULT_TRIGGER_WORDS))
    if not isinstance(words_raw, list) or any(not isinstance(w, str) for w in words_raw):
        raise ValueError("triggers.words must be a list of strings")

    defaults = DeepgramSettings()
    settings = AppSettings(
        server=ServerSettings(
            host=str(server_data.get("host", "0.0.0.0")),
            port=int(server_data.get("port", 3000)),
            device_token=str(server_data.get("device_token", "")),
        ),
        triggers=TriggerSettings(
            words=list(normalize_trigger_words(words_raw)),
            fuzzy_threshold=float(trigger_data.get("fuzzy_threshold", DEFAULT_FUZZY_THRESHOLD)),
            send_interim_transcripts=bool(trigger_data.get("send_interim_transcripts", True)),
        ),
        transcription=TranscriptionSettings(
            backend=BackendVariant(stt_data.get("backend", BackendVariant.STREAMING.value)),
            flush_interval_s=float(stt_data.get("flush_interval_s", 3.0)),
            sample_rate_hz=int(stt_data.get("sample_rate_hz", 16000)),
            max_pending_frames=int(stt_data.get("max_pending_frames", 500)),
            open_timeout_s=float(stt_data.get("open_timeout_s", 5.0)),
            request_timeout_s=float(stt_data.get("request_timeout_s", 10.0)),
        ),
        deepgram=DeepgramSettings(
            model=str(deepgram_data.get("model", defaults.model)),
            language=str(deepgram_data.get("language", defaults.language)),
            live_endpoint=str(deepgram_data.get("live_endpoint", defaults.live_endpoint)),
            rest_endpoint=str(deepgram_data.get("rest_endpoint", defaults.rest_endpoint)),
        ),
        secrets=SecretsSettings(
            backend=SecretsBackend(secrets_data.get("backend", SecretsBackend.ENV.value)),
            encrypted_file_path=str(secrets_data.get("encrypted_file_path", "secrets.json")),
        ),
        logging=LoggingSettings(
            level=str(logging_data.get("level", "INFO")).upper(),
            file=str(logging_data.get("file", "")),
            max_bytes=int(logging_data.get("max_bytes", 1_000_000)),
            backup_count=int(logging_data.get("backup_count", 3)),
        ),
    )
    settings.validate()
    return settings


def apply_env_overrides(settings: AppSettings, environ: Mapping[str, str] | None = None) -> AppSettings:
    """Apply deployment overrides (PORT, HOST, TRIGGER_WORDS, ...) in place."""
    env = os.environ if environ is None else environ

    if env.get("HOST"):
        settings.server.host = env["HOST"].strip()
    if env.get("PORT"):
        settings.server.port = int(env["PORT"])
    if env.get("DEVICE_TOKEN"):
        settings.server.device_token = env["DEVICE_TOKEN"].strip()
    if env.get("TRIGGER_WORDS"):
        settings.triggers.words = list(normalize_trigger_words(env["TRIGGER_WORDS"].split(",")))
    if env.get("TRANSCRIPTION_BACKEND"):
        settings.transcription.backend = BackendVariant(env["TRANSCRIPTION_BACKEND"].strip().lower())
    if env.get("LOG_LEVEL"):
        settings.logging.level = env["LOG_LEVEL"].strip().upper()

    settings.validate()
    return settings


def load_settings(path: Path) -> AppSettings:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("settings file must contain a JSON object")
    return from_dict(raw)


def save_settings(path: Path, settings: AppSettings) -> None:
    settings.validate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(to_dict(settings), ensure_ascii=False, indent=2), encoding="utf-8")

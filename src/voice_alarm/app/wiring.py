from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from voice_alarm.config.paths import resolve_relative
from voice_alarm.config.settings import AppSettings, SecretsBackend, SecretsSettings
from voice_alarm.core.auth import AllowAllAuthenticator, DeviceAuthenticator, SharedTokenAuthenticator
from voice_alarm.core.clock import Clock, SystemClock
from voice_alarm.core.mailbox import ResultMailbox
from voice_alarm.core.session.device import DeviceConnection, DeviceSession
from voice_alarm.core.session.registry import SessionRegistry
from voice_alarm.core.storage.secrets import (
    EncryptedFileSecretStore,
    EnvSecretStore,
    KeyringSecretStore,
    SecretStore,
)
from voice_alarm.core.stt.backend import BackendVariant, BatchTranscriber, TranscriptionBackend
from voice_alarm.core.stt.buffered import BufferedTranscriptionBackend
from voice_alarm.core.stt.streaming import StreamingTranscriptionBackend
from voice_alarm.core.trigger.detector import TriggerWordList
from voice_alarm.core.trigger.evaluator import TriggerEvaluator
from voice_alarm.providers.stt.deepgram import DeepgramLiveConnector, DeepgramPrerecordedTranscriber

SECRETS_PASSPHRASE_ENV = "VOICE_ALARM_SECRETS_PASSPHRASE"
DEEPGRAM_API_KEY = "deepgram_api_key"
DEEPGRAM_API_KEY_ENV = "DEEPGRAM_API_KEY"


def create_secret_store(
    settings: SecretsSettings,
    *,
    config_path: Path,
    passphrase: str | None = None,
) -> SecretStore:
    passphrase = passphrase or os.getenv(SECRETS_PASSPHRASE_ENV)

    if settings.backend == SecretsBackend.ENV:
        return EnvSecretStore(env_vars={DEEPGRAM_API_KEY: DEEPGRAM_API_KEY_ENV})

    if settings.backend == SecretsBackend.KEYRING:
        return KeyringSecretStore()

    if settings.backend == SecretsBackend.ENCRYPTED_FILE:
        if not passphrase:
            raise ValueError(
                "encrypted_file secrets backend requires a passphrase; "
                f"set {SECRETS_PASSPHRASE_ENV} or pass passphrase explicitly"
            )
        path = resolve_relative(settings.encrypted_file_path, config_path=config_path)
        return EncryptedFileSecretStore(path=path, passphrase=passphrase)

    raise ValueError(f"Unsupported secrets backend: {settings.backend}")


def _get_secret(secrets: SecretStore, *, key: str, env_var: str) -> str | None:
    # Deployment env wins over anything stored.
    env = os.getenv(env_var)
    if env:
        return env
    value = secrets.get(key)
    if value:
        return value
    return None


def require_secret(secrets: SecretStore, *, key: str, env_var: str) -> str:
    value = _get_secret(secrets, key=key, env_var=env_var)
    if value:
        return value
    raise ValueError(f"Missing secret `{key}` (or env var {env_var})")


def create_batch_transcriber(settings: AppSettings, *, secrets: SecretStore) -> BatchTranscriber:
    api_key = require_secret(secrets, key=DEEPGRAM_API_KEY, env_var=DEEPGRAM_API_KEY_ENV)
    return DeepgramPrerecordedTranscriber(
        api_key=api_key,
        model=settings.deepgram.model,
        language=settings.deepgram.language,
        endpoint=settings.deepgram.rest_endpoint,
        timeout_s=settings.transcription.request_timeout_s,
    )


def create_transcription_backend(
    settings: AppSettings,
    *,
    secrets: SecretStore,
    transcriber: BatchTranscriber | None = None,
) -> TranscriptionBackend:
    stt = settings.transcription

    if stt.backend == BackendVariant.STREAMING:
        api_key = require_secret(secrets, key=DEEPGRAM_API_KEY, env_var=DEEPGRAM_API_KEY_ENV)
        connector = DeepgramLiveConnector(
            api_key=api_key,
            model=settings.deepgram.model,
            language=settings.deepgram.language,
            sample_rate_hz=stt.sample_rate_hz,
            endpoint=settings.deepgram.live_endpoint,
            open_timeout_s=stt.open_timeout_s,
        )
        return StreamingTranscriptionBackend(
            connector=connector, max_pending_frames=stt.max_pending_frames
        )

    if stt.backend == BackendVariant.BUFFERED:
        return BufferedTranscriptionBackend(
            transcriber=transcriber or create_batch_transcriber(settings, secrets=secrets),
            flush_interval_s=stt.flush_interval_s,
            sample_rate_hz=stt.sample_rate_hz,
        )

    raise ValueError(f"Unsupported transcription backend: {stt.backend}")


def create_authenticator(settings: AppSettings) -> DeviceAuthenticator:
    if settings.server.device_token:
        return SharedTokenAuthenticator(token=settings.server.device_token)
    return AllowAllAuthenticator()


@dataclass(slots=True)
class AppServices:
    """Everything the HTTP surface needs, built once per process."""

    settings: AppSettings
    backend: TranscriptionBackend
    transcriber: BatchTranscriber
    authenticator: DeviceAuthenticator = field(default_factory=AllowAllAuthenticator)
    clock: Clock = field(default_factory=SystemClock)
    mailbox: ResultMailbox = field(default_factory=ResultMailbox)
    registry: SessionRegistry = field(default_factory=SessionRegistry)
    triggers: TriggerWordList = field(init=False)
    evaluator: TriggerEvaluator = field(init=False)

    def __post_init__(self) -> None:
        self.triggers = TriggerWordList(
            words=tuple(self.settings.triggers.words),
            fuzzy_threshold=self.settings.triggers.fuzzy_threshold,
        )
        self.evaluator = TriggerEvaluator(
            triggers=self.triggers, mailbox=self.mailbox, clock=self.clock
        )

    def new_session(self, device_id: str, connection: DeviceConnection) -> DeviceSession:
        return DeviceSession(
            device_id=device_id,
            backend=self.backend,
            connection=connection,
            evaluator=self.evaluator,
            send_interim_transcripts=self.settings.triggers.send_interim_transcripts,
        )

    async def aclose(self) -> None:
        await self.registry.close_all()
        await self.backend.aclose()
        await self.transcriber.aclose()


def create_services(settings: AppSettings, *, secrets: SecretStore) -> AppServices:
    transcriber = create_batch_transcriber(settings, secrets=secrets)
    backend = create_transcription_backend(settings, secrets=secrets, transcriber=transcriber)
    return AppServices(
        settings=settings,
        backend=backend,
        transcriber=transcriber,
        authenticator=create_authenticator(settings),
    )

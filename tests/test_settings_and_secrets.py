from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field

import pytest
from keyring.errors import PasswordDeleteError

import voice_alarm.core.storage.secrets as secrets_module
from voice_alarm.config.logging_setup import setup_logging
from voice_alarm.config.paths import default_settings_path, resolve_relative
from voice_alarm.config.settings import (
    AppSettings,
    LoggingSettings,
    ServerSettings,
    TranscriptionSettings,
    TriggerSettings,
    apply_env_overrides,
    from_dict,
    load_settings,
    save_settings,
)
from voice_alarm.core.storage.secrets import (
    EncryptedFileSecretStore,
    EnvSecretStore,
    InMemorySecretStore,
    KeyringSecretStore,
    mask_secret,
)
from voice_alarm.core.stt.backend import BackendVariant


def test_settings_roundtrip(tmp_path):
    path = tmp_path / "settings.json"
    settings = AppSettings()
    settings.triggers.words = ["smoke", "gas"]
    settings.transcription.backend = BackendVariant.BUFFERED
    save_settings(path, settings)

    loaded = load_settings(path)
    assert loaded == settings


def test_default_settings_match_server_defaults():
    settings = AppSettings()

    assert settings.server.port == 3000
    assert settings.triggers.words == ["alarm", "emergency", "help", "fire"]
    assert settings.triggers.fuzzy_threshold == 0.70
    assert settings.transcription.backend == BackendVariant.STREAMING
    assert settings.transcription.flush_interval_s == 3.0
    assert settings.deepgram.model == "nova-2"


@pytest.mark.parametrize(
    "settings",
    [
        AppSettings(server=ServerSettings(port=0)),
        AppSettings(triggers=TriggerSettings(fuzzy_threshold=1.5)),
        AppSettings(transcription=TranscriptionSettings(flush_interval_s=0)),
        AppSettings(transcription=TranscriptionSettings(sample_rate_hz=44100)),
        AppSettings(logging=LoggingSettings(level="LOUD")),
    ],
)
def test_settings_validation_rejects_invalid_values(settings):
    with pytest.raises(ValueError):
        settings.validate()


def test_from_dict_normalizes_trigger_words():
    settings = from_dict({"triggers": {"words": [" Fire ", "", "HELP"]}})
    assert settings.triggers.words == ["fire", "help"]


def test_from_dict_rejects_non_list_words():
    with pytest.raises(ValueError):
        from_dict({"triggers": {"words": "fire"}})


def test_load_settings_rejects_non_object(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(path)


def test_env_overrides():
    settings = apply_env_overrides(
        AppSettings(),
        {
            "PORT": "8080",
            "HOST": "127.0.0.1",
            "TRIGGER_WORDS": "Smoke, GAS ,",
            "TRANSCRIPTION_BACKEND": "Buffered",
            "LOG_LEVEL": "debug",
            "DEVICE_TOKEN": "s3cret",
        },
    )

    assert settings.server.port == 8080
    assert settings.server.host == "127.0.0.1"
    assert settings.server.device_token == "s3cret"
    assert settings.triggers.words == ["smoke", "gas"]
    assert settings.transcription.backend == BackendVariant.BUFFERED
    assert settings.logging.level == "DEBUG"


def test_env_overrides_reject_unknown_backend():
    with pytest.raises(ValueError):
        apply_env_overrides(AppSettings(), {"TRANSCRIPTION_BACKEND": "carrier-pigeon"})


def test_empty_env_leaves_settings_untouched():
    assert apply_env_overrides(AppSettings(), {}) == AppSettings()


def test_mask_secret():
    assert mask_secret("dg-123456") == "dg-****"
    assert mask_secret("abc", unmasked_prefix=3) == "***"


def test_in_memory_secret_store():
    store = InMemorySecretStore()
    store.set("k", "v")
    assert store.get("k") == "v"
    store.delete("k")
    assert store.get("k") is None


def test_env_secret_store_maps_keys():
    environ = {"DEEPGRAM_API_KEY": "dg-env"}
    store = EnvSecretStore(env_vars={"deepgram_api_key": "DEEPGRAM_API_KEY"}, environ=environ)

    assert store.get("deepgram_api_key") == "dg-env"
    assert store.get("other_key") is None
    store.set("other_key", "x")
    assert environ["OTHER_KEY"] == "x"
    store.delete("deepgram_api_key")
    assert "DEEPGRAM_API_KEY" not in environ


def test_encrypted_file_secret_store_roundtrip(tmp_path):
    path = tmp_path / "secrets.json"
    store = EncryptedFileSecretStore(path, passphrase="pw")
    store.set("deepgram_api_key", "dg-SECRET")

    assert store.get("deepgram_api_key") == "dg-SECRET"
    assert "dg-SECRET" not in path.read_text(encoding="utf-8")

    reopened = EncryptedFileSecretStore(path, passphrase="pw")
    assert reopened.get("deepgram_api_key") == "dg-SECRET"
    reopened.delete("deepgram_api_key")
    assert reopened.get("deepgram_api_key") is None
    assert json.loads(path.read_text(encoding="utf-8"))["items"] == {}


def test_encrypted_file_secret_store_rejects_wrong_passphrase(tmp_path):
    path = tmp_path / "secrets.json"
    EncryptedFileSecretStore(path, passphrase="pw").set("k", "dg-SECRET")

    wrong = EncryptedFileSecretStore(path, passphrase="wrong")
    with pytest.raises(ValueError):
        wrong.get("k")


def test_setup_logging_writes_rotating_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    log_file = tmp_path / "logs" / "voice-alarm.log"
    try:
        setup_logging("INFO", log_file=log_file, max_bytes=1024, backup_count=1)
        logging.getLogger("voice_alarm.test").info("[Session] hello from test")
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)

    content = log_file.read_text(encoding="utf-8")
    assert "[INFO] voice_alarm.test: [Session] hello from test" in content


def test_default_settings_path_honours_xdg(monkeypatch, tmp_path):
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

    assert default_settings_path() == tmp_path / "voice-alarm" / "settings.json"


def test_resolve_relative_uses_config_directory(tmp_path):
    config_path = tmp_path / "conf" / "settings.json"

    assert resolve_relative("logs/app.log", config_path=config_path) == tmp_path / "conf" / "logs" / "app.log"
    assert resolve_relative(tmp_path / "abs.log", config_path=config_path) == tmp_path / "abs.log"


@dataclass
class FakeKeyring:
    items: dict = field(default_factory=dict)

    def get_password(self, service: str, key: str):
        return self.items.get((service, key))

    def set_password(self, service: str, key: str, value: str) -> None:
        self.items[(service, key)] = value

    def delete_password(self, service: str, key: str) -> None:
        if (service, key) not in self.items:
            raise PasswordDeleteError("not found")
        del self.items[(service, key)]


def test_keyring_secret_store_scopes_by_service(monkeypatch):
    fake = FakeKeyring()
    monkeypatch.setattr(secrets_module, "keyring", fake)
    store = KeyringSecretStore()

    store.set("deepgram_api_key", "dg-kr")

    assert fake.items == {("voice-alarm", "deepgram_api_key"): "dg-kr"}
    assert store.get("deepgram_api_key") == "dg-kr"
    store.delete("deepgram_api_key")
    store.delete("deepgram_api_key")
    assert store.get("deepgram_api_key") is None


def test_encrypted_file_secret_store_rejects_foreign_file(tmp_path):
    path = tmp_path / "secrets.json"
    path.write_text('{"version": 7, "kdf": {"salt": "AAAA"}, "items": {}}', encoding="utf-8")

    with pytest.raises(ValueError, match="version"):
        EncryptedFileSecretStore(path, passphrase="pw")

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        EncryptedFileSecretStore(path, passphrase="pw")


def test_encrypted_file_secret_store_requires_passphrase(tmp_path):
    with pytest.raises(ValueError):
        EncryptedFileSecretStore(tmp_path / "secrets.json", passphrase="")

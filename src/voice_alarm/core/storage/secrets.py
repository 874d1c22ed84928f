from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Protocol

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from keyring.errors import PasswordDeleteError

KEYRING_SERVICE_NAME = "voice-alarm"

SECRETS_FILE_VERSION = 1
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


class SecretStore(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


@dataclass(slots=True)
class InMemorySecretStore:
    _items: dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str | None:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


@dataclass(slots=True)
class EnvSecretStore:
    """Reads secrets from environment variables named by ``env_vars``.

    Unmapped keys fall back to the upper-cased key name (``deepgram_api_key``
    reads ``DEEPGRAM_API_KEY``). Writes only affect the mapping passed in.
    """

    env_vars: Mapping[str, str] = field(default_factory=dict)
    environ: MutableMapping[str, str] = field(default_factory=lambda: os.environ)

    def _name(self, key: str) -> str:
        return self.env_vars.get(key) or key.upper()

    def get(self, key: str) -> str | None:
        value = self.environ.get(self._name(key))
        return value or None

    def set(self, key: str, value: str) -> None:
        self.environ[self._name(key)] = value

    def delete(self, key: str) -> None:
        self.environ.pop(self._name(key), None)


@dataclass(slots=True)
class KeyringSecretStore:
    """OS credential store, one entry per key under ``service_name``."""

    service_name: str = KEYRING_SERVICE_NAME

    def get(self, key: str) -> str | None:
        return keyring.get_password(self.service_name, key) or None

    def set(self, key: str, value: str) -> None:
        keyring.set_password(self.service_name, key, value)

    def delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            pass


def mask_secret(value: str, *, unmasked_prefix: int = 3) -> str:
    if not value:
        return value
    if len(value) <= unmasked_prefix:
        return "*" * len(value)
    return value[:unmasked_prefix] + "****"


@dataclass(slots=True)
class EncryptedFileSecretStore:
    """Secrets kept in a JSON file, each value Fernet-encrypted.

    The file records the scrypt salt and cost parameters next to the items,
    so a file written with other parameters still opens. The passphrase is
    only checked when a value is decrypted.
    """

    path: Path
    passphrase: str = field(repr=False)
    _fernet: Fernet = field(init=False, repr=False)
    _document: dict[str, Any] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.passphrase:
            raise ValueError("passphrase must be non-empty")
        if self.path.exists():
            self._document = _read_document(self.path)
        else:
            self._document = _new_document()
            _atomic_write_json(self.path, self._document)
        self._fernet = Fernet(_derive_key(self.passphrase, self._document["kdf"]))

    @property
    def _items(self) -> dict[str, str]:
        return self._document["items"]

    def get(self, key: str) -> str | None:
        token = self._items.get(key)
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError(f"Cannot decrypt `{key}` in {self.path}: wrong passphrase?") from exc

    def set(self, key: str, value: str) -> None:
        self._items[key] = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        _atomic_write_json(self.path, self._document)

    def delete(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            _atomic_write_json(self.path, self._document)


def _new_document() -> dict[str, Any]:
    return {
        "version": SECRETS_FILE_VERSION,
        "kdf": {
            "name": "scrypt",
            "salt": base64.b64encode(os.urandom(16)).decode("ascii"),
            "n": SCRYPT_N,
            "r": SCRYPT_R,
            "p": SCRYPT_P,
        },
        "items": {},
    }


def _read_document(path: Path) -> dict[str, Any]:
    document = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(document, dict) or not isinstance(document.get("kdf"), dict):
        raise ValueError(f"{path} is not a voice-alarm secrets file")
    if document.get("version") != SECRETS_FILE_VERSION:
        raise ValueError(f"{path}: unsupported secrets file version {document.get('version')!r}")
    items = document.get("items")
    document["items"] = dict(items) if isinstance(items, dict) else {}
    return document


def _derive_key(passphrase: str, kdf: Mapping[str, Any]) -> bytes:
    scrypt = Scrypt(
        salt=base64.b64decode(kdf["salt"]),
        length=32,
        n=int(kdf.get("n", SCRYPT_N)),
        r=int(kdf.get("r", SCRYPT_R)),
        p=int(kdf.get("p", SCRYPT_P)),
    )
    return base64.urlsafe_b64encode(scrypt.derive(passphrase.encode("utf-8")))


def _atomic_write_json(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    tmp.replace(path)

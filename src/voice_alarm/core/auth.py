from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Protocol


class DeviceAuthenticator(Protocol):
    def authorize(self, device_id: str, token: str | None) -> bool: ...


@dataclass(frozen=True, slots=True)
class AllowAllAuthenticator:
    """Open gate, used when no device token is configured."""

    def authorize(self, device_id: str, token: str | None) -> bool:
        return bool(device_id)


@dataclass(frozen=True, slots=True)
class SharedTokenAuthenticator:
    token: str

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("token must be non-empty")

    def authorize(self, device_id: str, token: str | None) -> bool:
        if not device_id or not token:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self.token.encode("utf-8"))


def extract_token(*, header_token: str | None, query_token: str | None) -> str | None:
    """The ``X-Device-Token`` header wins over the ``?token=`` query parameter."""
    if header_token and header_token.strip():
        return header_token.strip()
    if query_token:
        return query_token
    return None

from __future__ import annotations

import json
from typing import Any

from .events import DeviceAnnouncement


def dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def loads(text: str) -> Any:
    return json.loads(text)


def parse_control_message(text: str) -> DeviceAnnouncement:
    """Parse a device text frame.

    Only ``{"type": "device_id", "deviceId": "..."}`` is understood; anything
    else raises ValueError.
    """
    try:
        obj = loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"control frame is not JSON: {exc.msg}") from exc
    if not isinstance(obj, dict):
        raise ValueError("control frame must be a JSON object")
    if obj.get("type") != "device_id":
        raise ValueError(f"unsupported control frame type: {obj.get('type')!r}")
    device_id = obj.get("deviceId")
    if not isinstance(device_id, str) or not device_id.strip():
        raise ValueError("device_id frame requires a non-empty deviceId")
    return DeviceAnnouncement(device_id=device_id.strip())

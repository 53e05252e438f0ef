"""
Payload handling for device traffic.

Inbound: decode raw MQTT payloads into a plain dict and pull typed fields out
of it. A field that is present but of the wrong shape is dropped with a
warning; it never reaches the registry.

Outbound: pure builders for the discovery/status/state/command payload dicts.
"""

from __future__ import annotations

import json
import logging
import math
import time
from enum import Enum
from typing import Any, Mapping, Optional, TypeVar, Union

from breeze_portal.models import DeviceState

logger = logging.getLogger(__name__)

RAW_MESSAGE_KEY = "raw_message"

E = TypeVar("E", bound=Enum)


class PayloadError(ValueError):
    """Raised when a raw payload cannot be turned into text."""


class FieldValidationError(ValueError):
    """Raised when a payload field does not have the expected type or value."""

    def __init__(self, key: str, value: Any, expected: str) -> None:
        super().__init__(f"field {key!r}: expected {expected}, got {value!r}")
        self.key = key
        self.value = value
        self.expected = expected


def decode_payload(raw: Union[bytes, bytearray, str, None]) -> dict[str, Any]:
    """
    Decode a raw payload.

    JSON objects are returned as-is. Anything else is treated as plain text and
    wrapped as {"raw_message": text}; bare "on"/"off" text (any case, surrounding
    whitespace ignored) additionally yields a "state" field.
    """
    if raw is None:
        text = ""
    elif isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PayloadError(f"payload is not valid UTF-8: {exc}") from exc
    else:
        text = raw

    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        data = None
    if isinstance(data, dict):
        return data

    out: dict[str, Any] = {RAW_MESSAGE_KEY: text}
    word = text.strip().lower()
    if word in (DeviceState.ON.value, DeviceState.OFF.value):
        out["state"] = word
    return out


# -------------------------
# Typed extraction
# -------------------------
def expect_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    """Return payload[key] if it is a non-empty string, None if absent."""
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    if not isinstance(value, str) or not value.strip():
        raise FieldValidationError(key, value, "non-empty string")
    return value


def expect_int(payload: Mapping[str, Any], key: str, *, minimum: Optional[int] = None) -> Optional[int]:
    """
    Return payload[key] as an int if it is numeric, None if absent.
    Floats are rounded; booleans are not numbers here.
    """
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FieldValidationError(key, value, "number")
    if isinstance(value, float) and not math.isfinite(value):
        raise FieldValidationError(key, value, "number")
    number = int(round(value))
    if minimum is not None and number < minimum:
        raise FieldValidationError(key, value, f"number >= {minimum}")
    return number


def expect_enum(payload: Mapping[str, Any], key: str, enum_cls: type[E]) -> Optional[E]:
    """Return the enum member whose value equals payload[key], None if absent."""
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    if isinstance(value, str):
        for member in enum_cls:
            if member.value == value:
                return member
    allowed = "|".join(str(m.value) for m in enum_cls)
    raise FieldValidationError(key, value, allowed)


def expect_bool(payload: Mapping[str, Any], key: str) -> Optional[bool]:
    if key not in payload or payload[key] is None:
        return None
    value = payload[key]
    if not isinstance(value, bool):
        raise FieldValidationError(key, value, "boolean")
    return value


def extract_fields(
    payload: Mapping[str, Any],
    field_map: Mapping[str, tuple[str, Any]],
    *,
    context: str = "",
) -> dict[str, Any]:
    """
    Run several extractors over one payload.

    field_map maps record field -> (payload key, extractor(payload, key)).
    Absent keys are skipped; invalid values are logged and skipped.
    """
    out: dict[str, Any] = {}
    for field_name, (key, extractor) in field_map.items():
        try:
            value = extractor(payload, key)
        except FieldValidationError as exc:
            logger.warning("Dropping invalid field%s: %s", f" ({context})" if context else "", exc)
            continue
        if value is not None:
            out[field_name] = value
    return out


# -------------------------
# Outbound builders
# -------------------------
def now_ms() -> int:
    return int(time.time() * 1000)


def build_discovery(
    device_id: str,
    name: str,
    device_type: str,
    firmware: str,
    ip: str,
    mac: str,
    state: str,
) -> dict[str, Any]:
    """Retained discovery. Contract: id, name, type, firmware, ip, mac, state."""
    return {
        "id": device_id,
        "name": name,
        "type": device_type,
        "firmware": firmware,
        "ip": ip,
        "mac": mac,
        "state": state,
    }


def build_status(
    online: bool,
    wifi_strength: float | int | None = None,
    uptime: int | None = None,
    free_heap: int | None = None,
) -> dict[str, Any]:
    """Status. Contract: online, wifi_strength, uptime, free_heap (telemetry optional)."""
    payload: dict[str, Any] = {"online": online}
    if wifi_strength is not None:
        payload["wifi_strength"] = wifi_strength
    if uptime is not None:
        payload["uptime"] = uptime
    if free_heap is not None:
        payload["free_heap"] = free_heap
    return payload


def build_state(state: str, timestamp_ms: Optional[int] = None) -> dict[str, Any]:
    """State. Contract: state, timestamp (epoch milliseconds)."""
    return {
        "state": state,
        "timestamp": now_ms() if timestamp_ms is None else timestamp_ms,
    }


def build_set_state(state: str) -> dict[str, Any]:
    """Payload for command/set_state."""
    return {"state": state}

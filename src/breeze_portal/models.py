"""
Device record model.

DeviceRecord is immutable; the registry replaces records wholesale on every
merge, so a record handed to a reader never changes underneath it.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class DeviceType(str, Enum):
    ESP32 = "ESP32"
    ESP8266 = "ESP8266"
    ESP32_S3 = "ESP32-S3"
    ESP32_C3 = "ESP32-C3"
    UNKNOWN = "unknown"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class DeviceState(str, Enum):
    ON = "on"
    OFF = "off"

    def flipped(self) -> "DeviceState":
        return DeviceState.OFF if self is DeviceState.ON else DeviceState.ON


DEFAULT_DEVICE_TYPE = DeviceType.ESP32


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_name(device_id: str) -> str:
    return f"Device {device_id}"


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    id: str
    name: str
    type: DeviceType
    status: DeviceStatus
    state: DeviceState
    last_seen: datetime
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    firmware_version: Optional[str] = None
    wifi_strength: Optional[int] = None  # dBm
    uptime: Optional[int] = None  # seconds
    free_heap: Optional[int] = None  # bytes

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly snapshot for presentation layers."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "status": self.status.value,
            "state": self.state.value,
            "last_seen": self.last_seen.isoformat(),
            "ip_address": self.ip_address,
            "mac_address": self.mac_address,
            "firmware_version": self.firmware_version,
            "wifi_strength": self.wifi_strength,
            "uptime": self.uptime,
            "free_heap": self.free_heap,
        }


# Fields a merge-update may touch; id is the primary key and never reassigned.
MUTABLE_FIELDS = frozenset(f.name for f in fields(DeviceRecord)) - {"id"}

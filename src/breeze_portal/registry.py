"""
Device registry: in-memory store of DeviceRecord keyed by device id.

Single source of truth for device state. Every mutation runs under one lock and
swaps in a new immutable record, so a reader never observes a half-applied
update and list() can be iterated while writers proceed.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from breeze_portal.models import (
    DEFAULT_DEVICE_TYPE,
    MUTABLE_FIELDS,
    DeviceRecord,
    DeviceState,
    DeviceStatus,
    DeviceType,
    default_name,
    utc_now,
)

logger = logging.getLogger(__name__)


# Demo devices for an empty dashboard; opt-in via seed().
DEMO_DEVICES: tuple[dict[str, Any], ...] = (
    {
        "id": "esp32-001",
        "name": "Living Room Light",
        "type": DeviceType.ESP32,
        "mac_address": "24:6F:28:12:34:56",
        "firmware_version": "1.0.0",
    },
    {
        "id": "esp8266-001",
        "name": "Kitchen Fan",
        "type": DeviceType.ESP8266,
        "mac_address": "18:FE:34:98:76:54",
        "firmware_version": "1.0.0",
    },
)


_ENUM_FIELDS: dict[str, type[Enum]] = {
    "type": DeviceType,
    "status": DeviceStatus,
    "state": DeviceState,
}


def _clean_partial(partial: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in partial.items():
        if key not in MUTABLE_FIELDS:
            if key != "id":
                logger.debug("Ignoring unknown record field %r", key)
            continue
        if value is None:
            # absent/null never overwrites an existing value
            continue
        enum_cls = _ENUM_FIELDS.get(key)
        if enum_cls is not None:
            try:
                value = enum_cls(value)
            except (ValueError, TypeError):
                allowed = "|".join(str(m.value) for m in enum_cls)
                logger.warning("Dropping invalid record field %r: expected %s, got %r", key, allowed, value)
                continue
        out[key] = value
    return out


class DeviceRegistry:
    """Thread-safe key-value store of DeviceRecord."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._devices: dict[str, DeviceRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._devices

    # -------------------------
    # Read
    # -------------------------
    def get(self, device_id: str) -> Optional[DeviceRecord]:
        with self._lock:
            return self._devices.get(device_id)

    def list(self) -> list[DeviceRecord]:
        """Snapshot of all records ordered by id."""
        with self._lock:
            records = list(self._devices.values())
        return sorted(records, key=lambda r: r.id)

    # -------------------------
    # Write
    # -------------------------
    def _touch(self, previous: Optional[datetime]) -> datetime:
        now = utc_now()
        if previous is not None and now < previous:
            # wall clock stepped backwards; never move last_seen back
            return previous
        return now

    def _create(self, device_id: str, fields: Mapping[str, Any], *, device_type: DeviceType) -> DeviceRecord:
        base: dict[str, Any] = {
            "name": default_name(device_id),
            "type": device_type,
            "status": DeviceStatus.ONLINE,
            "state": DeviceState.OFF,
        }
        base.update(_clean_partial(fields))
        base["last_seen"] = self._touch(None)
        record = DeviceRecord(id=device_id, **base)
        self._devices[device_id] = record
        return record

    def upsert_from_discovery(self, device_id: str, fields: Mapping[str, Any]) -> DeviceRecord:
        """
        Create the record on first discovery, else merge into it.
        Either way the device is marked online. A stub still typed unknown
        takes the default type unless discovery names one.
        """
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is None:
                record = self._create(
                    device_id,
                    {**fields, "status": DeviceStatus.ONLINE},
                    device_type=DEFAULT_DEVICE_TYPE,
                )
                logger.info("New device discovered: %s (%s, %s)", device_id, record.name, record.type.value)
                return record
            changes = _clean_partial(fields)
            changes["status"] = DeviceStatus.ONLINE
            if existing.type is DeviceType.UNKNOWN:
                # stub created by status/state before discovery
                changes.setdefault("type", DEFAULT_DEVICE_TYPE)
            record = self._merge_locked(existing, changes)
            logger.debug("Device rediscovered: %s", device_id)
            return record

    def ensure_stub(self, device_id: str) -> DeviceRecord:
        """Return the record for device_id, creating a minimal one if unknown."""
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is not None:
                return existing
            record = self._create(device_id, {}, device_type=DeviceType.UNKNOWN)
            logger.info("Created stub record for undiscovered device: %s", device_id)
            return record

    def _merge_locked(self, existing: DeviceRecord, partial: Mapping[str, Any]) -> DeviceRecord:
        changes = _clean_partial(partial)
        changes["last_seen"] = self._touch(existing.last_seen)
        record = dataclasses.replace(existing, **changes)
        self._devices[existing.id] = record
        return record

    def merge_update(self, device_id: str, partial: Mapping[str, Any]) -> Optional[DeviceRecord]:
        """
        Apply a partial update. Fields absent from partial (or None) keep their
        value; type/status/state values outside their enum are dropped. last_seen
        is always refreshed. Returns None for an unknown id.
        """
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is None:
                return None
            return self._merge_locked(existing, partial)

    def toggle(self, device_id: str) -> Optional[DeviceRecord]:
        """Flip state on/off. Returns None for an unknown id."""
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is None:
                return None
            return self._merge_locked(existing, {"state": existing.state.flipped()})

    def remove(self, device_id: str) -> bool:
        """Administrative removal. Returns False if the id was unknown."""
        with self._lock:
            removed = self._devices.pop(device_id, None) is not None
        if removed:
            logger.info("Removed device: %s", device_id)
        return removed

    def seed(self, devices: Iterable[Mapping[str, Any]] = DEMO_DEVICES) -> int:
        """
        Pre-populate offline records for devices not yet known.
        Returns how many records were added.
        """
        added = 0
        with self._lock:
            for entry in devices:
                device_id = entry["id"]
                if device_id in self._devices:
                    continue
                fields = {k: v for k, v in entry.items() if k != "id"}
                fields.setdefault("status", DeviceStatus.OFFLINE)
                self._create(device_id, fields, device_type=DEFAULT_DEVICE_TYPE)
                added += 1
        if added:
            logger.info("Seeded %d demo device(s)", added)
        return added

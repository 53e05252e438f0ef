"""
Message reconciler: applies inbound device traffic to the registry.

reconcile() never raises: a message that cannot be applied is logged and
dropped, and the registry is left as it was.

Kinds:
  discovery      create or merge identity fields, force online
  status         online flag + telemetry (wifi_strength, uptime, free_heap)
  state          actuator position; anything but on/off is stored as off
  unrecognized   discovery if the payload carries id/name/type, else status
  command/<name> outbound traffic, ignored here
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from breeze_portal.models import DeviceRecord, DeviceState, DeviceStatus, DeviceType
from breeze_portal.mqtt_topics import MessageKind, parse_topic
from breeze_portal.payloads import (
    FieldValidationError,
    PayloadError,
    decode_payload,
    expect_bool,
    expect_enum,
    expect_int,
    expect_str,
    extract_fields,
)
from breeze_portal.registry import DeviceRegistry

logger = logging.getLogger(__name__)

RawPayload = Union[bytes, bytearray, str, None]

_IDENTITY_KEYS = ("id", "name", "type")

_DISCOVERY_FIELDS = {
    "name": ("name", expect_str),
    "type": ("type", lambda p, k: expect_enum(p, k, DeviceType)),
    "state": ("state", lambda p, k: expect_enum(p, k, DeviceState)),
    "ip_address": ("ip", expect_str),
    "mac_address": ("mac", expect_str),
    "firmware_version": ("firmware", expect_str),
}

_STATUS_FIELDS = {
    "wifi_strength": ("wifi_strength", expect_int),
    "uptime": ("uptime", lambda p, k: expect_int(p, k, minimum=0)),
    "free_heap": ("free_heap", lambda p, k: expect_int(p, k, minimum=0)),
}


def _status_from_online(payload: Mapping[str, Any], device_id: str) -> Optional[DeviceStatus]:
    # true -> online, false -> offline, absent or malformed -> leave as-is
    try:
        online = expect_bool(payload, "online")
    except FieldValidationError as exc:
        logger.warning("Dropping invalid field (%s status): %s", device_id, exc)
        return None
    if online is None:
        return None
    return DeviceStatus.ONLINE if online else DeviceStatus.OFFLINE


class MessageReconciler:
    """Merges decoded device messages into a DeviceRegistry."""

    def __init__(self, registry: DeviceRegistry, *, accept_legacy: bool = False) -> None:
        self.registry = registry
        self.accept_legacy = accept_legacy

    def handle_message(self, topic: str, raw_payload: RawPayload) -> None:
        """Bus callback entry: parse the topic, then reconcile."""
        parsed = parse_topic(topic, accept_legacy=self.accept_legacy)
        if parsed is None:
            logger.warning("Dropping message on unparseable topic: %s", topic)
            return
        if parsed.kind is MessageKind.COMMAND:
            logger.debug("Ignoring command traffic on %s", topic)
            return
        self.reconcile(parsed.device_id, parsed.kind, raw_payload)

    def reconcile(self, device_id: str, kind: Union[MessageKind, str], raw_payload: RawPayload) -> None:
        try:
            self._reconcile(device_id, kind, raw_payload)
        except Exception:
            logger.exception("Failed to reconcile %s message for %s; dropped", kind, device_id)

    def _reconcile(self, device_id: str, kind: Union[MessageKind, str], raw_payload: RawPayload) -> None:
        if not isinstance(device_id, str) or not device_id:
            logger.warning("Dropping message without device id (kind=%s)", kind)
            return

        kind = _coerce_kind(kind)
        if kind is MessageKind.COMMAND:
            logger.debug("Ignoring command message for %s", device_id)
            return

        try:
            payload = decode_payload(raw_payload)
        except PayloadError as exc:
            logger.warning("Dropping %s message for %s: %s", kind.value, device_id, exc)
            return

        logger.debug("Reconciling %s for %s: %s", kind.value, device_id, payload)

        if kind is MessageKind.UNRECOGNIZED:
            kind = MessageKind.DISCOVERY if any(k in payload for k in _IDENTITY_KEYS) else MessageKind.STATUS
            logger.debug("Unrecognized topic suffix for %s treated as %s", device_id, kind.value)

        if kind is MessageKind.DISCOVERY:
            self.apply_discovery(device_id, payload)
        elif kind is MessageKind.STATUS:
            self.apply_status(device_id, payload)
        elif kind is MessageKind.STATE:
            self.apply_state(device_id, payload)

    # -------------------------
    # Per-kind merges
    # -------------------------
    def apply_discovery(self, device_id: str, payload: Mapping[str, Any]) -> DeviceRecord:
        try:
            record_id = expect_str(payload, "id") or device_id
        except FieldValidationError as exc:
            logger.warning("Dropping invalid field (%s discovery): %s", device_id, exc)
            record_id = device_id
        if record_id != device_id:
            logger.info("Discovery on topic for %s announces id %s", device_id, record_id)

        fields = extract_fields(payload, _DISCOVERY_FIELDS, context=f"{record_id} discovery")
        return self.registry.upsert_from_discovery(record_id, fields)

    def apply_status(self, device_id: str, payload: Mapping[str, Any]) -> Optional[DeviceRecord]:
        fields: dict[str, Any] = extract_fields(payload, _STATUS_FIELDS, context=f"{device_id} status")
        status = _status_from_online(payload, device_id)
        if status is not None:
            fields["status"] = status
        return self._merge_or_stub(device_id, fields)

    def apply_state(self, device_id: str, payload: Mapping[str, Any]) -> Optional[DeviceRecord]:
        value = payload.get("state")
        if isinstance(value, str) and value in (DeviceState.ON.value, DeviceState.OFF.value):
            state = DeviceState(value)
        else:
            # anything but on/off resolves to off
            logger.warning("Invalid state %r for %s; storing 'off'", value, device_id)
            state = DeviceState.OFF
        return self._merge_or_stub(device_id, {"state": state})

    def _merge_or_stub(self, device_id: str, fields: Mapping[str, Any]) -> Optional[DeviceRecord]:
        record = self.registry.merge_update(device_id, fields)
        if record is not None:
            return record
        # state/status may win the race against discovery
        self.registry.ensure_stub(device_id)
        return self.registry.merge_update(device_id, fields)


def _coerce_kind(kind: Union[MessageKind, str]) -> MessageKind:
    if isinstance(kind, MessageKind):
        return kind
    if isinstance(kind, str):
        if kind.startswith("command/") or kind == MessageKind.COMMAND.value:
            return MessageKind.COMMAND
        try:
            return MessageKind(kind)
        except ValueError:
            return MessageKind.UNRECOGNIZED
    return MessageKind.UNRECOGNIZED

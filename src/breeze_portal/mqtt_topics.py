"""
MQTT topic schema for Breeze devices.

Current layout, all under <namespace>/devices/<device_id>/:
  discovery          retained identity announcement (device -> portal)
  status             periodic telemetry (device -> portal)
  state              actuator position (either side)
  command/<name>     operator request (portal -> device)

Legacy layout <namespace>/<device_id>/<kind> is accepted by parse_topic() only
when asked for; by default a topic must carry the devices segment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

DEVICES_SEGMENT = "devices"
COMMAND_SEGMENT = "command"
_FORBIDDEN = ("/", "+", "#")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


class MessageKind(str, Enum):
    DISCOVERY = "discovery"
    STATUS = "status"
    STATE = "state"
    COMMAND = "command"
    UNRECOGNIZED = "unrecognized"


_KNOWN_KINDS = {
    MessageKind.DISCOVERY.value: MessageKind.DISCOVERY,
    MessageKind.STATUS.value: MessageKind.STATUS,
    MessageKind.STATE.value: MessageKind.STATE,
}


def _validate_segment(name: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise TopicSchemaError(f"{name} must be a non-empty string")
    if any(ch in value for ch in _FORBIDDEN):
        raise TopicSchemaError(f"{name} '{value}' is invalid; '/', '+' and '#' are not allowed")
    return value


@dataclass(frozen=True, slots=True)
class ParsedTopic:
    device_id: str
    kind: MessageKind
    suffix: str  # raw trailing segment, e.g. "status" or "heartbeat"
    command: Optional[str] = None
    legacy: bool = False

    @property
    def kind_label(self) -> str:
        if self.kind is MessageKind.COMMAND:
            return f"command/{self.command}"
        if self.kind is MessageKind.UNRECOGNIZED:
            return self.suffix
        return self.kind.value


def parse_topic(topic: str, *, accept_legacy: bool = False) -> Optional[ParsedTopic]:
    """
    Extract device id and message kind from a topic string.

    <ns>/devices/<id>/.../<kind> -> id is segment 3, kind is the last segment.
    <ns>/<id>/.../<kind>         -> id is segment 2 (only with accept_legacy).
    A second-to-last segment of "command" marks a command/<name> topic.

    Returns None (and logs) when the topic cannot yield a device id.
    """
    if not isinstance(topic, str):
        logger.warning("Topic parse failed: not a string (%r)", topic)
        return None

    parts = topic.split("/")
    if len(parts) < 3 or any(not p for p in parts):
        logger.warning("Topic parse failed: too few segments in %r", topic)
        return None

    legacy = parts[1] != DEVICES_SEGMENT
    if legacy and not accept_legacy:
        logger.warning("Topic parse failed: %r is not under <ns>/%s/", topic, DEVICES_SEGMENT)
        return None
    if legacy:
        device_id = parts[1]
        rest = parts[2:]
    else:
        if len(parts) < 4:
            logger.warning("Topic parse failed: no kind after device id in %r", topic)
            return None
        device_id = parts[2]
        rest = parts[3:]

    suffix = rest[-1]
    if len(rest) >= 2 and rest[-2] == COMMAND_SEGMENT:
        return ParsedTopic(device_id, MessageKind.COMMAND, suffix, command=suffix, legacy=legacy)

    kind = _KNOWN_KINDS.get(suffix, MessageKind.UNRECOGNIZED)
    return ParsedTopic(device_id, kind, suffix, legacy=legacy)


@dataclass(frozen=True, slots=True)
class TopicSchema:
    """
    Topic builders for one namespace.
    Root: <namespace>/devices
    """

    namespace: str

    def __post_init__(self) -> None:
        _validate_segment("namespace", self.namespace)

    @property
    def base(self) -> str:
        return f"{self.namespace}/{DEVICES_SEGMENT}"

    def device_base(self, device_id: str) -> str:
        _validate_segment("device_id", device_id)
        return f"{self.base}/{device_id}"

    # -------------------------
    # Device -> portal
    # -------------------------
    def discovery(self, device_id: str) -> str:
        return f"{self.device_base(device_id)}/discovery"

    def status(self, device_id: str) -> str:
        return f"{self.device_base(device_id)}/status"

    def state(self, device_id: str) -> str:
        return f"{self.device_base(device_id)}/state"

    # -------------------------
    # Portal -> device
    # -------------------------
    def command(self, device_id: str, name: str) -> str:
        _validate_segment("command", name)
        return f"{self.device_base(device_id)}/{COMMAND_SEGMENT}/{name}"

    def command_wildcard(self, device_id: str) -> str:
        """Subscription filter for every command addressed to one device."""
        return f"{self.device_base(device_id)}/{COMMAND_SEGMENT}/+"

    # -------------------------
    # Portal subscriptions
    # -------------------------
    def portal_filters(self, include_legacy: bool = False) -> list[str]:
        """
        Filters the portal listens on: every current-layout device topic, plus
        the legacy <ns>/<id>/<kind> layout when include_legacy is set. Command
        topics are five levels deep and match neither filter, so the portal
        never consumes its own commands.
        """
        filters = [f"{self.base}/+/+"]
        if include_legacy:
            filters.append(f"{self.namespace}/+/+")
        return filters

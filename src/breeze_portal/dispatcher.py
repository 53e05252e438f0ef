"""
Command dispatcher: publishes operator commands to one device.

A command is a request, not a state transition: the registry is only updated
when the device echoes a state message back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from breeze_portal.models import DeviceState
from breeze_portal.mqtt_topics import TopicSchema, TopicSchemaError
from breeze_portal.payloads import build_set_state
from breeze_portal.registry import DeviceRegistry

logger = logging.getLogger(__name__)

SET_STATE = "set_state"


class MqttPublisher(Protocol):
    """Minimal bus interface the dispatcher needs."""

    def is_connected(self) -> bool:
        ...

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> bool:
        ...


@dataclass
class CommandDispatcher:
    """
    Provides:
    - send_command(device_id, name, payload) -> bool
    - set_state / toggle helpers built on set_state
    """

    bus: MqttPublisher
    topics: TopicSchema
    registry: DeviceRegistry
    qos: int = 1

    def send_command(self, device_id: str, command: str, payload: Optional[dict[str, Any]] = None) -> bool:
        """
        Publish payload to <ns>/devices/<device_id>/command/<command>.
        Returns False (and logs) for an unknown device, an invalid topic, or a
        bus that is not connected. No queuing, no retry.
        """
        if self.registry.get(device_id) is None:
            logger.error("Command %s rejected: unknown device %s", command, device_id)
            return False
        try:
            topic = self.topics.command(device_id, command)
        except TopicSchemaError as exc:
            logger.error("Command %s for %s rejected: %s", command, device_id, exc)
            return False
        if not self.bus.is_connected():
            logger.error("Command %s for %s not sent: MQTT client not connected", command, device_id)
            return False

        ok = self.bus.publish(topic, payload or {}, qos=self.qos, retain=False)
        if ok:
            logger.info("Published command to %s: %s", topic, payload or {})
        else:
            logger.error("Failed to publish command to %s", topic)
        return ok

    def set_state(self, device_id: str, state: Union[DeviceState, str]) -> bool:
        try:
            target = DeviceState(state)
        except ValueError:
            logger.error("set_state for %s rejected: invalid state %r", device_id, state)
            return False
        return self.send_command(device_id, SET_STATE, build_set_state(target.value))

    def toggle(self, device_id: str) -> bool:
        """Request the opposite of the registry's current state."""
        record = self.registry.get(device_id)
        if record is None:
            logger.error("Toggle rejected: unknown device %s", device_id)
            return False
        return self.set_state(device_id, record.state.flipped())

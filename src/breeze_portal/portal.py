"""
Portal runtime: the server side of the device protocol.

Owns one DeviceRegistry and wires it to the bus: inbound device traffic flows
through the MessageReconciler, outbound commands through the CommandDispatcher.
list_devices / get_device / send_command are the only calls presentation
layers (dashboard, HTTP API) need.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from breeze_portal.config import PortalConfig
from breeze_portal.dispatcher import CommandDispatcher
from breeze_portal.models import DeviceRecord, DeviceStatus
from breeze_portal.mqtt_client import MqttBus, random_client_id
from breeze_portal.mqtt_topics import TopicSchema
from breeze_portal.reconciler import MessageReconciler
from breeze_portal.registry import DeviceRegistry

logger = logging.getLogger(__name__)


class Portal:
    def __init__(
        self,
        cfg: PortalConfig,
        *,
        registry: Optional[DeviceRegistry] = None,
        bus: Optional[MqttBus] = None,
    ) -> None:
        self.cfg = cfg
        self.topics = TopicSchema(cfg.namespace)
        self.registry = registry if registry is not None else DeviceRegistry()
        self.bus = bus if bus is not None else MqttBus(
            cfg.mqtt_host,
            cfg.mqtt_port,
            client_id=random_client_id(f"{cfg.namespace}_server"),
            username=cfg.mqtt_username,
            password=cfg.mqtt_password,
            publish_timeout_s=cfg.publish_timeout_s,
        )
        self.reconciler = MessageReconciler(self.registry, accept_legacy=cfg.legacy_topics)
        self.dispatcher = CommandDispatcher(self.bus, self.topics, self.registry)

        if cfg.seed_devices:
            self.registry.seed()

    def start(self) -> bool:
        """Register device subscriptions and start connecting."""
        for topic_filter in self.topics.portal_filters(include_legacy=self.cfg.legacy_topics):
            self.bus.subscribe(topic_filter, self.reconciler.handle_message, qos=1)
        if not self.bus.connect():
            logger.error("MQTT connection could not be started")
            return False
        return True

    def stop(self) -> None:
        try:
            self.bus.close()
        except Exception:
            logger.exception("Error disconnecting MQTT")
        logger.info("Portal stopped with %d known device(s)", len(self.registry))

    # -------------------------
    # Registry-facing API
    # -------------------------
    def list_devices(self) -> list[DeviceRecord]:
        return self.registry.list()

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        return self.registry.get(device_id)

    def send_command(self, device_id: str, command: str, payload: Optional[dict[str, Any]] = None) -> bool:
        return self.dispatcher.send_command(device_id, command, payload)

    def summary(self) -> str:
        devices = self.registry.list()
        online = sum(1 for d in devices if d.status is DeviceStatus.ONLINE)
        return f"{len(devices)} device(s), {online} online"

"""
ESP device emulator: the device side of the Breeze protocol.

Lifecycle per emulated device:

    OFFLINE --go_online()--> CONNECTING --handshake--> ONLINE
       ^                                                  |
       +------------- go_offline() / connection lost -----+

On every handshake the device subscribes to its command topic, publishes a
retained discovery message, then an initial status. While online it reports
status every status interval, and in auto mode occasionally toggles its state
or drops off the network for a few seconds.

The actuator state is mirrored into a signal file under the runtime dir.
Writing "on" or "off" into that file from another process overrides the state
on the next status tick.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from breeze_portal.config import PortalConfig
from breeze_portal.models import DeviceState, DeviceType
from breeze_portal.mqtt_client import LastWill, MqttBus
from breeze_portal.mqtt_topics import MessageKind, TopicSchema, parse_topic
from breeze_portal.paths import Paths, ensure_dirs, get_paths
from breeze_portal.payloads import (
    PayloadError,
    build_discovery,
    build_state,
    build_status,
    decode_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_FIRMWARE = "1.0.0"
INITIAL_WIFI_DBM = -50
WIFI_MIN_DBM = -80
WIFI_MAX_DBM = -30
HEAP_BASE = 200_000
HEAP_SPREAD = 100_000
AUTO_TOGGLE_PROBABILITY = 0.10
AUTO_FLAP_PROBABILITY = 0.01
FLAP_PAUSE_S = 5.0

BusFactory = Callable[[str, LastWill], MqttBus]


class EmulatorState(str, Enum):
    OFFLINE = "offline"
    CONNECTING = "connecting"
    ONLINE = "online"


def generate_ip(rng: random.Random) -> str:
    return f"192.168.1.{100 + rng.randrange(50)}"


def generate_mac(rng: random.Random) -> str:
    return ":".join(f"{rng.randrange(256):02X}" for _ in range(6))


class DeviceEmulator:
    """One simulated ESP device talking to the broker over its own bus connection."""

    def __init__(
        self,
        cfg: PortalConfig,
        device_id: str,
        name: Optional[str] = None,
        device_type: str = DeviceType.ESP32.value,
        *,
        firmware: str = DEFAULT_FIRMWARE,
        auto_mode: bool = False,
        rng: Optional[random.Random] = None,
        bus_factory: Optional[BusFactory] = None,
        paths: Optional[Paths] = None,
    ) -> None:
        self.cfg = cfg
        self.topics = TopicSchema(cfg.namespace)
        # validates device_id as a topic segment
        self.command_filter = self.topics.command_wildcard(device_id)

        self.device_id = device_id
        self.name = name or f"ESP Device {device_id}"
        self.device_type = device_type
        self.firmware = firmware
        self.auto_mode = auto_mode
        self.status_interval_s = cfg.status_interval_s

        self._rng = rng or random.Random()
        self._bus_factory = bus_factory or self._default_bus
        self._paths = paths

        self.state = DeviceState.OFF
        self.wifi_strength = INITIAL_WIFI_DBM
        self.uptime = 0
        self.free_heap = HEAP_BASE
        self.ip_address: Optional[str] = None
        self.mac_address: Optional[str] = None

        self._lock = threading.RLock()
        self._lifecycle = EmulatorState.OFFLINE
        self._bus: Optional[MqttBus] = None
        self._status_thread: Optional[threading.Thread] = None
        self._status_stop: Optional[threading.Event] = None

    def _default_bus(self, client_id: str, will: LastWill) -> MqttBus:
        return MqttBus(
            self.cfg.mqtt_host,
            self.cfg.mqtt_port,
            client_id=client_id,
            username=self.cfg.mqtt_username,
            password=self.cfg.mqtt_password,
            publish_timeout_s=self.cfg.publish_timeout_s,
            will=will,
        )

    # -------------------------
    # Introspection
    # -------------------------
    @property
    def lifecycle(self) -> EmulatorState:
        with self._lock:
            return self._lifecycle

    @property
    def is_online(self) -> bool:
        return self.lifecycle is EmulatorState.ONLINE

    @property
    def signal_path(self) -> Path:
        return (self._paths or get_paths()).state_signal_path(self.device_id)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "id": self.device_id,
                "name": self.name,
                "type": self.device_type,
                "state": self.state.value,
                "status": self._lifecycle.value,
                "ip": self.ip_address,
                "mac": self.mac_address,
                "wifi_strength": self.wifi_strength,
                "uptime": self.uptime,
                "free_heap": self.free_heap,
                "auto_mode": self.auto_mode,
            }

    # -------------------------
    # Lifecycle
    # -------------------------
    def go_online(self) -> bool:
        """
        OFFLINE -> CONNECTING. Generates a fresh IP/MAC and starts the bus
        handshake; the ONLINE transition happens in the connect callback.
        """
        with self._lock:
            if self._lifecycle is not EmulatorState.OFFLINE:
                logger.warning("[%s] go_online ignored: already %s", self.device_id, self._lifecycle.value)
                return False
            self.ip_address = generate_ip(self._rng)
            self.mac_address = generate_mac(self._rng)
            self._lifecycle = EmulatorState.CONNECTING

            will = LastWill(self.topics.status(self.device_id), build_status(False), qos=1)
            bus = self._bus_factory(f"{self.device_id}_emulator_{uuid.uuid4().hex[:8]}", will)
            bus.add_connect_listener(self._handle_connected)
            bus.add_disconnect_listener(self._handle_disconnected)
            self._bus = bus

        logger.info("[%s] Connecting (ip=%s mac=%s)", self.device_id, self.ip_address, self.mac_address)
        if not bus.connect():
            with self._lock:
                if self._bus is bus:
                    self._bus = None
                    self._lifecycle = EmulatorState.OFFLINE
            bus.close()
            logger.error("[%s] Cannot connect to MQTT broker at %s:%s", self.device_id, self.cfg.mqtt_host, self.cfg.mqtt_port)
            return False
        return True

    def go_offline(self, *, graceful: bool = True) -> bool:
        """
        Leave the network: unsubscribe, announce offline (when graceful and
        still connected), close the bus and remove the signal file.
        """
        with self._lock:
            if self._lifecycle is EmulatorState.OFFLINE:
                logger.warning("[%s] go_offline ignored: already offline", self.device_id)
                return False
            bus = self._bus
            self._bus = None
            self._lifecycle = EmulatorState.OFFLINE

        self._stop_status_loop()
        if bus is not None:
            if graceful and bus.is_connected():
                bus.unsubscribe(self.command_filter)
                bus.publish(self.topics.status(self.device_id), build_status(False), qos=1)
            bus.close()
        self._clear_signal_file()
        logger.info("[%s] Device is now OFFLINE", self.device_id)
        return True

    def close(self) -> None:
        if self.lifecycle is not EmulatorState.OFFLINE:
            self.go_offline()

    def _handle_connected(self) -> None:
        # Runs on the network thread: never wait for acks here.
        with self._lock:
            bus = self._bus
            if bus is None or self._lifecycle is EmulatorState.OFFLINE:
                return
            self._lifecycle = EmulatorState.ONLINE

        bus.subscribe(self.command_filter, self._handle_command_message, qos=1)
        self.send_discovery(wait_for_ack=False)
        self.send_status(wait_for_ack=False)
        self._write_signal_file()
        self._start_status_loop()
        logger.info("[%s] Device is now ONLINE", self.device_id)

    def _handle_disconnected(self, expected: bool) -> None:
        if expected:
            return
        with self._lock:
            if self._lifecycle is EmulatorState.OFFLINE:
                return
        logger.warning("[%s] Connection lost; going offline", self.device_id)
        # go_offline joins the bus loop thread, so it cannot run on it
        threading.Thread(
            target=self.go_offline,
            kwargs={"graceful": False},
            daemon=True,
            name=f"emulator-drop-{self.device_id}",
        ).start()

    # -------------------------
    # Publishing
    # -------------------------
    def _publish(self, topic: str, payload: dict[str, Any], *, qos: int, retain: bool = False, wait_for_ack: bool = True) -> bool:
        with self._lock:
            bus = self._bus
        if bus is None:
            logger.debug("[%s] Not publishing to %s: offline", self.device_id, topic)
            return False
        return bus.publish(topic, payload, qos=qos, retain=retain, wait_for_ack=wait_for_ack)

    def send_discovery(self, *, wait_for_ack: bool = True) -> bool:
        payload = build_discovery(
            self.device_id,
            self.name,
            self.device_type,
            self.firmware,
            self.ip_address or "",
            self.mac_address or "",
            self.state.value,
        )
        ok = self._publish(self.topics.discovery(self.device_id), payload, qos=1, retain=True, wait_for_ack=wait_for_ack)
        if ok:
            logger.info("[%s] Discovery message sent", self.device_id)
        return ok

    def send_status(self, *, wait_for_ack: bool = True) -> bool:
        payload = build_status(True, self.wifi_strength, self.uptime, self.free_heap)
        return self._publish(self.topics.status(self.device_id), payload, qos=0, wait_for_ack=wait_for_ack)

    def send_state(self, *, wait_for_ack: bool = True) -> bool:
        ok = self._publish(
            self.topics.state(self.device_id),
            build_state(self.state.value),
            qos=1,
            wait_for_ack=wait_for_ack,
        )
        if ok:
            logger.info("[%s] State updated to: %s", self.device_id, self.state.value)
        return ok

    # -------------------------
    # Actuator
    # -------------------------
    def apply_state(self, state: DeviceState) -> bool:
        """Set the actuator position and report it."""
        with self._lock:
            self.state = state
        self._write_signal_file()
        return self.send_state()

    def toggle_state(self) -> bool:
        if not self.is_online:
            logger.warning("[%s] Device must be online to toggle state", self.device_id)
            return False
        return self.apply_state(self.state.flipped())

    def _handle_command_message(self, topic: str, raw: bytes) -> None:
        parsed = parse_topic(topic)
        if parsed is None or parsed.kind is not MessageKind.COMMAND or parsed.device_id != self.device_id:
            logger.warning("[%s] Ignoring message on %s", self.device_id, topic)
            return
        try:
            data = decode_payload(raw)
        except PayloadError as exc:
            logger.warning("[%s] Dropping command %s: %s", self.device_id, parsed.command, exc)
            return
        self.handle_command(parsed.command or "", data)

    def handle_command(self, command: str, data: dict[str, Any]) -> bool:
        logger.info("[%s] Received command: %s %s", self.device_id, command, data)
        if command == "set_state":
            value = data.get("state")
            try:
                target = DeviceState(value)
            except ValueError:
                logger.warning("[%s] set_state with invalid state %r ignored", self.device_id, value)
                return False
            return self.apply_state(target)
        if command == "toggle":
            return self.apply_state(self.state.flipped())
        logger.warning("[%s] Unknown command: %s", self.device_id, command)
        return False

    # -------------------------
    # Periodic reporting
    # -------------------------
    def update_metrics(self) -> None:
        with self._lock:
            self.uptime += int(self.status_interval_s)
            self.free_heap = HEAP_BASE + self._rng.randrange(HEAP_SPREAD)
            wifi = self.wifi_strength + self._rng.randint(-5, 4)
            self.wifi_strength = max(WIFI_MIN_DBM, min(WIFI_MAX_DBM, wifi))

    def check_remote_state(self) -> bool:
        """Adopt a state written into the signal file by another process."""
        path = self.signal_path
        try:
            raw = path.read_text(encoding="utf-8").strip().lower()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("[%s] Cannot read signal file %s: %s", self.device_id, path, exc)
            return False
        if raw not in (DeviceState.ON.value, DeviceState.OFF.value) or raw == self.state.value:
            return False
        logger.info("[%s] Local override: state -> %s", self.device_id, raw)
        self.apply_state(DeviceState(raw))
        return True

    def run_auto_mode(self) -> None:
        if not self.auto_mode or not self.is_online:
            return
        if self._rng.random() < AUTO_TOGGLE_PROBABILITY:
            self.toggle_state()
        if self._rng.random() < AUTO_FLAP_PROBABILITY:
            threading.Thread(target=self.flap, daemon=True, name=f"emulator-flap-{self.device_id}").start()

    def flap(self, pause_s: float = FLAP_PAUSE_S) -> None:
        """Drop off the network, wait, come back with a new identity."""
        logger.info("[%s] Auto mode: simulating network flap", self.device_id)
        if not self.go_offline():
            return
        time.sleep(pause_s)
        self.go_online()

    def tick(self) -> None:
        """One status interval: metrics, status report, local override, auto mode."""
        if not self.is_online:
            return
        self.update_metrics()
        self.send_status()
        self.check_remote_state()
        self.run_auto_mode()

    def _start_status_loop(self) -> None:
        with self._lock:
            if self._status_thread is not None and self._status_thread.is_alive():
                return
            stop = threading.Event()
            thread = threading.Thread(
                target=self._status_loop,
                args=(stop,),
                daemon=True,
                name=f"emulator-status-{self.device_id}",
            )
            self._status_stop = stop
            self._status_thread = thread
        thread.start()

    def _stop_status_loop(self) -> None:
        with self._lock:
            stop, thread = self._status_stop, self._status_thread
            self._status_stop = None
            self._status_thread = None
        if stop is not None:
            stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _status_loop(self, stop: threading.Event) -> None:
        while not stop.wait(timeout=self.status_interval_s):
            try:
                self.tick()
            except Exception:
                logger.exception("[%s] Status tick failed", self.device_id)

    # -------------------------
    # Signal file
    # -------------------------
    def _write_signal_file(self) -> None:
        path = self.signal_path
        try:
            ensure_dirs(self._paths or get_paths())
            path.write_text(self.state.value, encoding="utf-8")
        except OSError as exc:
            logger.warning("[%s] Cannot write signal file %s: %s", self.device_id, path, exc)

    def _clear_signal_file(self) -> None:
        try:
            self.signal_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("[%s] Cannot remove signal file: %s", self.device_id, exc)

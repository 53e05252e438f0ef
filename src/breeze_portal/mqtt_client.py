"""
MQTT bus adapter for Breeze Portal processes.

Wraps a paho client: connect (with automatic reconnect), subscribe with a
per-filter handler, publish (optionally awaiting the QoS ack), disconnect.
Subscriptions are replayed on every (re)connect. Inbound messages are handed to
a single-worker executor, so handlers run one at a time, in arrival order, off
the network thread.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]
ConnectionListener = Callable[[], None]

DEFAULT_KEEPALIVE = 60
RECONNECT_MIN_DELAY_S = 1
RECONNECT_MAX_DELAY_S = 30


class TransportError(RuntimeError):
    """Raised when a bus operation cannot be attempted at all."""


@dataclass(frozen=True, slots=True)
class LastWill:
    topic: str
    payload: Any
    qos: int = 1
    retain: bool = False


def random_client_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _encode(payload: Any) -> Any:
    if isinstance(payload, (dict, list)):
        return json.dumps(payload)
    return payload


class MqttBus:
    """
    Publish/subscribe adapter. Publish and subscribe fail closed: when the bus is
    not connected they log and return False instead of raising.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        client_id: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = DEFAULT_KEEPALIVE,
        publish_timeout_s: float = 5.0,
        will: Optional[LastWill] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self.username = username
        self.password = password
        self.keepalive = keepalive
        self.publish_timeout_s = publish_timeout_s
        self.will = will

        self._client: Optional[mqtt.Client] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-rx")
        self._lock = threading.Lock()
        self._subscriptions: dict[str, tuple[MessageHandler, int]] = {}
        self._connected = threading.Event()
        self._on_connected: list[ConnectionListener] = []
        self._on_disconnected: list[Callable[[bool], None]] = []

    # -------------------------
    # Listeners
    # -------------------------
    def add_connect_listener(self, fn: ConnectionListener) -> None:
        """Called on the network thread after every successful handshake."""
        self._on_connected.append(fn)

    def add_disconnect_listener(self, fn: Callable[[bool], None]) -> None:
        """Called with expected=True for a requested disconnect, False for a drop."""
        self._on_disconnected.append(fn)

    # -------------------------
    # Lifecycle
    # -------------------------
    def connect(self) -> bool:
        """
        Start connecting in the background. Returns False only if the client
        could not be set up; use wait_until_connected() to await the handshake.
        """
        if self._client is not None:
            logger.debug("connect() called while client exists (%s)", self.client_id)
            return True
        try:
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.client_id,
                protocol=mqtt.MQTTv311,
                clean_session=True,
            )
            if self.username:
                client.username_pw_set(self.username, self.password)
            if self.will is not None:
                client.will_set(
                    self.will.topic,
                    payload=_encode(self.will.payload),
                    qos=self.will.qos,
                    retain=self.will.retain,
                )
            client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY_S, max_delay=RECONNECT_MAX_DELAY_S)

            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message

            client.connect_async(self.host, self.port, keepalive=self.keepalive)
            client.loop_start()

            self._client = client
            logger.info("Connecting to MQTT broker %s:%s as %s", self.host, self.port, self.client_id)
            return True
        except Exception:
            logger.exception("Failed to start MQTT client for %s:%s", self.host, self.port)
            return False

    def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        return self._connected.wait(timeout)

    def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            client.disconnect()
            client.loop_stop()
        finally:
            self._client = None
            self._connected.clear()

    def close(self) -> None:
        """Disconnect and stop the handler executor. The bus cannot be reused."""
        self.disconnect()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def is_connected(self) -> bool:
        return bool(self._client and self._connected.is_set() and self._client.is_connected())

    def _require_connected(self) -> mqtt.Client:
        client = self._client
        if client is None or not self.is_connected():
            raise TransportError("MQTT client not connected")
        return client

    # -------------------------
    # Pub/sub
    # -------------------------
    def subscribe(self, topic_filter: str, handler: MessageHandler, *, qos: int = 1) -> bool:
        """
        Register handler for topic_filter. The subscription is remembered and
        replayed on reconnect; returns False if it could not be sent right now.
        """
        with self._lock:
            self._subscriptions[topic_filter] = (handler, qos)
        try:
            client = self._require_connected()
        except TransportError:
            logger.debug("Subscription to %s deferred until connected", topic_filter)
            return False
        result, _mid = client.subscribe(topic_filter, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Subscribe failed topic=%s rc=%s", topic_filter, result)
            return False
        logger.info("Subscribed: %s", topic_filter)
        return True

    def unsubscribe(self, topic_filter: str) -> bool:
        with self._lock:
            self._subscriptions.pop(topic_filter, None)
        try:
            result, _mid = self._require_connected().unsubscribe(topic_filter)
        except TransportError:
            return False
        except Exception as exc:
            logger.warning("Failed to unsubscribe %s: %s", topic_filter, exc)
            return False
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Unsubscribe failed topic=%s rc=%s", topic_filter, result)
            return False
        logger.info("Unsubscribed: %s", topic_filter)
        return True

    def publish(
        self,
        topic: str,
        payload: Any,
        *,
        qos: int = 0,
        retain: bool = False,
        wait_for_ack: bool = True,
    ) -> bool:
        """
        Publish payload (dicts/lists are JSON-encoded). With qos > 0 and a
        non-zero publish timeout, blocks until the broker acknowledges.
        Returns False on any failure; never raises.
        """
        try:
            client = self._require_connected()
        except TransportError as exc:
            logger.error("Publish to %s failed: %s", topic, exc)
            return False
        try:
            info = client.publish(topic, payload=_encode(payload), qos=qos, retain=retain)
        except Exception:
            logger.exception("Publish to %s raised", topic)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Publish to %s failed rc=%s", topic, info.rc)
            return False

        if qos > 0 and wait_for_ack and self.publish_timeout_s > 0:
            try:
                info.wait_for_publish(timeout=self.publish_timeout_s)
            except (RuntimeError, ValueError) as exc:
                # paho raises when the connection goes away while waiting
                logger.error("Publish to %s aborted: %s", topic, exc)
                return False
            if not info.is_published():
                logger.error("Publish to %s not acknowledged within %.1fs", topic, self.publish_timeout_s)
                return False

        logger.debug("Published %s retain=%s qos=%s", topic, retain, qos)
        return True

    # -------------------------
    # paho callbacks
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if reason_code != 0:
            logger.error("MQTT connect failed rc=%s", reason_code)
            return

        logger.info("Connected to MQTT broker %s:%s as %s", self.host, self.port, self.client_id)
        self._connected.set()

        # Iterate over a copy to avoid RuntimeError if handlers are added concurrently
        with self._lock:
            subscriptions = list(self._subscriptions.items())
        for topic_filter, (_handler, qos) in subscriptions:
            client.subscribe(topic_filter, qos=qos)
            logger.info("Subscribed: %s", topic_filter)

        for listener in list(self._on_connected):
            try:
                listener()
            except Exception:
                logger.exception("Connect listener failed")

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        self._connected.clear()
        expected = reason_code == 0
        if expected:
            logger.info("Disconnected from MQTT broker (%s)", self.client_id)
        else:
            logger.warning("Unexpected disconnect rc=%s (%s); reconnecting", reason_code, self.client_id)
        for listener in list(self._on_disconnected):
            try:
                listener(expected)
            except Exception:
                logger.exception("Disconnect listener failed")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        with self._lock:
            handlers = [
                handler
                for topic_filter, (handler, _qos) in self._subscriptions.items()
                if mqtt.topic_matches_sub(topic_filter, msg.topic)
            ]
        if not handlers:
            logger.warning("Unhandled topic: %s", msg.topic)
            return
        payload = bytes(msg.payload)
        for handler in handlers:
            self._executor.submit(self._run_handler, handler, msg.topic, payload)

    @staticmethod
    def _run_handler(handler: MessageHandler, topic: str, payload: bytes) -> None:
        try:
            handler(topic, payload)
        except Exception:
            logger.exception("Message handler failed for topic=%s", topic)

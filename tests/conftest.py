"""
Pytest configuration and shared fixtures
"""
import json
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import paho.mqtt.client as mqtt  # noqa: E402

from breeze_portal.config import PortalConfig  # noqa: E402
from breeze_portal.paths import build_paths, reset_paths, set_paths  # noqa: E402
from breeze_portal.registry import DeviceRegistry  # noqa: E402


@pytest.fixture
def portal_config():
    """Config with a status interval long enough that no tick fires during a test"""
    return PortalConfig(
        mqtt_host="localhost",
        mqtt_port=1883,
        mqtt_username=None,
        mqtt_password=None,
        namespace="breeze",
        status_interval_s=3600.0,
        publish_timeout_s=0.0,
        seed_devices=False,
        version="0.0.0-test",
        legacy_topics=False,
    )


@pytest.fixture
def registry():
    return DeviceRegistry()


@pytest.fixture
def tmp_paths(tmp_path):
    """Route runtime files (emulator signal files) under tmp_path"""
    paths = build_paths(tmp_path)
    set_paths(paths)
    try:
        yield paths
    finally:
        reset_paths()


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.subscribe.return_value = (0, 1)  # (rc, mid)
    fake.unsubscribe.return_value = (0, 2)

    info = MagicMock()
    info.rc = 0
    info.is_published.return_value = True
    fake.publish.return_value = info

    def _ctor(*args, **kwargs):
        fake.ctor_args = args
        fake.ctor_kwargs = kwargs
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def sync_executor(monkeypatch):
    """Patch the bus executor so message handlers run inline"""
    submit_calls = []

    class FakeExecutor:
        def __init__(self, *a, **k):
            pass

        def submit(self, fn, *args):
            submit_calls.append((fn, args))
            fn(*args)

        def shutdown(self, *a, **k):
            pass

    monkeypatch.setattr("breeze_portal.mqtt_client.ThreadPoolExecutor", FakeExecutor)
    return submit_calls


class FakeBroker:
    """Synchronous in-memory broker connecting FakeBus instances"""

    def __init__(self):
        self.buses = []
        self.published = []
        self.retained = {}

    def route(self, topic, payload, retain):
        self.published.append((topic, payload))
        if retain:
            self.retained[topic] = payload
        for bus in list(self.buses):
            if bus.connected:
                bus.deliver(topic, payload)


class FakeBus:
    """MqttBus stand-in: records traffic, handshakes on demand"""

    def __init__(self, broker=None, client_id="fake", will=None):
        self.broker = broker
        self.client_id = client_id
        self.will = will
        self.connected = False
        self.closed = False
        self.connect_ok = True
        self.connect_calls = 0
        self.subscriptions = {}
        self.unsubscribed = []
        self.published = []
        self._connect_listeners = []
        self._disconnect_listeners = []

    def add_connect_listener(self, fn):
        self._connect_listeners.append(fn)

    def add_disconnect_listener(self, fn):
        self._disconnect_listeners.append(fn)

    def connect(self):
        self.connect_calls += 1
        return self.connect_ok

    def handshake(self):
        self.connected = True
        if self.broker is not None and self not in self.broker.buses:
            self.broker.buses.append(self)
        for fn in list(self._connect_listeners):
            fn()

    def drop(self):
        self.connected = False
        for fn in list(self._disconnect_listeners):
            fn(False)

    def is_connected(self):
        return self.connected

    def subscribe(self, topic_filter, handler, *, qos=1):
        self.subscriptions[topic_filter] = handler
        return self.connected

    def unsubscribe(self, topic_filter):
        self.subscriptions.pop(topic_filter, None)
        self.unsubscribed.append(topic_filter)
        return self.connected

    def publish(self, topic, payload, *, qos=0, retain=False, wait_for_ack=True):
        if not self.connected:
            return False
        self.published.append((topic, payload, qos, retain))
        if self.broker is not None:
            raw = json.dumps(payload).encode("utf-8") if isinstance(payload, (dict, list)) else payload
            self.broker.route(topic, raw, retain)
        return True

    def deliver(self, topic, payload):
        for topic_filter, handler in list(self.subscriptions.items()):
            if mqtt.topic_matches_sub(topic_filter, topic):
                handler(topic, payload)

    def disconnect(self):
        self.connected = False

    def close(self):
        self.connected = False
        self.closed = True
        if self.broker is not None and self in self.broker.buses:
            self.broker.buses.remove(self)

    def topics_published(self):
        return [p[0] for p in self.published]


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def fake_bus():
    bus = FakeBus()
    bus.connected = True
    return bus


@pytest.fixture
def bus_factory(broker):
    """Emulator bus factory; created buses are kept on factory.created"""
    created = []

    def _factory(client_id, will):
        bus = FakeBus(broker, client_id, will)
        created.append(bus)
        return bus

    _factory.created = created
    return _factory


@pytest.fixture
def portal_bus(broker):
    """Server-side FakeBus attached to the shared broker (not yet connected)"""
    return FakeBus(broker, "breeze_server_test")

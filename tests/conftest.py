"""
Test configuration and fixtures for the hydroponic monitor tests.
"""
import asyncio
import json
import os
from types import SimpleNamespace

import pytest
import pytest_asyncio

from hydro_monitor.data_models import MonitorConfig
from hydro_monitor.mqtt_service import MqttConnectionService
from hydro_monitor.replay_stream import ReplayBroadcast


class FakeMqttClient:
    """Stand-in for paho's Client; the broker side is driven by the test"""

    def __init__(self, client_id, transport, broker):
        self.client_id = client_id
        self.transport = transport
        self.broker = broker
        self.on_connect = None
        self.on_disconnect = None
        self.on_subscribe = None
        self.on_unsubscribe = None
        self.on_message = None
        self.on_log = None
        self.connect_timeout = None
        self.credentials = None
        self.will = None
        self.ws_options = None
        self.connect_calls = []
        self.subscriptions = []
        self.published = []
        self.loop_started = False
        self.loop_stopped = False
        self.disconnect_calls = 0
        self._mid = 0

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def will_set(self, topic, payload=None, qos=0, retain=False):
        self.will = (topic, payload, qos, retain)

    def ws_set_options(self, path="/mqtt", headers=None):
        self.ws_options = {"path": path, "headers": headers}

    def connect(self, host, port=1883, keepalive=60):
        self.connect_calls.append((host, port, keepalive))
        if self.broker.connect_error is not None:
            raise self.broker.connect_error
        return 0

    def loop_start(self):
        self.loop_started = True
        if self.broker.auto_connack:
            self.send_connack(self.broker.connack_code)
        return 0

    def loop_stop(self):
        self.loop_stopped = True
        return 0

    def disconnect(self, *args, **kwargs):
        self.disconnect_calls += 1
        if self.on_disconnect:
            self.on_disconnect(self, None, {}, 0, None)
        return 0

    def subscribe(self, topic, qos=0):
        self._mid += 1
        self.subscriptions.append((topic, qos))
        if self.on_subscribe:
            self.on_subscribe(self, None, self._mid, [qos], None)
        return (0, self._mid)

    def publish(self, topic, payload=None, qos=0, retain=False):
        self._mid += 1
        self.published.append((topic, payload, qos, retain))
        return SimpleNamespace(rc=0, mid=self._mid)

    # Broker-side helpers

    def send_connack(self, code=0):
        if self.on_connect:
            self.on_connect(self, None, {}, code, None)

    def deliver(self, topic, payload):
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        if isinstance(payload, str):
            payload = payload.encode()
        if self.on_message:
            self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def drop(self, code=7):
        if self.on_disconnect:
            self.on_disconnect(self, None, {}, code, None)


class FakeBroker:
    """Client factory that records every client and decides how the broker answers"""

    def __init__(self):
        self.clients = []
        self.auto_connack = True
        self.connack_code = 0
        self.connect_error = None

    def __call__(self, client_id, transport):
        client = FakeMqttClient(client_id, transport, self)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeMqttClient:
        return self.clients[-1]


class StubHealthService:
    """Health-checkable service with a scripted answer"""

    def __init__(self, healthy=True, url="http://influx.test"):
        self.healthy = healthy
        self.error = None
        self.url = url
        self.calls = 0
        self.last_healthy = None
        self.closed = False
        self.connection_stream = ReplayBroadcast(1, "stub influx")

    async def check_health(self):
        self.calls += 1
        if self.error is not None:
            self.last_healthy = False
            self.connection_stream.publish("disconnected")
            raise self.error
        self.last_healthy = self.healthy
        self.connection_stream.publish("connected" if self.healthy else "disconnected")
        return self.healthy

    async def close(self):
        self.closed = True
        self.connection_stream.close()


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def health_service():
    return StubHealthService()


@pytest_asyncio.fixture
async def session(fake_broker):
    """Disconnected session wired to the fake broker"""
    service = MqttConnectionService(
        "test_broker",
        1883,
        client_id="test_client",
        connect_timeout=1.0,
        auto_reconnect=False,
        client_factory=fake_broker,
    )
    yield service
    await service.dispose()


@pytest_asyncio.fixture
async def connected_session(session):
    result = await session.connect()
    assert result.is_success
    await session.flush()
    return session


@pytest.fixture
def monitor_config():
    return MonitorConfig(
        mqtt_host="test_broker",
        mqtt_client_id="test_monitor",
        mqtt_connect_timeout=1.0,
        auto_reconnect=False,
        influx_url="http://influx.test",
        reconnect_settle_seconds=0.0,
        retired_dispose_delay=0.01,
        health_check_interval=3600,
    )


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or the timeout expires"""
    async def _eventually(predicate, timeout=2.0, interval=0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return _eventually


@pytest.fixture
def mqtt_test_config():
    """Configuration for MQTT integration tests."""
    return {
        "broker": os.getenv("MQTT_TEST_BROKER", "localhost"),
        "port": int(os.getenv("MQTT_TEST_PORT", "1883")),
        "username": os.getenv("MQTT_TEST_USERNAME"),
        "password": os.getenv("MQTT_TEST_PASSWORD"),
        "client_id": "test_hydro_monitor"
    }


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on file location."""
    for item in items:
        path = str(item.fspath).replace(os.sep, "/")
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)

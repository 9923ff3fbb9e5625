import threading
from concurrent.futures import Future

import pytest

from plant_watering.broker.connection import BrokerConfig
from plant_watering.sync import SyncChannel


class FakeBrokerConnection:
    """Stands in for BrokerConnection and records what the channel does."""

    def __init__(self, config, client_id, on_message, on_connection_interrupted=None,
                 simulate=False, connect_result=True, connect_error="Connection refused",
                 publish_error=None, gate=None, drop_during_connect=None):
        self.config = config
        self.client_id = client_id
        self.on_message = on_message
        self.on_connection_interrupted = on_connection_interrupted
        self.simulate = simulate
        self.connect_result = connect_result
        self.connect_error = connect_error
        self.publish_error = publish_error
        self.gate = gate
        self.drop_during_connect = drop_during_connect

        self.is_connected = False
        self.last_error = None
        self.subscriptions = []
        self.published = []
        self.disconnects = []

    def connect(self):
        if self.gate is not None:
            self.gate.wait(5)
        if self.drop_during_connect is not None:
            self.on_connection_interrupted(self.drop_during_connect)
        if not self.connect_result:
            self.last_error = self.connect_error
            return False
        self.is_connected = True
        return True

    def subscribe(self, topic, qos=1):
        self.subscriptions.append((topic, qos))
        return True

    def publish(self, topic, payload, qos=1, retain=False):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, qos, retain))
        future = Future()
        future.set_result({"packet_id": len(self.published)})
        return future, len(self.published)

    def disconnect(self, wait=True):
        self.disconnects.append(wait)
        self.is_connected = False
        return True

    # Test helpers

    def deliver(self, topic, payload):
        if isinstance(payload, str):
            payload = payload.encode()
        self.on_message(topic, payload)

    def drop(self, error="Connection reset by peer"):
        self.is_connected = False
        self.on_connection_interrupted(error)


class FakeFactory:
    """Connection factory that keeps every FakeBrokerConnection it builds."""

    def __init__(self, **options):
        self.options = options
        self.created = []

    def __call__(self, config, client_id, **kwargs):
        connection = FakeBrokerConnection(config, client_id, **kwargs, **self.options)
        self.created.append(connection)
        return connection

    @property
    def last(self):
        return self.created[-1]


@pytest.fixture
def broker_config():
    return BrokerConfig(
        endpoint="broker.example.com",
        username="user",
        password="secret",
        client_id_prefix="TestClient",
        connect_timeout_seconds=5
    )


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def channel(broker_config, factory):
    return SyncChannel(broker_config, connection_factory=factory)


@pytest.fixture
def connected_channel(channel, factory):
    connected = threading.Event()
    worker = channel.connect(on_success=connected.set)
    worker.join(timeout=5)
    assert connected.is_set()
    return channel

import json
import threading
from concurrent.futures import Future

import pytest

from plant_watering import topics
from plant_watering.broker.connection import (
    PASSWORD_ENV,
    USERNAME_ENV,
    BrokerConfig,
    BrokerConnection,
    ConfigError,
    load_config_from_yaml,
    qos_from_dict,
)
from plant_watering.broker.simulator import SimulatedController
from plant_watering.sync import ConnectionState, MoistureReading, SyncChannel

CONFIG_YAML = """
broker:
  endpoint: "cluster.s1.eu.hivemq.cloud"
  port: 8884
  username: "file-user"
  password: "file-pass"
  ca_path: "certs/ca.pem"
  client_id_prefix: "Phone"
  connection:
    keep_alive_seconds: 45
    connect_timeout_seconds: 10
    reconnect_max_attempts: 3
"""


@pytest.fixture
def config_file(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    path = config_dir / "config.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestConfig:
    def test_load_from_yaml(self, config_file, tmp_path, monkeypatch):
        monkeypatch.delenv(USERNAME_ENV, raising=False)
        monkeypatch.delenv(PASSWORD_ENV, raising=False)

        config = load_config_from_yaml(str(config_file))

        assert config.endpoint == "cluster.s1.eu.hivemq.cloud"
        assert config.port == 8884
        assert config.username == "file-user"
        assert config.password == "file-pass"
        assert config.ca_path == str(tmp_path / "certs" / "ca.pem")
        assert config.keep_alive_seconds == 45
        assert config.connect_timeout_seconds == 10
        assert config.ping_timeout_ms == 3000
        assert config.reconnect_max_attempts == 3

    def test_environment_overrides_credentials(self, config_file, monkeypatch):
        monkeypatch.setenv(USERNAME_ENV, "env-user")
        monkeypatch.setenv(PASSWORD_ENV, "env-pass")

        config = load_config_from_yaml(str(config_file))

        assert config.username == "env-user"
        assert config.password == "env-pass"

    def test_empty_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv(USERNAME_ENV, raising=False)
        monkeypatch.delenv(PASSWORD_ENV, raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = load_config_from_yaml(str(path))

        assert config.endpoint == ""
        assert config.port == 8883
        assert config.ca_path is None

    def test_bad_value_raises_config_error(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("broker:\n  port: not-a-port\n")
        with pytest.raises(ConfigError):
            load_config_from_yaml(str(path))

    def test_validate(self):
        BrokerConfig(endpoint="host", username="u", password="p").validate()

        with pytest.raises(ConfigError, match="endpoint"):
            BrokerConfig(endpoint="", username="u", password="p").validate()
        with pytest.raises(ConfigError, match="credentials"):
            BrokerConfig(endpoint="host").validate()
        with pytest.raises(ConfigError, match="port"):
            BrokerConfig(endpoint="host", username="u", password="p", port=0).validate()
        with pytest.raises(ConfigError, match="CA certificate"):
            BrokerConfig(endpoint="host", username="u", password="p", ca_path="/nope/ca.pem").validate()

    def test_simulation_needs_no_broker(self):
        BrokerConfig(endpoint="").validate(simulate=True)

    def test_client_ids_are_unique(self):
        config = BrokerConfig(endpoint="host", client_id_prefix="AndroidClient")
        ids = {config.new_client_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(client_id.startswith("AndroidClient-") for client_id in ids)


class TestConnectionWithoutBroker:
    def test_invalid_config_fails_before_network(self):
        handler = BrokerConnection(BrokerConfig(endpoint=""), "client-1", on_message=print)
        assert handler.connect() is False
        assert "endpoint" in handler.last_error
        assert handler.is_connected is False

    def test_disconnect_without_connection(self):
        handler = BrokerConnection(BrokerConfig(endpoint="host"), "client-1", on_message=print)
        assert handler.disconnect() is True

    def test_publish_without_connection(self):
        handler = BrokerConnection(BrokerConfig(endpoint="host"), "client-1", on_message=print)
        with pytest.raises(RuntimeError):
            handler.publish("control/refresh", "refresh")

    def test_status(self):
        handler = BrokerConnection(BrokerConfig(endpoint="host"), "client-1", on_message=print)
        status = handler.get_status()
        assert status["client_id"] == "client-1"
        assert status["is_connected"] is False
        assert status["simulate_mode"] is False


class TestSimulatedConnection:
    def make_handler(self, messages, event, reply_delay=0.01):
        def on_message(topic, payload):
            messages.append((topic, json.loads(payload)))
            event.set()

        return BrokerConnection(
            BrokerConfig(endpoint=""),
            "sim-client",
            on_message=on_message,
            simulate=True,
            simulator=SimulatedController(reply_delay=reply_delay, seed=1)
        )

    def test_refresh_is_answered_on_subscribed_topic(self):
        messages, event = [], threading.Event()
        handler = self.make_handler(messages, event)

        assert handler.connect() is True
        assert handler.subscribe("data/soil") is True
        future, _ = handler.publish("control/refresh", "refresh")
        assert future.done()

        assert event.wait(2)
        topic, data = messages[0]
        assert topic == "data/soil"
        assert set(data) >= {"moisture0", "moisture1", "moisture2"}
        handler.disconnect()

    def test_replies_on_unsubscribed_topics_are_dropped(self):
        messages, event = [], threading.Event()
        handler = self.make_handler(messages, event)
        handler.connect()

        handler.publish("control/refresh", "refresh")

        assert not event.wait(0.2)
        handler.disconnect()

    def test_disconnect_cancels_pending_replies(self):
        messages, event = [], threading.Event()
        handler = self.make_handler(messages, event, reply_delay=0.1)
        handler.connect()
        handler.subscribe("status/watering")

        handler.publish("control/watering", '{"plant":0,"duration":50}')
        handler.disconnect()

        assert not event.wait(0.2)
        assert handler.is_connected is False

    def test_publish_after_disconnect_raises(self):
        handler = self.make_handler([], threading.Event())
        handler.connect()
        handler.disconnect()
        with pytest.raises(RuntimeError):
            handler.publish("control/refresh", "refresh")


class TestPublishingQos:
    def test_default_is_at_least_once(self):
        assert qos_from_dict({}) == 1
        assert qos_from_dict({"publishing": None}) == 1

    def test_exactly_once_is_accepted(self):
        assert qos_from_dict({"publishing": {"qos": 2}}) == 2

    @pytest.mark.parametrize("value", [0, 3, -1, "1", True, 1.5])
    def test_other_levels_are_rejected(self, value):
        with pytest.raises(ConfigError, match="publishing.qos"):
            qos_from_dict({"publishing": {"qos": value}})

    def test_levels_map_to_transport_qos(self):
        mqtt = pytest.importorskip("awscrt.mqtt")
        assert BrokerConnection._qos(0) is mqtt.QoS.AT_MOST_ONCE
        assert BrokerConnection._qos(1) is mqtt.QoS.AT_LEAST_ONCE
        assert BrokerConnection._qos(2) is mqtt.QoS.EXACTLY_ONCE
        with pytest.raises(ValueError):
            BrokerConnection._qos(3)


def _done(result):
    future = Future()
    future.set_result(result)
    return future


class FakeCrtConnection:
    """Stands in for awscrt.mqtt.Connection."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.subscribed = {}
        self.published = []
        self.disconnected = False

    def connect(self):
        return _done({"session_present": False})

    def subscribe(self, topic, qos, callback):
        self.subscribed[topic] = (qos, callback)
        return _done({"packet_id": len(self.subscribed), "topic": topic, "qos": qos}), len(self.subscribed)

    def publish(self, topic, payload, qos, retain):
        self.published.append((topic, payload, qos, retain))
        return _done({"packet_id": len(self.published)}), len(self.published)

    def disconnect(self):
        self.disconnected = True
        return _done({})


class TestBrokerTransport:
    @pytest.fixture
    def crt(self, monkeypatch):
        builder = pytest.importorskip("awsiot.mqtt_connection_builder")
        built = []

        def new_default_builder(**kwargs):
            built.append(FakeCrtConnection(**kwargs))
            return built[-1]

        monkeypatch.setattr(builder, "new_default_builder", new_default_builder)
        return built

    @pytest.fixture
    def connected(self, crt):
        config = BrokerConfig(
            endpoint="broker.example.com",
            username="user",
            password="secret",
            client_id_prefix="TestClient",
            connect_timeout_seconds=5
        )
        channel = SyncChannel(config)
        ready = threading.Event()
        channel.connect(on_success=ready.set).join(timeout=5)
        assert ready.is_set()
        return channel, crt[-1]

    def test_builder_settings(self, connected):
        _, connection = connected
        kwargs = connection.kwargs
        assert kwargs["endpoint"] == "broker.example.com"
        assert kwargs["port"] == 8883
        assert kwargs["username"] == "user"
        assert kwargs["password"] == "secret"
        assert kwargs["client_id"].startswith("TestClient-")
        assert kwargs["clean_session"] is True
        assert kwargs["enable_metrics_collection"] is False
        assert callable(kwargs["on_connection_interrupted"])

    def test_subscriptions_and_commands_are_at_least_once(self, connected):
        mqtt = pytest.importorskip("awscrt.mqtt")
        channel, connection = connected

        assert channel.control_watering(1, 20000)

        assert {topic: qos for topic, (qos, _) in connection.subscribed.items()} == {
            topics.SOIL_DATA: mqtt.QoS.AT_LEAST_ONCE,
            topics.WATERING_STATUS: mqtt.QoS.AT_LEAST_ONCE,
        }
        assert connection.published == [
            (topics.CONTROL_REFRESH, "refresh", mqtt.QoS.AT_LEAST_ONCE, False),
            (topics.CONTROL_WATERING, '{"plant":1,"duration":20000}', mqtt.QoS.AT_LEAST_ONCE, False),
        ]

    def test_inbound_messages_reach_the_channel(self, connected):
        mqtt = pytest.importorskip("awscrt.mqtt")
        channel, connection = connected
        _, callback = connection.subscribed[topics.SOIL_DATA]

        callback(
            topic=topics.SOIL_DATA,
            payload=b'{"moisture0":100,"moisture1":200,"moisture2":300}',
            dup=False,
            qos=mqtt.QoS.AT_LEAST_ONCE,
            retain=False
        )

        assert channel.moisture == MoistureReading((100, 200, 300))

    def test_interruption_marks_connection_lost(self, connected):
        channel, connection = connected
        lost = []
        channel.on_connection_lost = lambda: lost.append(True)

        connection.kwargs["on_connection_interrupted"](connection=connection, error="Socket closed")

        assert channel.connection_state is ConnectionState.LOST
        assert lost == [True]
        assert connection.disconnected is True

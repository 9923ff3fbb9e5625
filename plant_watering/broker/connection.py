"""
MQTT Broker Connection Handler

This module manages the connection lifecycle to the cloud MQTT broker,
including configuration loading, TLS connection establishment with
username/password authentication, subscriptions and publishing.
"""

import logging
import os
import threading
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .simulator import SimulatedController

logger = logging.getLogger(__name__)

USERNAME_ENV = "PLANT_WATERING_BROKER_USERNAME"
PASSWORD_ENV = "PLANT_WATERING_BROKER_PASSWORD"


class ConfigError(Exception):
    """Raised when the broker configuration is missing or invalid."""


@dataclass
class BrokerConfig:
    """Configuration for the MQTT broker connection."""
    endpoint: str
    username: str = ""
    password: str = ""
    port: int = 8883
    ca_path: Optional[str] = None
    client_id_prefix: str = "PlantWatering"
    keep_alive_seconds: int = 60
    connect_timeout_seconds: int = 30
    ping_timeout_ms: int = 3000
    reconnect_min_seconds: int = 1
    reconnect_max_seconds: int = 128
    reconnect_max_attempts: int = 5

    def new_client_id(self) -> str:
        """Generate a unique client identifier for a single connect attempt."""
        return f"{self.client_id_prefix}-{uuid.uuid4()}"

    def validate(self, simulate: bool = False) -> None:
        """
        Check that the configuration can be used to open a connection.

        Raises:
            ConfigError: if a required setting is missing or out of range
        """
        if not (0 < self.port < 65536):
            raise ConfigError(f"Invalid broker port: {self.port}")
        if self.keep_alive_seconds <= 0 or self.connect_timeout_seconds <= 0:
            raise ConfigError("Connection timeouts must be positive")
        if self.reconnect_min_seconds > self.reconnect_max_seconds:
            raise ConfigError("reconnect_min_seconds exceeds reconnect_max_seconds")
        if simulate:
            return
        if not self.endpoint:
            raise ConfigError("Broker endpoint is not configured")
        if not self.username or not self.password:
            raise ConfigError(
                f"Broker credentials are not configured "
                f"(set {USERNAME_ENV} and {PASSWORD_ENV})"
            )
        if self.ca_path and not os.path.exists(self.ca_path):
            raise ConfigError(f"CA certificate not found: {self.ca_path}")


class BrokerConnection:
    """
    MQTT Broker Connection Handler.

    Owns a single TLS MQTT connection to the broker. The connection is
    opened with a clean session and is never resumed: once the transport
    reports an interruption the owner decides whether to connect again.

    Attributes:
        config: BrokerConfig with broker settings
        client_id: Client identifier used for this connection
        is_connected: Current connection status

    Example:
        >>> config = BrokerConfig(endpoint="example.s1.eu.hivemq.cloud",
        ...                       username="user", password="secret")
        >>> handler = BrokerConnection(config, config.new_client_id(), on_message=print)
        >>> handler.connect()
    """

    def __init__(
        self,
        config: BrokerConfig,
        client_id: str,
        on_message: Callable[[str, bytes], None],
        on_connection_interrupted: Optional[Callable[[Any], None]] = None,
        simulate: bool = False,
        simulator: Optional[SimulatedController] = None
    ):
        """
        Initialize the broker connection handler.

        Args:
            config: Connection configuration
            client_id: Unique client identifier
            on_message: Callback for every inbound message (topic, payload)
            on_connection_interrupted: Callback when the transport drops
            simulate: If True, talk to an in-process simulated controller
            simulator: Simulated controller to use in simulation mode
        """
        self.config = config
        self.client_id = client_id
        self.simulate = simulate
        self._on_message = on_message
        self._on_connection_interrupted = on_connection_interrupted

        self._is_connected = False
        self._connection = None
        self._last_error: Optional[str] = None

        self._simulator = simulator
        self._subscriptions: List[str] = []
        self._timers: List[threading.Timer] = []
        self._timers_lock = threading.Lock()

        # Connection metrics
        self._last_connection_time: Optional[float] = None
        self._last_disconnect_time: Optional[float] = None

    def _build_connection(self) -> None:
        """Build the TLS MQTT connection."""
        from awscrt import io
        from awsiot import mqtt_connection_builder

        event_loop_group = io.EventLoopGroup(1)
        host_resolver = io.DefaultHostResolver(event_loop_group)
        client_bootstrap = io.ClientBootstrap(event_loop_group, host_resolver)

        socket_options = io.SocketOptions()
        socket_options.connect_timeout_ms = self.config.connect_timeout_seconds * 1000

        self._connection = mqtt_connection_builder.new_default_builder(
            endpoint=self.config.endpoint,
            port=self.config.port,
            client_bootstrap=client_bootstrap,
            client_id=self.client_id,
            username=self.config.username,
            password=self.config.password,
            ca_filepath=self.config.ca_path,
            socket_options=socket_options,
            clean_session=True,
            keep_alive_secs=self.config.keep_alive_seconds,
            ping_timeout_ms=self.config.ping_timeout_ms,
            on_connection_interrupted=self._handle_connection_interrupted,
            enable_metrics_collection=False
        )

    def _handle_connection_interrupted(self, connection, error, **kwargs):
        """Handle connection interruption."""
        self._is_connected = False
        self._last_disconnect_time = time.time()
        logger.warning(f"Connection interrupted: {error}")

        if self._on_connection_interrupted:
            self._on_connection_interrupted(error)

    def _handle_message(self, topic, payload, dup, qos, retain, **kwargs):
        """Forward an inbound message to the owner."""
        logger.debug(f"Message received on {topic}: {payload!r}")
        self._on_message(topic, payload)

    def connect(self) -> bool:
        """
        Open the connection to the broker. Blocks until the broker
        acknowledges or the connect timeout expires.

        Returns:
            True if connection successful, False otherwise
        """
        self._last_error = None

        if self.simulate:
            logger.info(f"Simulating broker connection ({self.client_id})")
            if self._simulator is None:
                self._simulator = SimulatedController()
            self._is_connected = True
            self._last_connection_time = time.time()
            return True

        try:
            self.config.validate()
            if self._connection is None:
                self._build_connection()

            logger.info(f"Connecting to {self.config.endpoint}:{self.config.port} as {self.client_id}...")
            connect_future = self._connection.connect()
            connect_future.result(timeout=self.config.connect_timeout_seconds)

            self._is_connected = True
            self._last_connection_time = time.time()
            logger.info("Successfully connected to MQTT broker")
            return True

        except Exception as e:
            logger.error(f"Connection failed: {e}")
            self._is_connected = False
            self._last_error = str(e) or type(e).__name__
            return False

    def subscribe(self, topic: str, qos: int = 1) -> bool:
        """
        Subscribe to a topic and wait for the broker to acknowledge.

        Args:
            topic: MQTT topic
            qos: MQTT QoS level (0, 1 or 2)

        Returns:
            True if the subscription was acknowledged
        """
        if self.simulate:
            self._subscriptions.append(topic)
            logger.info(f"[SIMULATED] Subscribed to {topic}")
            return True

        if self._connection is None:
            logger.error(f"Cannot subscribe to {topic}: no connection")
            return False

        try:
            subscribe_future, packet_id = self._connection.subscribe(
                topic=topic,
                qos=self._qos(qos),
                callback=self._handle_message
            )
            subscribe_future.result(timeout=self.config.connect_timeout_seconds)
            logger.info(f"Subscribed to {topic} (packet_id={packet_id})")
            return True
        except Exception as e:
            logger.error(f"Error subscribing to {topic}: {e}")
            return False

    def publish(
        self,
        topic: str,
        payload: str,
        qos: int = 1,
        retain: bool = False
    ) -> Tuple[Future, int]:
        """
        Hand a message to the transport without waiting for delivery.

        Args:
            topic: MQTT topic
            payload: Message payload
            qos: MQTT QoS level (0, 1 or 2)
            retain: Whether the broker should retain the message

        Returns:
            Tuple of (delivery future, packet id)

        Raises:
            RuntimeError: if there is no open connection
        """
        if self.simulate:
            if not self._is_connected:
                raise RuntimeError("Simulated connection is closed")
            future: Future = Future()
            future.set_result({"packet_id": 0})
            for delay, reply_topic, reply_payload in self._simulator.handle(topic, payload):
                self._schedule_simulated(delay, reply_topic, reply_payload)
            return future, 0

        if self._connection is None:
            raise RuntimeError("No open connection")

        return self._connection.publish(
            topic=topic,
            payload=payload,
            qos=self._qos(qos),
            retain=retain
        )

    def _schedule_simulated(self, delay: float, topic: str, payload) -> None:
        """Deliver a simulated reply from a timer thread."""
        def deliver():
            with self._timers_lock:
                if timer in self._timers:
                    self._timers.remove(timer)
            if not self._is_connected or topic not in self._subscriptions:
                return
            data = payload() if callable(payload) else payload
            if data is not None:
                self._handle_message(topic, data, False, 1, False)

        timer = threading.Timer(delay, deliver)
        timer.daemon = True
        with self._timers_lock:
            self._timers.append(timer)
        timer.start()

    @staticmethod
    def _qos(level: int):
        from awscrt.mqtt import QoS
        levels = {0: QoS.AT_MOST_ONCE, 1: QoS.AT_LEAST_ONCE, 2: QoS.EXACTLY_ONCE}
        if level not in levels:
            raise ValueError(f"Unsupported QoS level: {level!r}")
        return levels[level]

    def disconnect(self, wait: bool = True) -> bool:
        """
        Disconnect from the broker and release the connection.

        Args:
            wait: Block until the broker acknowledges the disconnect

        Returns:
            True if disconnection was clean, False otherwise
        """
        if self.simulate:
            with self._timers_lock:
                timers, self._timers = self._timers, []
            for timer in timers:
                timer.cancel()
            if self._is_connected:
                logger.info("Simulating broker disconnection")
            self._is_connected = False
            self._subscriptions = []
            self._last_disconnect_time = time.time()
            return True

        if self._connection is None:
            return True

        connection, self._connection = self._connection, None
        self._is_connected = False
        self._last_disconnect_time = time.time()
        try:
            disconnect_future = connection.disconnect()
            if wait:
                disconnect_future.result(timeout=self.config.connect_timeout_seconds)
            logger.info("Disconnected from MQTT broker")
            return True

        except Exception as e:
            logger.error(f"Disconnection error: {e}")
            return False

    @property
    def is_connected(self) -> bool:
        """Get current connection status."""
        return self._is_connected

    @property
    def last_error(self) -> Optional[str]:
        """Reason of the last failed connect attempt."""
        return self._last_error

    def get_status(self) -> dict:
        """
        Get connection status information.

        Returns:
            Dictionary with connection status details
        """
        return {
            "is_connected": self._is_connected,
            "endpoint": self.config.endpoint,
            "client_id": self.client_id,
            "last_connection_time": self._last_connection_time,
            "last_disconnect_time": self._last_disconnect_time,
            "last_error": self._last_error,
            "simulate_mode": self.simulate
        }


def _resolve_path(value: Optional[str], project_root: Path) -> Optional[str]:
    if not value:
        return None
    path = Path(value)
    if not path.is_absolute():
        path = Path(project_root) / path
    return str(path)


def broker_config_from_dict(config: Dict[str, Any], project_root: Path) -> BrokerConfig:
    """
    Build a BrokerConfig from the parsed configuration mapping.

    Credentials from the environment take precedence over the file.

    Args:
        config: Parsed config.yaml contents
        project_root: Project root directory for resolving relative paths

    Returns:
        BrokerConfig object

    Raises:
        ConfigError: if a value has the wrong type
    """
    broker = config.get('broker') or {}
    conn = broker.get('connection') or {}

    try:
        return BrokerConfig(
            endpoint=str(broker.get('endpoint', '') or ''),
            username=os.environ.get(USERNAME_ENV) or str(broker.get('username', '') or ''),
            password=os.environ.get(PASSWORD_ENV) or str(broker.get('password', '') or ''),
            port=int(broker.get('port', 8883)),
            ca_path=_resolve_path(broker.get('ca_path'), project_root),
            client_id_prefix=str(broker.get('client_id_prefix', 'PlantWatering')),
            keep_alive_seconds=int(conn.get('keep_alive_seconds', 60)),
            connect_timeout_seconds=int(conn.get('connect_timeout_seconds', 30)),
            ping_timeout_ms=int(conn.get('ping_timeout_ms', 3000)),
            reconnect_min_seconds=int(conn.get('reconnect_min_seconds', 1)),
            reconnect_max_seconds=int(conn.get('reconnect_max_seconds', 128)),
            reconnect_max_attempts=int(conn.get('reconnect_max_attempts', 5))
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid broker configuration: {e}") from e


def qos_from_dict(config: Dict[str, Any]) -> int:
    """
    Read publishing.qos from the parsed configuration mapping.

    Commands and subscriptions must be delivered at least once, so only
    QoS 1 and 2 are accepted.

    Raises:
        ConfigError: if the value is not 1 or 2
    """
    value = (config.get('publishing') or {}).get('qos', 1)
    if isinstance(value, bool) or not isinstance(value, int) or value not in (1, 2):
        raise ConfigError(f"Invalid publishing.qos: {value!r} (must be 1 or 2)")
    return value


def load_config_from_yaml(config_path: str, project_root: str = None) -> BrokerConfig:
    """
    Load broker configuration from YAML file.

    Args:
        config_path: Path to config.yaml
        project_root: Project root directory for resolving relative paths

    Returns:
        BrokerConfig object
    """
    import yaml

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    if project_root is None:
        project_root = Path(config_path).parent.parent

    return broker_config_from_dict(config, Path(project_root))

"""
Device-state Synchronization Channel

Owns the single broker connection, turns inbound soil-data and
watering-status messages into ChannelState snapshots, and turns user
intents into command messages.
"""

import logging
import threading
from typing import Callable, Optional

from .. import topics
from ..broker.connection import BrokerConfig, BrokerConnection
from ..broker.publisher import CommandPublisher, PublishResult
from .messages import PayloadError, parse_soil_data, parse_watering_status
from .state import (
    ChannelState,
    ConnectionState,
    Listener,
    MoistureReading,
    StateStore,
    WateringStatus,
)

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Not connected to the MQTT broker"

ConnectionFactory = Callable[..., BrokerConnection]


def _noop(*args) -> None:
    pass


def _valid_zone(zone) -> bool:
    return isinstance(zone, int) and not isinstance(zone, bool) and zone in topics.ZONES


class SyncChannel:
    """
    Synchronization channel between the app and the irrigation controller.

    All network work happens here. Connecting runs on a background thread;
    messages and connection-loss events arrive on the transport's thread.
    State is exposed as immutable snapshots through a StateStore.

    Attributes:
        config: BrokerConfig with broker settings
        simulate: Talk to an in-process simulated controller
        on_connection_lost: Called once each time an open connection drops

    Example:
        >>> channel = SyncChannel(config)
        >>> channel.connect(on_success=lambda: print("up"), on_failure=print)
        >>> channel.control_watering(2, 20000, on_success=print, on_failure=print)
    """

    def __init__(
        self,
        config: BrokerConfig,
        simulate: bool = False,
        qos: int = 1,
        connection_factory: Optional[ConnectionFactory] = None
    ):
        """
        Initialize the channel.

        Args:
            config: Broker configuration
            simulate: If True, no real broker is contacted
            qos: QoS level for subscriptions and commands
            connection_factory: Builds the transport; defaults to BrokerConnection
        """
        self.config = config
        self.simulate = simulate
        self.qos = qos
        self.on_connection_lost: Optional[Callable[[], None]] = None

        self._connection_factory = connection_factory or BrokerConnection
        self._store = StateStore()
        self._lock = threading.Lock()
        self._handler: Optional[BrokerConnection] = None
        self._publisher: Optional[CommandPublisher] = None
        self._attempt = 0

    # -- observable state -------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._store.snapshot()

    @property
    def connection_state(self) -> ConnectionState:
        return self._store.snapshot().connection

    @property
    def moisture(self) -> MoistureReading:
        return self._store.snapshot().moisture

    @property
    def watering(self) -> WateringStatus:
        return self._store.snapshot().watering

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for state snapshots. Returns an unsubscribe callable."""
        return self._store.subscribe(listener)

    # -- connection lifecycle ---------------------------------------------

    def connect(
        self,
        on_success: Callable[[], None] = _noop,
        on_failure: Callable[[str], None] = _noop
    ) -> Optional[threading.Thread]:
        """
        Start connecting to the broker without blocking the caller.

        On success the channel subscribes to the inbound topics, requests a
        data refresh and then calls on_success. On failure it calls
        on_failure with a reason; it never retries on its own.

        Args:
            on_success: Called once connected
            on_failure: Called with a reason if the attempt fails

        Returns:
            The worker thread, or None if no new attempt was started
        """
        if not self._store.transition(
            (ConnectionState.DISCONNECTED, ConnectionState.LOST),
            ConnectionState.CONNECTING
        ):
            if self.connection_state is ConnectionState.CONNECTED:
                logger.info("connect() called while already connected")
                on_success()
            else:
                logger.warning("connect() called while a connection attempt is in progress")
                on_failure("Connection attempt already in progress")
            return None

        with self._lock:
            self._attempt += 1
            attempt = self._attempt

        worker = threading.Thread(
            target=self._connect_worker,
            args=(attempt, on_success, on_failure),
            name=f"mqtt-connect-{attempt}",
            daemon=True
        )
        worker.start()
        return worker

    def _connect_worker(
        self,
        attempt: int,
        on_success: Callable[[], None],
        on_failure: Callable[[str], None]
    ) -> None:
        client_id = self.config.new_client_id()
        interruptions = []

        def interrupted(error):
            interruptions.append(error)
            self._handle_connection_lost(handler, error)

        try:
            handler = self._connection_factory(
                self.config,
                client_id,
                on_message=self._handle_message,
                on_connection_interrupted=interrupted,
                simulate=self.simulate
            )
            connected = handler.connect()
            reason = handler.last_error
        except Exception as e:
            logger.exception("MQTT connection exception")
            handler, connected, reason = None, False, str(e)

        if connected and interruptions:
            connected, reason = False, f"Connection lost while connecting: {interruptions[0]}"

        if not connected:
            logger.error(f"MQTT connection failed: {reason}")
            if handler is not None:
                self._safe_disconnect(handler, wait=False)
            if self._is_current(attempt):
                self._store.transition((ConnectionState.CONNECTING,), ConnectionState.DISCONNECTED)
            on_failure(f"Failed to connect to MQTT broker: {reason}")
            return

        with self._lock:
            current = attempt == self._attempt
            if current:
                self._handler = handler
                self._publisher = CommandPublisher(handler, qos=self.qos, retain=False)
        if not current or not self._store.transition(
            (ConnectionState.CONNECTING,), ConnectionState.CONNECTED
        ):
            logger.info("Connection attempt abandoned, closing it")
            self._safe_disconnect(handler, wait=False)
            on_failure("Connection attempt abandoned")
            return

        if interruptions:
            # Dropped while still CONNECTING, so the loss was not recorded
            self._handle_connection_lost(handler, interruptions[0])
            return

        logger.info(f"MQTT connection success ({client_id})")
        for topic in topics.SUBSCRIPTIONS:
            if not handler.subscribe(topic, qos=self.qos):
                logger.error(f"Could not subscribe to {topic}")

        self.request_refresh()
        on_success()

    def _is_current(self, attempt: int) -> bool:
        with self._lock:
            return attempt == self._attempt

    def _handle_connection_lost(self, handler: Optional[BrokerConnection], error) -> None:
        with self._lock:
            if handler is None or handler is not self._handler:
                return
        if not self._store.transition((ConnectionState.CONNECTED,), ConnectionState.LOST):
            return

        logger.warning(f"MQTT connection lost: {error}")
        # Stop the transport from resuming on its own
        self._release_handler(wait=False)

        callback = self.on_connection_lost
        if callback is not None:
            try:
                callback()
            except Exception:
                logger.exception("Connection-lost callback failed")

    def disconnect(self) -> None:
        """
        Close the connection. Safe to call repeatedly and before connect().
        Never raises.
        """
        try:
            with self._lock:
                self._attempt += 1
            was_connected = self.connection_state is ConnectionState.CONNECTED
            self._release_handler(wait=was_connected)
            if was_connected:
                logger.info("Disconnected from broker")
        except Exception:
            logger.exception("Error disconnecting")
        finally:
            self._store.update(connection=ConnectionState.DISCONNECTED)

    def _release_handler(self, wait: bool) -> None:
        with self._lock:
            handler, self._handler = self._handler, None
            self._publisher = None
        if handler is not None:
            self._safe_disconnect(handler, wait)

    @staticmethod
    def _safe_disconnect(handler: BrokerConnection, wait: bool) -> None:
        try:
            handler.disconnect(wait=wait)
        except Exception:
            logger.exception("Error closing client")

    # -- inbound ----------------------------------------------------------

    def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            if topic == topics.SOIL_DATA:
                reading, status = parse_soil_data(payload)
                if status is None:
                    self._store.update(moisture=reading)
                else:
                    self._store.update(moisture=reading, watering=status)
                logger.debug(f"Moisture updated: {reading.as_dict()}")

            elif topic == topics.WATERING_STATUS:
                status = parse_watering_status(payload)
                if status is not None:
                    self._store.update(watering=status)
                    logger.debug(f"Watering status updated: active={status.active}, zone={status.zone}")

            else:
                logger.debug(f"Ignoring message on unexpected topic {topic}")

        except PayloadError as e:
            logger.error(f"Error parsing message on {topic}: {e}")
        except Exception:
            logger.exception(f"Error handling message on {topic}")

    # -- outbound ---------------------------------------------------------

    def _current_publisher(self) -> Optional[CommandPublisher]:
        if self.connection_state is not ConnectionState.CONNECTED:
            return None
        with self._lock:
            return self._publisher

    @staticmethod
    def _report(result: PublishResult, on_success, on_failure, what: str) -> bool:
        if result.success:
            logger.debug(f"{what} command sent successfully")
            on_success()
            return True
        on_failure(f"Error sending {what} command: {result.error_message}")
        return False

    def request_refresh(self) -> bool:
        """
        Ask the controller to publish fresh soil data. No-op when not connected.

        Returns:
            True if the request was handed to the transport
        """
        publisher = self._current_publisher()
        if publisher is None:
            logger.debug("Refresh skipped: not connected")
            return False
        result = publisher.publish_refresh()
        if result.success:
            logger.debug("Refresh data request sent successfully")
        return result.success

    def control_watering(
        self,
        zone: int,
        duration_ms: int,
        on_success: Callable[[], None] = _noop,
        on_failure: Callable[[str], None] = _noop
    ) -> bool:
        """
        Ask the controller to water a zone for duration_ms milliseconds.

        Fails without touching the network when not connected. Success means
        the command was handed to the transport, not that watering started.

        Returns:
            True if the command was sent
        """
        if not _valid_zone(zone):
            on_failure(f"Invalid zone: {zone}")
            return False
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, int) or duration_ms < 0:
            on_failure(f"Invalid duration: {duration_ms}")
            return False

        publisher = self._current_publisher()
        if publisher is None:
            on_failure(NOT_CONNECTED)
            return False
        return self._report(publisher.publish_watering(zone, duration_ms), on_success, on_failure, "watering")

    def stop_watering(
        self,
        zone: int,
        on_success: Callable[[], None] = _noop,
        on_failure: Callable[[str], None] = _noop
    ) -> bool:
        """
        Ask the controller to stop watering a zone.

        Whether that zone is actually watering is for the caller to check.

        Returns:
            True if the command was sent
        """
        if not _valid_zone(zone):
            on_failure(f"Invalid zone: {zone}")
            return False

        publisher = self._current_publisher()
        if publisher is None:
            on_failure(NOT_CONNECTED)
            return False
        return self._report(publisher.publish_stop(zone), on_success, on_failure, "stop")

    def get_metrics(self) -> dict:
        """Publishing metrics of the current connection."""
        with self._lock:
            publisher = self._publisher
        return publisher.get_metrics() if publisher is not None else {}

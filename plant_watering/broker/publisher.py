"""
MQTT Command Publisher

This module provides a class for publishing irrigation commands to the
controller through the MQTT broker.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .. import topics
from .connection import BrokerConnection

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    """Result of a publish operation."""
    success: bool
    topic: str
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: float = 0.0


class CommandPublisher:
    """
    MQTT Command Publisher.

    Publishes watering, stop and refresh commands. A publish succeeds once
    the message is handed to the transport; delivery is reported
    asynchronously in the log and never awaited.

    Attributes:
        connection_handler: BrokerConnection instance
        qos: MQTT Quality of Service level
        retain: Whether commands are retained by the broker

    Example:
        >>> publisher = CommandPublisher(connection_handler)
        >>> publisher.publish_watering(zone=2, duration_ms=20000)
    """

    def __init__(
        self,
        connection_handler: BrokerConnection,
        qos: int = 1,
        retain: bool = False
    ):
        """
        Initialize the command publisher.

        Args:
            connection_handler: Connected BrokerConnection
            qos: MQTT QoS level (0 or 1)
            retain: Whether to retain messages
        """
        self.connection_handler = connection_handler
        self.qos = qos
        self.retain = retain

        # Publishing metrics
        self._publish_count = 0
        self._delivered_count = 0
        self._error_count = 0
        self._last_publish_time: Optional[float] = None

    @staticmethod
    def format_command(data: Dict[str, Any]) -> str:
        """
        Format a command as compact JSON.

        Args:
            data: Command fields

        Returns:
            JSON formatted string
        """
        return json.dumps(data, indent=None, separators=(',', ':'))

    def _on_delivery(self, topic: str, packet_id, future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Delivery to {topic} failed (packet_id={packet_id}): {error}")
            self._error_count += 1
            return
        self._delivered_count += 1
        logger.debug(f"Message delivery complete on {topic} (packet_id={packet_id})")

    def _publish(self, topic: str, message: str) -> PublishResult:
        """
        Internal publish method.

        Args:
            topic: MQTT topic
            message: Message payload

        Returns:
            PublishResult with status
        """
        timestamp = time.time()

        if not self.connection_handler.is_connected:
            logger.error("Not connected to the MQTT broker")
            self._error_count += 1
            return PublishResult(
                success=False,
                topic=topic,
                error_message="Not connected to the MQTT broker",
                timestamp=timestamp
            )

        try:
            publish_future, packet_id = self.connection_handler.publish(
                topic=topic,
                payload=message,
                qos=self.qos,
                retain=self.retain
            )
            publish_future.add_done_callback(
                lambda f: self._on_delivery(topic, packet_id, f)
            )

            self._publish_count += 1
            self._last_publish_time = timestamp

            logger.info(f"Published to {topic} (packet_id={packet_id})")
            logger.debug(f"Message: {message}")

            return PublishResult(
                success=True,
                topic=topic,
                message_id=str(packet_id),
                timestamp=timestamp
            )

        except Exception as e:
            logger.error(f"Publish to {topic} failed: {e}")
            self._error_count += 1
            return PublishResult(
                success=False,
                topic=topic,
                error_message=str(e) or type(e).__name__,
                timestamp=timestamp
            )

    def publish_watering(self, zone: int, duration_ms: int) -> PublishResult:
        """
        Ask the controller to water a zone.

        Args:
            zone: Zone index (0-2)
            duration_ms: Watering duration in milliseconds

        Returns:
            PublishResult with status
        """
        message = self.format_command({"plant": zone, "duration": duration_ms})
        return self._publish(topics.CONTROL_WATERING, message)

    def publish_stop(self, zone: int) -> PublishResult:
        """Ask the controller to stop watering a zone."""
        return self._publish(topics.CONTROL_STOP, self.format_command({"zone": zone}))

    def publish_refresh(self) -> PublishResult:
        """Ask the controller to send fresh soil readings."""
        return self._publish(topics.CONTROL_REFRESH, topics.REFRESH_PAYLOAD)

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get publishing metrics.

        Returns:
            Dictionary with publishing statistics
        """
        return {
            "publish_count": self._publish_count,
            "delivered_count": self._delivered_count,
            "error_count": self._error_count,
            "success_rate": (
                self._publish_count / (self._publish_count + self._error_count)
                if self._publish_count + self._error_count > 0
                else 0.0
            ),
            "last_publish_time": self._last_publish_time
        }

"""
Simulated Irrigation Controller

Stands in for the broker and the field controller when running in
simulation mode. Answers refresh requests with soil readings and
acknowledges watering and stop commands the way the firmware does.
"""

import json
import logging
import random
import threading
from typing import Callable, List, Optional, Tuple, Union

from .. import topics

logger = logging.getLogger(__name__)

Payload = Union[bytes, Callable[[], Optional[bytes]]]
Reply = Tuple[float, str, Payload]


class SimulatedController:
    """
    In-process model of the three-zone irrigation controller.

    Replies are returned as (delay_seconds, topic, payload) tuples. A payload
    may be a callable evaluated at delivery time; it returns None when the
    reply became stale in the meantime.

    Example:
        >>> controller = SimulatedController()
        >>> delay, topic, payload = controller.handle("control/refresh", "refresh")[0]
        >>> topic
        'data/soil'
    """

    def __init__(
        self,
        moisture_range: Tuple[int, int] = (800, 3600),
        reply_delay: float = 0.2,
        seed: Optional[int] = None
    ):
        """
        Initialize the simulated controller.

        Args:
            moisture_range: Raw ADC range for the initial readings
            reply_delay: Delay before each reply is delivered
            seed: Optional random seed for reproducible readings
        """
        self.reply_delay = reply_delay
        self._random = random.Random(seed)
        self._lock = threading.Lock()
        self._moisture = [self._random.randint(*moisture_range) for _ in topics.ZONES]
        self._watering_zone: Optional[int] = None
        self._run_id = 0

    def _jitter(self, value: int) -> int:
        value = int(value + self._random.gauss(0, 25))
        return max(topics.MOISTURE_MIN, min(topics.MOISTURE_MAX, value))

    def _soil_payload(self) -> bytes:
        with self._lock:
            self._moisture = [self._jitter(v) for v in self._moisture]
            data = {f"moisture{zone}": value for zone, value in enumerate(self._moisture)}
            data["isWatering"] = self._watering_zone is not None
            data["wateringZone"] = self._watering_zone if self._watering_zone is not None else -1
        return json.dumps(data).encode()

    @staticmethod
    def _status_payload(zone: Optional[int]) -> bytes:
        return json.dumps({
            "isWatering": zone is not None,
            "zone": zone if zone is not None else -1
        }).encode()

    def _finish(self, zone: int, run_id: int) -> Optional[bytes]:
        with self._lock:
            if self._run_id != run_id or self._watering_zone != zone:
                return None
            self._watering_zone = None
            # Watering leaves the zone wetter
            self._moisture[zone] = max(topics.MOISTURE_MIN, self._moisture[zone] - 900)
        logger.info(f"[SIMULATED] Zone {zone} finished watering")
        return self._status_payload(None)

    def handle(self, topic: str, payload: Union[str, bytes]) -> List[Reply]:
        """
        Process one command published by the app.

        Args:
            topic: Topic the command was published to
            payload: Command payload

        Returns:
            List of replies to deliver
        """
        if isinstance(payload, bytes):
            payload = payload.decode('utf-8', errors='replace')

        if topic == topics.CONTROL_REFRESH:
            return [(self.reply_delay, topics.SOIL_DATA, self._soil_payload)]

        try:
            command = json.loads(payload)
        except ValueError:
            logger.warning(f"[SIMULATED] Ignoring malformed command on {topic}: {payload!r}")
            return []
        if not isinstance(command, dict):
            return []

        if topic == topics.CONTROL_WATERING:
            zone = command.get('plant')
            duration_ms = command.get('duration', 0)
            if zone not in topics.ZONES or not isinstance(duration_ms, int):
                return []
            with self._lock:
                if self._watering_zone is not None:
                    logger.info(f"[SIMULATED] Busy watering zone {self._watering_zone}")
                    return []
                self._watering_zone = zone
                self._run_id += 1
                run_id = self._run_id
            logger.info(f"[SIMULATED] Watering zone {zone} for {duration_ms} ms")
            return [
                (self.reply_delay, topics.WATERING_STATUS, self._status_payload(zone)),
                (duration_ms / 1000.0, topics.WATERING_STATUS, lambda: self._finish(zone, run_id)),
            ]

        if topic == topics.CONTROL_STOP:
            zone = command.get('zone')
            with self._lock:
                if zone != self._watering_zone:
                    return []
                self._watering_zone = None
                self._run_id += 1
            logger.info(f"[SIMULATED] Stopped watering zone {zone}")
            return [(self.reply_delay, topics.WATERING_STATUS, self._status_payload(None))]

        return []

    @property
    def watering_zone(self) -> Optional[int]:
        """Zone currently being watered, if any."""
        return self._watering_zone

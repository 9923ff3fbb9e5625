"""
Watering Dashboard

Presentation layer for the synchronization channel: turns state
snapshots into per-zone views, guards user intents, refreshes the data
periodically and reconnects with exponential backoff.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from . import topics
from .sync import ChannelState, ConnectionState, SyncChannel

logger = logging.getLogger(__name__)


class MoistureLevel(Enum):
    """Soil condition derived from the raw sensor value."""
    VERY_WET = "Very wet"
    WET = "Wet"
    MEDIUM = "Medium"
    DRY = "Dry"


# Upper bounds (exclusive) on the raw 0-4095 scale
MOISTURE_LEVELS = (
    (300, MoistureLevel.VERY_WET),
    (2000, MoistureLevel.WET),
    (3500, MoistureLevel.MEDIUM),
)


def classify_moisture(value: int) -> MoistureLevel:
    """Map a raw moisture value to a MoistureLevel."""
    for upper, level in MOISTURE_LEVELS:
        if value < upper:
            return level
    return MoistureLevel.DRY


def moisture_fraction(value: int) -> float:
    """Gauge fill for a raw value: 1.0 is soaked, 0.0 is bone dry."""
    value = max(topics.MOISTURE_MIN, min(topics.MOISTURE_MAX, value))
    return 1.0 - value / topics.MOISTURE_MAX


@dataclass
class ZoneView:
    """What the screen shows for one zone."""
    zone: int
    name: str
    moisture: int
    level: MoistureLevel
    fraction: float
    is_watering: bool
    can_water: bool
    can_stop: bool


def build_zone_views(state: ChannelState) -> List[ZoneView]:
    """Build one ZoneView per zone from a state snapshot."""
    connected = state.connection is ConnectionState.CONNECTED
    busy = state.watering.active
    views = []
    for zone in topics.ZONES:
        value = state.moisture[zone]
        watering_here = busy and state.watering.zone == zone
        views.append(ZoneView(
            zone=zone,
            name=f"Zone {zone + 1}",
            moisture=value,
            level=classify_moisture(value),
            fraction=moisture_fraction(value),
            is_watering=watering_here,
            can_water=connected and not busy,
            can_stop=connected and watering_here
        ))
    return views


class ReconnectPolicy:
    """
    Bounded exponential backoff between connection attempts.

    Attributes:
        min_seconds: Delay before the first retry
        max_seconds: Upper bound on any delay
        max_attempts: Retries allowed before giving up (0 disables retrying)
    """

    def __init__(self, min_seconds: float = 1, max_seconds: float = 128, max_attempts: int = 5):
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self.max_attempts = max_attempts
        self.attempts = 0

    def next_delay(self) -> Optional[float]:
        """
        Register a retry and return how long to wait before it.

        Returns:
            Delay in seconds, or None once the attempts are used up
        """
        if self.attempts >= self.max_attempts:
            return None
        delay = min(self.max_seconds, self.min_seconds * (2 ** self.attempts))
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class WateringDashboard:
    """
    Console dashboard bound to a SyncChannel.

    The dashboard never changes channel state itself; it reads snapshots
    and forwards intents, refusing those the current state does not allow.

    Example:
        >>> dashboard = WateringDashboard(channel, watering_duration_ms=20000)
        >>> dashboard.connect()
        >>> dashboard.water(0)
    """

    def __init__(
        self,
        channel: SyncChannel,
        watering_duration_ms: int = 20000,
        auto_refresh_seconds: float = 15,
        reconnect: Optional[ReconnectPolicy] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the dashboard.

        Args:
            channel: Channel to observe and command
            watering_duration_ms: Duration sent with every watering request
            auto_refresh_seconds: Interval between automatic refresh requests
            reconnect: Retry policy after failures and losses (None = never retry)
            clock: Time source, seconds since the epoch
        """
        self.channel = channel
        self.watering_duration_ms = watering_duration_ms
        self.auto_refresh_seconds = auto_refresh_seconds
        self.reconnect = reconnect
        self._clock = clock

        self.status_text = "Not connected"
        self.last_notice: Optional[str] = None
        self.last_update: Optional[float] = None
        self._last_refresh: Optional[float] = None
        self._retry_timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._wanted = False
        self._generation = 0

        self.connected_event = threading.Event()
        self.channel.on_connection_lost = self._on_connection_lost

    # -- connection -------------------------------------------------------

    def connect(self) -> Optional[threading.Thread]:
        """Connect unless connected or an attempt is already running."""
        self._wanted = True
        if self.channel.connection_state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug(f"Connect ignored while {self.channel.connection_state.value}")
            return None
        generation = self._next_generation()
        self.connected_event.clear()
        self.status_text = "Connecting..."
        return self.channel.connect(
            on_success=lambda: self._on_connected(generation),
            on_failure=lambda error: self._on_failure(generation, error)
        )

    def disconnect(self) -> None:
        self._wanted = False
        self._next_generation()
        self._cancel_retry()
        self.channel.disconnect()
        self.connected_event.clear()
        self.status_text = "Not connected"
        self._notify("Disconnected from the MQTT broker")

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def _is_stale(self, generation: int) -> bool:
        with self._lock:
            stale = generation != self._generation
        if stale:
            logger.debug(f"Ignoring result of superseded connect attempt {generation}")
        return stale

    def _on_connected(self, generation: int) -> None:
        if self._is_stale(generation):
            return
        now = self._clock()
        self.status_text = "Connected to the MQTT broker"
        self.last_update = now
        self._last_refresh = now
        if self.reconnect is not None:
            self.reconnect.reset()
        self.connected_event.set()

    def _on_failure(self, generation: int, error: str) -> None:
        if self._is_stale(generation):
            return
        self.status_text = f"Failed: {error}"
        self._notify(error)
        self._schedule_retry()

    def _on_connection_lost(self) -> None:
        self.status_text = "Connection lost"
        self.connected_event.clear()
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        if self.reconnect is None or not self._wanted:
            return
        delay = self.reconnect.next_delay()
        if delay is None:
            logger.warning(f"Giving up reconnecting after {self.reconnect.max_attempts} attempts")
            return
        logger.info(f"Reconnecting in {delay:.0f}s (attempt {self.reconnect.attempts})")
        with self._lock:
            if self._retry_timer is not None:
                self._retry_timer.cancel()
            self._retry_timer = threading.Timer(delay, self._retry)
            self._retry_timer.daemon = True
            self._retry_timer.start()

    def _retry(self) -> None:
        with self._lock:
            self._retry_timer = None
        if self._wanted:
            self.connect()

    def _cancel_retry(self) -> None:
        with self._lock:
            timer, self._retry_timer = self._retry_timer, None
        if timer is not None:
            timer.cancel()

    # -- intents ----------------------------------------------------------

    def _notify(self, message: str) -> None:
        self.last_notice = message
        logger.info(message)

    def water(self, zone: int) -> bool:
        """Water a zone for the configured duration if the system is idle."""
        if zone not in topics.ZONES:
            self._notify(f"Unknown zone: {zone}")
            return False
        view = build_zone_views(self.channel.state)[zone]
        if not view.can_water:
            self._notify(f"Cannot water {view.name} now")
            return False
        return self.channel.control_watering(
            zone,
            self.watering_duration_ms,
            on_success=lambda: self._notify(
                f"Watering {view.name} for {self.watering_duration_ms // 1000} seconds"
            ),
            on_failure=self._notify
        )

    def stop(self, zone: int) -> bool:
        """Stop watering a zone, only if it is the zone being watered."""
        if zone not in topics.ZONES:
            self._notify(f"Unknown zone: {zone}")
            return False
        view = build_zone_views(self.channel.state)[zone]
        if not view.can_stop:
            self._notify(f"{view.name} is not being watered")
            return False
        return self.channel.stop_watering(
            zone,
            on_success=lambda: self._notify(f"Stopped watering {view.name}"),
            on_failure=self._notify
        )

    def refresh(self) -> bool:
        """Ask for fresh soil data now."""
        if not self.channel.request_refresh():
            return False
        now = self._clock()
        self._last_refresh = now
        self.last_update = now
        return True

    def tick(self) -> bool:
        """
        Run periodic work; call this regularly from the UI loop.

        Returns:
            True if an automatic refresh was requested
        """
        if not self.channel.is_connected:
            return False
        now = self._clock()
        if self._last_refresh is not None and now - self._last_refresh < self.auto_refresh_seconds:
            return False
        return self.refresh()

    # -- rendering --------------------------------------------------------

    def render(self, width: int = 20) -> str:
        """Render the current state as text."""
        state = self.channel.state
        lines = [
            "Smart Plant Watering",
            f"Connection: {self.status_text}",
        ]
        if self.last_update is not None:
            lines.append("Last update: " + time.strftime("%H:%M:%S", time.localtime(self.last_update)))

        if state.watering.active:
            lines.append(f"Watering zone {state.watering.zone + 1}. Please wait.")

        lines.append("")
        lines.append("Soil moisture")
        for view in build_zone_views(state):
            filled = int(round(view.fraction * width))
            gauge = "#" * filled + "-" * (width - filled)
            flag = "  [watering]" if view.is_watering else ""
            lines.append(
                f"  {view.name}: [{gauge}] {view.moisture} / {topics.MOISTURE_MAX} - {view.level.value}{flag}"
            )

        if self.last_notice:
            lines.append("")
            lines.append(f"> {self.last_notice}")
        return "\n".join(lines)

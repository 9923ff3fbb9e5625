"""
Observable device state.

The channel publishes immutable ChannelState snapshots through a
StateStore; readers on any thread only ever see complete snapshots.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .. import topics

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle of the broker connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOST = "lost"


@dataclass(frozen=True)
class MoistureReading:
    """Raw soil moisture per zone (0-4095, lower is wetter)."""
    values: Tuple[int, ...] = (0, 0, 0)

    def __getitem__(self, zone: int) -> int:
        return self.values[zone]

    def as_dict(self) -> Dict[int, int]:
        return dict(zip(topics.ZONES, self.values))


@dataclass(frozen=True)
class WateringStatus:
    """
    Whether the controller is watering, and which zone.

    zone is None exactly when active is False.
    """
    active: bool = False
    zone: Optional[int] = None

    def __post_init__(self):
        if self.active and self.zone not in topics.ZONES:
            raise ValueError(f"Active watering needs a zone in {topics.ZONES}, got {self.zone!r}")
        if not self.active and self.zone is not None:
            object.__setattr__(self, 'zone', None)

    @classmethod
    def idle(cls) -> "WateringStatus":
        return cls(active=False, zone=None)


@dataclass(frozen=True)
class ChannelState:
    """Snapshot of everything the presentation layer can observe."""
    connection: ConnectionState = ConnectionState.DISCONNECTED
    moisture: MoistureReading = field(default_factory=MoistureReading)
    watering: WateringStatus = field(default_factory=WateringStatus)


Listener = Callable[[ChannelState], None]


class StateStore:
    """
    Thread-safe holder of the current ChannelState.

    Updates swap the whole snapshot under a lock. Listeners are called
    after the swap, outside the lock, on the updating thread.
    """

    def __init__(self, initial: Optional[ChannelState] = None):
        self._lock = threading.Lock()
        self._state = initial or ChannelState()
        self._listeners: List[Listener] = []

    def snapshot(self) -> ChannelState:
        with self._lock:
            return self._state

    def update(self, **changes) -> ChannelState:
        """Replace fields of the current snapshot and notify listeners."""
        with self._lock:
            self._state = replace(self._state, **changes)
            state = self._state
            listeners = list(self._listeners)
        self._notify(listeners, state)
        return state

    def transition(
        self,
        expected: Tuple[ConnectionState, ...],
        target: ConnectionState
    ) -> bool:
        """
        Move to target only if the current connection state is one of expected.

        Returns:
            True if the transition happened
        """
        with self._lock:
            if self._state.connection not in expected:
                return False
            self._state = replace(self._state, connection=target)
            state = self._state
            listeners = list(self._listeners)
        self._notify(listeners, state)
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for new snapshots.

        Returns:
            Callable that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def _notify(listeners: List[Listener], state: ChannelState) -> None:
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

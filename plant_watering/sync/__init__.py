"""
Device-state synchronization between the app and the irrigation controller.
"""

from .channel import SyncChannel
from .messages import PayloadError
from .state import ChannelState, ConnectionState, MoistureReading, StateStore, WateringStatus

__all__ = [
    "ChannelState",
    "ConnectionState",
    "MoistureReading",
    "PayloadError",
    "StateStore",
    "SyncChannel",
    "WateringStatus",
]

"""
MQTT broker integration modules.
"""

from .connection import BrokerConfig, BrokerConnection, ConfigError
from .publisher import CommandPublisher, PublishResult

__all__ = [
    "BrokerConfig",
    "BrokerConnection",
    "CommandPublisher",
    "ConfigError",
    "PublishResult",
]

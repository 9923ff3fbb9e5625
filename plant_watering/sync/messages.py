"""
Inbound message parsing.

Field access is lenient in the same way the controller firmware's JSON
library is: numbers given as floats or numeric strings are accepted,
anything else falls back to the field default.
"""

import json
import logging
import math
from typing import Any, Dict, Optional, Tuple, Union

from .. import topics
from .state import MoistureReading, WateringStatus

logger = logging.getLogger(__name__)


class PayloadError(ValueError):
    """Raised when an inbound payload is not a JSON object."""


def decode_object(payload: Union[bytes, str]) -> Dict[str, Any]:
    """
    Decode a UTF-8 JSON object payload.

    Raises:
        PayloadError: if the payload is not valid UTF-8 JSON or not an object
    """
    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode('utf-8')
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as e:
        raise PayloadError(f"Invalid JSON payload: {e}") from e

    if not isinstance(data, dict):
        raise PayloadError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def opt_int(data: Dict[str, Any], key: str, default: Optional[int] = 0) -> Optional[int]:
    """Read an integer field, returning default when absent or not numeric."""
    value = data.get(key)
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return default


def opt_bool(data: Dict[str, Any], key: str, default: Optional[bool] = False) -> Optional[bool]:
    """Read a boolean field, accepting "true"/"false" strings."""
    value = data.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return default


def _status(is_watering: bool, zone: Optional[int]) -> Optional[WateringStatus]:
    if not is_watering:
        return WateringStatus.idle()
    if zone not in topics.ZONES:
        logger.warning(f"Ignoring watering status without a valid zone: {zone!r}")
        return None
    return WateringStatus(active=True, zone=zone)


def _moisture(data: Dict[str, Any], zone: int) -> int:
    key = f"moisture{zone}"
    value = opt_int(data, key, 0)
    if not topics.MOISTURE_MIN <= value <= topics.MOISTURE_MAX:
        logger.warning(f"{key}={value} outside {topics.MOISTURE_MIN}-{topics.MOISTURE_MAX}, using 0")
        return 0
    return value


def parse_soil_data(payload: Union[bytes, str]) -> Tuple[MoistureReading, Optional[WateringStatus]]:
    """
    Parse a data/soil message.

    Returns:
        Tuple of (moisture reading, embedded watering status or None)

    Raises:
        PayloadError: if the payload is not a JSON object
    """
    data = decode_object(payload)
    reading = MoistureReading(values=tuple(_moisture(data, zone) for zone in topics.ZONES))

    is_watering = opt_bool(data, "isWatering", None)
    zone = opt_int(data, "wateringZone", None)
    if is_watering is None or zone is None:
        return reading, None
    return reading, _status(is_watering, zone)


def parse_watering_status(payload: Union[bytes, str]) -> Optional[WateringStatus]:
    """
    Parse a status/watering message.

    Returns:
        WateringStatus, or None when the message claims watering
        without naming a valid zone

    Raises:
        PayloadError: if the payload is not a JSON object
    """
    data = decode_object(payload)
    return _status(opt_bool(data, "isWatering", False), opt_int(data, "zone", None))

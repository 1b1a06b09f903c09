"""
Parsing of sensor and actuator/device JSON payloads into domain events.

Every function raises ``DataError`` on malformed input; callers decide what
to do with it.
"""

import json
import math
from datetime import datetime
from typing import Any, Dict, Optional

from .data_models import Device, DeviceStatus, DeviceType, SensorReading, SensorType
from .errors import DataError
from .timezone_utils import utc_now


def decode_object(payload: str) -> Dict[str, Any]:
    """Decode a payload that must be a JSON object"""
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        raise DataError(f"Invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise DataError(f"Expected JSON object, got {type(data).__name__}")
    return data


def _required_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise DataError(f"Missing or invalid '{key}'")
    return value


def _device_id(data: Dict[str, Any]) -> str:
    value = data.get("deviceID")
    # bool is an int subclass and is never a valid id
    if isinstance(value, bool):
        raise DataError("Invalid 'deviceID'")
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str) and value:
        return value
    raise DataError("Missing or invalid 'deviceID'")


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


def parse_numeric(value: Any) -> float:
    """Accept a finite number or a numeric string"""
    if isinstance(value, bool):
        raise DataError("Boolean is not a numeric value")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as e:
            raise DataError(f"Non-numeric value: {value!r}") from e
    else:
        raise DataError(f"Missing or invalid 'value': {value!r}")
    if not math.isfinite(number):
        raise DataError(f"Non-finite value: {value!r}")
    return number


def synthetic_id(node: str, device_type: str, device_id: str) -> str:
    """Join key correlating a wire message with a device entity"""
    return f"{node}_{device_type}_{device_id}"


def parse_sensor_reading(node: str, payload: str,
                         timestamp: Optional[datetime] = None) -> SensorReading:
    data = decode_object(payload)
    device_type = _required_str(data, "deviceType")
    device_id = _device_id(data)
    if "value" not in data:
        raise DataError("Missing 'value'")
    value = parse_numeric(data["value"])
    sensor_type = SensorType.parse(device_type)

    return SensorReading(
        id=synthetic_id(node, device_type, device_id),
        sensor_type=sensor_type,
        value=value,
        unit=sensor_type.default_unit,
        timestamp=timestamp or utc_now(),
        device_node=node,
        location=_optional_str(data, "location"),
    )


def parse_device_status(node: str, payload: str,
                        timestamp: Optional[datetime] = None) -> Device:
    data = decode_object(payload)
    device_type = _required_str(data, "deviceType")
    device_id = _device_id(data)
    running = data.get("running")
    if not isinstance(running, bool):
        running = None
    description = _optional_str(data, "description")

    return Device(
        id=synthetic_id(node, device_type, device_id),
        name=description or f"{device_type} {device_id}",
        device_type=DeviceType.parse(device_type),
        status=DeviceStatus.ONLINE if running else DeviceStatus.OFFLINE,
        is_on=bool(running),
        location=_optional_str(data, "location"),
        description=description,
        last_update=timestamp or utc_now(),
    )

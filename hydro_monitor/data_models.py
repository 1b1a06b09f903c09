"""
Data models for the hydroponic monitor.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .timezone_utils import utc_isoformat, utc_now


class ConnectionState(Enum):
    """Lifecycle of a single broker connection"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SensorType(Enum):
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    WATER_LEVEL = "waterLevel"
    PH = "ph"
    ELECTRICAL_CONDUCTIVITY = "electricalConductivity"
    LIGHT_INTENSITY = "lightIntensity"
    PRESSURE = "pressure"

    @classmethod
    def parse(cls, raw: str) -> "SensorType":
        """Case-insensitive lookup; unknown types fall back to temperature"""
        lowered = raw.lower()
        for sensor_type in cls:
            if sensor_type.value.lower() == lowered:
                return sensor_type
        return cls.TEMPERATURE

    @property
    def display_name(self) -> str:
        return _SENSOR_DISPLAY_NAMES[self]

    @property
    def default_unit(self) -> str:
        return _SENSOR_UNITS[self]


_SENSOR_DISPLAY_NAMES = {
    SensorType.TEMPERATURE: "Temperature",
    SensorType.HUMIDITY: "Humidity",
    SensorType.WATER_LEVEL: "Water Level",
    SensorType.PH: "pH Level",
    SensorType.ELECTRICAL_CONDUCTIVITY: "EC",
    SensorType.LIGHT_INTENSITY: "Light",
    SensorType.PRESSURE: "Pressure",
}

_SENSOR_UNITS = {
    SensorType.TEMPERATURE: "°C",
    SensorType.HUMIDITY: "%",
    SensorType.WATER_LEVEL: "cm",
    SensorType.PH: "pH",
    SensorType.ELECTRICAL_CONDUCTIVITY: "μS/cm",
    SensorType.LIGHT_INTENSITY: "lux",
    SensorType.PRESSURE: "Pa",
}


class DeviceType(Enum):
    PUMP = "pump"
    FAN = "fan"
    LIGHT = "light"
    HEATER = "heater"
    VALVE = "valve"

    @classmethod
    def parse(cls, raw: str) -> "DeviceType":
        """Case-insensitive lookup; unknown types fall back to pump"""
        lowered = raw.lower()
        for device_type in cls:
            if device_type.value == lowered:
                return device_type
        return cls.PUMP


class DeviceStatus(Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"
    MAINTENANCE = "maintenance"


@dataclass(frozen=True)
class HydroMessage:
    """Raw topic and payload of one inbound broker message"""
    topic: str
    payload: str


@dataclass(frozen=True)
class SensorReading:
    """Represents a sensor reading"""
    id: str
    sensor_type: SensorType
    value: float
    unit: str
    timestamp: datetime
    device_node: str
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sensor_type": self.sensor_type.value,
            "value": self.value,
            "unit": self.unit,
            "timestamp": utc_isoformat(self.timestamp),
            "device_node": self.device_node,
            "location": self.location,
        }


@dataclass(frozen=True)
class Device:
    """Status of a controllable device (actuator)"""
    id: str
    name: str
    device_type: DeviceType
    status: DeviceStatus
    is_on: bool
    location: Optional[str] = None
    description: Optional[str] = None
    last_update: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "device_type": self.device_type.value,
            "status": self.status.value,
            "is_on": self.is_on,
            "location": self.location,
            "description": self.description,
            "last_update": utc_isoformat(self.last_update),
        }


@dataclass(frozen=True)
class ReconnectResult:
    """Outcome of one manual reconnection attempt across MQTT and InfluxDB"""
    mqtt_ok: bool
    influx_ok: bool
    elapsed: timedelta
    error_message: Optional[str] = None

    @property
    def all_ok(self) -> bool:
        return self.mqtt_ok and self.influx_ok

    @property
    def all_failed(self) -> bool:
        return not self.mqtt_ok and not self.influx_ok

    @property
    def partial_success(self) -> bool:
        return self.mqtt_ok != self.influx_ok

    @property
    def elapsed_ms(self) -> int:
        return self.elapsed // timedelta(milliseconds=1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mqtt_ok": self.mqtt_ok,
            "influx_ok": self.influx_ok,
            "elapsed_ms": self.elapsed_ms,
            "error_message": self.error_message,
        }

    def __str__(self) -> str:
        if self.all_ok:
            status = "All services reconnected successfully"
        elif self.partial_success:
            status = (
                f"Partial reconnection: MQTT {'OK' if self.mqtt_ok else 'Failed'}, "
                f"InfluxDB {'OK' if self.influx_ok else 'Failed'}"
            )
        else:
            status = "All services failed to reconnect"
        error = f", error: {self.error_message}" if self.error_message is not None else ""
        return f"ReconnectResult({status}, elapsed: {self.elapsed_ms}ms{error})"


@dataclass(frozen=True)
class ConnectionStatus:
    """Combined connection status for MQTT and InfluxDB"""
    mqtt_connected: bool = False
    influx_connected: bool = False
    mqtt_disconnected_since: Optional[datetime] = None
    influx_disconnected_since: Optional[datetime] = None

    @property
    def has_disconnections(self) -> bool:
        return not self.mqtt_connected or not self.influx_connected

    @property
    def all_connected(self) -> bool:
        return self.mqtt_connected and self.influx_connected

    @property
    def earliest_disconnection(self) -> Optional[datetime]:
        candidates = []
        if not self.mqtt_connected and self.mqtt_disconnected_since is not None:
            candidates.append(self.mqtt_disconnected_since)
        if not self.influx_connected and self.influx_disconnected_since is not None:
            candidates.append(self.influx_disconnected_since)
        return min(candidates) if candidates else None

    def with_mqtt(self, status: str, now: Optional[datetime] = None) -> "ConnectionStatus":
        connected = status == "connected"
        since = None if connected else (self.mqtt_disconnected_since or now or utc_now())
        return replace(self, mqtt_connected=connected, mqtt_disconnected_since=since)

    def with_influx(self, status: str, now: Optional[datetime] = None) -> "ConnectionStatus":
        connected = status == "connected"
        since = None if connected else (self.influx_disconnected_since or now or utc_now())
        return replace(self, influx_connected=connected, influx_disconnected_since=since)

    def to_dict(self) -> Dict[str, Any]:
        def fmt(dt: Optional[datetime]) -> Optional[str]:
            return utc_isoformat(dt) if dt is not None else None

        return {
            "mqtt_connected": self.mqtt_connected,
            "influx_connected": self.influx_connected,
            "mqtt_disconnected_since": fmt(self.mqtt_disconnected_since),
            "influx_disconnected_since": fmt(self.influx_disconnected_since),
            "all_connected": self.all_connected,
        }


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class MonitorConfig:
    """Configuration for the hydroponic monitor"""
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id: str = "hydro_monitor"
    mqtt_use_websockets: bool = False
    mqtt_ws_path: str = "/mqtt"
    mqtt_keepalive: int = 60
    mqtt_connect_timeout: float = 30.0
    topic_namespace: str = "grow"
    auto_reconnect: bool = True
    reconnect_min_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    influx_url: str = "http://localhost:8086"
    influx_token: str = ""
    influx_org: str = "hydroponic-monitor"
    influx_bucket: str = "sensors"
    influx_timeout: float = 5.0
    reconnect_throttle_seconds: float = 5.0
    reconnect_settle_seconds: float = 0.1
    retired_dispose_delay: float = 5.0
    health_check_interval: float = 30.0
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Build a config from environment variables, falling back to defaults"""
        defaults = cls()
        return cls(
            mqtt_host=os.getenv("MQTT_HOST", defaults.mqtt_host),
            mqtt_port=int(os.getenv("MQTT_PORT", str(defaults.mqtt_port))),
            mqtt_username=os.getenv("MQTT_USERNAME") or None,
            mqtt_password=os.getenv("MQTT_PASSWORD") or None,
            mqtt_client_id=os.getenv("MQTT_CLIENT_ID", defaults.mqtt_client_id),
            mqtt_use_websockets=_env_bool("MQTT_USE_WEBSOCKETS", defaults.mqtt_use_websockets),
            influx_url=os.getenv("INFLUX_URL", defaults.influx_url),
            influx_token=os.getenv("INFLUX_TOKEN", defaults.influx_token),
            influx_org=os.getenv("INFLUX_ORG", defaults.influx_org),
            influx_bucket=os.getenv("INFLUX_BUCKET", defaults.influx_bucket),
            http_host=os.getenv("HTTP_HOST", defaults.http_host),
            http_port=int(os.getenv("HTTP_PORT", str(defaults.http_port))),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )

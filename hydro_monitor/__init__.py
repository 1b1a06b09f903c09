"""
Hydroponic Monitor

Watches a hydroponic grow system: sensor and actuator telemetry over MQTT,
InfluxDB health, and operator-triggered connection recovery.
"""

__version__ = "1.0.0"
__author__ = "Hydroponic Monitor Team"

from .data_models import (
    ConnectionState,
    ConnectionStatus,
    Device,
    DeviceStatus,
    DeviceType,
    HydroMessage,
    MonitorConfig,
    ReconnectResult,
    SensorReading,
    SensorType
)
from .errors import AppError, DataError, Failure, InfluxError, MqttError, Result, Success
from .replay_stream import ReplayBroadcast, Subscription
from .mqtt_service import MqttConnectionService, select_transport
from .influx_service import InfluxDbService
from .recovery import ConnectionRecoveryService, HealthCheckable
from .monitor import HydroMonitor

__all__ = [
    "HydroMonitor",
    "MqttConnectionService",
    "ConnectionRecoveryService",
    "InfluxDbService",
    "HealthCheckable",
    "ReplayBroadcast",
    "Subscription",
    "select_transport",
    "ConnectionState",
    "ConnectionStatus",
    "Device",
    "DeviceStatus",
    "DeviceType",
    "HydroMessage",
    "MonitorConfig",
    "ReconnectResult",
    "SensorReading",
    "SensorType",
    "AppError",
    "DataError",
    "InfluxError",
    "MqttError",
    "Result",
    "Success",
    "Failure"
]

"""
Main Monitor Coordinator

Owns the live MQTT session, the InfluxDB health probe and manual recovery,
and keeps the latest sensor readings and device states for the HTTP surface.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .data_models import ConnectionStatus, Device, MonitorConfig, ReconnectResult, SensorReading
from .errors import Result, Success
from .influx_service import InfluxDbService
from .mqtt_service import ClientFactory, MqttConnectionService
from .recovery import ConnectionRecoveryService
from .replay_stream import ReplayBroadcast
from .timezone_utils import seconds_between, utc_isoformat, utc_now

logger = logging.getLogger(__name__)


class HydroMonitor:
    """Main monitor coordinator class"""

    def __init__(self, config: MonitorConfig,
                 influx: Optional[InfluxDbService] = None,
                 client_factory: Optional[ClientFactory] = None):
        self.config = config
        self._client_factory = client_factory
        self.influx = influx or InfluxDbService.from_config(config)
        self.session = MqttConnectionService.from_config(config, client_factory)
        self.recovery = ConnectionRecoveryService(
            self.session,
            self.influx,
            throttle_interval=config.reconnect_throttle_seconds,
            settle_delay=config.reconnect_settle_seconds,
        )

        now = utc_now()
        self.connection_status = ConnectionStatus(
            mqtt_disconnected_since=now,
            influx_disconnected_since=now,
        )
        self.sensor_readings: Dict[str, SensorReading] = {}
        self.devices: Dict[str, Device] = {}

        # State
        self.running = False
        self._background_tasks: List[asyncio.Task] = []
        self._session_tasks: List[asyncio.Task] = []
        self._disposal_tasks: Set[asyncio.Task] = set()
        self._retired_sessions: List[MqttConnectionService] = []

    async def start(self) -> Result[None]:
        """Start the monitor and connect to the broker"""
        if self.running:
            logger.warning("Monitor already running")
            return Success(None)

        logger.info("Starting hydroponic monitor...")
        self.running = True
        self._start_session_consumers(self.session)
        self._background_tasks.append(asyncio.create_task(
            self._consume(self.influx.connection_stream, self._on_influx_status)))
        self._background_tasks.append(asyncio.create_task(self._health_task()))

        result = await self.session.connect()
        if result.is_failure:
            logger.warning(f"Initial MQTT connect failed, will keep retrying: {result.error}")
        return result

    async def stop(self):
        """Stop the monitor and release every session"""
        logger.info("Stopping hydroponic monitor...")
        self.running = False

        tasks = self._background_tasks + self._session_tasks + list(self._disposal_tasks)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks = []
        self._session_tasks = []
        self._disposal_tasks.clear()

        for session in self._retired_sessions:
            await session.dispose()
        self._retired_sessions = []
        await self.session.dispose()
        await self.influx.close()

    async def apply_config(self, config: MonitorConfig) -> Result[None]:
        """Swap in a new broker session; the old one is retired now and disposed later"""
        if self.recovery.is_in_progress:
            logger.info("Waiting for the manual reconnect in progress before switching sessions")
        while self.recovery.is_in_progress:
            await self.recovery.wait_until_idle()
        # nothing awaits between here and the swap
        old_session = self.session
        old_session.retire()
        self._stop_session_consumers()

        self.config = config
        self.session = MqttConnectionService.from_config(config, self._client_factory)
        self.recovery.session = self.session
        self.recovery.throttle_interval = config.reconnect_throttle_seconds
        self.recovery.settle_delay = config.reconnect_settle_seconds
        self.connection_status = self.connection_status.with_mqtt("disconnected")
        logger.info(f"Switched MQTT session to {config.mqtt_host}:{config.mqtt_port}")

        self._retired_sessions.append(old_session)
        if self.running:
            task = asyncio.create_task(self._dispose_later(old_session, config.retired_dispose_delay))
            self._disposal_tasks.add(task)
            task.add_done_callback(self._disposal_tasks.discard)
            self._start_session_consumers(self.session)
            return await self.session.connect()
        return Success(None)

    async def manual_reconnect(self, force: bool = False) -> ReconnectResult:
        return await self.recovery.manual_reconnect(force=force)

    async def send_device_command(self, device_id: str, command: str,
                                  parameters: Optional[Dict[str, Any]] = None) -> Result[None]:
        return await self.session.publish_device_command(device_id, command, parameters)

    def status(self) -> Dict[str, Any]:
        """JSON-friendly snapshot of the monitor"""
        last_attempt = self.recovery.last_attempt
        return {
            "connection": self.connection_status.to_dict(),
            "downtime_seconds": seconds_between(self.connection_status.earliest_disconnection),
            "mqtt": {
                "host": self.session.host,
                "port": self.session.port,
                "state": self.session.state.value,
                "last_status": self.session.last_status,
                "attempts": self.session.attempt_count,
                "retired_sessions_pending": len(self._retired_sessions),
            },
            "influx": {
                "url": self.influx.url,
                "healthy": self.influx.last_healthy,
            },
            "recovery": {
                "in_progress": self.recovery.is_in_progress,
                "last_attempt": utc_isoformat(last_attempt) if last_attempt else None,
                "can_attempt": self.recovery.can_attempt_reconnect,
            },
            "sensors": len(self.sensor_readings),
            "devices": len(self.devices),
        }

    # ------------------------------------------------------------------
    # Stream consumers
    # ------------------------------------------------------------------

    def _start_session_consumers(self, session: MqttConnectionService):
        self._session_tasks = [
            asyncio.create_task(self._consume(session.sensor_data_stream, self._on_sensor_reading)),
            asyncio.create_task(self._consume(session.device_status_stream, self._on_device_status)),
            asyncio.create_task(self._consume(session.connection_stream, self._on_mqtt_status)),
        ]

    def _stop_session_consumers(self):
        for task in self._session_tasks:
            if not task.done():
                task.cancel()
        self._session_tasks = []

    async def _consume(self, stream: ReplayBroadcast, handler: Callable[[Any], None]):
        async with stream.subscribe() as subscription:
            async for item in subscription:
                try:
                    handler(item)
                except Exception as e:
                    logger.error(f"Error handling {stream.name} item: {e}")

    def _on_sensor_reading(self, reading: SensorReading):
        self.sensor_readings[reading.id] = reading
        logger.debug(f"Sensor {reading.id}: {reading.value}{reading.unit}")

    def _on_device_status(self, device: Device):
        self.devices[device.id] = device
        logger.debug(f"Device {device.id} is {device.status.value}")

    def _on_mqtt_status(self, status: str):
        self.connection_status = self.connection_status.with_mqtt(status)

    def _on_influx_status(self, status: str):
        self.connection_status = self.connection_status.with_influx(status)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _health_task(self):
        """Periodically probe InfluxDB and retry the broker if it is down"""
        while self.running:
            try:
                await self.influx.check_health()
            except Exception as e:
                logger.warning(f"InfluxDB health check failed: {e}")
            try:
                session = self.session
                if not session.is_connected and not session.is_connecting:
                    result = await session.connect()
                    if result.is_failure:
                        logger.warning(f"MQTT connect retry failed: {result.error}")
            except Exception as e:
                logger.error(f"Error in health task: {e}")
            await asyncio.sleep(self.config.health_check_interval)

    async def _dispose_later(self, session: MqttConnectionService, delay: float):
        await asyncio.sleep(delay)
        await session.dispose()
        if session in self._retired_sessions:
            self._retired_sessions.remove(session)
        logger.info(f"Disposed retired MQTT session for {session.host}:{session.port}")

"""
Manual reconnection of the MQTT session and the InfluxDB health probe.

Backs the operator "retry" action: throttled, never overlapping, and
reporting each backend separately so a partial outage stays diagnosable.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from .data_models import ReconnectResult
from .mqtt_service import MqttConnectionService
from .timezone_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_SECONDS = 5.0
DEFAULT_SETTLE_SECONDS = 0.1


class HealthCheckable(Protocol):
    async def check_health(self) -> bool:
        ...


class ConnectionRecoveryService:
    """Coordinates a manual reconnect across the MQTT session and a health-checkable service"""

    def __init__(self, session: MqttConnectionService,
                 health_service: HealthCheckable,
                 throttle_interval: float = DEFAULT_THROTTLE_SECONDS,
                 settle_delay: float = DEFAULT_SETTLE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.health_service = health_service
        self.throttle_interval = throttle_interval
        self.settle_delay = settle_delay
        self._clock = clock
        self._last_attempt: Optional[datetime] = None
        self._last_attempt_at: Optional[float] = None
        self._in_progress = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_in_progress(self) -> bool:
        return self._in_progress

    async def wait_until_idle(self):
        """Wait for an in-flight manual reconnect to finish"""
        await self._idle.wait()

    @property
    def last_attempt(self) -> Optional[datetime]:
        return self._last_attempt

    @property
    def can_attempt_reconnect(self) -> bool:
        if self._last_attempt_at is None:
            return True
        return self._clock() - self._last_attempt_at >= self.throttle_interval

    async def manual_reconnect(self, force: bool = False) -> ReconnectResult:
        """Reconnect MQTT and probe InfluxDB, reporting both outcomes"""
        if not force and not self.can_attempt_reconnect:
            since = self._clock() - self._last_attempt_at
            logger.debug(f"Manual reconnect throttled - last attempt was {since:.1f}s ago")
            return ReconnectResult(
                mqtt_ok=False,
                influx_ok=False,
                elapsed=timedelta(0),
                error_message=(f"Please wait {self.throttle_interval:g}s "
                               "between reconnection attempts"),
            )

        if self._in_progress:
            logger.debug("Manual reconnect already in progress")
            return ReconnectResult(
                mqtt_ok=False,
                influx_ok=False,
                elapsed=timedelta(0),
                error_message="Reconnection already in progress",
            )

        # Both guards are set before the first await.
        self._in_progress = True
        self._idle.clear()
        started = self._clock()
        self._last_attempt_at = started
        self._last_attempt = utc_now()
        logger.info(f"Starting manual reconnection attempt{' (forced)' if force else ''}")

        mqtt_ok = False
        influx_ok = False
        errors: List[str] = []
        try:
            try:
                logger.info("Attempting MQTT reconnection...")
                mqtt_ok = await self._reconnect_mqtt(errors)
                if mqtt_ok:
                    logger.info("MQTT reconnection successful")
            except Exception as e:
                error = f"MQTT reconnection failed: {e}"
                logger.warning(error)
                errors.append(error)

            try:
                logger.info("Attempting InfluxDB health check...")
                influx_ok = bool(await self.health_service.check_health())
                if influx_ok:
                    logger.info("InfluxDB health check successful")
                else:
                    logger.warning("InfluxDB health check reported NOT healthy")
            except Exception as e:
                error = f"InfluxDB health check failed: {e}"
                logger.warning(error)
                errors.append(error)
        finally:
            self._in_progress = False
            self._idle.set()

        elapsed = timedelta(seconds=max(0.0, self._clock() - started))
        result = ReconnectResult(
            mqtt_ok=mqtt_ok,
            influx_ok=influx_ok,
            elapsed=elapsed,
            error_message="; ".join(errors) if errors else None,
        )
        logger.info(
            f"Manual reconnect completed: mqttOk={mqtt_ok}, influxOk={influx_ok}, "
            f"elapsed={result.elapsed_ms}ms, errors={len(errors)}"
        )
        return result

    async def _reconnect_mqtt(self, errors: List[str]) -> bool:
        session = self.session
        await session.disconnect()
        await asyncio.sleep(self.settle_delay)

        result = await session.connect()
        if result.is_failure:
            error = f"MQTT reconnection failed: {result.error}"
            logger.warning(error)
            errors.append(error)
            return False

        await session.ensure_initialized()
        return True

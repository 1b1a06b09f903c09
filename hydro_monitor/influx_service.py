"""
InfluxDB client wrapper exposing the health probe used by connection recovery.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from .data_models import MonitorConfig
from .errors import InfluxError
from .replay_stream import ReplayBroadcast

logger = logging.getLogger(__name__)


class InfluxDbService:
    """Talks to the InfluxDB HTTP API; only the health endpoint is needed here"""

    def __init__(self, url: str, token: str = "", organization: str = "",
                 bucket: str = "", timeout: float = 5.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.url = url.rstrip("/")
        self.token = token
        self.organization = organization
        self.bucket = bucket
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self.last_healthy: Optional[bool] = None
        self._connection_stream: ReplayBroadcast[str] = ReplayBroadcast(1, "influx connection")

    @classmethod
    def from_config(cls, config: MonitorConfig) -> "InfluxDbService":
        return cls(
            url=config.influx_url,
            token=config.influx_token,
            organization=config.influx_org,
            bucket=config.influx_bucket,
            timeout=config.influx_timeout,
        )

    @property
    def connection_stream(self) -> ReplayBroadcast[str]:
        """Replays the last health outcome as "connected" / "disconnected" """
        return self._connection_stream

    def _headers(self):
        if not self.token:
            return {}
        return {"Authorization": f"Token {self.token}"}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def check_health(self) -> bool:
        """True when InfluxDB reports status "pass"; raises InfluxError if unreachable"""
        url = f"{self.url}/health"
        try:
            session = await self._get_session()
            async with session.get(url, headers=self._headers(),
                                   timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if response.status != 200:
                    logger.warning(f"InfluxDB health endpoint returned HTTP {response.status}")
                    healthy = False
                else:
                    data = await response.json(content_type=None)
                    healthy = isinstance(data, dict) and data.get("status") == "pass"
                    if not healthy:
                        logger.warning(f"InfluxDB reports unhealthy: {data}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._record(False)
            raise InfluxError(f"Health check request to {url} failed: {e!r}") from e

        self._record(healthy)
        return healthy

    def _record(self, healthy: bool):
        if healthy != self.last_healthy:
            logger.info(f"InfluxDB is {'healthy' if healthy else 'unhealthy'}")
        self.last_healthy = healthy
        self._connection_stream.publish("connected" if healthy else "disconnected")

    async def close(self):
        """Release the HTTP session and end the status stream"""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._connection_stream.close()

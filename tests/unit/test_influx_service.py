"""
Unit tests for InfluxDbService against an in-process HTTP server.
"""
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from hydro_monitor.data_models import MonitorConfig
from hydro_monitor.errors import InfluxError
from hydro_monitor.influx_service import InfluxDbService


@pytest_asyncio.fixture
async def influx_server():
    """Fake InfluxDB exposing /health with a scripted response."""
    state = {"status": 200, "body": {"name": "influxdb", "status": "pass"}, "auth": []}

    async def health(request):
        state["auth"].append(request.headers.get("Authorization"))
        return web.json_response(state["body"], status=state["status"])

    app = web.Application()
    app.router.add_get("/health", health)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield str(server.make_url("/")), state
    await server.close()


class TestInfluxDbService:
    """Test cases for the InfluxDB health probe."""

    @pytest.mark.asyncio
    async def test_healthy(self, influx_server):
        url, state = influx_server
        service = InfluxDbService(url, token="secret-token")
        statuses = service.connection_stream.subscribe()
        try:
            assert await service.check_health() is True
            assert service.last_healthy is True
            assert state["auth"] == ["Token secret-token"]
            assert statuses.drain() == ["connected"]
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_failing_status(self, influx_server):
        url, state = influx_server
        state["body"] = {"name": "influxdb", "status": "fail"}
        service = InfluxDbService(url)
        try:
            assert await service.check_health() is False
            assert state["auth"] == [None]
            assert service.connection_stream.latest == "disconnected"
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_http_error_status(self, influx_server):
        url, state = influx_server
        state["status"] = 503
        service = InfluxDbService(url)
        try:
            assert await service.check_health() is False
            assert service.last_healthy is False
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_unreachable_raises(self):
        service = InfluxDbService("http://127.0.0.1:1", timeout=1.0)
        try:
            with pytest.raises(InfluxError):
                await service.check_health()
            assert service.last_healthy is False
            assert service.connection_stream.latest == "disconnected"
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_close_ends_status_stream(self, influx_server):
        url, _ = influx_server
        service = InfluxDbService(url)
        await service.check_health()
        await service.close()
        await service.close()
        assert service.connection_stream.is_closed

    def test_from_config(self):
        config = MonitorConfig(influx_url="http://influx:8086/", influx_token="t", influx_timeout=2.0)
        service = InfluxDbService.from_config(config)
        assert service.url == "http://influx:8086"
        assert service.token == "t"
        assert service.bucket == "sensors"
        assert service.timeout == 2.0

"""
HTTP surface for operators: status, latest telemetry and the manual reconnect action.
"""

import logging
from typing import Optional

import aiohttp_cors
from aiohttp import web

from . import __version__

logger = logging.getLogger(__name__)


def _parse_bool(raw) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


class MonitorHTTPServer:
    """HTTP server exposing the monitor over a small JSON API"""

    def __init__(self, monitor, host: str = "0.0.0.0", port: int = 8080):
        self.monitor = monitor
        self.host = host
        self.port = port
        self.app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        self._setup_routes()
        self._setup_cors()

    def _setup_cors(self):
        """Allow the dashboard front-end to call the API from another origin"""
        cors = aiohttp_cors.setup(self.app, defaults={
            "*": aiohttp_cors.ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*"
            )
        })

        for route in list(self.app.router.routes()):
            cors.add(route)

    def _setup_routes(self):
        self.app.router.add_get("/health", self.health_check)
        self.app.router.add_get("/status", self.get_status)
        self.app.router.add_get("/devices", self.get_devices)
        self.app.router.add_get("/sensors", self.get_sensors)
        self.app.router.add_post("/devices/{device_id}/command", self.send_command)
        self.app.router.add_post("/reconnect", self.reconnect)

    async def health_check(self, request):
        return web.json_response({
            "status": "healthy",
            "service": "hydro-monitor",
            "version": __version__
        })

    async def get_status(self, request):
        return web.json_response(self.monitor.status())

    async def get_devices(self, request):
        """Latest known state of every device"""
        devices = sorted(self.monitor.devices.values(), key=lambda d: d.id)
        return web.json_response({"devices": [d.to_dict() for d in devices]})

    async def get_sensors(self, request):
        """Latest reading of every sensor"""
        readings = sorted(self.monitor.sensor_readings.values(), key=lambda r: r.id)
        return web.json_response({"sensors": [r.to_dict() for r in readings]})

    async def send_command(self, request):
        device_id = request.match_info["device_id"]
        try:
            data = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        command = data.get("command") if isinstance(data, dict) else None
        if not command:
            return web.json_response({"error": "Missing 'command' in request body"}, status=400)

        parameters = data.get("parameters")
        if parameters is not None and not isinstance(parameters, dict):
            return web.json_response({"error": "'parameters' must be a JSON object"}, status=400)

        result = await self.monitor.send_device_command(device_id, command, parameters)
        if result.is_failure:
            return web.json_response({"success": False, "error": result.error.message}, status=503)
        return web.json_response({"success": True})

    async def reconnect(self, request):
        """Operator retry: reconnect MQTT and re-check InfluxDB"""
        force = _parse_bool(request.query.get("force"))
        if request.can_read_body:
            try:
                data = await request.json()
            except ValueError:
                return web.json_response({"error": "Invalid JSON body"}, status=400)
            if isinstance(data, dict) and "force" in data:
                force = _parse_bool(data["force"])

        result = await self.monitor.manual_reconnect(force=force)
        body = result.to_dict()
        body["summary"] = str(result)
        return web.json_response(body)

    async def start(self):
        """Start the HTTP server"""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"HTTP server started on http://{self.host}:{self.port}")
        logger.info(f"  - Status: http://{self.host}:{self.port}/status")
        logger.info(f"  - Reconnect: POST http://{self.host}:{self.port}/reconnect")

    async def stop(self):
        """Stop the HTTP server"""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("HTTP server stopped")

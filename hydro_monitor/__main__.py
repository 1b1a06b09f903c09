#!/usr/bin/env python3
"""
Hydroponic Monitor CLI

Command-line interface for running the monitor and its HTTP API.
"""

import argparse
import asyncio
import logging
import os
import sys

from .data_models import MonitorConfig
from .http_server import MonitorHTTPServer
from .monitor import HydroMonitor


def setup_logging(log_level: str = "INFO"):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {log_level}')

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_args(argv=None):
    """Parse command line arguments"""
    defaults = MonitorConfig.from_env()
    parser = argparse.ArgumentParser(
        description="Hydroponic Monitor - MQTT telemetry with InfluxDB health and recovery"
    )

    # MQTT settings
    parser.add_argument(
        "--mqtt-host",
        default=defaults.mqtt_host,
        help="MQTT broker hostname or IP address (default: localhost)"
    )
    parser.add_argument(
        "--mqtt-port",
        type=int,
        default=defaults.mqtt_port,
        help="MQTT broker port (default: 1883)"
    )
    parser.add_argument(
        "--mqtt-username",
        default=defaults.mqtt_username,
        help="MQTT username for authentication"
    )
    parser.add_argument(
        "--mqtt-password",
        default=defaults.mqtt_password,
        help="MQTT password for authentication"
    )
    parser.add_argument(
        "--mqtt-client-id",
        default=defaults.mqtt_client_id,
        help="MQTT client identifier (default: hydro_monitor)"
    )
    parser.add_argument(
        "--websockets",
        action="store_true",
        default=defaults.mqtt_use_websockets,
        help="Connect to the broker over WebSockets instead of TCP"
    )

    # InfluxDB settings
    parser.add_argument(
        "--influx-url",
        default=defaults.influx_url,
        help="InfluxDB base URL (default: http://localhost:8086)"
    )
    parser.add_argument(
        "--influx-token",
        default=defaults.influx_token,
        help="InfluxDB API token"
    )

    # HTTP API settings
    parser.add_argument(
        "--http-host",
        default=defaults.http_host,
        help="HTTP API host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--http-port",
        type=int,
        default=defaults.http_port,
        help="HTTP API port (default: 8080)"
    )
    parser.add_argument(
        "--no-http",
        action="store_true",
        help="Do not start the HTTP API"
    )

    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    return parser.parse_args(argv)


def build_config(args) -> MonitorConfig:
    config = MonitorConfig.from_env()
    config.mqtt_host = args.mqtt_host
    config.mqtt_port = args.mqtt_port
    config.mqtt_username = args.mqtt_username
    config.mqtt_password = args.mqtt_password
    config.mqtt_client_id = args.mqtt_client_id
    config.mqtt_use_websockets = args.websockets
    config.influx_url = args.influx_url
    config.influx_token = args.influx_token
    config.http_host = args.http_host
    config.http_port = args.http_port
    config.log_level = args.log_level
    return config


async def main(argv=None) -> int:
    """Main entry point"""
    args = parse_args(argv)

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    config = build_config(args)
    logger.info("Starting Hydroponic Monitor...")
    logger.info(f"MQTT Broker: {config.mqtt_host}:{config.mqtt_port}")
    logger.info(f"InfluxDB: {config.influx_url}")

    monitor = HydroMonitor(config)
    http_server = None
    try:
        await monitor.start()

        if not args.no_http:
            http_server = MonitorHTTPServer(monitor, host=config.http_host, port=config.http_port)
            await http_server.start()

        logger.info("Monitor running... Press Ctrl+C to stop")
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Received interrupt signal, shutting down...")
        raise
    except OSError as e:
        logger.error(f"Error starting monitor: {e}")
        return 1
    finally:
        if http_server:
            await http_server.stop()
        await monitor.stop()
        logger.info("Monitor stopped")
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()

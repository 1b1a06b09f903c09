"""
Unit tests for the HydroMonitor coordinator.
"""
import asyncio
from dataclasses import replace

import pytest
import pytest_asyncio

from hydro_monitor.monitor import HydroMonitor

SENSOR_PAYLOAD = {"deviceType": "temperature", "deviceID": "1", "location": "tent1", "value": 23.5}


@pytest_asyncio.fixture
async def monitor(monitor_config, health_service, fake_broker):
    hydro_monitor = HydroMonitor(monitor_config, influx=health_service, client_factory=fake_broker)
    yield hydro_monitor
    await hydro_monitor.stop()


class TestHydroMonitor:
    """Test cases for the monitor coordinator."""

    @pytest.mark.asyncio
    async def test_start_collects_telemetry(self, monitor, fake_broker, eventually):
        result = await monitor.start()
        assert result.is_success

        client = fake_broker.latest
        client.deliver("grow/rpi/sensor", SENSOR_PAYLOAD)
        client.deliver("grow/rpi/actuator", {"deviceType": "pump", "deviceID": "1", "running": True})

        await eventually(lambda: "rpi_temperature_1" in monitor.sensor_readings)
        await eventually(lambda: "rpi_pump_1" in monitor.devices)
        await eventually(lambda: monitor.connection_status.all_connected)

        assert monitor.sensor_readings["rpi_temperature_1"].value == 23.5
        assert monitor.devices["rpi_pump_1"].is_on
        assert monitor.connection_status.earliest_disconnection is None

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, monitor, fake_broker):
        await monitor.start()
        assert (await monitor.start()).is_success
        assert len(fake_broker.clients) == 1

    @pytest.mark.asyncio
    async def test_status_snapshot(self, monitor, eventually):
        await monitor.start()
        await eventually(lambda: monitor.connection_status.mqtt_connected)

        status = monitor.status()

        assert status["mqtt"]["state"] == "connected"
        assert status["mqtt"]["host"] == "test_broker"
        assert status["mqtt"]["attempts"] == 1
        assert status["influx"]["url"] == "http://influx.test"
        assert status["recovery"] == {"in_progress": False, "last_attempt": None, "can_attempt": True}
        assert status["connection"]["mqtt_connected"] is True

        await eventually(lambda: monitor.connection_status.all_connected)
        assert monitor.status()["downtime_seconds"] is None

    @pytest.mark.asyncio
    async def test_manual_reconnect(self, monitor):
        await monitor.start()

        result = await monitor.manual_reconnect()
        throttled = await monitor.manual_reconnect()

        assert result.all_ok
        assert throttled.error_message == "Please wait 5s between reconnection attempts"
        assert monitor.session.attempt_count == 2
        assert monitor.status()["recovery"]["last_attempt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_send_device_command(self, monitor, fake_broker):
        await monitor.start()

        result = await monitor.send_device_command("rpi_pump_1", "off")

        assert result.is_success
        assert fake_broker.latest.published[-1][0] == "grow/rpi/actuator/set"

    @pytest.mark.asyncio
    async def test_health_task_retries_broker(self, monitor_config, health_service, fake_broker, eventually):
        config = replace(monitor_config, health_check_interval=0.01)
        fake_broker.connack_code = 5
        hydro_monitor = HydroMonitor(config, influx=health_service, client_factory=fake_broker)
        try:
            result = await hydro_monitor.start()
            assert result.is_failure
            assert hydro_monitor.running

            fake_broker.connack_code = 0
            await eventually(lambda: hydro_monitor.session.is_connected)
            assert hydro_monitor.session.attempt_count >= 2
            assert health_service.calls >= 1
        finally:
            await hydro_monitor.stop()

    @pytest.mark.asyncio
    async def test_apply_config_retires_old_session(self, monitor, monitor_config, fake_broker, eventually):
        await monitor.start()
        old_session = monitor.session
        old_client = fake_broker.latest
        old_on_message = old_client.on_message

        result = await monitor.apply_config(replace(monitor_config, mqtt_host="other_broker"))

        assert result.is_success
        assert old_session.is_retired
        assert monitor.session is not old_session
        assert monitor.session.is_connected
        assert monitor.recovery.session is monitor.session
        assert fake_broker.latest.connect_calls == [("other_broker", 1883, 60)]

        old_client.on_message = old_on_message
        old_client.deliver("grow/old/sensor", SENSOR_PAYLOAD)
        fake_broker.latest.deliver("grow/new/sensor", SENSOR_PAYLOAD)

        await eventually(lambda: "new_temperature_1" in monitor.sensor_readings)
        await eventually(lambda: old_session.is_disposed)
        await eventually(lambda: monitor.status()["mqtt"]["retired_sessions_pending"] == 0)
        assert "old_temperature_1" not in monitor.sensor_readings

    @pytest.mark.asyncio
    async def test_apply_config_waits_for_manual_reconnect(self, monitor, monitor_config, health_service, eventually):
        await monitor.start()
        old_session = monitor.session
        gate = asyncio.Event()

        async def slow_health_check():
            await gate.wait()
            return True

        health_service.check_health = slow_health_check
        reconnect = asyncio.create_task(monitor.manual_reconnect())
        await eventually(lambda: monitor.recovery.is_in_progress)

        switch = asyncio.create_task(monitor.apply_config(replace(monitor_config, mqtt_host="other_broker")))
        await asyncio.sleep(0.05)
        assert not switch.done()
        assert not old_session.is_retired
        assert monitor.session is old_session

        gate.set()
        result = await asyncio.wait_for(reconnect, 1.0)
        assert result.mqtt_ok
        assert (await asyncio.wait_for(switch, 1.0)).is_success
        assert old_session.is_retired
        assert monitor.session is not old_session
        assert monitor.session.is_connected
        assert monitor.recovery.session is monitor.session

    @pytest.mark.asyncio
    async def test_apply_config_before_start(self, monitor, monitor_config, fake_broker):
        old_session = monitor.session

        result = await monitor.apply_config(replace(monitor_config, mqtt_port=1884))

        assert result.is_success
        assert old_session.is_retired
        assert monitor.session.port == 1884
        assert fake_broker.clients == []

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, monitor_config, health_service, fake_broker):
        hydro_monitor = HydroMonitor(monitor_config, influx=health_service, client_factory=fake_broker)
        await hydro_monitor.start()
        session = hydro_monitor.session

        await hydro_monitor.stop()

        assert not hydro_monitor.running
        assert session.is_disposed
        assert health_service.closed
        assert fake_broker.latest.loop_stopped

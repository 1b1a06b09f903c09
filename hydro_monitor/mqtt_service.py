"""
MQTT connection session for the hydroponic monitor.

``MqttConnectionService`` owns exactly one logical broker connection. paho's
network thread never touches session state: its callbacks post events into
an asyncio queue which a single consumer task applies on the event loop.
Each installed transport gets a generation number, and events carrying an
old generation are discarded, so callbacks from a torn-down or retired
transport cannot change the session.
"""

import asyncio
import functools
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Union

import paho.mqtt.client as mqtt
import tenacity

from . import topics
from .data_models import ConnectionState, Device, HydroMessage, MonitorConfig, SensorReading
from .errors import DataError, Failure, MqttError, Result, Success
from .payloads import parse_device_status, parse_sensor_reading
from .replay_stream import ReplayBroadcast
from .timezone_utils import utc_isoformat

logger = logging.getLogger(__name__)

DEVICE_HISTORY_CAPACITY = 50

# (client_id, transport) -> paho-compatible client
ClientFactory = Callable[[str, str], Any]

_SUPERSEDED = object()


def select_transport(websockets_supported: bool) -> str:
    """Socket transport for native runtimes, websockets where raw sockets are unavailable"""
    return "websockets" if websockets_supported else "tcp"


def create_paho_client(client_id: str, transport: str) -> mqtt.Client:
    """Default transport factory; reconnection is driven by the session, not paho"""
    return mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
        transport=transport,
        reconnect_on_failure=False,
    )


def _is_failure(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return reason_code != 0


class MqttConnectionService:
    """Manages one broker connection and fans inbound messages out as typed streams"""

    def __init__(self, host: str, port: int = 1883,
                 client_id: str = "hydro_monitor",
                 username: Optional[str] = None,
                 password: Optional[str] = None,
                 use_websockets: bool = False,
                 ws_path: str = "/mqtt",
                 keepalive: int = 60,
                 connect_timeout: float = 30.0,
                 namespace: str = topics.DEFAULT_NAMESPACE,
                 auto_reconnect: bool = True,
                 reconnect_min_delay: float = 1.0,
                 reconnect_max_delay: float = 30.0,
                 client_factory: Optional[ClientFactory] = None):
        self.host = host
        self.port = port
        self.client_id = client_id
        self.username = username
        self.password = password
        self.use_websockets = use_websockets
        self.ws_path = ws_path
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout
        self.namespace = namespace
        self.auto_reconnect = auto_reconnect
        self.reconnect_min_delay = reconnect_min_delay
        self.reconnect_max_delay = reconnect_max_delay
        self._client_factory = client_factory or create_paho_client

        self._client = None
        self._generation = 0
        self._state = ConnectionState.DISCONNECTED
        self._retired = False
        self._disposed = False
        self._attempts = 0
        self._connecting_attempt = 0
        self._handshake: Optional[asyncio.Future] = None
        self._initialized = asyncio.Event()

        self._events: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread_id: Optional[int] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._sensor_stream: ReplayBroadcast[SensorReading] = ReplayBroadcast(0, "sensor data")
        self._device_stream: ReplayBroadcast[Device] = ReplayBroadcast(
            DEVICE_HISTORY_CAPACITY, "device status")
        self._message_stream: ReplayBroadcast[HydroMessage] = ReplayBroadcast(0, "raw message")
        self._connection_stream: ReplayBroadcast[str] = ReplayBroadcast(1, "connection status")

    @classmethod
    def from_config(cls, config: MonitorConfig,
                    client_factory: Optional[ClientFactory] = None) -> "MqttConnectionService":
        return cls(
            host=config.mqtt_host,
            port=config.mqtt_port,
            client_id=config.mqtt_client_id,
            username=config.mqtt_username,
            password=config.mqtt_password,
            use_websockets=config.mqtt_use_websockets,
            ws_path=config.mqtt_ws_path,
            keepalive=config.mqtt_keepalive,
            connect_timeout=config.mqtt_connect_timeout,
            namespace=config.topic_namespace,
            auto_reconnect=config.auto_reconnect,
            reconnect_min_delay=config.reconnect_min_delay,
            reconnect_max_delay=config.reconnect_max_delay,
            client_factory=client_factory,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self._state is ConnectionState.CONNECTING

    @property
    def is_retired(self) -> bool:
        return self._retired

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    @property
    def attempt_count(self) -> int:
        return self._attempts

    @property
    def last_status(self) -> Optional[str]:
        return self._connection_stream.latest

    @property
    def transport(self):
        """The live paho client, if any"""
        return self._client

    @property
    def sensor_data_stream(self) -> ReplayBroadcast[SensorReading]:
        return self._sensor_stream

    @property
    def device_status_stream(self) -> ReplayBroadcast[Device]:
        """Replays up to the last 50 device status events to new subscribers"""
        return self._device_stream

    @property
    def message_stream(self) -> ReplayBroadcast[HydroMessage]:
        return self._message_stream

    @property
    def connection_stream(self) -> ReplayBroadcast[str]:
        """Replays the last known connection status to new subscribers"""
        return self._connection_stream

    def device_history(self) -> List[Device]:
        return self._device_stream.snapshot()

    def _transition(self, new_state: ConnectionState):
        """Single place where the connection state changes"""
        if self._state is new_state:
            return
        if self._retired and new_state is not ConnectionState.DISCONNECTED:
            logger.debug(f"Retired session refused transition to {new_state.value}")
            return
        logger.debug(f"MQTT state {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _emit_status(self, status: str):
        self._connection_stream.publish(status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> Result[None]:
        """Connect to the broker; a no-op while retired, disposed, connecting or connected"""
        if self._retired or self._disposed:
            logger.debug("connect() ignored: session is retired or disposed")
            return Success(None)
        if self._state is ConnectionState.CONNECTING:
            logger.debug("connect() ignored: a connect attempt is already in flight")
            return Success(None)
        if self._state is ConnectionState.CONNECTED:
            return Success(None)

        self._attempts += 1
        attempt = self._attempts
        self._connecting_attempt = attempt
        self._transition(ConnectionState.CONNECTING)
        self._ensure_pump()
        try:
            previous = self._release_client()
            if previous is not None:
                await self._shutdown_client(previous)
            if self._retired or self._disposed:
                return Success(None)
            if self._state is not ConnectionState.CONNECTING or self._connecting_attempt != attempt:
                return Failure(MqttError("Connect attempt superseded"))
            return await self._establish()
        finally:
            if self._state is ConnectionState.CONNECTING and self._connecting_attempt == attempt:
                self._transition(ConnectionState.DISCONNECTED)

    async def _establish(self) -> Result[None]:
        transport = select_transport(self.use_websockets)
        logger.info(
            f"Connecting to MQTT broker at {self.host}:{self.port} "
            f"via {transport} (attempt {self._attempts})"
        )
        try:
            client = self._create_client(transport)
        except Exception as e:
            error = f"Failed to create MQTT client instance: {e}"
            logger.error(error)
            self._transition(ConnectionState.DISCONNECTED)
            return Failure(MqttError(error))

        generation = self._install_client(client)
        handshake = asyncio.get_running_loop().create_future()
        self._handshake = handshake
        error = None
        reason_code = None
        try:
            await asyncio.to_thread(client.connect, self.host, self.port, self.keepalive)
            if self._generation == generation:
                client.loop_start()
                reason_code = await asyncio.wait_for(handshake, self.connect_timeout)
            else:
                reason_code = _SUPERSEDED
        except asyncio.TimeoutError:
            error = f"Timed out after {self.connect_timeout}s waiting for the MQTT broker"
        except Exception as e:
            error = f"Error connecting to MQTT broker: {e}"
        finally:
            if self._handshake is handshake:
                self._handshake = None

        if reason_code is _SUPERSEDED or self._generation != generation:
            logger.info("MQTT connect attempt superseded")
            if self._client is not client and client is not None:
                await self._shutdown_client(client)
            self._transition(ConnectionState.DISCONNECTED)
            if self._retired or self._disposed:
                return Success(None)
            return Failure(MqttError("Connect attempt superseded"))

        if error is None and _is_failure(reason_code):
            error = f"Failed to connect to MQTT broker: {reason_code}"

        if error is not None:
            logger.error(error)
            if self._client is client:
                self._release_client()
            await self._shutdown_client(client)
            self._transition(ConnectionState.DISCONNECTED)
            return Failure(MqttError(error))

        self._transition(ConnectionState.CONNECTED)
        self._subscribe_defaults(client)
        self._initialized.set()
        logger.info("Successfully connected to MQTT broker")
        return Success(None)

    async def ensure_initialized(self, timeout: float = 5.0):
        """Wait until the first successful connect, giving up silently after timeout"""
        if self._initialized.is_set():
            return
        try:
            await asyncio.wait_for(self._initialized.wait(), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"MQTT session not initialized after {timeout}s, continuing")

    async def disconnect(self):
        """Disconnect from the broker; streams stay open for a later connect()"""
        self._cancel_auto_reconnect()
        self._resolve_handshake()
        client = self._release_client()
        self._transition(ConnectionState.DISCONNECTED)
        self._emit_status("disconnected")
        if client is not None:
            logger.info("Disconnecting from MQTT broker")
            await self._shutdown_client(client)

    async def reset(self):
        """Drop the transport and buffered device history so the next connect starts clean"""
        if self._retired or self._disposed:
            logger.debug("reset() ignored: session is retired or disposed")
            return
        logger.info("Resetting MQTT session")
        self._device_stream.clear()
        self._initialized.clear()
        await self.disconnect()

    def retire(self):
        """Mark the session as superseded; every later connect, reset and callback is a no-op"""
        if self._retired:
            return
        self._retired = True
        self.auto_reconnect = False
        self._cancel_auto_reconnect()
        self._resolve_handshake()
        if self._client is not None:
            self._detach(self._client)
        self._generation += 1
        if self._state is ConnectionState.CONNECTING:
            self._transition(ConnectionState.DISCONNECTED)
        logger.info(f"MQTT session for {self.host}:{self.port} retired")

    async def dispose(self):
        """Release the transport and close every stream; safe to call more than once"""
        if self._disposed:
            return
        self._disposed = True
        self.auto_reconnect = False
        self._cancel_auto_reconnect()
        self._resolve_handshake()
        client = self._release_client()
        self._transition(ConnectionState.DISCONNECTED)
        if client is not None:
            await self._shutdown_client(client)

        for stream in (self._sensor_stream, self._device_stream,
                       self._message_stream, self._connection_stream):
            stream.close()
        self._initialized.set()

        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
        logger.info("MQTT session disposed")

    async def flush(self):
        """Wait until every queued transport event has been applied"""
        if self._pump_task is not None and not self._pump_task.done():
            await self._events.join()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, topic: str, payload: Union[str, Dict[str, Any]],
                      qos: int = 1, retain: bool = False) -> bool:
        """Publish a message to MQTT"""
        if not self.is_connected or self._client is None:
            logger.warning("Cannot publish - not connected to broker")
            return False

        try:
            body = payload if isinstance(payload, str) else json.dumps(payload)
            result = self._client.publish(topic, body, qos, retain)
            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                logger.debug(f"Published to {topic}")
                return True
            logger.error(f"Failed to publish to {topic}: {result.rc}")
            return False
        except Exception as e:
            logger.error(f"Error publishing message: {e}")
            return False

    def subscribe(self, topic: str, qos: int = 1) -> bool:
        """Subscribe to an extra topic on the live connection"""
        if not self.is_connected or self._client is None:
            logger.warning("Cannot subscribe - not connected to broker")
            return False

        try:
            result, _ = self._client.subscribe(topic, qos)
            if result == mqtt.MQTT_ERR_SUCCESS:
                logger.info(f"Subscribed to {topic}")
                return True
            logger.error(f"Failed to subscribe to {topic}: {result}")
            return False
        except Exception as e:
            logger.error(f"Error subscribing to topic: {e}")
            return False

    async def publish_device_command(self, device_id: str, command: str,
                                     parameters: Optional[Dict[str, Any]] = None) -> Result[None]:
        """Send a command to the actuator identified by its synthetic device id"""
        if not self.is_connected:
            return Failure(MqttError("MQTT client not connected"))

        if parameters is not None and not isinstance(parameters, dict):
            return Failure(MqttError(
                f"Device command parameters must be a mapping, got {type(parameters).__name__}"))

        try:
            node = topics.node_from_device_id(device_id)
            topic = topics.command_topic_for(node, self.namespace)
            payload: Dict[str, Any] = {"deviceID": device_id, "command": command}
            if parameters:
                payload.update(parameters)
            payload["timestamp"] = utc_isoformat()
        except Exception as e:
            logger.error(f"Error building device command: {e}")
            return Failure(MqttError(f"Error publishing device command: {e}"))

        if await self.publish(topic, payload):
            logger.info(f"Published device command to {topic}: {command}")
            return Success(None)
        return Failure(MqttError(f"Failed to publish device command to {topic}"))

    # ------------------------------------------------------------------
    # Transport management
    # ------------------------------------------------------------------

    def _create_client(self, transport: str):
        client = self._client_factory(self.client_id, transport)
        if client is None:
            raise MqttError("client factory returned no client")
        if transport == "websockets":
            client.ws_set_options(path=self.ws_path)
        if self.username and self.password:
            client.username_pw_set(self.username, self.password)
        client.will_set(topics.will_topic(self.namespace), "OFFLINE", qos=1, retain=False)
        client.connect_timeout = self.connect_timeout
        return client

    def _install_client(self, client) -> int:
        self._generation += 1
        generation = self._generation
        client.on_connect = functools.partial(self._on_connect, generation)
        client.on_disconnect = functools.partial(self._on_disconnect, generation)
        client.on_subscribe = functools.partial(self._on_subscribe, generation)
        client.on_unsubscribe = functools.partial(self._on_unsubscribe, generation)
        client.on_message = functools.partial(self._on_message, generation)
        client.on_log = self._on_log
        self._client = client
        return generation

    @staticmethod
    def _detach(client):
        client.on_connect = None
        client.on_disconnect = None
        client.on_subscribe = None
        client.on_unsubscribe = None
        client.on_message = None
        client.on_log = None

    def _release_client(self):
        """Sever the live client from the session and invalidate its callbacks"""
        client = self._client
        self._client = None
        if client is not None:
            self._detach(client)
            self._generation += 1
        return client

    async def _shutdown_client(self, client):
        try:
            client.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while disconnecting transport: {e}")
        try:
            await asyncio.to_thread(client.loop_stop)
        except Exception as e:
            logger.debug(f"Ignoring error while stopping transport loop: {e}")

    def _resolve_handshake(self):
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            handshake.set_result(_SUPERSEDED)

    def _subscribe_defaults(self, client):
        for topic in topics.subscription_topics(self.namespace):
            result, _ = client.subscribe(topic, 1)
            if result == mqtt.MQTT_ERR_SUCCESS:
                logger.info(f"Subscribing to {topic}")
            else:
                logger.error(f"Failed to subscribe to {topic}: {result}")

    # ------------------------------------------------------------------
    # Auto-reconnect
    # ------------------------------------------------------------------

    def _can_auto_reconnect(self) -> bool:
        return (self.auto_reconnect and not self._retired and not self._disposed
                and self._state is not ConnectionState.CONNECTED)

    def _schedule_auto_reconnect(self):
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        logger.info("Unexpected disconnection, will auto-reconnect")
        self._emit_status("reconnecting")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._auto_reconnect_loop())

    def _cancel_auto_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _log_reconnect_retry(self, retry_state: tenacity.RetryCallState):
        result = retry_state.outcome.result()
        reason = result.error if result.is_failure else "not connected"
        next_sleep = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Auto-reconnect attempt {retry_state.attempt_number} failed, "
            f"retrying in {next_sleep:.2f}s: {reason}"
        )

    async def _auto_reconnect_loop(self):
        await asyncio.sleep(self.reconnect_min_delay)
        if not self._can_auto_reconnect():
            return
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=self.reconnect_min_delay,
                                           max=self.reconnect_max_delay),
            retry=tenacity.retry_if_result(lambda result: result.is_failure or not self.is_connected),
            stop=lambda retry_state: not self._can_auto_reconnect(),
            before_sleep=self._log_reconnect_retry,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        result = await retryer(self.connect)
        if self.is_connected:
            logger.info("MQTT auto-reconnected")
        else:
            logger.info(f"Auto-reconnect stopped: {result.error if result.is_failure else 'disabled'}")

    # ------------------------------------------------------------------
    # Transport callbacks (paho network thread) and event pump
    # ------------------------------------------------------------------

    def _on_connect(self, generation, client, userdata, flags, reason_code, properties=None):
        self._post(generation, "connect", reason_code)

    def _on_disconnect(self, generation, client, userdata, disconnect_flags, reason_code,
                       properties=None):
        self._post(generation, "disconnect", reason_code)

    def _on_subscribe(self, generation, client, userdata, mid, reason_codes, properties=None):
        self._post(generation, "subscribe", mid, reason_codes)

    def _on_unsubscribe(self, generation, client, userdata, mid, reason_codes, properties=None):
        self._post(generation, "unsubscribe", mid, reason_codes)

    def _on_message(self, generation, client, userdata, msg):
        self._post(generation, "message", msg.topic, msg.payload)

    def _on_log(self, client, userdata, level, buf):
        logger.debug(f"MQTT: {buf}")

    def _post(self, generation: int, kind: str, *args):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        event = (generation, kind, args)
        if threading.get_ident() == self._loop_thread_id:
            self._events.put_nowait(event)
            return
        try:
            loop.call_soon_threadsafe(self._events.put_nowait, event)
        except RuntimeError:
            logger.debug(f"Event loop closed, dropping MQTT {kind} event")

    def _ensure_pump(self):
        if self._pump_task is not None and not self._pump_task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread_id = threading.get_ident()
        self._pump_task = self._loop.create_task(self._pump_events())

    async def _pump_events(self):
        while True:
            generation, kind, args = await self._events.get()
            try:
                self._dispatch(generation, kind, args)
            except Exception as e:
                logger.error(f"Error handling MQTT {kind} event: {e}")
            finally:
                self._events.task_done()

    def _dispatch(self, generation: int, kind: str, args: tuple):
        if self._retired or self._disposed or generation != self._generation:
            logger.debug(f"Ignoring stale MQTT {kind} event")
            return
        if kind == "connect":
            self._handle_connected(*args)
        elif kind == "disconnect":
            self._handle_disconnected(*args)
        elif kind == "message":
            self._handle_message(*args)
        elif kind == "subscribe":
            logger.info(f"Subscription acknowledged (mid={args[0]})")
        elif kind == "unsubscribe":
            logger.info(f"Unsubscription acknowledged (mid={args[0]})")

    def _handle_connected(self, reason_code):
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            handshake.set_result(reason_code)
        if _is_failure(reason_code):
            logger.warning(f"MQTT broker refused connection: {reason_code}")
            return
        self._transition(ConnectionState.CONNECTED)
        logger.info("MQTT client connected")
        self._emit_status("connected")

    def _handle_disconnected(self, reason_code):
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            handshake.set_exception(MqttError(f"Connection closed during handshake: {reason_code}"))
        was_connected = self._state is ConnectionState.CONNECTED
        self._transition(ConnectionState.DISCONNECTED)
        logger.warning(f"Disconnected from MQTT broker (code: {reason_code})")
        self._emit_status("disconnected")
        if was_connected and self._can_auto_reconnect():
            self._schedule_auto_reconnect()

    # ------------------------------------------------------------------
    # Message demultiplexing
    # ------------------------------------------------------------------

    def _handle_message(self, topic: str, raw_payload):
        if isinstance(raw_payload, (bytes, bytearray)):
            payload = raw_payload.decode("utf-8", errors="replace")
        else:
            payload = str(raw_payload)

        logger.debug(f"Received message on {topic}: {payload}")
        self._message_stream.publish(HydroMessage(topic=topic, payload=payload))

        parts = topics.parse_topic(topic, self.namespace)
        if parts is None:
            return
        if parts.category == topics.SENSOR:
            self._handle_sensor_data(parts.node, payload)
        elif parts.category in (topics.ACTUATOR, topics.DEVICE):
            self._handle_device_status(parts.node, payload)

    def _handle_sensor_data(self, node: str, payload: str):
        try:
            reading = parse_sensor_reading(node, payload)
        except DataError as e:
            # one bad device payload must not disturb the shared stream
            logger.debug(f"Dropping malformed sensor payload from {node}: {e}")
            return
        self._sensor_stream.publish(reading)

    def _handle_device_status(self, node: str, payload: str):
        try:
            device = parse_device_status(node, payload)
        except DataError as e:
            logger.debug(f"Dropping malformed device payload from {node}: {e}")
            return
        self._device_stream.publish(device)

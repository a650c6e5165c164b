"""
MQTT v5 Relay Client.

This module provides:
- A wrapper around `aiomqtt` that connects to the cloud relay using the
  device id and access token as MQTT credentials.
- A dedicated thread running the client's asyncio loop. Callers on any
  thread hand work over with `loop.call_soon_threadsafe`, and a single
  publisher task drains the outbound queue so commands reach the device
  in the order they were issued.
- Request/Response correlation (request ids) for reads, acknowledged
  writes and function calls, with a per-request timeout.
- Delivery of device-published events to the registered event handler.
- Automatic reconnection once the first connection succeeded.
"""
import asyncio
import json
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion

from spark_mqtt_gpio.errors import DeviceConnectionError, OperationError
from spark_mqtt_gpio.models import CommandPayload, PinMode, ReplyPayload

logger = logging.getLogger(__name__)


class RelayClient:
    host: str
    port: int
    client_id: str
    topic_prefix: str
    reconnect_delay: float
    request_timeout: float
    command_topic: str
    reply_topic: str
    event_topic_prefix: str

    _loop: Optional[asyncio.AbstractEventLoop]
    _thread: Optional[threading.Thread]
    _main_task: Optional[asyncio.Task]
    _outbound: Optional[asyncio.Queue]
    _pending: Dict[str, Tuple[Callable, bool]]  # request_id -> (callback, wants_value)
    _event_names: Set[str]
    _event_handler: Optional[Callable[[str, Any], None]]
    _state_lost_handler: Optional[Callable[[], None]]

    """
    Device-protocol client talking to a remote device through an MQTT relay.
    """
    def __init__(self, access_token: str, device_id: str, config: Optional[dict] = None):
        self.access_token = access_token
        self.device_id = device_id

        self.config = config or {}
        mqtt_conf = self.config.get('mqtt', {})
        self.host = mqtt_conf.get('host', 'localhost')
        self.port = int(mqtt_conf.get('port', 1883))
        self.client_id = mqtt_conf.get('client_id', f'spark-adaptor-{device_id}')
        self.topic_prefix = mqtt_conf.get('topic_prefix', 'spark/devices').rstrip('/')
        self.reconnect_delay = float(mqtt_conf.get('reconnect_delay', 5))
        self.request_timeout = float(mqtt_conf.get('request_timeout', 10))

        self.command_topic = f"{self.topic_prefix}/{device_id}/command"
        self.reply_topic = f"{self.topic_prefix}/{device_id}/reply"
        self.event_topic_prefix = f"{self.topic_prefix}/{device_id}/events/"

        # Internal state
        self._lock = threading.Lock()
        self._pending = {}
        self._event_names = set()
        self._event_handler = None
        self._state_lost_handler = None
        self._loop = None
        self._thread = None
        self._main_task = None
        self._outbound = None

    # --- Lifecycle ---

    def start(self, on_ready: Callable[[Optional[Exception]], None]):
        """
        Launches the connection loop on its own thread.
        `on_ready(None)` fires once connected, `on_ready(error)` if the relay is unreachable.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Attempted to start relay client, but it's already running.")
            return

        logger.info(f"Starting relay client for device {self.device_id}, connecting to {self.host}:{self.port}...")
        self._loop = asyncio.new_event_loop()
        self._outbound = asyncio.Queue()
        self._main_task = self._loop.create_task(self._main_loop(on_ready))
        self._thread = threading.Thread(target=self._run, name=f"RelayClient-{self.device_id}", daemon=True)
        self._thread.start()

    def close(self):
        """
        Cancels the connection loop and fails every request still waiting for a reply.
        """
        if self._thread is None:
            return

        if self._thread.is_alive():
            logger.info("Stopping relay client...")
            try:
                self._loop.call_soon_threadsafe(self._main_task.cancel)
            except RuntimeError:
                # Loop finished between the liveness check and the call.
                pass
            if threading.current_thread() is not self._thread:
                self._thread.join(timeout=5)

        self._fail_pending(DeviceConnectionError("Relay client closed"))

    def _run(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._main_task)
        except asyncio.CancelledError:
            logger.info("Relay client stopped gracefully.")
        except Exception as e:
            logger.error(f"Relay client loop crashed: {e}")
        finally:
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()

    async def _main_loop(self, on_ready):
        """
        The persistent connection loop.
        A failed first attempt is reported to `on_ready` and ends the loop;
        later connection losses are retried every `reconnect_delay` seconds.
        """
        ready_reported = False

        while True:
            try:
                # The connection is ONLY valid inside this block
                async with MQTTClient(self.host,
                                      self.port,
                                      protocol=ProtocolVersion.V5,
                                      identifier=self.client_id,
                                      username=self.device_id,
                                      password=self.access_token) as client:
                    await client.subscribe(self.reply_topic, qos=1)
                    with self._lock:
                        event_names = sorted(self._event_names)
                    for name in event_names:
                        await client.subscribe(self._event_topic(name), qos=1)
                    logger.info(f"Connected to relay as {self.client_id} for device {self.device_id}")

                    if not ready_reported:
                        ready_reported = True
                        self._notify(on_ready, None)

                    publisher = asyncio.create_task(self._publisher_loop(client))
                    try:
                        await self._listener_loop(client)
                    finally:
                        publisher.cancel()
                        await asyncio.gather(publisher, return_exceptions=True)

            except asyncio.CancelledError:
                raise
            except MqttError as e:
                if not ready_reported:
                    logger.error(f"Could not reach relay at {self.host}:{self.port}: {e}")
                    self._notify(on_ready, DeviceConnectionError(f"Could not reach relay at {self.host}:{self.port}: {e}"))
                    return
                logger.error(f"Relay connection lost: {e}. Retrying in {self.reconnect_delay}s...")
                self._connection_lost(DeviceConnectionError(f"Relay connection lost: {e}"))
                await asyncio.sleep(self.reconnect_delay)

    def _connection_lost(self, error: Exception):
        """
        Drops every command that has not reached the relay yet and fails
        the requests waiting on them. Nothing queued before the loss is
        sent after the reconnect.
        """
        dropped = 0
        while True:
            try:
                self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._outbound.task_done()
            dropped += 1
        if dropped:
            logger.warning(f"Dropped {dropped} unsent command(s) after connection loss")

        self._fail_pending(error)
        self._mode_state_lost()

    def _mode_state_lost(self):
        if self._state_lost_handler is not None:
            self._notify(self._state_lost_handler)

    def _is_pending(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._pending

    async def _publisher_loop(self, client: MQTTClient):
        """Sends queued commands and subscriptions in the order they were issued."""
        while True:
            kind, item = await self._outbound.get()
            try:
                if kind == "subscribe":
                    for name in item:
                        await client.subscribe(self._event_topic(name), qos=1)
                        logger.debug(f"Subscribed to '{self._event_topic(name)}'")
                elif item.request_id and not self._is_pending(item.request_id):
                    # Already failed or timed out; the caller was told it did not run.
                    logger.debug(f"Skipping {item.op} {item.request_id}, no longer pending")
                else:
                    await client.publish(self.command_topic, payload=item.to_bytes(), qos=1)
                    logger.debug(f"Published command to '{self.command_topic}': {item.to_json()}")
            except MqttError as e:
                logger.error(f"Failed to send {kind} to relay: {e}")
                if kind == "publish":
                    if item.request_id:
                        self._resolve(item.request_id, DeviceConnectionError(f"Failed to send {item.op}: {e}"), None)
                    if item.op == "pinMode":
                        self._mode_state_lost()
            finally:
                self._outbound.task_done()

    async def _listener_loop(self, client: MQTTClient):
        async for message in client.messages:
            topic = str(message.topic)
            if topic == self.reply_topic:
                self._handle_reply(message.payload)
            elif topic.startswith(self.event_topic_prefix):
                self._handle_event(topic[len(self.event_topic_prefix):], message.payload)
            else:
                logger.debug(f"Ignoring message on unexpected topic '{topic}'")

    # --- Inbound ---

    def _handle_reply(self, raw: bytes):
        try:
            reply = ReplyPayload.from_bytes(raw)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Discarding malformed reply: {e}")
            return
        error = OperationError(reply.error) if reply.error else None
        self._resolve(reply.request_id, error, reply.value)

    def _handle_event(self, name: str, raw: Any):
        if isinstance(raw, (bytes, bytearray)):
            text = raw.decode('utf-8', errors='replace')
        else:
            text = raw
        try:
            data = json.loads(text) if isinstance(text, str) else text
        except ValueError:
            data = text

        logger.debug(f"Event '{name}' received: {data}")
        if self._event_handler is None:
            logger.warning(f"Event '{name}' dropped, no event handler installed")
            return
        self._notify(self._event_handler, name, data)

    def _resolve(self, request_id: str, error: Optional[Exception], value: Any):
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug(f"No pending request for reply {request_id}")
            return
        callback, wants_value = pending
        if wants_value:
            self._notify(callback, error, value)
        else:
            self._notify(callback, error)

    def _fail_pending(self, error: Exception):
        with self._lock:
            request_ids = list(self._pending)
        for request_id in request_ids:
            self._resolve(request_id, error, None)

    @staticmethod
    def _notify(callback: Callable, *args):
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Callback {callback} raised: {e}")

    # --- Outbound ---

    def _event_topic(self, name: str) -> str:
        return f"{self.event_topic_prefix}{name}"

    def _submit(self, item: Tuple[str, Any]):
        if self._loop is None or self._loop.is_closed():
            raise DeviceConnectionError("Relay client is not running")
        self._loop.call_soon_threadsafe(self._outbound.put_nowait, item)

    def _arm_timeout(self, request_id: str):
        self._loop.call_later(self.request_timeout, self._expire, request_id)

    def _expire(self, request_id: str):
        with self._lock:
            waiting = request_id in self._pending
        if waiting:
            logger.warning(f"Request {request_id} timed out after {self.request_timeout}s")
            self._resolve(request_id, OperationError(f"No reply from device within {self.request_timeout}s"), None)

    def _send(self, op: str, pin: Optional[int] = None, value: Any = None, args: Optional[List[Any]] = None,
              callback: Optional[Callable] = None, wants_value: bool = False) -> CommandPayload:
        if self._loop is None or self._loop.is_closed():
            raise DeviceConnectionError("Relay client is not running")

        request_id = None
        if callback is not None:
            request_id = uuid.uuid4().hex
            with self._lock:
                self._pending[request_id] = (callback, wants_value)

        payload = CommandPayload(op=op, pin=pin, value=value, args=list(args or []), request_id=request_id)
        self._submit(("publish", payload))
        if request_id is not None:
            self._loop.call_soon_threadsafe(self._arm_timeout, request_id)
        return payload

    # --- DeviceClient surface ---

    def set_event_handler(self, handler: Callable[[str, Any], None]):
        self._event_handler = handler

    def set_state_lost_handler(self, handler: Callable[[], None]):
        self._state_lost_handler = handler

    def set_pin_mode(self, pin: int, mode: PinMode):
        self._send("pinMode", pin=pin, value=PinMode(mode).value)

    def digital_read(self, pin: int, callback):
        self._send("digitalRead", pin=pin, callback=callback, wants_value=True)

    def digital_write(self, pin: int, value, callback=None):
        self._send("digitalWrite", pin=pin, value=value, callback=callback)

    def analog_read(self, pin: int, callback):
        self._send("analogRead", pin=pin, callback=callback, wants_value=True)

    def analog_write(self, pin: int, value, callback=None):
        self._send("analogWrite", pin=pin, value=value, callback=callback)

    def servo_write(self, pin: int, value, callback=None):
        self._send("servoWrite", pin=pin, value=value, callback=callback)

    def call_function(self, name: str, args: List[Any], callback):
        self._send("call", value=name, args=args, callback=callback, wants_value=True)

    def subscribe(self, event_names: Iterable[str]):
        names = list(event_names)
        with self._lock:
            self._event_names.update(names)
        self._submit(("subscribe", names))

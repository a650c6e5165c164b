import asyncio
import json
import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from aiomqtt import MqttError

from spark_mqtt_gpio.adaptor import Adaptor
from spark_mqtt_gpio.clients import relay_client_factory
from spark_mqtt_gpio.clients.relay import RelayClient
from spark_mqtt_gpio.errors import DeviceConnectionError, OperationError
from spark_mqtt_gpio.models import PinMode

"""
Relay Client Tests.
The aiomqtt client is replaced by an in-memory fake so the relay's
threading, command encoding and reply/event correlation can be checked
without a broker.
"""

TOPIC_PREFIX = "test/devices"


class FakeMQTTClient:
    """Records publishes and subscriptions; messages are injected by the test."""
    instances: list
    fail_ops: list
    refuse: bool = False

    def __init__(self, *args, **kwargs):
        self.args = args
        self.kwargs = kwargs
        self.published = []
        self.attempted = []
        self.subscribed = []
        self.stall = False
        self.loop = None
        self._inbox = asyncio.Queue()
        type(self).instances.append(self)

    async def __aenter__(self):
        if type(self).refuse:
            raise MqttError("Connection refused")
        self.loop = asyncio.get_running_loop()
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def subscribe(self, topic, qos=0):
        self.subscribed.append(topic)

    async def publish(self, topic, payload=None, qos=0, retain=False):
        command = json.loads(payload)
        self.attempted.append(command)
        if self.stall:
            await asyncio.Event().wait()
        if command["op"] in self.fail_ops:
            self.fail_ops.remove(command["op"])
            raise MqttError("Publish failed")
        self.published.append((topic, command))

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._inbox.get()
            if isinstance(item, Exception):
                raise item
            yield item

    def inject(self, topic, payload):
        message = SimpleNamespace(topic=topic, payload=payload)
        self.loop.call_soon_threadsafe(self._inbox.put_nowait, message)

    def drop(self):
        self.loop.call_soon_threadsafe(self._inbox.put_nowait, MqttError("Connection lost"))


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def fake_mqtt(mocker):
    fake = type("FakeMQTTClient", (FakeMQTTClient,), {"instances": [], "fail_ops": [], "refuse": False})
    mocker.patch("spark_mqtt_gpio.clients.relay.MQTTClient", fake)
    return fake


@pytest.fixture
def config():
    return {"mqtt": {"host": "relay.test", "port": 1884, "topic_prefix": TOPIC_PREFIX,
                     "reconnect_delay": 0.01, "request_timeout": 2}}


@pytest.fixture
def client(fake_mqtt, config):
    client = RelayClient("accessToken", "deviceId", config=config)
    ready = threading.Event()
    errors = []

    def on_ready(error):
        errors.append(error)
        ready.set()

    client.start(on_ready)
    assert ready.wait(2)
    assert errors == [None]
    yield client
    client.close()


def last_command(fake_mqtt):
    broker = fake_mqtt.instances[-1]
    assert wait_until(lambda: broker.published)
    return broker.published[-1]


def test_connects_with_device_credentials(fake_mqtt, client):
    broker = fake_mqtt.instances[0]
    assert broker.args == ("relay.test", 1884)
    assert broker.kwargs["username"] == "deviceId"
    assert broker.kwargs["password"] == "accessToken"
    assert f"{TOPIC_PREFIX}/deviceId/reply" in broker.subscribed


def test_unreachable_relay_is_reported(fake_mqtt, config):
    fake_mqtt.refuse = True
    client = RelayClient("accessToken", "deviceId", config=config)
    errors = []
    ready = threading.Event()

    client.start(lambda error: (errors.append(error), ready.set()))

    assert ready.wait(2)
    assert len(errors) == 1
    assert isinstance(errors[0], DeviceConnectionError)
    client.close()


def test_set_pin_mode_is_fire_and_forget(fake_mqtt, client):
    client.set_pin_mode(3, PinMode.SERVO)

    topic, command = last_command(fake_mqtt)
    assert topic == f"{TOPIC_PREFIX}/deviceId/command"
    assert command["op"] == "pinMode"
    assert command["pin"] == 3
    assert command["value"] == "servo"
    assert command["request_id"] is None


def test_commands_keep_their_order(fake_mqtt, client):
    client.set_pin_mode(1, PinMode.PWM)
    client.analog_write(1, 255)

    broker = fake_mqtt.instances[-1]
    assert wait_until(lambda: len(broker.published) == 2)
    assert [command["op"] for _, command in broker.published] == ["pinMode", "analogWrite"]
    assert broker.published[1][1]["value"] == 255


def test_read_reply_is_correlated(fake_mqtt, client):
    results = []
    done = threading.Event()
    client.digital_read(5, lambda error, value: (results.append((error, value)), done.set()))

    _, command = last_command(fake_mqtt)
    assert command["op"] == "digitalRead"
    assert command["request_id"]

    reply = {"request_id": command["request_id"], "value": 1}
    fake_mqtt.instances[-1].inject(f"{TOPIC_PREFIX}/deviceId/reply", json.dumps(reply).encode())

    assert done.wait(2)
    assert results == [(None, 1)]


def test_device_error_becomes_operation_error(fake_mqtt, client):
    results = []
    done = threading.Event()
    client.analog_read(2, lambda error, value: (results.append((error, value)), done.set()))

    _, command = last_command(fake_mqtt)
    reply = {"request_id": command["request_id"], "error": "pin 2 has no ADC"}
    fake_mqtt.instances[-1].inject(f"{TOPIC_PREFIX}/deviceId/reply", json.dumps(reply).encode())

    assert done.wait(2)
    error, value = results[0]
    assert isinstance(error, OperationError)
    assert "no ADC" in str(error)
    assert value is None


def test_acknowledged_write(fake_mqtt, client):
    acks = []
    done = threading.Event()
    client.digital_write(4, 1, lambda error: (acks.append(error), done.set()))

    _, command = last_command(fake_mqtt)
    fake_mqtt.instances[-1].inject(
        f"{TOPIC_PREFIX}/deviceId/reply",
        json.dumps({"request_id": command["request_id"]}).encode(),
    )

    assert done.wait(2)
    assert acks == [None]


def test_call_function(fake_mqtt, client):
    results = []
    done = threading.Event()
    client.call_function("fortyTwo", ["a"], lambda error, value: (results.append((error, value)), done.set()))

    _, command = last_command(fake_mqtt)
    assert command["op"] == "call"
    assert command["value"] == "fortyTwo"
    assert command["args"] == ["a"]

    fake_mqtt.instances[-1].inject(
        f"{TOPIC_PREFIX}/deviceId/reply",
        json.dumps({"request_id": command["request_id"], "value": 42}).encode(),
    )
    assert done.wait(2)
    assert results == [(None, 42)]


def test_unanswered_request_times_out(fake_mqtt, config):
    config["mqtt"]["request_timeout"] = 0.05
    client = RelayClient("accessToken", "deviceId", config=config)
    ready = threading.Event()
    client.start(lambda error: ready.set())
    assert ready.wait(2)

    results = []
    done = threading.Event()
    client.digital_read(5, lambda error, value: (results.append(error), done.set()))

    assert done.wait(2)
    assert isinstance(results[0], OperationError)
    client.close()


def test_malformed_reply_is_ignored(fake_mqtt, client):
    callback = MagicMock()
    client.digital_read(5, callback)
    _, command = last_command(fake_mqtt)

    fake_mqtt.instances[-1].inject(f"{TOPIC_PREFIX}/deviceId/reply", b"not json")
    time.sleep(0.05)
    callback.assert_not_called()


def test_events_are_pushed_to_handler(fake_mqtt, client):
    received = []
    done = threading.Event()
    client.set_event_handler(lambda name, data: (received.append((name, data)), done.set()))
    client.subscribe(["testevent"])

    broker = fake_mqtt.instances[-1]
    assert wait_until(lambda: f"{TOPIC_PREFIX}/deviceId/events/testevent" in broker.subscribed)

    broker.inject(f"{TOPIC_PREFIX}/deviceId/events/testevent", b'{"temp": 21}')
    assert done.wait(2)
    assert received == [("testevent", {"temp": 21})]


def test_plain_text_event_payload(fake_mqtt, client):
    received = []
    done = threading.Event()
    client.set_event_handler(lambda name, data: (received.append((name, data)), done.set()))

    fake_mqtt.instances[-1].inject(f"{TOPIC_PREFIX}/deviceId/events/motion", b"front door")
    assert done.wait(2)
    assert received == [("motion", "front door")]


def test_reconnect_fails_pending_and_resubscribes(fake_mqtt, client):
    client.subscribe(["testevent"])
    first = fake_mqtt.instances[-1]
    assert wait_until(lambda: f"{TOPIC_PREFIX}/deviceId/events/testevent" in first.subscribed)

    results = []
    done = threading.Event()
    client.digital_read(5, lambda error, value: (results.append(error), done.set()))
    assert wait_until(lambda: first.published)

    first.drop()

    assert done.wait(2)
    assert isinstance(results[0], DeviceConnectionError)
    assert wait_until(lambda: len(fake_mqtt.instances) == 2)
    second = fake_mqtt.instances[-1]
    assert wait_until(lambda: f"{TOPIC_PREFIX}/deviceId/events/testevent" in second.subscribed)


def test_connection_loss_reports_mode_state_lost(fake_mqtt, client):
    lost = threading.Event()
    client.set_state_lost_handler(lost.set)

    fake_mqtt.instances[-1].drop()

    assert lost.wait(2)


def test_failed_mode_set_reports_mode_state_lost(fake_mqtt, client):
    fake_mqtt.fail_ops.append("pinMode")
    lost = threading.Event()
    client.set_state_lost_handler(lost.set)

    client.set_pin_mode(1, PinMode.OUTPUT)

    assert lost.wait(2)
    assert fake_mqtt.instances[-1].published == []


def test_unsent_commands_are_dropped_on_connection_loss(fake_mqtt, client):
    first = fake_mqtt.instances[-1]
    first.stall = True
    acks = []

    client.digital_write(1, 1, lambda error: acks.append(("first", error)))
    assert wait_until(lambda: first.attempted)
    client.digital_write(2, 1, lambda error: acks.append(("second", error)))

    first.drop()

    assert wait_until(lambda: len(acks) == 2)
    assert [name for name, _ in acks] == ["first", "second"]
    assert all(isinstance(error, DeviceConnectionError) for _, error in acks)

    assert wait_until(lambda: len(fake_mqtt.instances) == 2)
    second = fake_mqtt.instances[-1]
    assert wait_until(lambda: f"{TOPIC_PREFIX}/deviceId/reply" in second.subscribed)
    time.sleep(0.1)
    assert second.attempted == []


def test_close_fails_pending_requests(fake_mqtt, config):
    client = RelayClient("accessToken", "deviceId", config=config)
    ready = threading.Event()
    client.start(lambda error: ready.set())
    assert ready.wait(2)

    results = []
    client.digital_read(5, lambda error, value: results.append(error))
    client.close()

    assert len(results) == 1
    assert isinstance(results[0], DeviceConnectionError)


def test_send_before_start_raises(config):
    client = RelayClient("accessToken", "deviceId", config=config)
    with pytest.raises(DeviceConnectionError):
        client.digital_write(1, 1)


def test_adaptor_over_relay(fake_mqtt, config):
    """The default factory wires the Adaptor to a RelayClient end to end."""
    config.update({"device_id": "deviceId", "access_token": "accessToken"})
    adaptor = Adaptor(config, client_factory=relay_client_factory(config))
    connected = threading.Event()
    adaptor.connect(lambda error: connected.set())
    assert connected.wait(2)

    adaptor.servo_write(6, 1)
    adaptor.servo_write(6, 0)

    broker = fake_mqtt.instances[-1]
    assert wait_until(lambda: len(broker.published) == 3)
    commands = [command for _, command in broker.published]
    assert [(c["op"], c["value"]) for c in commands] == [("pinMode", "servo"), ("servoWrite", 180), ("servoWrite", 0)]

    disconnected = MagicMock()
    adaptor.disconnect(disconnected)
    disconnected.assert_called_once_with(None)


def test_adaptor_resends_undelivered_mode_set(fake_mqtt, config):
    fake_mqtt.fail_ops.append("pinMode")
    config.update({"device_id": "deviceId", "access_token": "accessToken"})
    adaptor = Adaptor(config, client_factory=relay_client_factory(config))
    connected = threading.Event()
    adaptor.connect(lambda error: connected.set())
    assert connected.wait(2)

    adaptor.digital_write(1, 1)
    broker = fake_mqtt.instances[-1]
    assert wait_until(lambda: len(broker.published) == 1)
    adaptor.digital_write(1, 0)

    assert wait_until(lambda: len(broker.published) == 3)
    assert [command["op"] for _, command in broker.published] == ["digitalWrite", "pinMode", "digitalWrite"]
    assert broker.published[1][1]["value"] == "output"

    adaptor.disconnect(MagicMock())

"""
The Spark pin adaptor.

This module contains the `Adaptor` class, the public face of the package.
It is responsible for:
- Validating the device credentials at construction time.
- Creating and releasing the device client (`connect` / `disconnect`).
- Putting each pin in the right mode before it is used (`ModeTracker`).
- Scaling logical write values into device ranges (`scaling`).
- Relaying device events to local listeners (`EventRelay`).

Every pin operation follows the same path: ensure mode, scale the value
if the operation needs it, then delegate to the client.
"""
import functools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union, runtime_checkable

from spark_mqtt_gpio import scaling
from spark_mqtt_gpio.clients import DeviceClient, DeviceClientFactory, relay_client_factory
from spark_mqtt_gpio.errors import AdaptorError, ConfigurationError, NotConnectedError, OperationError
from spark_mqtt_gpio.events import EventRelay
from spark_mqtt_gpio.models import Credentials, PinMode
from spark_mqtt_gpio.modes import ModeTracker

logger = logging.getLogger(__name__)

MISSING_CREDENTIALS = "No device_id and/or access_token provided for the Spark adaptor. Cannot proceed"

# Host-facing command name -> method
COMMANDS: Dict[str, str] = {
    "digitalRead": "digital_read",
    "digitalWrite": "digital_write",
    "analogRead": "analog_read",
    "analogWrite": "analog_write",
    "pwmWrite": "pwm_write",
    "servoWrite": "servo_write",
}

DEFAULT_READ_INTERVAL = 1.0


@runtime_checkable
class HostAdaptor(Protocol):
    """What a host orchestration framework expects from any adaptor."""

    def connect(self, callback: Callable[[Optional[Exception]], None]) -> None:
        ...

    def disconnect(self, callback: Callable[[Optional[Exception]], None]) -> None:
        ...

    def commands(self) -> List[str]:
        ...


class Adaptor:
    config: dict
    read_interval: float
    _credentials: Credentials
    _client_factory: DeviceClientFactory
    _client: Optional[DeviceClient]
    _modes: Optional[ModeTracker]
    _events: EventRelay
    _connected: bool

    """
    Translates pin and event intents into calls on a single device client.
    """
    def __init__(self, config: dict, client_factory: Optional[DeviceClientFactory] = None):
        config = config or {}
        self._credentials = Credentials(
            device_id=config.get('device_id') or '',
            access_token=config.get('access_token') or '',
        )
        if not self._credentials.is_complete():
            raise ConfigurationError(MISSING_CREDENTIALS)

        try:
            self.read_interval = float(config.get('read_interval', DEFAULT_READ_INTERVAL))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid read_interval: {config.get('read_interval')!r}") from e

        self.config = config
        self._client_factory = client_factory or relay_client_factory(config)
        self._client = None
        self._modes = None
        self._events = EventRelay()
        self._connected = False

    @property
    def device_id(self) -> str:
        return self._credentials.device_id

    @property
    def access_token(self) -> str:
        return self._credentials.access_token

    @property
    def connected(self) -> bool:
        return self._connected

    # --- Lifecycle ---

    def connect(self, callback: Callable[[Optional[Exception]], None]):
        """
        Creates the device client and starts it.
        `callback(None)` fires once the client reports ready, `callback(error)` if it cannot connect.
        """
        client = self._client_factory(self.access_token, self.device_id)
        self._client = client
        modes = self._modes = ModeTracker(client.set_pin_mode)
        self._events.forget_subscriptions()
        client.set_event_handler(self._events.dispatch)
        client.set_state_lost_handler(functools.partial(self._mode_state_lost, modes))
        logger.info(f"Connecting to device {self.device_id}...")

        def on_ready(error: Optional[Exception]):
            if error is not None:
                logger.error(f"Connection to device {self.device_id} failed: {error}")
                if self._client is client:
                    self._client = None
                    self._modes = None
                callback(error)
                return

            self._connected = True
            logger.info(f"Device {self.device_id} is ready.")
            self._events.dispatch("ready", self)
            callback(None)

        client.start(on_ready)

    def disconnect(self, callback: Callable[[Optional[Exception]], None]):
        """
        Releases the device client, if any. `callback` fires exactly once, also when never connected.
        """
        client, self._client = self._client, None
        self._connected = False
        if self._modes is not None:
            self._modes.reset()
            self._modes = None
        self._events.forget_subscriptions()

        error = None
        if client is not None:
            try:
                client.close()
                logger.info(f"Disconnected from device {self.device_id}.")
            except AdaptorError as e:
                logger.error(f"Error while disconnecting from device {self.device_id}: {e}")
                error = e
        callback(error)

    def commands(self) -> List[str]:
        return list(COMMANDS)

    def execute(self, command: str, *args, **kwargs):
        """
        Runs a command by its host-facing name, e.g. `execute("digitalWrite", 7, 1)`.
        """
        method_name = COMMANDS.get(command)
        if method_name is None:
            raise OperationError(f"Unknown command '{command}'. Supported: {', '.join(COMMANDS)}")
        logger.debug(f"Executing {command} with args={args} kwargs={kwargs}")
        return getattr(self, method_name)(*args, **kwargs)

    # --- Internal dispatch ---

    def _require_client(self) -> Tuple[DeviceClient, ModeTracker]:
        client, modes = self._client, self._modes
        if client is None or modes is None or not self._connected:
            raise NotConnectedError(f"Adaptor for device {self.device_id} is not connected, call connect() first")
        return client, modes

    def _mode_state_lost(self, modes: ModeTracker):
        logger.warning(f"Pin modes of device {self.device_id} are unknown again, they will be re-sent")
        modes.reset()

    @staticmethod
    def _check_pin(pin):
        if isinstance(pin, bool) or not isinstance(pin, int) or pin < 0:
            raise ValueError(f"Invalid pin {pin!r}, expected a non-negative integer")

    def _read(self, modes: ModeTracker, mode: PinMode, reader: Callable, pin: int, callback):
        self._check_pin(pin)
        with modes.hold(pin):
            modes.ensure_mode(pin, mode)
            reader(pin, callback)

    def _write(self, modes: ModeTracker, mode: PinMode, scaler: Optional[Callable], writer: Callable, pin: int, value,
               callback=None):
        self._check_pin(pin)
        with modes.hold(pin):
            modes.ensure_mode(pin, mode)
            if scaler is not None:
                value = scaler(value)
            writer(pin, value, callback)

    # --- Pin operations ---

    def digital_read(self, pin: int, callback: Callable[[Optional[Exception], Any], None]):
        client, modes = self._require_client()
        self._read(modes, PinMode.INPUT, client.digital_read, pin, callback)

    def analog_read(self, pin: int, callback: Callable[[Optional[Exception], Any], None]):
        client, modes = self._require_client()
        self._read(modes, PinMode.ANALOG, client.analog_read, pin, callback)

    def digital_write(self, pin: int, value, callback=None):
        client, modes = self._require_client()
        self._write(modes, PinMode.OUTPUT, None, client.digital_write, pin, value, callback)

    def pwm_write(self, pin: int, value, callback=None):
        client, modes = self._require_client()
        self._write(modes, PinMode.PWM, scaling.pulse_width, client.analog_write, pin, value, callback)

    def analog_write(self, pin: int, value, callback=None):
        # Same pulse-width write as pwm_write.
        self.pwm_write(pin, value, callback)

    def servo_write(self, pin: int, value, callback=None):
        client, modes = self._require_client()
        self._write(modes, PinMode.SERVO, scaling.angle, client.servo_write, pin, value, callback)

    @staticmethod
    def pin_val(value) -> str:
        return "HIGH" if value == 1 else "LOW"

    # --- Cloud functions ---

    def call_function(self, name: str, args: Optional[Iterable[Any]], callback: Callable[[Optional[Exception], Any], None]):
        client, _ = self._require_client()
        client.call_function(name, list(args or []), callback)

    # --- Events ---

    def listen_for_events(self, names: Iterable[str]) -> List[str]:
        client, _ = self._require_client()
        if isinstance(names, str):
            names = [names]
        return self._events.listen_for_events(names, client.subscribe)

    def on(self, event_name: str, listener: Callable[[Any], None]):
        self._events.on(event_name, listener)

    def off(self, event_name: str, listener: Callable[[Any], None]):
        self._events.off(event_name, listener)


def try_create(config: dict, client_factory: Optional[DeviceClientFactory] = None) -> Union[Adaptor, ConfigurationError]:
    """
    Builds an Adaptor, returning the ConfigurationError instead of raising it.
    """
    try:
        return Adaptor(config, client_factory=client_factory)
    except ConfigurationError as e:
        logger.error(f"Cannot create adaptor: {e}")
        return e

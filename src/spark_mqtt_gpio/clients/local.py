"""
Local gpiozero-backed device client.

Drives pins on the board the adaptor runs on through a `gpiozero` pin
factory instead of the relay. On a Raspberry Pi this is the LGPIO
factory; in tests it is gpiozero's `MockFactory`. Every call completes
synchronously, callbacks fire before the method returns.
"""
import functools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from gpiozero import Device, GPIOZeroError
from gpiozero.pins import Pin

from spark_mqtt_gpio.errors import DeviceConnectionError, OperationError
from spark_mqtt_gpio.models import PinMode

logger = logging.getLogger(__name__)

ADC_MAX = 4095  # 12-bit ADC on Spark-class boards
PWM_FREQUENCY = 500
SERVO_FREQUENCY = 50
SERVO_MIN_PULSE = 0.0005  # seconds at 0 degrees
SERVO_MAX_PULSE = 0.0025  # seconds at 180 degrees


class LocalPinClient:
    pin_factory: Any
    pins: Dict[int, Pin]
    functions: Dict[str, Callable[..., Any]]
    _event_names: Set[str]

    """
    Device client for pins reachable through a gpiozero pin factory.
    """
    def __init__(self, access_token: str = "", device_id: str = "local", pin_factory=None,
                 functions: Optional[Dict[str, Callable[..., Any]]] = None):
        self.access_token = access_token
        self.device_id = device_id
        self.pin_factory = pin_factory or Device.pin_factory
        self.functions = dict(functions or {})
        self.pins = {}
        self._event_names = set()
        self._event_handler = None
        self._state_lost_handler = None
        self._watchers: Dict[int, Callable] = {}
        self._started = False

    @classmethod
    def factory(cls, pin_factory=None, functions=None):
        """Returns a DeviceClientFactory bound to `pin_factory`."""
        return functools.partial(cls, pin_factory=pin_factory, functions=functions)

    # --- Lifecycle ---

    def start(self, on_ready):
        if self.pin_factory is None:
            on_ready(DeviceConnectionError("No gpiozero pin factory configured"))
            return
        self._started = True
        logger.info(f"Local pin client ready using {type(self.pin_factory).__name__}")
        on_ready(None)

    def close(self):
        for number, pin in self.pins.items():
            try:
                pin.close()
            except GPIOZeroError as e:
                logger.error(f"Failed to release pin {number}: {e}")
        self.pins.clear()
        self._watchers.clear()
        self._started = False

    def _pin(self, number: int) -> Pin:
        if not self._started:
            raise DeviceConnectionError("Local pin client is not started")
        pin = self.pins.get(number)
        if pin is None:
            pin = self.pins[number] = self.pin_factory.pin(number)
        return pin

    # --- Pin configuration ---

    def set_pin_mode(self, pin: int, mode: PinMode):
        mode = PinMode(mode)
        try:
            device_pin = self._pin(pin)
            if mode in (PinMode.INPUT, PinMode.ANALOG):
                device_pin.frequency = None
                device_pin.function = 'input'
            else:
                device_pin.function = 'output'
                if mode is PinMode.PWM:
                    device_pin.frequency = PWM_FREQUENCY
                elif mode is PinMode.SERVO:
                    device_pin.frequency = SERVO_FREQUENCY
                else:
                    device_pin.frequency = None
        except GPIOZeroError as e:
            raise OperationError(f"Cannot set pin {pin} to {mode.value}: {e}") from e

    # --- Reads and writes ---

    def _complete(self, callback, action: Callable[[], Any], wants_value: bool):
        try:
            value = action()
            error = None
        except GPIOZeroError as e:
            value, error = None, OperationError(str(e))

        if callback is None:
            if error is not None:
                raise error
            return
        if wants_value:
            callback(error, value)
        else:
            callback(error)

    def digital_read(self, pin: int, callback):
        self._complete(callback, lambda: int(bool(self._pin(pin).state)), wants_value=True)

    def analog_read(self, pin: int, callback):
        self._complete(callback, lambda: int(round(float(self._pin(pin).state) * ADC_MAX)), wants_value=True)

    def digital_write(self, pin: int, value, callback=None):
        def write():
            self._pin(pin).state = 1 if value else 0
        self._complete(callback, write, wants_value=False)

    def analog_write(self, pin: int, value, callback=None):
        def write():
            self._pin(pin).state = value / 255
        self._complete(callback, write, wants_value=False)

    def servo_write(self, pin: int, value, callback=None):
        def write():
            pulse = SERVO_MIN_PULSE + (SERVO_MAX_PULSE - SERVO_MIN_PULSE) * (value / 180)
            self._pin(pin).state = pulse * SERVO_FREQUENCY
        self._complete(callback, write, wants_value=False)

    # --- Functions and events ---

    def call_function(self, name: str, args: List[Any], callback):
        function = self.functions.get(name)
        if function is None:
            callback(OperationError(f"Function '{name}' not found on device '{self.device_id}'"), None)
            return
        try:
            result = function(*args)
        except Exception as e:
            callback(OperationError(f"Error executing function '{name}': {e}"), None)
            return
        callback(None, result)

    def set_event_handler(self, handler: Callable[[str, Any], None]):
        self._event_handler = handler

    def set_state_lost_handler(self, handler: Callable[[], None]):
        # Pins keep their function until close(), so local modes are never lost.
        self._state_lost_handler = handler

    def subscribe(self, event_names: Iterable[str]):
        self._event_names.update(event_names)

    def watch_pin(self, pin: int, event_name: str):
        """
        Publishes `event_name` with the new pin state on every edge of `pin`.
        """
        device_pin = self._pin(pin)
        device_pin.frequency = None
        device_pin.function = 'input'
        device_pin.edges = 'both'
        # gpiozero keeps only a weak reference to the callback
        watcher = self._watchers[pin] = functools.partial(self._on_edge, event_name, device_pin)
        device_pin.when_changed = watcher
        logger.debug(f"Watching pin {pin} as event '{event_name}'")

    def _on_edge(self, event_name: str, device_pin: Pin, ticks, state):
        self.publish(event_name, int(bool(state)))

    def publish(self, event_name: str, data: Any = None):
        """Delivers an event as if the device had pushed it."""
        if event_name not in self._event_names:
            logger.debug(f"Event '{event_name}' not subscribed, dropping")
            return
        if self._event_handler is None:
            logger.warning(f"Event '{event_name}' dropped, no event handler installed")
            return
        self._event_handler(event_name, data)

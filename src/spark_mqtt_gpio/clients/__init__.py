"""
Device-protocol clients.

The Adaptor never talks to the network itself. It asks a
`DeviceClientFactory` for a `DeviceClient` on connect and drives every
pin operation through that narrow surface, so the MQTT relay client can
be swapped for the local gpiozero client or a test double.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from spark_mqtt_gpio.models import PinMode

ReadyCallback = Callable[[Optional[Exception]], None]
ResultCallback = Callable[[Optional[Exception], Any], None]
AckCallback = Callable[[Optional[Exception]], None]
EventHandler = Callable[[str, Any], None]
StateLostHandler = Callable[[], None]


@runtime_checkable
class DeviceClient(Protocol):
    """Capability surface the Adaptor consumes."""

    def start(self, on_ready: ReadyCallback) -> None:
        """Connect and call `on_ready(error)` exactly once."""
        ...

    def close(self) -> None:
        ...

    def set_event_handler(self, handler: EventHandler) -> None:
        """Install the push channel for `(event_name, data)` pairs."""
        ...

    def set_state_lost_handler(self, handler: StateLostHandler) -> None:
        """Install `handler`, called whenever pin modes may no longer match what was sent."""
        ...

    def set_pin_mode(self, pin: int, mode: PinMode) -> None:
        ...

    def digital_read(self, pin: int, callback: ResultCallback) -> None:
        ...

    def digital_write(self, pin: int, value: Any, callback: Optional[AckCallback] = None) -> None:
        ...

    def analog_read(self, pin: int, callback: ResultCallback) -> None:
        ...

    def analog_write(self, pin: int, value: Any, callback: Optional[AckCallback] = None) -> None:
        ...

    def servo_write(self, pin: int, value: Any, callback: Optional[AckCallback] = None) -> None:
        ...

    def subscribe(self, event_names: Iterable[str]) -> None:
        ...

    def call_function(self, name: str, args: List[Any], callback: ResultCallback) -> None:
        ...


# (access_token, device_id) -> client
DeviceClientFactory = Callable[[str, str], DeviceClient]


def relay_client_factory(config: Optional[Dict[str, Any]] = None) -> DeviceClientFactory:
    """Returns a factory building `RelayClient`s from the `mqtt` config section."""
    from spark_mqtt_gpio.clients.relay import RelayClient

    def create_client(access_token: str, device_id: str) -> DeviceClient:
        return RelayClient(access_token, device_id, config=config)

    return create_client

"""
Data Models shared by the Adaptor and the device clients.

Defines the pin modes, the credentials record, and the JSON payloads
exchanged with the relay, so every layer agrees on one vocabulary.
"""
from dataclasses import dataclass, field, asdict
import json
from typing import Any, List, Optional
import time

from enum import Enum


class PinMode(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    ANALOG = "analog"
    PWM = "pwm"
    SERVO = "servo"


@dataclass(frozen=True)
class Credentials:
    """Addressing credentials for a single physical device."""
    device_id: str
    access_token: str

    def is_complete(self) -> bool:
        return bool(self.device_id) and bool(self.access_token)


# --- Relay payloads ---

@dataclass(frozen=True, kw_only=True)
class BasePayload:
    """Base class for all JSON payloads sent over MQTT."""
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(asdict(self))

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')


@dataclass(frozen=True, kw_only=True)
class CommandPayload(BasePayload):
    """
    A single instruction for the device.

    `request_id` is only set when the caller waits for a reply; commands
    without one are fire-and-forget.
    """
    op: str
    pin: Optional[int] = None
    value: Any = None
    args: List[Any] = field(default_factory=list)
    request_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ReplyPayload(BasePayload):
    """The device's answer to a command that carried a request_id."""
    request_id: str
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ReplyPayload":
        data = json.loads(raw.decode('utf-8'))
        return cls(
            request_id=data["request_id"],
            value=data.get("value"),
            error=data.get("error"),
            timestamp=data.get("timestamp", time.time()),
        )

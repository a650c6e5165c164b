"""
Per-pin mode tracking.

The device rejects (or silently misbehaves on) operations issued against a
pin that is in the wrong mode, but every mode-set costs a round trip
through the relay. `ModeTracker` remembers the last mode applied to each
pin and only forwards a mode-set when the required mode is unknown or
different.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from spark_mqtt_gpio.models import PinMode

logger = logging.getLogger(__name__)


class ModeTracker:
    _modes: Dict[int, PinMode]
    _pin_locks: Dict[int, threading.RLock]
    _set_pin_mode: Callable[[int, PinMode], None]

    def __init__(self, set_pin_mode: Callable[[int, PinMode], None]):
        self._set_pin_mode = set_pin_mode
        self._modes = {}
        self._pin_locks = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, pin: int) -> threading.RLock:
        with self._registry_lock:
            lock = self._pin_locks.get(pin)
            if lock is None:
                lock = self._pin_locks[pin] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, pin: int) -> Iterator[None]:
        """
        Serializes everything done on `pin` inside the block.
        The Adaptor holds this across ensure_mode and the operation itself.
        """
        lock = self._lock_for(pin)
        with lock:
            yield

    def ensure_mode(self, pin: int, required: PinMode) -> bool:
        """
        Issues a mode-set for `pin` unless `required` is already recorded.
        Returns True when a mode-set was sent.
        """
        with self.hold(pin):
            if self._modes.get(pin) == required:
                return False
            previous = self._modes.get(pin)
            # Record only after the client accepted the call.
            self._set_pin_mode(pin, required)
            self._modes[pin] = required
            logger.debug(f"Pin {pin} mode {previous.value if previous else 'unknown'} -> {required.value}")
            return True

    def mode_of(self, pin: int) -> Optional[PinMode]:
        with self.hold(pin):
            return self._modes.get(pin)

    def reset(self):
        """
        Forgets every recorded mode, so the next operation on each pin sends a mode-set.
        Waits for an ensure_mode in progress on a pin before forgetting that pin.
        """
        with self._registry_lock:
            pin_locks = list(self._pin_locks.items())
        for pin, lock in pin_locks:
            with lock:
                self._modes.pop(pin, None)

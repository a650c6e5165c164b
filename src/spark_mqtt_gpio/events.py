"""
Event relay between the device client's push channel and local listeners.
"""
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Set

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class EventRelay:
    """
    Fans out named events to the listeners registered for that name.

    `dispatch` is called from whatever thread the device client delivers
    on; listeners run on that thread in registration order.
    """
    _listeners: Dict[str, List[Listener]]
    _subscribed: Set[str]

    def __init__(self):
        self._listeners = {}
        self._subscribed = set()
        self._lock = threading.Lock()

    def listen_for_events(self, names: Iterable[str], subscribe: Callable[[List[str]], None]):
        """
        Asks the device client to start delivering each of `names`.
        Names already requested are not sent twice.
        """
        with self._lock:
            fresh = [name for name in dict.fromkeys(names) if name not in self._subscribed]
            self._subscribed.update(fresh)
        if fresh:
            subscribe(fresh)
            logger.info(f"Listening for device events: {', '.join(fresh)}")
        return fresh

    @property
    def subscribed(self) -> Set[str]:
        with self._lock:
            return set(self._subscribed)

    def forget_subscriptions(self):
        with self._lock:
            self._subscribed.clear()

    def on(self, event_name: str, listener: Listener):
        with self._lock:
            self._listeners.setdefault(event_name, []).append(listener)

    def off(self, event_name: str, listener: Listener):
        with self._lock:
            listeners = self._listeners.get(event_name, [])
            if listener in listeners:
                listeners.remove(listener)

    def dispatch(self, event_name: str, data: Any = None):
        with self._lock:
            listeners = list(self._listeners.get(event_name, []))

        if not listeners:
            logger.debug(f"No listeners for event '{event_name}'")
            return

        for listener in listeners:
            try:
                listener(data)
            except Exception as e:
                logger.error(f"Listener for event '{event_name}' failed: {e}")

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

_LOGGER = logging.getLogger(__name__)

EventData = Dict[str, Any]
Listener = Callable[[EventData], None]


class EventBus:
    """
    Synchronous publish/subscribe bus between the MQTT surface and the bridge.

    Listeners run on the publishing thread, so publish() must be called on
    the asyncio loop; the MQTT thread hops there first.
    """

    def __init__(self):
        # Listeners per string topic
        self.topics: Dict[str, List[Listener]] = {}

    def subscribe(self, topic: str, listener: Listener) -> None:
        self.topics.setdefault(topic, []).append(listener)

    def unsubscribe(self, topic: str, listener: Listener) -> None:
        listeners = self.topics.get(topic, [])
        if listener in listeners:
            listeners.remove(listener)

    def publish(self, topic: str, data: Optional[EventData] = None) -> None:
        """
        Hand `data` to every listener of `topic`, tagged with '__topic'.

        A failing listener is logged and does not stop the others.
        """
        event = {} if data is None else data
        event["__topic"] = topic

        for listener in list(self.topics.get(topic, [])):
            try:
                listener(event)
            except Exception:
                _LOGGER.exception("Error in event listener for topic %s", topic)

# Client helpers for subscriptions

def subscribe(func: Callable) -> Callable:
    """Mark a method of an EventHandler as the listener for its own name."""
    func._event_bus_subscribe = True
    return func

class EventHandler:
    """
    Base class for components driven by the event bus.

    Every method decorated with @subscribe listens on the topic named like
    the method.
    """
    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._subscriptions: List[Tuple[str, Listener]] = []
        self._subscribe_all_methods()

    def _subscribe_all_methods(self):
        for method_name in dir(type(self)):
            method = getattr(self, method_name, None)
            if not hasattr(method, "_event_bus_subscribe"):
                continue
            self.event_bus.subscribe(method_name, method)
            self._subscriptions.append((method_name, method))
            _LOGGER.debug("%s listens on '%s'", type(self).__name__, method_name)

    def unsubscribe_all(self) -> None:
        for topic, method in self._subscriptions:
            self.event_bus.unsubscribe(topic, method)
        self._subscriptions.clear()

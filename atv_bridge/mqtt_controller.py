import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Optional

import paho.mqtt.client as mqtt

from .event_bus import EventBus, EventHandler, subscribe
from .state import StateStore

if TYPE_CHECKING:
    from .config import MqttConfig

_LOGGER = logging.getLogger(__name__)

_FALSE_PAYLOADS = ("", "0", "false", "off")

# MQTT pair/<action> -> event bus topic
_PAIR_ACTIONS = {
    "start": "pair_start",
    "pin": "pair_submit_pin",
    "abort": "pair_abort",
}


def encode_payload(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


class MqttController(EventHandler):
    """
    MQTT surface of the bridge.

    States are published retained under <prefix>/<device_id>/<channel>/<state>.
    Commands arrive on the matching .../set topics and are handed to the
    event bus on the asyncio loop, since paho calls back from its own thread.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        event_bus: EventBus,
        config: "MqttConfig",
        app_name: str,
    ):
        super().__init__(event_bus)
        self.loop = loop
        self._host = config.host
        self._port = config.port
        self._username = config.username
        self._password = config.password

        self._topic_prefix = config.topic_prefix.rstrip("/")
        self.availability_topic = f"{self._topic_prefix}/availability"
        self.command_topics = [
            f"{self._topic_prefix}/+/remote/+/set",
            f"{self._topic_prefix}/+/power/state/set",
            f"{self._topic_prefix}/+/playing/position/set",
            f"{self._topic_prefix}/+/apps/launch/set",
            f"{self._topic_prefix}/pair/+",
        ]
        self.state_store: Optional[StateStore] = None

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"atv-bridge-{app_name.lower().replace(' ', '_')}",
        )
        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message
        self._client.will_set(self.availability_topic, "offline", retain=True)

    def start(self):
        try:
            if self._username:
                self._client.username_pw_set(self._username, self._password)

            _LOGGER.debug("Connecting to MQTT broker at %s:%s", self._host, self._port)
            self._client.connect(self._host, self._port, 60)
            self._client.loop_start()
        except Exception:
            _LOGGER.exception("Failed to connect to MQTT broker")

    def stop(self):
        self.unsubscribe_all()
        self._client.publish(self.availability_topic, "offline", retain=True)
        self._client.loop_stop()
        self._client.disconnect()
        _LOGGER.debug("Disconnected from MQTT broker")

    def state_topic(self, path: str) -> str:
        return f"{self._topic_prefix}/{path.replace('.', '/')}"

    def publish_state(self, path: str, value: Any):
        self._client.publish(self.state_topic(path), encode_payload(value), retain=True)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            _LOGGER.error("Failed to connect to MQTT: %s", reason_code)
            return

        _LOGGER.info("Connected to MQTT broker")
        for topic in self.command_topics:
            client.subscribe(topic)
        client.publish(self.availability_topic, "online", retain=True)

        # Retained states may have changed while the broker was away.
        if self.state_store is not None:
            for path, state in self.state_store.items():
                self.publish_state(path, state.val)

    def _on_message(self, client, userdata, msg):
        payload_str = msg.payload.decode("utf-8", errors="replace").strip()
        _LOGGER.debug("Received MQTT message on topic %s", msg.topic)

        parsed = self.parse_command(msg.topic, payload_str)
        if parsed is None:
            _LOGGER.debug("Ignoring MQTT message on %s", msg.topic)
            return

        topic, data = parsed
        self.loop.call_soon_threadsafe(self.event_bus.publish, topic, data)

    def parse_command(self, topic: str, payload: str):
        """Map an incoming MQTT message to (event topic, data), or None."""
        prefix = self._topic_prefix + "/"
        if not topic.startswith(prefix):
            return None
        parts = topic[len(prefix):].split("/")

        if len(parts) == 2 and parts[0] == "pair":
            event_topic = _PAIR_ACTIONS.get(parts[1])
            if event_topic is None:
                return None
            try:
                data = json.loads(payload) if payload else {}
            except json.JSONDecodeError:
                _LOGGER.warning("Invalid pairing payload: %s", payload)
                return None
            if not isinstance(data, dict):
                return None
            return event_topic, data

        if len(parts) != 4 or parts[3] != "set":
            return None

        device_id, channel, state = parts[0], parts[1], parts[2]
        if channel == "remote":
            if payload.lower() in _FALSE_PAYLOADS:
                return None
            return "remote_command", {"device_id": device_id, "command": state}
        if channel == "power" and state == "state":
            turn_on = payload.lower() not in _FALSE_PAYLOADS
            return "power_command", {"device_id": device_id, "state": turn_on}
        if channel == "playing" and state == "position":
            try:
                position = float(payload)
            except ValueError:
                _LOGGER.warning("Received invalid seek position: %s", payload)
                return None
            return "seek_command", {"device_id": device_id, "position": position}
        if channel == "apps" and state == "launch":
            return "app_launch_command", {"device_id": device_id, "app_id": payload}
        return None

    @subscribe
    def pair_result(self, data: dict):
        payload = {k: v for k, v in data.items() if not k.startswith("__")}
        self._client.publish(f"{self._topic_prefix}/pair/result", json.dumps(payload))


class MqttStateSink(StateStore):
    """StateStore that mirrors every state change to MQTT."""

    def __init__(self, controller: MqttController) -> None:
        super().__init__()
        self.controller = controller
        controller.state_store = self

    def create_device_tree(self, device_id: str, name: str = "") -> None:
        super().create_device_tree(device_id, name)
        for relative, state in self.device_states(device_id).items():
            self.controller.publish_state(f"{device_id}.{relative}", state.val)

    def set_state(self, path: str, value: Any, ack: bool = True) -> None:
        super().set_state(path, value, ack)
        self.controller.publish_state(path, value)

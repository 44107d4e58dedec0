"""In-memory state tree owned by the configured devices."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateDefinition:
    type: str
    role: str = "value"
    read: bool = True
    write: bool = False
    default: Any = None
    unit: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    states: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StateValue:
    val: Any
    ack: bool = True


def _info(role: str = "value", default: Any = "", type_: str = "string") -> StateDefinition:
    return StateDefinition(type=type_, role=role, default=default)


def _button(role: str = "button") -> StateDefinition:
    return StateDefinition(type="boolean", role=role, read=False, write=True, default=False)


def _choice(role: str, default: str, states: Dict[str, str]) -> StateDefinition:
    return StateDefinition(type="string", role=role, default=default, states=states)


# channel -> state -> definition
STATE_DEFINITIONS: Dict[str, Dict[str, StateDefinition]] = {
    "info": {
        "name": _info("info.name"),
        "model": _info("info.hardware"),
        "modelId": _info(),
        "os": _info(),
        "osVersion": _info("info.firmware"),
        "mac": _info("info.mac"),
        "address": _info("info.ip"),
        "identifier": _info(),
        "connected": _info("indicator.reachable", False, "boolean"),
        "paired": _info("indicator", False, "boolean"),
    },
    "power": {
        "state": StateDefinition(type="boolean", role="switch.power", write=True, default=False),
    },
    "remote": {
        "up": _button(),
        "down": _button(),
        "left": _button(),
        "right": _button(),
        "select": _button(),
        "menu": _button(),
        "home": _button(),
        "homeHold": _button(),
        "topMenu": _button(),
        "play": _button("button.play"),
        "pause": _button("button.pause"),
        "playPause": _button("button.play.pause"),
        "stop": _button("button.stop"),
        "next": _button("button.next"),
        "previous": _button("button.prev"),
        "skipForward": _button(),
        "skipBackward": _button(),
        "volumeUp": _button("button.volume.up"),
        "volumeDown": _button("button.volume.down"),
        "channelUp": _button(),
        "channelDown": _button(),
    },
    "playing": {
        "title": _info("media.title"),
        "artist": _info("media.artist"),
        "album": _info("media.album"),
        "genre": _info("media.genre"),
        "mediaType": _choice(
            "media.type",
            "unknown",
            {"unknown": "Unknown", "music": "Music", "video": "Video", "tv": "TV"},
        ),
        "deviceState": _choice(
            "media.state",
            "idle",
            {
                "idle": "Idle",
                "playing": "Playing",
                "paused": "Paused",
                "loading": "Loading",
                "seeking": "Seeking",
            },
        ),
        "app": _info(),
        "appId": _info(),
        "position": StateDefinition(
            type="number", role="media.elapsed", write=True, default=0, unit="s"
        ),
        "duration": StateDefinition(type="number", role="media.duration", default=0, unit="s"),
        "shuffle": _choice("value", "off", {"off": "Off", "songs": "Songs", "albums": "Albums"}),
        "repeat": _choice("value", "off", {"off": "Off", "track": "Track", "all": "All"}),
        "artworkUrl": _info("media.cover"),
        "artworkBase64": _info("media.cover.base64"),
    },
    "apps": {
        "list": _info("json", "[]"),
        "launch": StateDefinition(type="string", read=False, write=True, default=""),
        "current": _info(),
        "currentId": _info(),
    },
    "volume": {
        "level": StateDefinition(
            type="number", role="level.volume", default=0, min=0, max=100
        ),
    },
}


def iter_definitions() -> Iterator[Tuple[str, str, StateDefinition]]:
    for channel, states in STATE_DEFINITIONS.items():
        for state, definition in states.items():
            yield channel, state, definition


class StateStore:
    """
    Flat store of `<device_id>.<channel>.<state>` paths.

    Subclasses hook set_state() to mirror changes elsewhere (see
    MqttStateSink).
    """

    def __init__(self) -> None:
        self._states: Dict[str, StateValue] = {}

    def create_device_tree(self, device_id: str, name: str = "") -> None:
        """Seed every defined state of a device with its default, once, and label it `name`."""
        for channel, state, definition in iter_definitions():
            path = f"{device_id}.{channel}.{state}"
            if path not in self._states:
                self._states[path] = StateValue(definition.default, True)
        if name:
            self._states[f"{device_id}.info.name"] = StateValue(name, True)
        _LOGGER.debug("Created state tree for %s", device_id)

    def set_state(self, path: str, value: Any, ack: bool = True) -> None:
        self._states[path] = StateValue(value, ack)

    def get_state(self, path: str) -> Optional[StateValue]:
        return self._states.get(path)

    def device_states(self, device_id: str) -> Dict[str, StateValue]:
        prefix = device_id + "."
        return {
            path[len(prefix):]: value
            for path, value in self._states.items()
            if path.startswith(prefix)
        }

    def __contains__(self, path: str) -> bool:
        return path in self._states

    def items(self) -> List[Tuple[str, StateValue]]:
        return list(self._states.items())

"""Data model shared by the backends, the device manager and the bridge."""

from __future__ import annotations

import base64
import re
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Union

_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_id(raw: str) -> str:
    """Make a device identifier safe for use as a state path segment."""
    return _SANITIZE_RE.sub("_", raw)


# -----------------------------------------------------------------------------
# Device configuration
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Credentials:
    """One credential string per sub-protocol of the pyatv tools."""
    mrp: str = ""
    airplay: str = ""
    companion: str = ""

    @staticmethod
    def _slot(protocol: str) -> str:
        # Unknown protocols (e.g. raop) end up in the airplay slot.
        protocol = (protocol or "").lower()
        return protocol if protocol in ("mrp", "airplay", "companion") else "airplay"

    def for_protocol(self, protocol: str) -> str:
        return getattr(self, self._slot(protocol))

    def with_protocol(self, protocol: str, value: str) -> "Credentials":
        return replace(self, **{self._slot(protocol): value})

    def any(self) -> bool:
        return bool(self.mrp or self.airplay or self.companion)


@dataclass(frozen=True)
class DeviceConfig:
    """Static description of a device. Immutable for a connectivity session."""
    name: str = ""
    identifier: str = ""
    address: str = ""
    credentials: Credentials = field(default_factory=Credentials)
    mac: str = ""
    model: str = ""
    model_str: str = ""
    os: str = ""
    os_version: str = ""

    @property
    def device_id(self) -> str:
        raw = self.identifier or self.mac or self.address
        return sanitize_id(raw) if raw else ""

    @property
    def display_name(self) -> str:
        return self.name or self.device_id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceConfig":
        creds = data.get("credentials") or {}
        return cls(
            name=data.get("name", ""),
            identifier=data.get("identifier", ""),
            address=data.get("address", ""),
            credentials=Credentials(
                mrp=creds.get("mrp") or data.get("mrp_credentials", ""),
                airplay=creds.get("airplay") or data.get("airplay_credentials", ""),
                companion=creds.get("companion") or data.get("companion_credentials", ""),
            ),
            mac=data.get("mac", ""),
            model=data.get("model", ""),
            model_str=data.get("model_str", ""),
            os=data.get("os", ""),
            os_version=data.get("os_version", ""),
        )


# -----------------------------------------------------------------------------
# Playback state
# -----------------------------------------------------------------------------

class _TolerantEnum(str, Enum):
    """String enum whose parse() falls back to the first member."""

    @classmethod
    def parse(cls, value: Any):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").lower())
        except ValueError:
            return next(iter(cls))


class MediaType(_TolerantEnum):
    UNKNOWN = "unknown"
    MUSIC = "music"
    VIDEO = "video"
    TV = "tv"


class DeviceState(_TolerantEnum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    LOADING = "loading"
    SEEKING = "seeking"


class ShuffleMode(_TolerantEnum):
    OFF = "off"
    SONGS = "songs"
    ALBUMS = "albums"


class RepeatMode(_TolerantEnum):
    OFF = "off"
    TRACK = "track"
    ALL = "all"


@dataclass
class PlayingState:
    """Now-playing snapshot. Every field always carries a value."""
    title: str = ""
    artist: str = ""
    album: str = ""
    genre: str = ""
    media_type: MediaType = MediaType.UNKNOWN
    device_state: DeviceState = DeviceState.IDLE
    app: str = ""
    app_id: str = ""
    position: float = 0
    duration: float = 0
    shuffle: ShuffleMode = ShuffleMode.OFF
    repeat: RepeatMode = RepeatMode.OFF

    @classmethod
    def from_atvscript(cls, data: Dict[str, Any]) -> "PlayingState":
        """Build from an atvscript `playing` / push_updates JSON object."""
        return cls(
            title=data.get("title") or "",
            artist=data.get("artist") or "",
            album=data.get("album") or "",
            genre=data.get("genre") or "",
            media_type=MediaType.parse(data.get("media_type")),
            device_state=DeviceState.parse(data.get("device_state")),
            app=data.get("app") or "",
            app_id=data.get("app_id") or "",
            position=data.get("position") or 0,
            duration=data.get("total_time") or 0,
            shuffle=ShuffleMode.parse(data.get("shuffle")),
            repeat=RepeatMode.parse(data.get("repeat")),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "genre": self.genre,
            "mediaType": self.media_type.value,
            "deviceState": self.device_state.value,
            "app": self.app,
            "appId": self.app_id,
            "position": self.position,
            "duration": self.duration,
            "shuffle": self.shuffle.value,
            "repeat": self.repeat.value,
        }


# -----------------------------------------------------------------------------
# Push events
# -----------------------------------------------------------------------------

class PushEventType(str, Enum):
    PLAYING = "playing"
    POWER = "power"
    VOLUME = "volume"
    CONNECTION = "connection"


@dataclass(frozen=True)
class PowerUpdate:
    state: bool


@dataclass(frozen=True)
class VolumeUpdate:
    level: float


@dataclass(frozen=True)
class ConnectionUpdate:
    connected: bool
    reason: str = ""


PushPayload = Union[PlayingState, PowerUpdate, VolumeUpdate, ConnectionUpdate]


@dataclass(frozen=True)
class PushEvent:
    """A single update delivered by a backend's push channel."""
    type: PushEventType
    data: PushPayload

    @classmethod
    def playing(cls, state: PlayingState) -> "PushEvent":
        return cls(PushEventType.PLAYING, state)

    @classmethod
    def power(cls, state: bool) -> "PushEvent":
        return cls(PushEventType.POWER, PowerUpdate(state))

    @classmethod
    def volume(cls, level: float) -> "PushEvent":
        return cls(PushEventType.VOLUME, VolumeUpdate(level))

    @classmethod
    def connection(cls, connected: bool, reason: str) -> "PushEvent":
        return cls(PushEventType.CONNECTION, ConnectionUpdate(connected, reason))

    def as_dict(self) -> Dict[str, Any]:
        if isinstance(self.data, PlayingState):
            data = self.data.as_dict()
        else:
            data = asdict(self.data)
        return {"type": self.type.value, "data": data}


# -----------------------------------------------------------------------------
# Backend results
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ServiceInfo:
    protocol: str
    port: int = 0


@dataclass
class DiscoveredDevice:
    name: str = ""
    address: str = ""
    identifier: str = ""
    all_identifiers: List[str] = field(default_factory=list)
    mac: str = ""
    model: str = ""
    model_str: str = ""
    os: str = ""
    os_version: str = ""
    services: List[ServiceInfo] = field(default_factory=list)


@dataclass(frozen=True)
class AppInfo:
    name: str
    id: str


@dataclass(frozen=True)
class Artwork:
    data: bytes
    mimetype: str = "image/png"

    def as_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mimetype};base64,{encoded}"


class PairStatus(str, Enum):
    AWAITING_PIN = "awaitingPin"
    PAIRED = "paired"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PairResult:
    status: PairStatus
    credentials: Optional[str] = None

"""
Backend using the pyatv library in-process.

Keeps one persistent connection and receives now-playing updates by event
instead of by query. Seeking, app listing, app launch and artwork are not
offered by this transport and degrade softly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

import pyatv
from pyatv.const import Protocol
from pyatv.interface import DeviceListener, PushListener

from ..const import ARTWORK_DEFAULT_HEIGHT, ARTWORK_DEFAULT_WIDTH, NATIVE_COMMAND_MAP
from ..errors import TransportExecError, UnsupportedCommand
from ..models import (
    AppInfo,
    Artwork,
    DeviceConfig,
    DeviceState,
    DiscoveredDevice,
    MediaType,
    PlayingState,
    PushEvent,
    RepeatMode,
    ServiceInfo,
    ShuffleMode,
)
from .base import Backend, PushCallback, PushHandle

_LOGGER = logging.getLogger(__name__)

_SCAN_TIMEOUT = 5


def _enum_name(value: Any) -> str:
    return getattr(value, "name", value) or ""


def playing_from_pyatv(playing: Any) -> PlayingState:
    """Convert a pyatv Playing object into a PlayingState."""
    if playing is None:
        return PlayingState()
    return PlayingState(
        title=getattr(playing, "title", None) or "",
        artist=getattr(playing, "artist", None) or "",
        album=getattr(playing, "album", None) or "",
        genre=getattr(playing, "genre", None) or "",
        media_type=MediaType.parse(_enum_name(getattr(playing, "media_type", None))),
        device_state=DeviceState.parse(_enum_name(getattr(playing, "device_state", None))),
        position=getattr(playing, "position", None) or 0,
        duration=getattr(playing, "total_time", None) or 0,
        shuffle=ShuffleMode.parse(_enum_name(getattr(playing, "shuffle", None))),
        repeat=RepeatMode.parse(_enum_name(getattr(playing, "repeat", None))),
    )


class _NativeListener(DeviceListener, PushListener):
    """Routes the connection's now-playing, close and error events to a callback."""

    def __init__(self, backend: "NativeBackend", on_update: PushCallback) -> None:
        self._backend = backend
        self._on_update = on_update
        self.active = True

    def _emit(self, event: PushEvent) -> None:
        if not self.active:
            return
        try:
            self._on_update(event)
        except Exception:
            _LOGGER.exception("Error in push update callback")

    # now-playing
    def playstatus_update(self, updater, playstatus) -> None:
        if not self.active:
            return
        state = playing_from_pyatv(playstatus)
        self._backend.cached_playing = state
        self._emit(PushEvent.playing(state))

    # error
    def playstatus_error(self, updater, exception: Exception) -> None:
        if not self.active:
            return
        _LOGGER.error("pyatv connection error: %s", exception)
        self._emit(PushEvent.connection(False, "connection_error"))

    # close
    def connection_lost(self, exception: Exception) -> None:
        if not self.active:
            return
        _LOGGER.warning("pyatv connection lost: %s", exception)
        self._emit(PushEvent.connection(False, "connection_closed"))

    def connection_closed(self) -> None:
        self._emit(PushEvent.connection(False, "connection_closed"))


class NativePushHandle(PushHandle):
    def __init__(self, backend: "NativeBackend", listener: _NativeListener) -> None:
        self._backend = backend
        # pyatv holds listeners by weak reference.
        self._listener = listener
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._listener.active = False
        self._backend.close_connection()


class NativeBackend(Backend):
    """Backend holding a persistent pyatv connection."""

    name = "native"

    def __init__(self, device_config: DeviceConfig, scan_timeout: float = _SCAN_TIMEOUT) -> None:
        super().__init__(device_config)
        self.scan_timeout = scan_timeout
        self.atv: Optional[Any] = None
        self.cached_playing: Optional[PlayingState] = None
        self._connect_lock = asyncio.Lock()

    async def _ensure_connection(self) -> Any:
        async with self._connect_lock:
            if self.atv is not None:
                return self.atv

            loop = asyncio.get_running_loop()
            config = self.device_config
            try:
                found = await pyatv.scan(
                    loop,
                    identifier=config.identifier or None,
                    hosts=[config.address] if config.address and not config.identifier else None,
                    timeout=self.scan_timeout,
                )
            except Exception as err:
                raise TransportExecError(f"pyatv scan failed: {err}") from err

            if not found:
                raise TransportExecError(
                    f"Device {config.identifier or config.address} not found on network"
                )

            atv_config = found[0]
            creds = config.credentials
            for protocol, value in (
                (Protocol.MRP, creds.mrp),
                (Protocol.AirPlay, creds.airplay),
                (Protocol.Companion, creds.companion),
            ):
                if value:
                    atv_config.set_credentials(protocol, value)

            try:
                self.atv = await pyatv.connect(atv_config, loop)
            except Exception as err:
                raise TransportExecError(f"pyatv connect failed: {err}") from err

            _LOGGER.debug("Connected to %s", config.display_name)
            return self.atv

    def close_connection(self) -> None:
        atv = self.atv
        self.atv = None
        if atv is None:
            return
        try:
            atv.push_updater.stop()
            atv.push_updater.listener = None
            atv.listener = None
            atv.close()
        except Exception:
            _LOGGER.debug("Error while closing pyatv connection", exc_info=True)

    # -------------------------------------------------------------------------
    # Capability contract
    # -------------------------------------------------------------------------

    async def scan(self) -> List[DiscoveredDevice]:
        loop = asyncio.get_running_loop()
        try:
            found = await pyatv.scan(loop, timeout=self.scan_timeout)
        except Exception as err:
            raise TransportExecError(f"pyatv scan failed: {err}") from err

        devices = []
        for conf in found:
            info = conf.device_info
            devices.append(
                DiscoveredDevice(
                    name=conf.name or "",
                    address=str(conf.address or ""),
                    identifier=conf.identifier or "",
                    all_identifiers=list(conf.all_identifiers or []),
                    mac=getattr(info, "mac", None) or "",
                    model=_enum_name(getattr(info, "model", None)),
                    model_str=getattr(info, "model_str", None) or "",
                    os=_enum_name(getattr(info, "operating_system", None)),
                    os_version=getattr(info, "version", None) or "",
                    services=[
                        ServiceInfo(protocol=_enum_name(s.protocol).lower(), port=s.port or 0)
                        for s in conf.services
                    ],
                )
            )
        return devices

    async def get_playing(self) -> PlayingState:
        return self.cached_playing or PlayingState()

    async def send_command(self, command: str) -> None:
        method_name = NATIVE_COMMAND_MAP.get(command)
        if method_name is None:
            raise UnsupportedCommand(command, self.name)
        atv = await self._ensure_connection()
        method = getattr(atv.remote_control, method_name, None)
        if method is None:
            raise UnsupportedCommand(command, self.name)
        try:
            await method()
        except Exception as err:
            raise TransportExecError(f"Command {command} failed: {err}") from err

    async def get_power_state(self) -> bool:
        # No direct power query here; an open connection counts as "on".
        try:
            await self._ensure_connection()
            return True
        except Exception:
            return False

    async def turn_on(self) -> None:
        await self._ensure_connection()
        _LOGGER.debug("Turn on via connection (wake)")

    async def turn_off(self) -> None:
        atv = await self._ensure_connection()
        try:
            await atv.remote_control.suspend()
        except Exception as err:
            _LOGGER.warning("Suspend command not supported by this device: %s", err)

    async def seek_to(self, position_seconds: float) -> None:
        _LOGGER.warning("Seek is not supported by the native backend")

    async def get_app_list(self) -> List[AppInfo]:
        _LOGGER.warning("App list is not supported by the native backend")
        return []

    async def launch_app(self, app_id: str) -> None:
        _LOGGER.warning("App launching is not supported by the native backend")

    async def get_artwork(
        self,
        width: int = ARTWORK_DEFAULT_WIDTH,
        height: int = ARTWORK_DEFAULT_HEIGHT,
    ) -> Optional[Artwork]:
        return None

    async def start_push_updates(self, on_update: PushCallback) -> PushHandle:
        atv = await self._ensure_connection()
        listener = _NativeListener(self, on_update)
        atv.listener = listener
        atv.push_updater.listener = listener
        atv.push_updater.start()
        return NativePushHandle(self, listener)

    async def is_reachable(self) -> bool:
        try:
            await self._ensure_connection()
            return True
        except Exception:
            return False

    def close(self) -> None:
        self.close_connection()

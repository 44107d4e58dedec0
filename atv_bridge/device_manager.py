"""Per-device connectivity: push preferred, poll fallback, backoff reconnection."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from .const import (
    ARTWORK_DEFAULT_HEIGHT,
    ARTWORK_DEFAULT_WIDTH,
    DEFAULT_ARTWORK_INTERVAL,
    DEFAULT_POLLING_INTERVAL,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
)
from .errors import MaxReconnectAttemptsExceeded
from .models import DeviceConfig, DeviceState, PlayingState, PushEvent, PushEventType

if TYPE_CHECKING:
    from .backend.base import Backend, PushHandle
    from .state import StateStore

_LOGGER = logging.getLogger(__name__)


def reconnect_delay(
    attempt: int,
    base: float = RECONNECT_BASE_DELAY,
    maximum: float = RECONNECT_MAX_DELAY,
) -> float:
    """Delay before reconnect attempt number `attempt` (0-based)."""
    return min(base * 2 ** attempt, maximum)


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    PUSH_ACTIVE = "push_active"
    POLL_ACTIVE = "poll_active"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"


@dataclass
class ConnectionSettings:
    polling_interval: float = DEFAULT_POLLING_INTERVAL
    artwork_interval: float = DEFAULT_ARTWORK_INTERVAL
    reconnect_base_delay: float = RECONNECT_BASE_DELAY
    reconnect_max_delay: float = RECONNECT_MAX_DELAY
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS


class DeviceManager:
    """
    Keeps one device's state tree in sync with the device.

    connect() tries the backend's push channel first and falls back to
    periodic polling when it cannot be opened. A push channel reporting a
    lost connection schedules a reconnect with exponential backoff, up to
    a fixed number of attempts. A successful push connection or poll
    resets the attempt counter.
    """

    def __init__(
        self,
        device_config: DeviceConfig,
        backend: "Backend",
        state_sink: "StateStore",
        settings: Optional[ConnectionSettings] = None,
    ) -> None:
        self.device_config = device_config
        self.device_id = device_config.device_id
        self.backend = backend
        self.state_sink = state_sink
        self.settings = settings or ConnectionSettings()

        self._push_handle: Optional["PushHandle"] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._artwork_task: Optional[asyncio.Task] = None

        self._connected = False
        self._mode: Optional[str] = None
        self._phase = ConnectionPhase.DISCONNECTED
        self.reconnect_attempts = 0
        # Bumped by disconnect(); a connect() that started earlier gives up.
        self._generation = 0

    @property
    def name(self) -> str:
        return self.device_config.display_name

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def mode(self) -> Optional[str]:
        """'push', 'poll' or None."""
        return self._mode

    @property
    def phase(self) -> ConnectionPhase:
        return self._phase

    def reconnect_delay(self) -> float:
        return reconnect_delay(
            self.reconnect_attempts,
            self.settings.reconnect_base_delay,
            self.settings.reconnect_max_delay,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        _LOGGER.info("Connecting to Apple TV: %s", self.name)
        self._phase = ConnectionPhase.CONNECTING
        generation = self._generation
        self._update_device_info()

        try:
            handle = await self.backend.start_push_updates(self._on_push_event)
        except Exception as err:
            if generation != self._generation:
                _LOGGER.debug("Connect to %s cancelled by disconnect", self.name)
                return
            _LOGGER.warning(
                "Push updates failed for %s, falling back to polling: %s", self.name, err
            )
            self._start_polling()
            return

        if generation != self._generation:
            _LOGGER.debug("Connect to %s cancelled by disconnect", self.name)
            handle.stop()
            return

        self._push_handle = handle
        self._mode = "push"
        self._phase = ConnectionPhase.PUSH_ACTIVE
        self.reconnect_attempts = 0
        self._set_connected(True)
        _LOGGER.info("Push updates active for %s", self.name)
        self._start_artwork_polling()

    async def disconnect(self) -> None:
        """Stop the push channel and every timer. Safe to call repeatedly."""
        self._generation += 1
        if self._push_handle is not None:
            self._push_handle.stop()
            self._push_handle = None

        pending = []
        for attr in ("_poll_task", "_reconnect_task", "_artwork_task"):
            task = getattr(self, attr)
            if task is not None:
                task.cancel()
                pending.append(task)
                setattr(self, attr, None)

        self._mode = None
        self._phase = ConnectionPhase.DISCONNECTED
        self._set_connected(False)

        current = asyncio.current_task()
        pending = [task for task in pending if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.disconnect()
        self.backend.close()

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def handle_remote_command(self, command: str) -> None:
        _LOGGER.debug("Remote command: %s -> %s", command, self.name)
        await self.backend.send_command(command)

    async def handle_power_command(self, turn_on: bool) -> None:
        if turn_on:
            await self.backend.turn_on()
        else:
            await self.backend.turn_off()

    async def handle_seek(self, position_seconds: float) -> None:
        await self.backend.seek_to(position_seconds)

    async def handle_app_launch(self, app_id: str) -> None:
        if not app_id:
            return
        _LOGGER.info("Launching app: %s on %s", app_id, self.name)
        await self.backend.launch_app(app_id)

    async def refresh_app_list(self) -> None:
        try:
            apps = await self.backend.get_app_list()
            self._set_state(
                "apps.list", json.dumps([{"name": app.name, "id": app.id} for app in apps])
            )
            _LOGGER.info("App list refreshed: %d apps for %s", len(apps), self.name)
        except Exception as err:
            _LOGGER.debug("Failed to refresh app list: %s", err)

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    def _on_push_event(self, event: PushEvent) -> None:
        if event.type is PushEventType.PLAYING:
            self._update_playing_states(event.data)
        elif event.type is PushEventType.POWER:
            self._set_state("power.state", event.data.state)
        elif event.type is PushEventType.VOLUME:
            self._set_state("volume.level", event.data.level)
        elif event.type is PushEventType.CONNECTION and not event.data.connected:
            _LOGGER.warning("Connection lost for %s: %s", self.name, event.data.reason)
            self._mode = None
            self._phase = ConnectionPhase.DISCONNECTED
            self._set_connected(False)
            self._schedule_reconnect()

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _start_polling(self) -> None:
        self._mode = "poll"
        self._phase = ConnectionPhase.POLL_ACTIVE
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.polling_interval)
            await self.poll_once()

    async def poll_once(self) -> None:
        try:
            playing = await self.backend.get_playing()
            self._update_playing_states(playing)

            power_state = await self.backend.get_power_state()
            self._set_state("power.state", power_state)

            if not self._connected:
                self.reconnect_attempts = 0
                self._set_connected(True)
        except Exception as err:
            _LOGGER.debug("Poll failed for %s: %s", self.name, err)
            if self._connected:
                self._set_connected(False)

    def _start_artwork_polling(self) -> None:
        self._artwork_task = asyncio.get_running_loop().create_task(self._artwork_loop())

    async def _artwork_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.artwork_interval)
            await self.refresh_artwork()

    async def refresh_artwork(self) -> None:
        try:
            device_state = self.state_sink.get_state(f"{self.device_id}.playing.deviceState")
            if device_state is None or device_state.val == DeviceState.IDLE.value:
                return

            artwork = await self.backend.get_artwork(ARTWORK_DEFAULT_WIDTH, ARTWORK_DEFAULT_HEIGHT)
            if artwork is not None and artwork.data:
                self._set_state("playing.artworkBase64", artwork.as_data_uri())
            else:
                self._set_state("playing.artworkBase64", "")
        except Exception as err:
            _LOGGER.debug("Artwork fetch failed: %s", err)

    # -------------------------------------------------------------------------
    # Reconnect
    # -------------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None:
            return

        if self.reconnect_attempts >= self.settings.max_reconnect_attempts:
            _LOGGER.error(
                "%s", MaxReconnectAttemptsExceeded(self.name, self.reconnect_attempts)
            )
            self._phase = ConnectionPhase.GIVEN_UP
            return

        delay = self.reconnect_delay()
        self.reconnect_attempts += 1
        _LOGGER.info(
            "Reconnecting to %s in %ss (attempt %d)", self.name, delay, self.reconnect_attempts
        )
        self._phase = ConnectionPhase.RECONNECTING
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay)
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        try:
            await self.disconnect()
            await self.connect()
        except Exception as err:
            _LOGGER.warning("Reconnect failed: %s", err)
            self._schedule_reconnect()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _set_connected(self, connected: bool) -> None:
        self._connected = connected
        self._set_state("info.connected", connected)

    def _update_playing_states(self, playing: PlayingState) -> None:
        for key, value in playing.as_dict().items():
            self._set_state(f"playing.{key}", value)
        self._set_state("apps.current", playing.app)
        self._set_state("apps.currentId", playing.app_id)

    def _update_device_info(self) -> None:
        config = self.device_config
        try:
            self._set_state("info.name", config.name)
            self._set_state("info.address", config.address)
            self._set_state("info.identifier", config.identifier)
            self._set_state("info.mac", config.mac)
            self._set_state("info.model", config.model_str or config.model)
            self._set_state("info.modelId", config.model)
            self._set_state("info.os", config.os)
            self._set_state("info.osVersion", config.os_version)
            self._set_state("info.paired", config.credentials.any())
        except Exception as err:
            _LOGGER.debug("Failed to update device info: %s", err)

    def _set_state(self, path: str, value: Any) -> None:
        self.state_sink.set_state(f"{self.device_id}.{path}", value, True)

"""Capability contract every transport backend implements."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from ..const import ARTWORK_DEFAULT_HEIGHT, ARTWORK_DEFAULT_WIDTH
from ..errors import UnsupportedOperation
from ..models import (
    AppInfo,
    Artwork,
    DeviceConfig,
    DiscoveredDevice,
    PairResult,
    PlayingState,
    PushEvent,
)

_LOGGER = logging.getLogger(__name__)

PushCallback = Callable[[PushEvent], None]


class PushHandle(ABC):
    """Handle returned by start_push_updates()."""

    @abstractmethod
    def stop(self) -> None:
        """Signal the push channel to terminate. Idempotent, returns immediately."""

    @property
    @abstractmethod
    def stopped(self) -> bool:
        ...


class Backend(ABC):
    """
    A transport to a single device.

    A backend owns at most one live transport resource at a time. Every
    coroutine either returns the documented shape or raises an
    AtvBridgeError subclass.
    """

    name = "base"

    def __init__(self, device_config: DeviceConfig) -> None:
        self.device_config = device_config

    @abstractmethod
    async def scan(self) -> List[DiscoveredDevice]:
        ...

    @abstractmethod
    async def get_playing(self) -> PlayingState:
        ...

    @abstractmethod
    async def send_command(self, command: str) -> None:
        """Send a logical remote command (e.g. 'playPause')."""

    @abstractmethod
    async def get_power_state(self) -> bool:
        ...

    @abstractmethod
    async def turn_on(self) -> None:
        ...

    @abstractmethod
    async def turn_off(self) -> None:
        ...

    @abstractmethod
    async def seek_to(self, position_seconds: float) -> None:
        ...

    @abstractmethod
    async def get_app_list(self) -> List[AppInfo]:
        """Installed apps, or an empty list when the transport cannot tell."""

    @abstractmethod
    async def launch_app(self, app_id: str) -> None:
        ...

    @abstractmethod
    async def get_artwork(
        self,
        width: int = ARTWORK_DEFAULT_WIDTH,
        height: int = ARTWORK_DEFAULT_HEIGHT,
    ) -> Optional[Artwork]:
        """Artwork of the current item, or None when not available right now."""

    @abstractmethod
    async def start_push_updates(self, on_update: PushCallback) -> PushHandle:
        ...

    @abstractmethod
    async def is_reachable(self) -> bool:
        """Never raises; any failure means False."""

    # -------------------------------------------------------------------------
    # Pairing (only the subprocess transport supports it)
    # -------------------------------------------------------------------------

    async def pair_start(self, protocol: str) -> PairResult:
        raise UnsupportedOperation(f"Pairing is not supported by the {self.name} backend")

    async def pair_finish(self, pin: str) -> PairResult:
        raise UnsupportedOperation(f"Pairing is not supported by the {self.name} backend")

    def pair_abort(self) -> None:
        pass

    def close(self) -> None:
        """Release any live resource owned by this backend."""
        self.pair_abort()

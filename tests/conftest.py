"""Shared fakes for the tests."""

import asyncio
import stat
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from atv_bridge.backend.base import Backend, PushHandle
from atv_bridge.models import (
    AppInfo,
    Artwork,
    DeviceConfig,
    PairResult,
    PairStatus,
    PlayingState,
    PushEvent,
)


def write_script(directory: Path, name: str, body: str) -> str:
    """Write an executable /bin/sh script standing in for a pyatv tool."""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeHandle(PushHandle):
    def __init__(self, on_update) -> None:
        self.on_update = on_update
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True

    def emit(self, event: PushEvent) -> None:
        if not self._stopped:
            self.on_update(event)


class FakeBackend(Backend):
    name = "fake"

    def __init__(self, device_config: Optional[DeviceConfig] = None) -> None:
        super().__init__(device_config or DeviceConfig(name="Living Room", identifier="dev1"))
        self.push_error: Optional[Exception] = None
        self.poll_error: Optional[Exception] = None
        self.handles: List[FakeHandle] = []
        self.playing = PlayingState(title="Song", app="Music", app_id="com.apple.music")
        self.power = True
        self.apps = [AppInfo("Music", "com.apple.music")]
        self.app_list_error: Optional[Exception] = None
        self.artwork: Optional[Artwork] = None
        self.artwork_requests = 0
        self.commands: List[str] = []
        self.launched: List[str] = []
        self.seeks: List[float] = []
        self.power_calls: List[bool] = []
        self.closed = False

    @property
    def handle(self) -> FakeHandle:
        return self.handles[-1]

    async def scan(self):
        return []

    async def get_playing(self):
        if self.poll_error is not None:
            raise self.poll_error
        return self.playing

    async def send_command(self, command):
        self.commands.append(command)

    async def get_power_state(self):
        if self.poll_error is not None:
            raise self.poll_error
        return self.power

    async def turn_on(self):
        self.power_calls.append(True)

    async def turn_off(self):
        self.power_calls.append(False)

    async def seek_to(self, position_seconds):
        self.seeks.append(position_seconds)

    async def get_app_list(self):
        if self.app_list_error is not None:
            raise self.app_list_error
        return self.apps

    async def launch_app(self, app_id):
        self.launched.append(app_id)

    async def get_artwork(self, width=300, height=-1):
        self.artwork_requests += 1
        return self.artwork

    async def start_push_updates(self, on_update):
        if self.push_error is not None:
            raise self.push_error
        handle = FakeHandle(on_update)
        self.handles.append(handle)
        return handle

    async def is_reachable(self):
        return self.poll_error is None

    def close(self):
        super().close()
        self.closed = True


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


class PairingBackend(FakeBackend):
    """Backend with a scripted pairing handshake."""

    def __init__(self, identifier: str, address: str) -> None:
        super().__init__(DeviceConfig(identifier=identifier, address=address))
        self.identifier = identifier
        self.address = address
        self.start_result: PairResult = PairResult(PairStatus.AWAITING_PIN)
        self.start_error: Optional[Exception] = None
        self.finish_error: Optional[Exception] = None
        self.protocols: List[str] = []
        self.pins: List[str] = []
        self.aborts = 0
        # Holds pair_start until set, to overlap handshakes.
        self.gate: Optional[asyncio.Event] = None

    async def pair_start(self, protocol):
        self.protocols.append(protocol)
        if self.gate is not None:
            await self.gate.wait()
        if self.start_error is not None:
            raise self.start_error
        return self.start_result

    async def pair_finish(self, pin):
        self.pins.append(pin)
        if self.finish_error is not None:
            raise self.finish_error
        return PairResult(PairStatus.PAIRED, "creds-" + pin)

    def pair_abort(self):
        self.aborts += 1


class PairingFactory:
    def __init__(self) -> None:
        self.created: List[PairingBackend] = []
        self.configure: Optional[Callable[[PairingBackend], None]] = None

    def __call__(self, identifier: str, address: str) -> PairingBackend:
        backend = PairingBackend(identifier, address)
        if self.configure is not None:
            self.configure(backend)
        self.created.append(backend)
        return backend

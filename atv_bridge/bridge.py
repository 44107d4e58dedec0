"""Owns the device managers and the pairing registry of one running bridge."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Awaitable, Dict, List, Optional, Set

from .backend import AtvScriptBackend, Backend, create_backend
from .device_manager import DeviceManager
from .event_bus import EventBus, EventHandler, subscribe
from .models import DeviceConfig, DiscoveredDevice, PairResult, PairStatus
from .pairing import BackendFactory, PairingRegistry

if TYPE_CHECKING:
    from .config import BackendConfig, Config
    from .state import StateStore

_LOGGER = logging.getLogger(__name__)


def pairing_backend_factory(backend_config: "BackendConfig") -> BackendFactory:
    """Pairing always runs through the command line tools, with no credentials."""

    def factory(identifier: str, address: str) -> Backend:
        return AtvScriptBackend(
            DeviceConfig(identifier=identifier, address=address),
            atvscript_path=backend_config.atvscript_path,
            atvremote_path=backend_config.atvremote_path,
            timeout=backend_config.timeout,
            scan_timeout=backend_config.scan_timeout,
        )

    return factory


class Bridge:
    def __init__(
        self,
        config: "Config",
        state_sink: "StateStore",
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self.config = config
        self.state_sink = state_sink
        self.event_bus = event_bus or EventBus()
        self.managers: Dict[str, DeviceManager] = {}
        self.device_configs: List[DeviceConfig] = list(config.devices)
        self.pairing = PairingRegistry(pairing_backend_factory(config.backend))

    def create_backend(self, device_config: DeviceConfig) -> Backend:
        return create_backend(
            self.config.backend.type, device_config, **self.config.backend.options()
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        for device_config in self.device_configs:
            await self.start_device(device_config)
        _LOGGER.info("Bridge started with %d device(s)", len(self.managers))

    async def stop(self) -> None:
        self.pairing.abort_all()
        for manager in list(self.managers.values()):
            try:
                await manager.close()
            except Exception:
                _LOGGER.exception("Error while closing %s", manager.name)
        self.managers.clear()

    async def start_device(self, device_config: DeviceConfig) -> Optional[DeviceManager]:
        device_id = device_config.device_id
        if not device_id:
            _LOGGER.warning("Device has no identifier, MAC or address - skipping")
            return None

        self.state_sink.create_device_tree(device_id, device_config.display_name)
        manager = DeviceManager(
            device_config,
            self.create_backend(device_config),
            self.state_sink,
            self.config.connection_settings(),
        )
        self.managers[device_id] = manager

        try:
            await manager.connect()
            await manager.refresh_app_list()
        except Exception:
            _LOGGER.exception("Failed to initialize device %s", device_config.display_name)
        return manager

    def get_manager(self, device_id: str) -> Optional[DeviceManager]:
        return self.managers.get(device_id)

    async def scan(self) -> List[DiscoveredDevice]:
        return await self.create_backend(DeviceConfig()).scan()

    # -------------------------------------------------------------------------
    # Pairing
    # -------------------------------------------------------------------------

    def find_device(self, identifier: str) -> Optional[DeviceConfig]:
        for device_config in self.device_configs:
            if identifier in (device_config.identifier, device_config.address):
                return device_config
        return None

    async def pair_start(
        self, identifier: str, protocol: str = "airplay", address: str = ""
    ) -> PairResult:
        if not address:
            known = self.find_device(identifier)
            address = known.address if known is not None else ""

        protocol = protocol or "airplay"
        result = await self.pairing.pair_start(identifier, protocol, address)
        if result.status is PairStatus.PAIRED and result.credentials:
            await self.store_credentials(identifier, protocol, result.credentials)
        return result

    async def submit_pin(self, identifier: str, pin: str) -> PairResult:
        session = self.pairing.get_session(identifier)
        result = await self.pairing.submit_pin(identifier, pin)
        if session is not None and result.status is PairStatus.PAIRED and result.credentials:
            await self.store_credentials(identifier, session.protocol, result.credentials)
        return result

    def abort_pairing(self, identifier: str) -> PairResult:
        return self.pairing.abort_pairing(identifier)

    async def store_credentials(self, identifier: str, protocol: str, credentials: str) -> None:
        """Put new credentials into the device's config and restart its session."""
        old = self.find_device(identifier)
        if old is None:
            _LOGGER.warning(
                "Cannot store credentials: device %s not found in config", identifier
            )
            return

        new = replace(old, credentials=old.credentials.with_protocol(protocol, credentials))
        self.device_configs[self.device_configs.index(old)] = new
        _LOGGER.info("Credentials for %s stored for device %s", protocol, new.display_name)

        existing = self.managers.pop(old.device_id, None)
        if existing is not None:
            await existing.close()
        try:
            await self.start_device(new)
        except Exception as err:
            _LOGGER.warning("Failed to reinit device after pairing: %s", err)


class BridgeCommandHandler(EventHandler):
    """Turns event bus commands into bridge and device manager calls."""

    def __init__(
        self,
        event_bus: EventBus,
        bridge: Bridge,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.bridge = bridge
        self.loop = loop
        self._tasks: Set[asyncio.Task] = set()
        super().__init__(event_bus)

    def _run(self, coro: Awaitable[Any], description: str) -> asyncio.Task:
        task = self.loop.create_task(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            err = finished.exception()
            if err is not None:
                _LOGGER.error("%s failed: %s", description, err)

        task.add_done_callback(_done)
        return task

    def _manager(self, data: Dict[str, Any]) -> Optional[DeviceManager]:
        device_id = data.get("device_id", "")
        manager = self.bridge.get_manager(device_id)
        if manager is None:
            _LOGGER.warning("Unknown device: %s", device_id)
        return manager

    @subscribe
    def remote_command(self, data: dict):
        manager = self._manager(data)
        if manager:
            command = data.get("command", "")
            self._run(manager.handle_remote_command(command), f"Command {command}")

    @subscribe
    def power_command(self, data: dict):
        manager = self._manager(data)
        if manager:
            self._run(manager.handle_power_command(bool(data.get("state"))), "Power command")

    @subscribe
    def seek_command(self, data: dict):
        manager = self._manager(data)
        if manager:
            self._run(manager.handle_seek(float(data.get("position", 0))), "Seek")

    @subscribe
    def app_launch_command(self, data: dict):
        manager = self._manager(data)
        if manager:
            self._run(manager.handle_app_launch(data.get("app_id", "")), "App launch")

    @subscribe
    def pair_start(self, data: dict):
        identifier = data.get("identifier", "")
        coro = self.bridge.pair_start(
            identifier, data.get("protocol") or "airplay", data.get("address", "")
        )
        self._run(self._report_pairing(identifier, coro), "Pairing")

    @subscribe
    def pair_submit_pin(self, data: dict):
        identifier = data.get("identifier", "")
        coro = self.bridge.submit_pin(identifier, str(data.get("pin", "")))
        self._run(self._report_pairing(identifier, coro), "PIN submission")

    @subscribe
    def pair_abort(self, data: dict):
        identifier = data.get("identifier", "")
        result = self.bridge.abort_pairing(identifier)
        self.event_bus.publish(
            "pair_result", {"identifier": identifier, "status": result.status.value}
        )

    async def _report_pairing(self, identifier: str, coro: Awaitable[PairResult]) -> None:
        try:
            result = await coro
        except Exception as err:
            _LOGGER.error("Pairing with %s failed: %s", identifier, err)
            self.event_bus.publish("pair_result", {"identifier": identifier, "error": str(err)})
            return

        payload: Dict[str, Any] = {"identifier": identifier, "status": result.status.value}
        if result.credentials:
            payload["credentials"] = result.credentials
        self.event_bus.publish("pair_result", payload)

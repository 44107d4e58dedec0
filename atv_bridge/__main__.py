#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional, Tuple

from .backend.atvscript import check_installed
from .bridge import Bridge, BridgeCommandHandler, pairing_backend_factory
from .config import Config, load_config_from_json
from .event_bus import EventBus
from .models import PairStatus
from .mqtt_controller import MqttController, MqttStateSink
from .pairing import PairingRegistry
from .state import StateStore

_LOGGER = logging.getLogger(__name__)
_MODULE_DIR = Path(__file__).parent
_REPO_DIR = _MODULE_DIR.parent

_NOISY_LOGGERS = ("pyatv", "paho")

# -----------------------------------------------------------------------------
# Main Application
# -----------------------------------------------------------------------------

async def main() -> None:
    # --- 1. Load Basics ---
    config, args = _init_basics()
    loop = asyncio.get_running_loop()

    # --- 2. One-shot modes ---
    if args.scan:
        await _run_scan(config)
        return
    if args.pair:
        await _run_pairing(config, args.pair, args.protocol, args.address)
        return

    # --- 3. State sink and MQTT ---
    event_bus = EventBus()
    mqtt_controller: Optional[MqttController] = None
    if config.mqtt.enabled:
        mqtt_controller = MqttController(
            loop=loop,
            event_bus=event_bus,
            config=config.mqtt,
            app_name=config.app.name,
        )
        state_sink: StateStore = MqttStateSink(mqtt_controller)
        mqtt_controller.start()
    else:
        _LOGGER.info("MQTT disabled; states are kept in memory only")
        state_sink = StateStore()

    # --- 4. Bridge ---
    bridge = Bridge(config, state_sink, event_bus)
    BridgeCommandHandler(event_bus, bridge, loop)

    try:
        await bridge.start()
        await _wait_for_shutdown(loop)
    finally:
        # --- 5. Cleanup ---
        _LOGGER.debug("Shutting down...")
        await bridge.stop()

        if mqtt_controller is not None:
            _LOGGER.debug("Stopping MQTT controller...")
            mqtt_controller.stop()

# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------

def _init_basics() -> Tuple[Config, argparse.Namespace]:
    """Parses arguments, loads config and sets up logging."""
    parser = argparse.ArgumentParser(prog="atv-bridge")
    parser.add_argument(
        "-c", "--config", type=Path, required=False,
        default=_MODULE_DIR / "config.json",
        help="Path to configuration.json file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--scan", action="store_true", help="Scan for devices and exit")
    parser.add_argument(
        "--pair", metavar="IDENTIFIER", help="Pair with a device interactively and exit"
    )
    parser.add_argument(
        "--protocol", default="airplay",
        help="Protocol to pair (airplay, companion, mrp)"
    )
    parser.add_argument("--address", default="", help="Device address used for pairing")
    args = parser.parse_args()

    config_path = args.config
    if not config_path.is_absolute():
        config_path = _REPO_DIR / config_path
    config = load_config_from_json(config_path)

    if args.debug:
        config.app.debug = True

    logging.basicConfig(
        level=logging.DEBUG if config.app.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    if not config.app.debug:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    _LOGGER.info("Loading configuration from: %s", config_path)

    if config.backend.type in ("atvscript", "pyatv-cli") and not check_installed():
        _LOGGER.warning("atvscript/atvremote not found; install pyatv to provide them")

    return config, args


async def _run_scan(config: Config) -> None:
    bridge = Bridge(config, StateStore())
    devices = await bridge.scan()
    print(f"Found {len(devices)} device(s)\n" + "=" * 20)
    for device in devices:
        protocols = ", ".join(service.protocol for service in device.services)
        print(f"{device.name} ({device.address})")
        print(f"  identifier: {device.identifier}")
        print(f"  model: {device.model_str or device.model}, {device.os} {device.os_version}")
        if protocols:
            print(f"  protocols: {protocols}")


async def _run_pairing(config: Config, identifier: str, protocol: str, address: str) -> None:
    registry = PairingRegistry(pairing_backend_factory(config.backend))
    loop = asyncio.get_running_loop()
    try:
        result = await registry.pair_start(identifier, protocol, address)
        if result.status is PairStatus.AWAITING_PIN:
            pin = await loop.run_in_executor(None, input, "Enter the PIN shown on the device: ")
            result = await registry.submit_pin(identifier, pin)
    finally:
        registry.abort_all()

    print(f"Paired ({protocol}). Credentials:\n{result.credentials or ''}")


async def _wait_for_shutdown(loop: asyncio.AbstractEventLoop) -> None:
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass
    await stop_event.wait()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

"""Configuration models for the application."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import logging

from .const import (
    ATVSCRIPT_SCAN_TIMEOUT,
    ATVSCRIPT_TIMEOUT,
    DEFAULT_ARTWORK_INTERVAL,
    DEFAULT_POLLING_INTERVAL,
    MAX_RECONNECT_ATTEMPTS,
    MQTT_TOPIC_PREFIX,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
)
from .device_manager import ConnectionSettings
from .models import DeviceConfig

_LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Configuration Dataclasses
# -----------------------------------------------------------------------------

@dataclass
class BackendConfig:
    """Which transport to use and how to run it."""
    type: str = "atvscript"
    atvscript_path: Optional[str] = None
    atvremote_path: Optional[str] = None
    timeout: float = ATVSCRIPT_TIMEOUT
    scan_timeout: float = ATVSCRIPT_SCAN_TIMEOUT

    def options(self) -> Dict[str, Any]:
        """Keyword arguments for create_backend()."""
        if self.type.lower() in ("native", "pyatv"):
            return {}
        return {
            "atvscript_path": self.atvscript_path,
            "atvremote_path": self.atvremote_path,
            "timeout": self.timeout,
            "scan_timeout": self.scan_timeout,
        }


@dataclass
class PollingConfig:
    """Intervals (seconds) for poll mode and artwork refresh."""
    interval: float = DEFAULT_POLLING_INTERVAL
    artwork_interval: float = DEFAULT_ARTWORK_INTERVAL


@dataclass
class ReconnectConfig:
    base_delay: float = RECONNECT_BASE_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    max_attempts: int = MAX_RECONNECT_ATTEMPTS


@dataclass
class MqttConfig:
    """Settings for the MQTT client."""
    enabled: bool = False
    host: Optional[str] = None
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    topic_prefix: str = MQTT_TOPIC_PREFIX


@dataclass
class AppConfig:
    """General application settings."""
    name: str
    debug: bool = False


@dataclass
class Config:
    """Main configuration object."""
    app: AppConfig
    backend: BackendConfig = field(default_factory=BackendConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    devices: List[DeviceConfig] = field(default_factory=list)

    def connection_settings(self) -> ConnectionSettings:
        return ConnectionSettings(
            polling_interval=self.polling.interval,
            artwork_interval=self.polling.artwork_interval,
            reconnect_base_delay=self.reconnect.base_delay,
            reconnect_max_delay=self.reconnect.max_delay,
            max_reconnect_attempts=self.reconnect.max_attempts,
        )

# -----------------------------------------------------------------------------
# Helper Function
# -----------------------------------------------------------------------------

def load_config_from_json(config_path: Path) -> Config:
    """Loads configuration from a JSON file and populates dataclasses."""

    # --- Step 1: Load raw JSON data ---
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_data = json.load(f)
    except FileNotFoundError:
        _LOGGER.critical("Configuration file not found at: %s", config_path)
        raise
    except json.JSONDecodeError as e:
        _LOGGER.critical("Error parsing configuration file: %s", e)
        raise

    # --- Step 2: Create config objects from raw data ---
    if "app" not in raw_data:
        raise ValueError(
            "Configuration file must contain an 'app' section with a 'name'."
        )

    app_config = AppConfig(**raw_data.get("app", {}))
    backend_config = BackendConfig(**raw_data.get("backend", {}))
    polling_config = PollingConfig(**raw_data.get("polling", {}))
    reconnect_config = ReconnectConfig(**raw_data.get("reconnect", {}))
    mqtt_config = MqttConfig(**raw_data.get("mqtt", {}))
    devices = [DeviceConfig.from_dict(dev) for dev in raw_data.get("devices", [])]

    # --- Step 3: Set MQTT 'enabled' flag ---
    if mqtt_config.host:
        mqtt_config.enabled = True

    return Config(
        app=app_config,
        backend=backend_config,
        polling=polling_config,
        reconnect=reconnect_config,
        mqtt=mqtt_config,
        devices=devices,
    )

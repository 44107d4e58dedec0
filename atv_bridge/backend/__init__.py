"""Transport backends."""

from typing import Any

from ..models import DeviceConfig
from .atvscript import AtvScriptBackend
from .base import Backend, PushCallback, PushHandle
from .native import NativeBackend

__all__ = [
    "AtvScriptBackend",
    "Backend",
    "NativeBackend",
    "PushCallback",
    "PushHandle",
    "create_backend",
]

BACKEND_TYPES = {
    "atvscript": AtvScriptBackend,
    "pyatv-cli": AtvScriptBackend,
    "native": NativeBackend,
    "pyatv": NativeBackend,
}


def create_backend(backend_type: str, device_config: DeviceConfig, **options: Any) -> Backend:
    """Create the backend registered under `backend_type`."""
    backend_cls = BACKEND_TYPES.get((backend_type or "").lower())
    if backend_cls is None:
        raise ValueError(f"Unknown backend type: {backend_type}")
    return backend_cls(device_config, **options)

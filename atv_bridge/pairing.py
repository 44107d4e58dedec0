"""Registry of interactive pairing sessions, one per device identifier."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .backend.base import Backend
from .errors import NoActiveSession
from .models import PairResult, PairStatus

_LOGGER = logging.getLogger(__name__)

_PIN_RE = re.compile(r"^\d{4}$")

BackendFactory = Callable[[str, str], Backend]


@dataclass
class PairingSession:
    identifier: str
    protocol: str
    backend: Backend


class PairingRegistry:
    """
    Tracks the pairing handshakes in progress.

    Only sessions waiting for a PIN are kept; a handshake that completes
    (or fails) in one step never enters the registry.
    """

    def __init__(self, backend_factory: BackendFactory) -> None:
        self._backend_factory = backend_factory
        self._sessions: Dict[str, PairingSession] = {}
        # Handshakes still waiting for the PIN prompt, per identifier.
        self._pending: Dict[str, Backend] = {}

    async def pair_start(
        self, identifier: str, protocol: str = "airplay", address: str = ""
    ) -> PairResult:
        if not identifier:
            raise ValueError("No device identifier provided")

        self._discard(identifier)

        protocol = protocol or "airplay"
        backend = self._backend_factory(identifier, address)
        self._pending[identifier] = backend
        _LOGGER.info("Starting pairing with %s (protocol: %s)", identifier, protocol)
        try:
            result = await backend.pair_start(protocol)
        except Exception:
            owned = self._release_pending(identifier, backend)
            backend.close()
            if not owned:
                return PairResult(PairStatus.ABORTED)
            raise

        if not self._release_pending(identifier, backend):
            # Aborted or replaced by a newer pair_start while starting.
            _LOGGER.debug("Pairing start for %s was superseded", identifier)
            backend.close()
            return PairResult(PairStatus.ABORTED)

        if result.status is PairStatus.AWAITING_PIN:
            self._sessions[identifier] = PairingSession(identifier, protocol, backend)
        else:
            backend.close()
        return result

    async def submit_pin(self, identifier: str, pin: str) -> PairResult:
        pin = (pin or "").strip()
        if not _PIN_RE.match(pin):
            raise ValueError("PIN must be exactly 4 digits")

        session = self._sessions.get(identifier)
        if session is None:
            raise NoActiveSession(f"No active pairing session for {identifier}")

        try:
            result = await session.backend.pair_finish(pin)
        finally:
            if self._sessions.get(identifier) is session:
                del self._sessions[identifier]
            session.backend.close()

        _LOGGER.info("Pairing with %s completed", identifier)
        return result

    def abort_pairing(self, identifier: str) -> PairResult:
        if self._discard(identifier):
            _LOGGER.info("Pairing with %s aborted", identifier)
        return PairResult(PairStatus.ABORTED)

    def abort_all(self) -> None:
        for identifier in {*self._sessions, *self._pending}:
            self._discard(identifier)

    def active_identifiers(self) -> List[str]:
        return list(self._sessions)

    def get_session(self, identifier: str) -> Optional[PairingSession]:
        return self._sessions.get(identifier)

    def _release_pending(self, identifier: str, backend: Backend) -> bool:
        if self._pending.get(identifier) is not backend:
            return False
        del self._pending[identifier]
        return True

    def _discard(self, identifier: str) -> bool:
        discarded = False
        pending = self._pending.pop(identifier, None)
        if pending is not None:
            pending.pair_abort()
            discarded = True
        session = self._sessions.pop(identifier, None)
        if session is not None:
            session.backend.pair_abort()
            session.backend.close()
            discarded = True
        return discarded

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

"""Exception taxonomy shared by the backends, the device manager and pairing."""

import asyncio


class AtvBridgeError(Exception):
    """Base class for every error raised by atv_bridge."""


class TransportError(AtvBridgeError):
    """A transport could not complete an operation."""


class TransportExecError(TransportError):
    """The transport process could not run or exited non-zero."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message if not stderr else f"{message}. stderr: {stderr}")
        self.message = message
        self.stderr = stderr


class TransportParseError(TransportError):
    """The transport produced malformed structured output."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(f"{message}. Raw: {raw}" if raw else message)
        self.raw = raw


class TransportLogicError(TransportError):
    """Well-formed output that reports a failure on the device side."""


class UnsupportedOperation(AtvBridgeError):
    """The active transport lacks the requested capability."""


class UnsupportedCommand(UnsupportedOperation):
    """No transport-specific mapping exists for a logical command."""

    def __init__(self, command: str, transport: str) -> None:
        super().__init__(f'Command "{command}" not supported by {transport} backend')
        self.command = command
        self.transport = transport


class NoActiveSession(AtvBridgeError):
    """A pairing action was requested without a live pairing process."""


class PairingError(AtvBridgeError):
    """The pairing process ended without usable credentials."""


class AtvTimeout(AtvBridgeError, asyncio.TimeoutError):
    """A bounded wait was exceeded."""


class TransportTimeout(TransportExecError, AtvTimeout):
    """A one-shot transport invocation ran past its timeout."""


class MaxReconnectAttemptsExceeded(AtvBridgeError):
    """Automatic reconnection gave up; manual intervention is required."""

    def __init__(self, device: str, attempts: int) -> None:
        super().__init__(f"Max reconnect attempts ({attempts}) reached for {device}")
        self.device = device
        self.attempts = attempts

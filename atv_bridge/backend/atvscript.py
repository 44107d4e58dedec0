"""
Backend driving the pyatv command line tools in subprocesses.

- atvscript: one-shot JSON queries and the long-running push_updates stream
- atvremote: interactive pairing and artwork export

Every one-shot invocation is bounded by a timeout and an output cap. The
push stream and the pairing process are long-running children with piped
stdin/stdout/stderr; their terminal transitions are settled through
single-use result cells so an exit racing a data handler settles once.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import re
import shutil
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..const import (
    ARTWORK_DEFAULT_HEIGHT,
    ARTWORK_DEFAULT_WIDTH,
    ATVSCRIPT_COMMAND_MAP,
    ATVSCRIPT_MAX_OUTPUT,
    ATVSCRIPT_SCAN_TIMEOUT,
    ATVSCRIPT_TIMEOUT,
    ERROR_EXCERPT_LEN,
    PAIR_PROMPT_TIMEOUT,
    PAIR_VERIFY_TIMEOUT,
    PIN_PROMPT_MARKERS,
    PUSH_STOP_GRACE,
    RAW_EXCERPT_LEN,
)
from ..errors import (
    AtvTimeout,
    NoActiveSession,
    PairingError,
    TransportExecError,
    TransportLogicError,
    TransportParseError,
    TransportTimeout,
    UnsupportedCommand,
)
from ..models import (
    AppInfo,
    Artwork,
    DeviceConfig,
    DiscoveredDevice,
    PairResult,
    PairStatus,
    PlayingState,
    PushEvent,
    ServiceInfo,
)
from .base import Backend, PushCallback, PushHandle

_LOGGER = logging.getLogger(__name__)

SEARCH_PATHS = [
    "/usr/local/bin",
    "/usr/bin",
    "~/.local/bin",
    "/root/.local/bin",
    "/snap/bin",
]

_CREDENTIALS_RE = re.compile(
    r"^(?:you may now use these\s+)?credentials?:\s*(.+)$", re.IGNORECASE
)
_HEX_CREDENTIALS_RE = re.compile(r"^[0-9a-fA-F:]+$")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def find_binary(name: str) -> str:
    """Locate a pyatv tool, falling back to the bare name (resolved via PATH)."""
    found = shutil.which(name)
    if found:
        return found

    for directory in SEARCH_PATHS:
        candidate = Path(directory).expanduser() / name
        if os.access(candidate, os.X_OK):
            return str(candidate)

    home = Path("/home")
    try:
        for candidate in sorted(home.glob(f"*/.local/bin/{name}")):
            if os.access(candidate, os.X_OK):
                return str(candidate)
    except OSError:
        _LOGGER.debug("Could not search %s for %s", home, name)

    return name


def check_installed() -> bool:
    """True if atvscript or atvremote can be located."""
    return any(find_binary(name) != name for name in ("atvscript", "atvremote"))


def extract_credentials(output: str) -> Optional[str]:
    """
    Pull a credentials string out of atvremote output.

    Looks for a line starting with "credentials:" first, then for the last line
    that consists only of hex digits and colons and is longer than 20 chars.
    """
    lines = [line.strip() for line in output.split("\n")]
    lines = [line for line in lines if line]

    for line in lines:
        match = _CREDENTIALS_RE.match(line)
        if match:
            return match.group(1).strip()

    for line in reversed(lines):
        if len(line) > 20 and _HEX_CREDENTIALS_RE.match(line):
            return line

    return None


class _OneShot:
    """A result cell that can be settled at most once."""

    def __init__(self) -> None:
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        # Mark exceptions as retrieved; nobody may be waiting when we abort.
        self._future.add_done_callback(
            lambda f: f.cancelled() or f.exception()
        )

    def done(self) -> bool:
        return self._future.done()

    def set_result(self, value: Any) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def set_exception(self, exc: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(exc)
        return True

    async def wait(self, timeout: float) -> Any:
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)


def _excerpt(text: str, length: int = ERROR_EXCERPT_LEN) -> str:
    return text[:length]


# -----------------------------------------------------------------------------
# Push updates
# -----------------------------------------------------------------------------

class PushLineParser:
    """Turns newline-delimited atvscript push output into PushEvents."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[PushEvent]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events: List[PushEvent] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                _LOGGER.debug("Failed to parse push update line: %s", line)
                continue
            if not isinstance(payload, dict):
                _LOGGER.debug("Ignoring non-object push update line: %s", line)
                continue
            if payload.get("result") != "success":
                _LOGGER.warning("Push update error: %s", line)
                continue
            events.extend(self.decompose(payload))
        return events

    @staticmethod
    def decompose(payload: Dict[str, Any]) -> List[PushEvent]:
        events: List[PushEvent] = []
        if "power_state" in payload:
            events.append(PushEvent.power(payload["power_state"] == "on"))
        if "title" in payload or "device_state" in payload:
            events.append(PushEvent.playing(PlayingState.from_atvscript(payload)))
        if "volume" in payload:
            events.append(PushEvent.volume(payload["volume"]))
        if "connection" in payload:
            events.append(PushEvent.connection(False, str(payload["connection"])))
        return events


class ProcessPushHandle(PushHandle):
    """Push channel backed by a long-running `atvscript push_updates` child."""

    def __init__(self, on_update: PushCallback) -> None:
        self._on_update = on_update
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._parser = PushLineParser()
        self._stopped = False
        self._finished = False
        self._tasks: Set[asyncio.Task] = set()
        self._kill_handle: Optional[asyncio.TimerHandle] = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._proc

    def attach(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        loop = asyncio.get_running_loop()
        for coro in (self._stdout_loop(proc), self._stderr_loop(proc)):
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def fail(self, reason: str) -> None:
        """Deliver the terminal event for a child that never started."""
        asyncio.get_running_loop().call_soon(self._finish, reason)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        proc = self._proc
        if proc is None or proc.returncode is not None:
            return

        try:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.write(b"\n")
        except (BrokenPipeError, ConnectionResetError, RuntimeError):
            _LOGGER.debug("Push updates process stdin already closed")

        self._kill_handle = asyncio.get_running_loop().call_later(
            PUSH_STOP_GRACE, self._force_kill
        )

    def _force_kill(self) -> None:
        self._kill_handle = None
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        _LOGGER.debug("Push updates process did not exit after %ss; killing", PUSH_STOP_GRACE)
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    def _emit(self, event: PushEvent) -> None:
        if self._stopped:
            return
        try:
            self._on_update(event)
        except Exception:
            _LOGGER.exception("Error in push update callback")

    def _finish(self, reason: str) -> None:
        if self._finished:
            return
        self._finished = True
        self._emit(PushEvent.connection(False, reason))

    async def _stdout_loop(self, proc: asyncio.subprocess.Process) -> None:
        reason = "process_exit"
        try:
            assert proc.stdout is not None
            while True:
                chunk = await proc.stdout.read(4096)
                if not chunk:
                    break
                for event in self._parser.feed(chunk):
                    self._emit(event)
            returncode = await proc.wait()
            _LOGGER.info("Push updates process exited with code %s", returncode)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            _LOGGER.error("Push updates process error: %s", err)
            reason = "process_error"
        finally:
            if self._kill_handle is not None:
                self._kill_handle.cancel()
                self._kill_handle = None
        self._finish(reason)

    async def _stderr_loop(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        try:
            while True:
                line = await proc.stderr.readline()
                if not line:
                    return
                _LOGGER.debug(
                    "atvscript push_updates stderr: %s",
                    line.decode("utf-8", errors="replace").rstrip(),
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.debug("push_updates stderr loop error", exc_info=True)


# -----------------------------------------------------------------------------
# Backend
# -----------------------------------------------------------------------------

class PairState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    AWAITING_PIN = "awaiting_pin"
    VERIFYING = "verifying"
    PAIRED = "paired"
    FAILED = "failed"
    ABORTED = "aborted"


_PAIR_LIVE_STATES = (PairState.STARTING, PairState.AWAITING_PIN, PairState.VERIFYING)


class AtvScriptBackend(Backend):
    """Backend built on the atvscript / atvremote command line tools."""

    name = "atvscript"

    def __init__(
        self,
        device_config: DeviceConfig,
        atvscript_path: Optional[str] = None,
        atvremote_path: Optional[str] = None,
        timeout: float = ATVSCRIPT_TIMEOUT,
        scan_timeout: float = ATVSCRIPT_SCAN_TIMEOUT,
    ) -> None:
        super().__init__(device_config)
        self.atvscript_path = atvscript_path or find_binary("atvscript")
        self.atvremote_path = atvremote_path or find_binary("atvremote")
        self.timeout = timeout
        self.scan_timeout = scan_timeout

        self._push_handle: Optional[ProcessPushHandle] = None

        self._pair_proc: Optional[asyncio.subprocess.Process] = None
        self._pair_state = PairState.IDLE
        self._pair_output = ""
        self._pin_offset = 0
        self._pair_stage: Optional[_OneShot] = None
        self._pair_tasks: Set[asyncio.Task] = set()

        _LOGGER.debug("atvscript path: %s", self.atvscript_path)
        _LOGGER.debug("atvremote path: %s", self.atvremote_path)

    @property
    def pair_state(self) -> PairState:
        return self._pair_state

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    def _target_args(self) -> List[str]:
        if self.device_config.identifier:
            return ["--id", self.device_config.identifier]
        if self.device_config.address:
            return ["-s", self.device_config.address]
        return []

    def _device_args(self) -> List[str]:
        args = self._target_args()
        creds = self.device_config.credentials
        if creds.mrp:
            args += ["--mrp-credentials", creds.mrp]
        if creds.airplay:
            args += ["--airplay-credentials", creds.airplay]
        if creds.companion:
            args += ["--companion-credentials", creds.companion]
        return args

    async def _run_tool(self, path: str, args: List[str], timeout: float) -> str:
        tool = os.path.basename(path)
        try:
            proc = await asyncio.create_subprocess_exec(
                path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise TransportExecError(f"{tool} failed: {err}") from err

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise TransportTimeout(f"{tool} timed out after {timeout}s") from None

        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        if len(stdout) > ATVSCRIPT_MAX_OUTPUT:
            raise TransportExecError(
                f"{tool} failed: output exceeds {ATVSCRIPT_MAX_OUTPUT} bytes", stderr_text
            )
        if proc.returncode != 0:
            raise TransportExecError(
                f"{tool} failed: exit code {proc.returncode}", stderr_text
            )
        return stdout.decode("utf-8", errors="replace")

    async def _exec_atvscript(
        self, args: List[str], timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        stdout = await self._run_tool(self.atvscript_path, args, timeout or self.timeout)
        text = stdout.strip()
        try:
            result = json.loads(text)
        except json.JSONDecodeError as err:
            raise TransportParseError(
                f"Failed to parse atvscript output: {err}", text[:RAW_EXCERPT_LEN]
            ) from err
        if not isinstance(result, dict):
            raise TransportParseError(
                "Unexpected atvscript output", text[:RAW_EXCERPT_LEN]
            )
        if result.get("result") == "failure":
            raise TransportLogicError(
                "atvscript error: "
                + str(result.get("error") or result.get("exception") or "unknown")
            )
        return result

    async def _exec_atvremote(
        self, args: List[str], timeout: Optional[float] = None
    ) -> str:
        return await self._run_tool(self.atvremote_path, args, timeout or self.timeout)

    # -------------------------------------------------------------------------
    # Capability contract
    # -------------------------------------------------------------------------

    async def scan(self) -> List[DiscoveredDevice]:
        result = await self._exec_atvscript(["scan"], self.scan_timeout)
        devices = []
        for dev in result.get("devices") or []:
            info = dev.get("device_info") or {}
            devices.append(
                DiscoveredDevice(
                    name=dev.get("name") or "",
                    address=dev.get("address") or "",
                    identifier=dev.get("identifier") or "",
                    all_identifiers=list(dev.get("all_identifiers") or []),
                    mac=info.get("mac") or "",
                    model=info.get("model") or "",
                    model_str=info.get("model_str") or "",
                    os=info.get("operating_system") or "",
                    os_version=info.get("version") or "",
                    services=[
                        ServiceInfo(protocol=s.get("protocol") or "", port=s.get("port") or 0)
                        for s in dev.get("services") or []
                    ],
                )
            )
        return devices

    async def get_playing(self) -> PlayingState:
        result = await self._exec_atvscript([*self._device_args(), "playing"])
        return PlayingState.from_atvscript(result)

    async def send_command(self, command: str) -> None:
        mapped = ATVSCRIPT_COMMAND_MAP.get(command)
        if mapped is None:
            raise UnsupportedCommand(command, self.name)
        await self._exec_atvscript([*self._device_args(), mapped])

    async def get_power_state(self) -> bool:
        result = await self._exec_atvscript([*self._device_args(), "power_state"])
        return result.get("power_state") == "on"

    async def turn_on(self) -> None:
        await self._exec_atvscript([*self._device_args(), "turn_on"])

    async def turn_off(self) -> None:
        await self._exec_atvscript([*self._device_args(), "turn_off"])

    async def seek_to(self, position_seconds: float) -> None:
        await self._exec_atvscript(
            [*self._device_args(), f"set_position={round(position_seconds)}"]
        )

    async def get_app_list(self) -> List[AppInfo]:
        try:
            result = await self._exec_atvscript([*self._device_args(), "app_list"])
        except Exception as err:
            _LOGGER.warning(
                "Failed to get app list (companion credentials may be needed): %s", err
            )
            return []
        return [
            AppInfo(name=app.get("name") or "", id=app.get("identifier") or "")
            for app in result.get("apps") or []
        ]

    async def launch_app(self, app_id: str) -> None:
        await self._exec_atvscript([*self._device_args(), f"launch_app={app_id}"])

    async def get_artwork(
        self,
        width: int = ARTWORK_DEFAULT_WIDTH,
        height: int = ARTWORK_DEFAULT_HEIGHT,
    ) -> Optional[Artwork]:
        fd, tmp_name = tempfile.mkstemp(prefix="atv_artwork_", suffix=".png")
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            await self._exec_atvremote([*self._device_args(), f"artwork_save={tmp_path}"])
            data = tmp_path.read_bytes()
            if not data:
                return None
            return Artwork(data=data, mimetype="image/png")
        except Exception as err:
            _LOGGER.debug("Failed to fetch artwork (%sx%s): %s", width, height, err)
            return None
        finally:
            tmp_path.unlink(missing_ok=True)

    async def start_push_updates(self, on_update: PushCallback) -> PushHandle:
        if self._push_handle is not None:
            self._push_handle.stop()

        handle = ProcessPushHandle(on_update)
        self._push_handle = handle
        try:
            proc = await asyncio.create_subprocess_exec(
                self.atvscript_path,
                *self._device_args(),
                "push_updates",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            _LOGGER.error("Push updates process error: %s", err)
            handle.fail("process_error")
            return handle

        handle.attach(proc)
        return handle

    async def is_reachable(self) -> bool:
        try:
            await self.get_power_state()
            return True
        except Exception:
            return False

    # -------------------------------------------------------------------------
    # Interactive pairing
    # -------------------------------------------------------------------------

    async def pair_start(self, protocol: str = "airplay") -> PairResult:
        self.pair_abort()

        protocol = protocol or "airplay"
        args = [*self._target_args(), "--protocol", protocol, "pair"]

        self._pair_state = PairState.STARTING
        self._pair_output = ""
        self._pin_offset = 0
        stage = self._pair_stage = _OneShot()

        try:
            proc = await asyncio.create_subprocess_exec(
                self.atvremote_path,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            self._pair_state = PairState.FAILED
            raise PairingError(f"Failed to start pairing: {err}") from err

        self._pair_proc = proc
        _LOGGER.debug("Started pairing process (pid=%s, protocol=%s)", proc.pid, protocol)

        loop = asyncio.get_running_loop()
        readers = [
            loop.create_task(self._pair_read(proc, proc.stdout)),
            loop.create_task(self._pair_read(proc, proc.stderr)),
        ]
        watcher = loop.create_task(self._pair_watch(proc, readers))
        for task in (*readers, watcher):
            self._pair_tasks.add(task)
            task.add_done_callback(self._pair_tasks.discard)

        try:
            return await stage.wait(PAIR_PROMPT_TIMEOUT)
        except asyncio.TimeoutError:
            self.pair_abort()
            self._pair_state = PairState.FAILED
            raise AtvTimeout(
                f"Pairing timeout: device did not respond within {PAIR_PROMPT_TIMEOUT:g} seconds"
            ) from None

    async def pair_finish(self, pin: str) -> PairResult:
        proc = self._pair_proc
        if (
            proc is None
            or proc.returncode is not None
            or self._pair_state is not PairState.AWAITING_PIN
        ):
            raise NoActiveSession("No active pairing process. Start pairing first.")

        self._pair_state = PairState.VERIFYING
        self._pin_offset = len(self._pair_output)
        stage = self._pair_stage = _OneShot()

        try:
            assert proc.stdin is not None
            proc.stdin.write(f"{pin}\n".encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as err:
            self.pair_abort()
            self._pair_state = PairState.FAILED
            raise PairingError(f"Failed to send PIN: {err}") from err

        try:
            return await stage.wait(PAIR_VERIFY_TIMEOUT)
        except asyncio.TimeoutError:
            self.pair_abort()
            self._pair_state = PairState.FAILED
            raise AtvTimeout("Pairing PIN verification timeout") from None

    def pair_abort(self) -> None:
        proc = self._pair_proc
        self._pair_proc = None

        stage = self._pair_stage
        if stage is not None:
            stage.set_exception(PairingError("Pairing aborted"))

        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            _LOGGER.debug("Aborted pairing process (pid=%s)", proc.pid)

        if self._pair_state in _PAIR_LIVE_STATES:
            self._pair_state = PairState.ABORTED

    def close(self) -> None:
        self.pair_abort()
        if self._push_handle is not None:
            self._push_handle.stop()
            self._push_handle = None

    async def _pair_read(
        self, proc: asyncio.subprocess.Process, stream: Optional[asyncio.StreamReader]
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(1024)
            if not chunk:
                return
            if proc is not self._pair_proc:
                continue
            self._pair_output += decoder.decode(chunk)
            if self._pair_state is PairState.STARTING and any(
                marker in self._pair_output for marker in PIN_PROMPT_MARKERS
            ):
                self._pair_state = PairState.AWAITING_PIN
                if self._pair_stage is not None:
                    self._pair_stage.set_result(PairResult(PairStatus.AWAITING_PIN))

    async def _pair_watch(
        self, proc: asyncio.subprocess.Process, readers: List[asyncio.Task]
    ) -> None:
        # Drain both pipes before judging the output.
        await asyncio.gather(*readers, return_exceptions=True)
        returncode = await proc.wait()
        if proc is not self._pair_proc:
            return
        self._pair_proc = None
        self._on_pair_exit(returncode)

    def _on_pair_exit(self, returncode: Optional[int]) -> None:
        stage = self._pair_stage
        output = self._pair_output

        if self._pair_state is PairState.STARTING:
            credentials = None
            if "credentials:" in output or "Credentials:" in output:
                credentials = extract_credentials(output)
            if credentials:
                # Some devices pair without a PIN.
                self._pair_state = PairState.PAIRED
                result: Any = PairResult(PairStatus.PAIRED, credentials)
            else:
                self._pair_state = PairState.FAILED
                result = PairingError(
                    f"Pairing failed (exit code {returncode}): {_excerpt(output)}"
                )

        elif self._pair_state is PairState.VERIFYING:
            further = output[self._pin_offset:]
            credentials = extract_credentials(further)
            if credentials:
                self._pair_state = PairState.PAIRED
                result = PairResult(PairStatus.PAIRED, credentials)
            elif returncode == 0:
                self._pair_state = PairState.PAIRED
                result = PairResult(PairStatus.PAIRED, further.strip())
            else:
                self._pair_state = PairState.FAILED
                result = PairingError(
                    f"Pairing failed after PIN entry (exit code {returncode}): "
                    f"{_excerpt(further)}"
                )

        else:
            _LOGGER.warning(
                "Pairing process exited while waiting for a PIN (exit code %s)", returncode
            )
            self._pair_state = PairState.FAILED
            return

        if stage is None:
            return
        if isinstance(result, Exception):
            stage.set_exception(result)
        else:
            stage.set_result(result)

"""Byte transports carrying the line protocol.

Provides:
- Transport: the capability every channel offers (open / write / close)
- SubprocessTransport: a child engine process wired to stdin/stdout pipes
- SocketTransport: a TCP connection to an already-running engine

Transports only move bytes. Framing, the handshake and the request/response
algorithm live in pob_bridge.client and are shared by both.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from pob_bridge.errors import BridgeStartupError, TransportClosedError
from pob_bridge.protocol import READ_BUFFER_SIZE

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]
CloseCallback = Callable[[TransportClosedError], None]

# Lines of engine stderr kept for death diagnostics
STDERR_TAIL_LINES = 80
# Characters kept per stderr line
STDERR_LINE_LIMIT = 2000


class Transport(ABC):
    """A bidirectional byte channel to the engine.

    Received data is pushed to ``on_data`` as it arrives; ``on_close`` is
    invoked exactly once when the channel ends for any reason other than
    our own close().
    """

    def __init__(self) -> None:
        self._on_data: DataCallback | None = None
        self._on_close: CloseCallback | None = None
        self._closing = False
        self._close_reported = False

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the channel is currently usable."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable endpoint description for log messages."""

    async def open(self, on_data: DataCallback, on_close: CloseCallback) -> None:
        """Open the channel and start pumping received data.

        Raises:
            BridgeStartupError: If the channel cannot be established
        """
        self._on_data = on_data
        self._on_close = on_close
        self._closing = False
        self._close_reported = False
        await self._open()

    @abstractmethod
    async def _open(self) -> None: ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write bytes to the engine.

        Raises:
            TransportClosedError: If the channel is gone
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Never raises."""

    def _deliver(self, data: bytes) -> None:
        if self._on_data is not None:
            self._on_data(data)

    def _report_closed(self, error: TransportClosedError) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        if self._closing:
            logger.debug("%s closed: %s", self.describe(), error)
        else:
            logger.warning("%s closed unexpectedly: %s", self.describe(), error)
        if self._on_close is not None:
            self._on_close(error)


# =============================================================================
# Subprocess Transport
# =============================================================================


def build_engine_env(
    cwd: str | os.PathLike[str] | None,
    extra: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the child environment for a headless engine.

    Adds the Lua module search paths for the fork's bundled runtime and the
    user's luarocks tree, plus the flag that puts HeadlessWrapper.lua into
    stdio API mode.

    Args:
        cwd: The fork's ``src`` directory the engine runs from
        extra: Caller-supplied overrides, applied before the API variables

    Returns:
        A complete environment mapping for the child process
    """
    fork_path = str(cwd) if cwd is not None else os.environ.get("POB_FORK_PATH", "")
    if fork_path.endswith("/src"):
        runtime_lua = fork_path[: -len("/src")] + "/runtime/lua"
    else:
        runtime_lua = fork_path
    luarocks = Path.home() / ".luarocks" / "lib" / "lua" / "5.1"

    env = dict(os.environ)
    if extra:
        env.update(extra)
    env["POB_API_STDIO"] = "1"
    env["LUA_PATH"] = f"{runtime_lua}/?.lua;{runtime_lua}/?/init.lua;;"
    env["LUA_CPATH"] = f"{luarocks}/?.so;;"
    return env


class SubprocessTransport(Transport):
    """Runs the engine as a child process and talks over its pipes.

    stdout carries the protocol; stderr is logged and its tail is attached
    to the error reported when the process exits.
    """

    def __init__(
        self,
        cmd: str,
        args: Sequence[str] = (),
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self.cmd = cmd
        self.args = list(args)
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self._proc: asyncio.subprocess.Process | None = None
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def is_open(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def describe(self) -> str:
        return f"PoB API process ({' '.join([self.cmd, *self.args])})"

    async def _open(self) -> None:
        self._stderr_tail.clear()
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.cmd,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=build_engine_env(self.cwd, self.env),
            )
        except OSError as e:
            raise BridgeStartupError(
                f"Failed to spawn PoB API process '{self.cmd}': {e}"
            ) from e

        logger.info("Spawned %s (pid %d)", self.describe(), self._proc.pid)
        self._stdout_task = asyncio.create_task(self._pump_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _pump_stdout(self) -> None:
        """Forward stdout chunks, then report the exit once stdout hits EOF."""
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        try:
            while True:
                data = await proc.stdout.read(READ_BUFFER_SIZE)
                if not data:
                    break
                self._deliver(data)
        except OSError as e:
            logger.error("Error reading PoB API stdout: %s", e)

        code = await proc.wait()
        # Let the stderr drain catch up so the tail is complete
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=0.5)
            except asyncio.TimeoutError:
                pass
            except Exception as e:  # noqa: BLE001 - the exit must still be reported
                logger.warning("Error draining PoB API stderr: %s", e)

        signal = -code if code is not None and code < 0 else None
        exit_code = code if signal is None else None
        message = f"PoB API exited: code={exit_code} signal={signal}"
        if self._stderr_tail:
            message += "; stderr tail:\n" + "\n".join(self._stderr_tail)
        self._report_closed(
            TransportClosedError(message, exit_code=exit_code, signal=signal)
        )

    async def _drain_stderr(self) -> None:
        """Log stderr line by line without the StreamReader line limit."""
        proc = self._proc
        assert proc is not None and proc.stderr is not None
        partial = bytearray()
        while True:
            chunk = await proc.stderr.read(READ_BUFFER_SIZE)
            if not chunk:
                break
            partial.extend(chunk)
            *lines, rest = partial.split(b"\n")
            partial = bytearray(rest)
            # Overlong lines are flushed in pieces
            if len(partial) > READ_BUFFER_SIZE:
                lines.append(bytes(partial))
                partial.clear()
            for line in lines:
                self._record_stderr(line)
        if partial:
            self._record_stderr(bytes(partial))

    def _record_stderr(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").rstrip()
        if len(text) > STDERR_LINE_LIMIT:
            text = text[:STDERR_LINE_LIMIT] + "..."
        self._stderr_tail.append(text)
        logger.debug("[PoB API stderr] %s", text)

    async def write(self, data: bytes) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise TransportClosedError("PoB API process is not running")
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise TransportClosedError(
                f"Failed to write to PoB API process: {e}"
            ) from e

    async def close(self) -> None:
        proc = self._proc
        if proc is None:
            return
        self._closing = True

        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        with contextlib.suppress(OSError, asyncio.CancelledError):
            await proc.wait()

        for task in (self._stdout_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._stdout_task = None
        self._stderr_task = None
        self._proc = None
        logger.info("PoB API process stopped")


# =============================================================================
# Socket Transport
# =============================================================================


class SocketTransport(Transport):
    """TCP connection to an engine already listening (e.g. the PoB GUI)."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float | None = None,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    def describe(self) -> str:
        return f"PoB API at {self.host}:{self.port}"

    async def _open(self) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise BridgeStartupError(
                f"Failed to connect to PoB API at {self.host}:{self.port}: {e}"
            ) from e

        logger.info("Connected to %s", self.describe())
        self._read_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        reader = self._reader
        assert reader is not None
        reason = "connection closed by peer"
        try:
            while True:
                data = await reader.read(READ_BUFFER_SIZE)
                if not data:
                    break
                self._deliver(data)
        except ConnectionResetError:
            reason = "connection reset by peer"
        except OSError as e:
            reason = f"connection error: {e}"
        self._report_closed(
            TransportClosedError(f"PoB API connection closed: {reason}")
        )

    async def write(self, data: bytes) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            raise TransportClosedError("Socket not connected")
        try:
            writer.write(data)
            await writer.drain()
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            raise TransportClosedError(f"Failed to send to PoB API: {e}") from e

    async def close(self) -> None:
        writer = self._writer
        if writer is None:
            return
        self._closing = True

        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task
        self._read_task = None

        writer.close()
        # Suppress only expected exceptions during close (broken pipe, etc.)
        with contextlib.suppress(OSError, asyncio.CancelledError):
            await writer.wait_closed()
        self._writer = None
        self._reader = None
        logger.info("Connection to %s closed", self.describe())

"""Typed clients for the PoB Lua API.

Provides:
- BridgeClient: the handshake and single-flight request/response algorithm,
  implemented once against the Transport interface, plus the typed
  operations both engine flavours support
- ProcessBridgeClient: drives a disposable headless engine subprocess
- SocketBridgeClient: drives a live GUI instance over TCP and adds the
  incremental tree operations only that instance supports
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pob_bridge.errors import (
    BridgeNotReadyError,
    BridgeProtocolError,
    BridgeStartupError,
    BridgeTimeoutError,
    ConcurrentRequestError,
    RemoteError,
    TransportClosedError,
)
from pob_bridge.models import (
    CalcWithParams,
    ConfigUpdate,
    MainSelection,
    TreeDelta,
    TreeSpec,
)
from pob_bridge.protocol import (
    DEFAULT_ARGS,
    DEFAULT_CMD,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT,
    MAX_HANDSHAKE_LINES,
    MAX_RESPONSE_LINES,
    LineBuffer,
    decode_line,
    encode_request,
)
from pob_bridge.transports import SocketTransport, SubprocessTransport, Transport

logger = logging.getLogger(__name__)

# Time allowed for the engine to acknowledge "quit" before it is killed
QUIT_TIMEOUT: float = 2.0


@dataclass
class PendingRequest:
    """The single outstanding request on a client."""

    action: str
    started_at: float = field(default_factory=time.monotonic)


class BridgeClient:
    """Line-protocol client bound to one transport.

    Lifecycle: constructed empty -> start() (open + handshake) -> ready ->
    operations -> stop() -> empty again. Only one request may be in flight;
    a second one fails immediately instead of queueing.

    Subclasses supply the transport via _create_transport().
    """

    #: Whether stop() asks the engine to exit before closing the transport
    quit_on_stop = False

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_handshake_lines: int = MAX_HANDSHAKE_LINES,
        max_response_lines: int = MAX_RESPONSE_LINES,
    ) -> None:
        self.timeout = timeout
        self.max_handshake_lines = max_handshake_lines
        self.max_response_lines = max_response_lines
        self.banner: dict[str, Any] | None = None

        self._transport: Transport | None = None
        self._buffer = LineBuffer()
        self._ready = False
        self._pending: PendingRequest | None = None
        self._dead: TransportClosedError | None = None
        # Responses owed to requests that timed out; discarded when they land
        self._abandoned = 0

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_started(self) -> bool:
        return self._transport is not None

    @property
    def is_ready(self) -> bool:
        return self._ready and self._dead is None

    @property
    def is_dead(self) -> bool:
        return self._dead is not None

    @property
    def pending(self) -> PendingRequest | None:
        return self._pending

    def _create_transport(self) -> Transport:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Open the transport and wait for the ready banner.

        Does nothing if already started.

        Raises:
            BridgeStartupError: If the transport cannot be opened or the
                banner is not seen (the transport is released first)
        """
        if self._transport is not None:
            return

        self._reset()
        transport = self._create_transport()
        self._transport = transport
        try:
            await transport.open(self._buffer.feed, self._on_transport_closed)
            await self._handshake()
        except BaseException:
            self._transport = None
            await transport.close()
            raise

    async def _handshake(self) -> None:
        """Skip startup noise until ``{"ready": true}`` arrives."""
        loop = asyncio.get_running_loop()
        scanned = 0
        while scanned < self.max_handshake_lines:
            try:
                line = await self._buffer.read_line(loop.time() + self.timeout)
            except BridgeTimeoutError as e:
                raise BridgeStartupError(
                    f"Timed out waiting for ready banner after {scanned} lines",
                    lines_scanned=scanned,
                ) from e
            except TransportClosedError as e:
                raise BridgeStartupError(
                    f"PoB API closed before sending ready banner: {e}",
                    lines_scanned=scanned,
                ) from e
            scanned += 1

            message = decode_line(line)
            if message is not None and message.get("ready") is True:
                self.banner = message
                self._ready = True
                logger.info("PoB API ready after %d line(s)", scanned)
                return
            logger.debug("Skipping startup line: %s", line[:200])

        raise BridgeStartupError(
            f"Failed to find valid ready banner after {scanned} lines",
            lines_scanned=scanned,
        )

    async def stop(self) -> None:
        """Quit best-effort, release the transport, and return to empty.

        Never raises for engine or transport failures.
        """
        transport = self._transport
        if transport is None:
            return

        if self.quit_on_stop and self.is_ready and self._pending is None:
            try:
                await self._send("quit", timeout=min(self.timeout, QUIT_TIMEOUT))
            except Exception as e:  # noqa: BLE001 - quit is best-effort
                logger.debug("Ignoring error from quit: %s", e)

        try:
            await transport.close()
        except Exception as e:  # noqa: BLE001 - termination is best-effort
            logger.warning("Error closing %s: %s", transport.describe(), e)
        finally:
            # Wake any waiter still polling the old buffer
            self._buffer.close(TransportClosedError("Client stopped"))
            self._transport = None
            self._reset()

    def _reset(self) -> None:
        self._buffer = LineBuffer()
        self._ready = False
        self._pending = None
        self._dead = None
        self._abandoned = 0
        self.banner = None

    def _on_transport_closed(self, error: TransportClosedError) -> None:
        self._dead = error
        self._buffer.close(error)
        if self._pending is not None:
            logger.error(
                "PoB API died with '%s' request pending: %s",
                self._pending.action,
                error,
            )

    # -------------------------------------------------------------------------
    # Request / response
    # -------------------------------------------------------------------------

    async def _send(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send one request and wait for its response.

        All precondition checks happen before the first await, so a caller
        that violates single-flight fails without anything being written.

        Returns:
            The decoded response object (``ok`` may be false)

        Raises:
            BridgeNotReadyError: If start() has not completed
            TransportClosedError: If the engine is gone
            ConcurrentRequestError: If another request is outstanding
            BridgeTimeoutError: If no response arrives in time
            BridgeProtocolError: If the response is malformed
        """
        if self._dead is not None:
            raise self._dead
        if self._transport is None:
            raise BridgeNotReadyError("Process not started")
        if not self._ready:
            raise BridgeNotReadyError("Process not ready")
        if self._pending is not None:
            raise ConcurrentRequestError(
                f"Concurrent request not supported: '{action}' issued while "
                f"'{self._pending.action}' is pending"
            )

        pending = self._pending = PendingRequest(action)
        buffer = self._buffer
        wait = self.timeout if timeout is None else timeout
        data = encode_request(action, params).encode("utf-8")
        sent = False
        answered = False
        try:
            # Stale lines already buffered belong to abandoned requests
            self._discard_buffered_stale()
            # A write cancelled mid-drain may still reach the engine
            sent = True
            try:
                await self._transport.write(data)
            except TransportClosedError:
                sent = False
                raise
            logger.debug("Sent '%s' request", action)

            message = await self._read_response(action, wait)
            answered = True
            if not isinstance(message.get("ok"), bool):
                raise BridgeProtocolError(
                    f"Invalid response to '{action}': missing boolean 'ok'"
                )
            return message
        except BridgeTimeoutError:
            raise BridgeTimeoutError(
                f"Timed out waiting for response to '{action}' after {wait:g}s"
            ) from None
        finally:
            # stop() may have reset the client while this request waited
            if self._buffer is buffer:
                if self._pending is pending:
                    self._pending = None
                # Timeout, cancellation or noise exhaustion: the reply is still owed
                if sent and not answered and self._dead is None:
                    self._abandoned += 1

    def _discard_buffered_stale(self) -> None:
        while self._abandoned:
            line = self._buffer.pop_line()
            if line is None:
                return
            if decode_line(line) is not None:
                self._abandoned -= 1
                logger.warning("Discarded stale response: %s", line[:200])

    async def _read_response(self, action: str, timeout: float) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        for _ in range(self.max_response_lines):
            line = await self._buffer.read_line(deadline)
            message = decode_line(line)
            if message is None:
                # Incidental engine output ("LOADING", warnings, ...)
                logger.debug("Skipping non-protocol line: %s", line[:200])
                continue
            if self._abandoned:
                self._abandoned -= 1
                logger.warning(
                    "Discarded stale response while awaiting '%s': %s",
                    action,
                    line[:200],
                )
                continue
            return message

        raise BridgeProtocolError(
            f"Failed to receive valid JSON response to '{action}' after "
            f"{self.max_response_lines} lines"
        )

    async def _call(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        result_key: str | None = None,
    ) -> Any:
        """Send a request and unwrap a successful response.

        Raises:
            RemoteError: If the engine answered ``ok: false``
        """
        response = await self._send(action, params)
        if not response["ok"]:
            raise RemoteError(action, response.get("error"))
        if result_key is None:
            return response
        return response.get(result_key)

    # -------------------------------------------------------------------------
    # Typed operations
    # -------------------------------------------------------------------------

    async def ping(self) -> bool:
        response = await self._send("ping")
        return bool(response["ok"])

    async def load_build_xml(self, xml: str, name: str = "API Build") -> dict[str, Any]:
        """Load a build document into the engine."""
        return await self._call("load_build_xml", {"xml": xml, "name": name})

    async def get_stats(self, fields: Sequence[str] | None = None) -> dict[str, Any]:
        """Calculated stats for the loaded build, optionally limited to fields."""
        params = {"fields": list(fields) if fields is not None else None}
        return await self._call("get_stats", params, "stats")

    async def get_tree(self) -> dict[str, Any]:
        return await self._call("get_tree", None, "tree")

    async def set_tree(self, tree: TreeSpec) -> dict[str, Any]:
        """Replace the passive allocation; returns the resulting tree."""
        return await self._call("set_tree", tree.to_params(), "tree")

    async def get_items(self) -> list[Any]:
        return await self._call("get_items", None, "items")

    async def add_item(
        self,
        text: str,
        slot_name: str | None = None,
        no_auto_equip: bool | None = None,
    ) -> Any:
        """Add an item from its copied item text.

        Args:
            text: Item text as copied from the game
            slot_name: Slot to equip into (engine picks one when omitted)
            no_auto_equip: Add to the item list without equipping
        """
        params = {"text": text, "slotName": slot_name, "noAutoEquip": no_auto_equip}
        return await self._call("add_item_text", params, "result")

    async def set_flask_active(self, index: int, active: bool) -> None:
        await self._call("set_flask_active", {"index": index, "active": active})

    async def get_skills(self) -> Any:
        return await self._call("get_skills", None, "result")

    async def set_main_selection(self, selection: MainSelection) -> None:
        await self._call("set_main_selection", selection.to_params())

    async def get_config(self) -> dict[str, Any]:
        return await self._call("get_config", None, "config")

    async def set_config(self, update: ConfigUpdate) -> dict[str, Any]:
        """Apply configuration changes; returns the resulting config."""
        return await self._call("set_config", update.to_params(), "config")

    async def set_level(self, level: int) -> None:
        await self._call("set_level", {"level": level})

    async def export_build_xml(self) -> str:
        return await self._call("export_build_xml", None, "xml")

    async def get_build_info(self) -> dict[str, Any]:
        return await self._call("get_build_info", None, "info")


class ProcessBridgeClient(BridgeClient):
    """Client for a headless engine spawned as a child process.

    The process is started in stdio API mode from the fork's ``src``
    directory and killed on stop().
    """

    quit_on_stop = True

    def __init__(
        self,
        cwd: str | os.PathLike[str] | None = None,
        cmd: str = DEFAULT_CMD,
        args: Sequence[str] = DEFAULT_ARGS,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout, **kwargs)
        if cwd is None:
            cwd = Path.home() / "Projects" / "pob-api-fork" / "src"
        self.cwd = cwd
        self.cmd = cmd
        self.args = list(args)
        self.env = dict(env) if env is not None else {}

    def _create_transport(self) -> Transport:
        return SubprocessTransport(self.cmd, self.args, cwd=self.cwd, env=self.env)


class SocketBridgeClient(BridgeClient):
    """Client for a running PoB GUI exposing API/TcpServer.lua.

    The GUI keeps its calculation state between requests, which is what
    makes the incremental tree operations possible.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout, **kwargs)
        self.host = host
        self.port = port

    def _create_transport(self) -> Transport:
        return SocketTransport(self.host, self.port, connect_timeout=self.timeout)

    async def update_tree_delta(self, delta: TreeDelta) -> dict[str, Any]:
        """Allocate/deallocate nodes relative to the current tree."""
        return await self._call("update_tree_delta", delta.to_params(), "tree")

    async def calc_with(self, params: CalcWithParams) -> dict[str, Any]:
        """Stats the build would have with the given hypothetical changes."""
        return await self._call("calc_with", params.to_params(), "output")

    async def get_version(self) -> dict[str, Any]:
        """Version of the running PoB instance."""
        return await self._call("version", None, "version")

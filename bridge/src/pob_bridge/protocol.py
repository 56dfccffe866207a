"""Protocol constants and line framing for the PoB Lua API.

Handles:
- Protocol constants (host, port, timeouts, scan bounds)
- Newline-delimited JSON encoding that matches the engine byte for byte
- Noise-tolerant line decoding
- LineBuffer, the byte buffer transports feed and clients poll
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pob_bridge.errors import (
    BridgeError,
    BridgeProtocolError,
    BridgeTimeoutError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Protocol Constants
# =============================================================================

# Default TCP endpoint of a GUI instance running API/TcpServer.lua
DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 31337

# Headless engine launch defaults
DEFAULT_CMD: str = "luajit"
DEFAULT_ARGS: tuple[str, ...] = ("HeadlessWrapper.lua",)

# Per-request timeout
DEFAULT_TIMEOUT: float = 10.0  # seconds

# Cooperative polling interval while waiting for a line
POLL_INTERVAL: float = 0.01  # seconds

# Lines scanned for the ready banner before giving up
MAX_HANDSHAKE_LINES: int = 50

# Lines scanned for a response before giving up
MAX_RESPONSE_LINES: int = 100

# Buffer sizes
READ_BUFFER_SIZE: int = 65536  # 64KB read chunk
MAX_LINE_LENGTH: int = 10 * 1024 * 1024  # exported build XML can be large


# =============================================================================
# Encoding / Decoding
# =============================================================================


def encode_message(message: dict[str, Any]) -> str:
    """Serialize a message as one protocol line.

    Output is compact and keeps non-ASCII characters as-is, which is what
    ``JSON.stringify`` produces. json.dumps escapes control characters inside
    strings, so the result never contains an embedded newline.

    Args:
        message: JSON-safe mapping to send

    Returns:
        The JSON text followed by exactly one newline
    """
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n"


def encode_request(action: str, params: dict[str, Any] | None = None) -> str:
    """Build and encode a ``{action, params}`` request line.

    ``params`` is omitted entirely when None, and None-valued keys inside it
    are dropped, mirroring how ``JSON.stringify`` treats ``undefined``.
    """
    request: dict[str, Any] = {"action": action}
    if params is not None:
        request["params"] = {k: v for k, v in params.items() if v is not None}
    return encode_message(request)


def is_protocol_line(line: str) -> bool:
    """Check whether a line could carry a protocol message.

    Engine startup logging and warnings ("LOADING", stack traces, etc.)
    never start with ``{``.
    """
    stripped = line.strip()
    return bool(stripped) and stripped.startswith("{")


def decode_line(line: str) -> dict[str, Any] | None:
    """Decode a protocol line.

    Args:
        line: A single line without its trailing newline

    Returns:
        The decoded JSON object, or None if the line is non-protocol noise
        (empty, not starting with ``{``, unparseable, or not an object)
    """
    if not is_protocol_line(line):
        return None
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        truncated = line[:200] + "..." if len(line) > 200 else line
        logger.debug("Skipping malformed JSON line (%s): %s", e.msg, truncated)
        return None
    if not isinstance(message, dict):
        return None
    return message


# =============================================================================
# Line Buffer
# =============================================================================


class LineBuffer:
    """Accumulates raw bytes from a transport and hands out complete lines.

    Bytes are buffered undecoded so a UTF-8 sequence split across two reads
    survives intact; only complete lines are decoded. Once the transport
    closes, lines that were already buffered are still returned before the
    close error is raised.
    """

    def __init__(self, poll_interval: float = POLL_INTERVAL) -> None:
        self._buffer = bytearray()
        self._poll_interval = poll_interval
        self._closed_error: BridgeError | None = None

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def closed_error(self) -> BridgeError | None:
        """The error recorded when the transport closed, if it has."""
        return self._closed_error

    def feed(self, data: bytes) -> None:
        """Append bytes received from the transport."""
        self._buffer.extend(data)

    def close(self, error: BridgeError) -> None:
        """Record that no more data will arrive."""
        if self._closed_error is None:
            self._closed_error = error

    def clear(self) -> None:
        """Drop all buffered bytes (the close state is kept)."""
        self._buffer.clear()

    def pop_line(self) -> str | None:
        """Remove and return the next complete line, if any.

        Raises:
            BridgeProtocolError: If a partial line exceeds MAX_LINE_LENGTH
        """
        newline_pos = self._buffer.find(b"\n")
        if newline_pos < 0:
            if len(self._buffer) > MAX_LINE_LENGTH:
                self._buffer.clear()
                raise BridgeProtocolError(
                    f"Line length exceeded {MAX_LINE_LENGTH} bytes"
                )
            return None

        line_bytes = bytes(self._buffer[:newline_pos])
        del self._buffer[: newline_pos + 1]
        return line_bytes.decode("utf-8", errors="replace").rstrip("\r")

    async def read_line(self, deadline: float) -> str:
        """Wait for the next complete line.

        Polls the buffer every poll interval until a line is available.

        Args:
            deadline: Absolute event-loop time (``loop.time()``) to give up at

        Returns:
            The line without its terminator

        Raises:
            BridgeTimeoutError: If the deadline passes first
            BridgeError: The recorded close error, once the transport has
                closed and no buffered line remains
        """
        loop = asyncio.get_running_loop()
        while True:
            line = self.pop_line()
            if line is not None:
                return line
            if self._closed_error is not None:
                raise self._closed_error
            if loop.time() > deadline:
                raise BridgeTimeoutError("Timed out waiting for response")
            await asyncio.sleep(self._poll_interval)

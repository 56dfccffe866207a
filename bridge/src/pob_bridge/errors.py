"""Exceptions raised by the PoB Lua bridge.

Every failure the bridge can surface derives from BridgeError, so callers
that only care about "the bridge failed" can catch one type.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge failures."""


class BridgeConfigError(BridgeError):
    """The bridge is disabled or its connection parameters are missing."""


class BridgeStartupError(BridgeError):
    """The engine could not be spawned, reached, or confirmed ready."""

    def __init__(self, message: str, lines_scanned: int | None = None) -> None:
        super().__init__(message)
        self.lines_scanned = lines_scanned


class BridgeTimeoutError(BridgeError):
    """No complete line arrived before the deadline."""


class BridgeProtocolError(BridgeError):
    """A line received while awaiting a response had the wrong shape."""


class BridgeNotReadyError(BridgeError):
    """An operation was issued before start() completed its handshake."""


class ConcurrentRequestError(BridgeError):
    """A request was issued while another one was still outstanding."""


class RemoteError(BridgeError):
    """The engine answered with ``{"ok": false, "error": ...}``.

    The engine's message is kept verbatim as the exception text.
    """

    def __init__(self, action: str, message: str | None = None) -> None:
        super().__init__(message or f"{action} failed")
        self.action = action


class TransportClosedError(BridgeError):
    """The engine process exited or the connection closed.

    Once raised for a client, every later operation on that client fails
    with the same error until it is stopped and started again.
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        signal: int | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.signal = signal

"""PoB Lua Bridge - client for the Path of Building Lua API.

A small async client that:
- Spawns a headless PoB engine (stdio) or connects to a running GUI (TCP)
- Waits for the engine's ready banner, skipping startup noise
- Exchanges single-flight, newline-delimited JSON requests and responses
"""

from pob_bridge.client import (
    BridgeClient,
    PendingRequest,
    ProcessBridgeClient,
    SocketBridgeClient,
)
from pob_bridge.errors import (
    BridgeConfigError,
    BridgeError,
    BridgeNotReadyError,
    BridgeProtocolError,
    BridgeStartupError,
    BridgeTimeoutError,
    ConcurrentRequestError,
    RemoteError,
    TransportClosedError,
)

__version__ = "0.1.0"

__all__ = [
    "BridgeClient",
    "BridgeConfigError",
    "BridgeError",
    "BridgeNotReadyError",
    "BridgeProtocolError",
    "BridgeStartupError",
    "BridgeTimeoutError",
    "ConcurrentRequestError",
    "PendingRequest",
    "ProcessBridgeClient",
    "RemoteError",
    "SocketBridgeClient",
    "TransportClosedError",
]

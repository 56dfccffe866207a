"""Connectivity check for the PoB Lua API.

Starts a client, waits for the ready banner, sends a ping and stops.

Usage:
    python -m pob_bridge

Environment Variables:
    POB_BRIDGE_MODE: 'tcp' (default) or 'process'
    POB_API_TCP_HOST / POB_API_TCP_PORT: GUI endpoint for tcp mode
    POB_FORK_PATH / POB_CMD / POB_ARGS: engine launch for process mode
    POB_TIMEOUT_MS: per-request timeout
    POB_BRIDGE_LOG_LEVEL: logging level (default: INFO)
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import sys

from pob_bridge.client import BridgeClient, ProcessBridgeClient, SocketBridgeClient
from pob_bridge.errors import BridgeError
from pob_bridge.protocol import (
    DEFAULT_ARGS,
    DEFAULT_CMD,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT,
)

logger = logging.getLogger("pob_bridge")


def setup_logging() -> None:
    """Configure logging for the check."""
    log_level = os.environ.get("POB_BRIDGE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def client_from_env() -> BridgeClient:
    """Build a client from environment variables."""
    timeout_ms = os.environ.get("POB_TIMEOUT_MS")
    timeout = int(timeout_ms) / 1000 if timeout_ms else DEFAULT_TIMEOUT

    if os.environ.get("POB_BRIDGE_MODE", "tcp").lower() == "process":
        args = os.environ.get("POB_ARGS")
        return ProcessBridgeClient(
            cwd=os.environ.get("POB_FORK_PATH"),
            cmd=os.environ.get("POB_CMD", DEFAULT_CMD),
            args=shlex.split(args) if args else DEFAULT_ARGS,
            timeout=timeout,
        )

    return SocketBridgeClient(
        host=os.environ.get("POB_API_TCP_HOST", DEFAULT_HOST),
        port=int(os.environ.get("POB_API_TCP_PORT", str(DEFAULT_PORT))),
        timeout=timeout,
    )


async def check(client: BridgeClient) -> int:
    """Run the start / ping / stop sequence.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        await client.start()
        logger.info("Ready banner: %s", client.banner)
        if not await client.ping():
            logger.error("Ping was not acknowledged")
            return 1
        logger.info("Ping acknowledged")
        return 0
    except BridgeError as e:
        logger.error("Bridge check failed: %s", e)
        return 1
    finally:
        await client.stop()


def main() -> int:
    """Main entry point."""
    setup_logging()
    return asyncio.run(check(client_from_env()))


if __name__ == "__main__":
    sys.exit(main())

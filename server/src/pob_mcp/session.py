"""Bridge session management.

Provides:
- BridgeSession: owns the single bridge client for the server process
- SessionState: where the session is in its startup sequence
- LoadBuildProbe: default warm-up probe run after the handshake

The session is created once per server and handed to tools through the
MCP lifespan context; nothing here is module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from enum import Enum

from pob_bridge import (
    BridgeClient,
    BridgeConfigError,
    BridgeStartupError,
    ProcessBridgeClient,
    SocketBridgeClient,
)

from pob_mcp.config import Config

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Config], BridgeClient]
WarmupProbe = Callable[[BridgeClient], Awaitable[object]]

# Smallest build the headless wrapper accepts
MINIMAL_BUILD_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<PathOfBuilding><Build level="1" className="Witch"/></PathOfBuilding>'
)


class SessionState(str, Enum):
    """Startup sequence of a BridgeSession."""

    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    PROBING = "probing"
    READY = "ready"


class LoadBuildProbe:
    """Warm-up probe that loads a minimal build.

    The outer Lua process answers the handshake before HeadlessWrapper.lua
    has defined loadBuildFromXML; loading a build only succeeds once it has.
    """

    def __init__(self, xml: str = MINIMAL_BUILD_XML, name: str = "Init Test") -> None:
        self.xml = xml
        self.name = name

    async def __call__(self, client: BridgeClient) -> None:
        await client.load_build_xml(self.xml, self.name)


def create_client(config: Config) -> BridgeClient:
    """Construct the client variant selected by configuration."""
    if config.api_tcp:
        return SocketBridgeClient(
            host=config.api_tcp_host,
            port=config.api_tcp_port,
            timeout=config.timeout,
        )
    return ProcessBridgeClient(
        cwd=config.fork_path,
        cmd=config.cmd,
        args=config.command_args,
        timeout=config.timeout,
    )


class BridgeSession:
    """Lazily owns exactly one bridge client.

    ensure_client() is idempotent and single-flight: overlapping callers
    wait for the same construction. If any step of startup fails the
    half-started client is stopped and discarded, so the next
    ensure_client() starts from scratch.
    """

    def __init__(
        self,
        config: Config,
        client_factory: ClientFactory | None = None,
        probe: WarmupProbe | None = None,
    ) -> None:
        self.config = config
        self._client_factory = client_factory or create_client
        self._probe = probe or LoadBuildProbe()
        self._client: BridgeClient | None = None
        self._state = SessionState.UNINITIALIZED
        self._start_lock = asyncio.Lock()
        self._io_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def enabled(self) -> bool:
        return self.config.lua_enabled

    @property
    def tcp_mode(self) -> bool:
        return self.config.api_tcp

    def get_client(self) -> BridgeClient | None:
        """Return the ready client, or None if there isn't one."""
        return self._client

    async def ensure_client(self) -> BridgeClient:
        """Start the bridge if needed and return the ready client.

        Raises:
            BridgeConfigError: If the bridge is disabled
            BridgeStartupError: If the engine could not be started or never
                passed the warm-up probe
        """
        if not self.enabled:
            raise BridgeConfigError(
                "PoB Lua Bridge is not enabled. "
                "Set POB_LUA_ENABLED=true to use lua_* tools."
            )
        if self._client is not None:
            return self._client

        async with self._start_lock:
            if self._client is not None:
                return self._client
            logger.info("[Lua Bridge] Initializing client...")

            client = self._client_factory(self.config)
            try:
                self._state = SessionState.STARTING
                await client.start()
                logger.info("[Lua Bridge] Client initialized successfully")

                self._state = SessionState.PROBING
                await self._warm_up(client)
            except BaseException as e:
                self._state = SessionState.UNINITIALIZED
                await self._discard(client)
                if isinstance(e, Exception):
                    logger.error("[Lua Bridge] Failed to initialize: %s", e)
                    raise BridgeStartupError(
                        f"Failed to start PoB Lua Bridge: {e}"
                    ) from e
                raise

            self._client = client
            self._state = SessionState.READY
            return client

    async def _warm_up(self, client: BridgeClient) -> None:
        attempts = self.config.warmup_attempts
        logger.info("[Lua Bridge] Waiting for HeadlessWrapper to finish loading...")
        for attempt in range(1, attempts + 1):
            try:
                await self._probe(client)
            except Exception as e:
                if attempt >= attempts:
                    raise BridgeStartupError(
                        f"HeadlessWrapper did not initialize after {attempts} "
                        f"attempts. Error: {e}"
                    ) from e
                logger.warning(
                    "[Lua Bridge] HeadlessWrapper not ready (attempt %d/%d), "
                    "waiting %.1fs...",
                    attempt,
                    attempts,
                    self.config.warmup_interval,
                )
                await asyncio.sleep(self.config.warmup_interval)
            else:
                logger.info("[Lua Bridge] HeadlessWrapper fully initialized")
                return

    async def _discard(self, client: BridgeClient) -> None:
        try:
            await client.stop()
        except Exception as e:
            logger.error("[Lua Bridge] Error stopping client: %s", e, exc_info=True)

    async def stop_client(self) -> None:
        """Stop the client if there is one. Never raises.

        Waits for an in-progress ensure_client() so the client it produces
        is not left running, and for any acquire() holder to release it.
        """
        async with self._start_lock:
            client = self._client
            self._client = None
            self._state = SessionState.UNINITIALIZED
        if client is None:
            return
        logger.info("[Lua Bridge] Stopping client...")
        # Let a caller inside acquire() finish with it first
        async with self._io_lock:
            await self._discard(client)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[BridgeClient]:
        """Hold the client exclusively for a sequence of operations.

        The protocol is single-flight, so concurrent tool calls queue here
        instead of failing on the client.
        """
        async with self._io_lock:
            # Resolved under the lock so a client stopped meanwhile is replaced
            client = await self.ensure_client()
            yield client

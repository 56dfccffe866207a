"""FastMCP server setup.

Key responsibilities:
- Initialize FastMCP server with lifespan management
- Own the BridgeSession for the server's lifetime and stop it on shutdown
- Hand the session to tools through the lifespan context
- Register MCP tools

Configuration is managed via the config module. See config.py for details.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from pob_mcp import tools as tool_impl
from pob_mcp.config import Config, get_config
from pob_mcp.session import BridgeSession

logger = logging.getLogger(__name__)

SERVER_NAME = "pob-mcp-server"


@dataclass
class AppContext:
    """Application context shared across MCP server lifecycle.

    Attributes:
        config: Application configuration
        session: The bridge session owning the single PoB client
    """

    config: Config
    session: BridgeSession


# Type alias for MCP Context with our AppContext
MCPContext = Context[ServerSession, AppContext]


@asynccontextmanager
async def app_lifespan(
    server: FastMCP,  # noqa: ARG001 - Required by FastMCP lifespan signature
    config: Config | None = None,
) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with type-safe context.

    The bridge is started lazily by the first lua_* tool call; this only
    guarantees it is stopped when the server shuts down.

    Args:
        server: FastMCP server instance (required by lifespan protocol)
        config: Application configuration (default: from get_config())

    Yields:
        AppContext containing config and session
    """
    cfg = config if config is not None else get_config()
    session = BridgeSession(cfg)
    logger.info(
        "Bridge session created (enabled=%s, mode=%s)",
        cfg.lua_enabled,
        "tcp" if cfg.api_tcp else "headless",
    )
    try:
        yield AppContext(config=cfg, session=session)
    finally:
        await session.stop_client()
        logger.info("Bridge session stopped")


async def _run_tool(call: Awaitable[dict[str, Any]]) -> str:
    """Await a tool implementation and serialize its result or ToolError."""
    try:
        result = await call
    except tool_impl.ToolError as e:
        return json.dumps({"success": False, "error": str(e)})
    return json.dumps(result)


def register_tools(server: FastMCP) -> None:
    """Register all MCP tools on a server.

    Args:
        server: FastMCP server instance to register tools on
    """

    @server.tool()
    async def lua_start(ctx: MCPContext) -> str:
        """Start the PoB Lua bridge.

        Spawns the headless PoB engine (or connects to a running PoB GUI in
        TCP mode) and waits until it can load builds and compute stats.
        """
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(tool_impl.lua_start(session))

    @server.tool()
    async def lua_stop(ctx: MCPContext) -> str:
        """Stop the PoB Lua bridge and clean up resources."""
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(tool_impl.lua_stop(session))

    @server.tool()
    async def lua_load_build(
        ctx: MCPContext,
        build_name: str | None = None,
        build_xml: str | None = None,
        name: str | None = None,
    ) -> str:
        """Load a build into the PoB calculation engine.

        Required before using the other lua_* tools.

        Args:
            build_name: File name of a saved build in the PoB builds directory
            build_xml: Build XML to load instead of a saved file
            name: Display name for the build
        """
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(
            tool_impl.lua_load_build(session, build_name, build_xml, name)
        )

    @server.tool()
    async def lua_get_stats(
        ctx: MCPContext,
        fields: list[str] | None = None,
    ) -> str:
        """Get calculated stats from the currently loaded build.

        Args:
            fields: Stat names to return (default: all)
        """
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(tool_impl.lua_get_stats(session, fields))

    @server.tool()
    async def lua_get_tree(ctx: MCPContext) -> str:
        """Get the passive tree allocation of the currently loaded build."""
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(tool_impl.lua_get_tree(session))

    @server.tool()
    async def lua_set_tree(
        ctx: MCPContext,
        class_id: int,
        ascend_class_id: int,
        nodes: list[int],
        secondary_ascend_class_id: int | None = None,
        mastery_effects: dict[int, int] | None = None,
        tree_version: str | None = None,
    ) -> str:
        """Replace the passive tree allocation and recalculate stats.

        Args:
            class_id: Character class id
            ascend_class_id: Ascendancy class id
            nodes: Allocated node ids
            secondary_ascend_class_id: Secondary ascendancy id, if any
            mastery_effects: Mastery node id to selected effect id
            tree_version: Tree version, e.g. "3_26"
        """
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(
            tool_impl.lua_set_tree(
                session,
                class_id,
                ascend_class_id,
                nodes,
                secondary_ascend_class_id,
                mastery_effects,
                tree_version,
            )
        )

    @server.tool()
    async def lua_get_build_info(ctx: MCPContext) -> str:
        """Get a summary of the currently loaded build."""
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(tool_impl.lua_get_build_info(session))

    @server.tool()
    async def lua_calc_with(
        ctx: MCPContext,
        add_nodes: list[int] | None = None,
        remove_nodes: list[int] | None = None,
        use_full_dps: bool | None = None,
    ) -> str:
        """Calculate stats as if nodes were added or removed (TCP mode only).

        Args:
            add_nodes: Node ids to allocate hypothetically
            remove_nodes: Node ids to deallocate hypothetically
            use_full_dps: Report full DPS instead of the main skill's DPS
        """
        session = ctx.request_context.lifespan_context.session
        return await _run_tool(
            tool_impl.lua_calc_with(session, add_nodes, remove_nodes, use_full_dps)
        )


def create_mcp_server(config: Config | None = None) -> FastMCP:
    """Create and configure the FastMCP server.

    Args:
        config: Configuration to bind into the lifespan; when None the
            lifespan reads get_config() at startup

    Returns:
        Configured FastMCP server instance with all tools registered
    """
    if config is None:
        server = FastMCP(name=SERVER_NAME, lifespan=app_lifespan)
    else:
        server = FastMCP(
            name=SERVER_NAME,
            host=config.http_host,
            port=config.http_port,
            log_level=config.log_level,
            lifespan=partial(app_lifespan, config=config),
        )
    register_tools(server)
    return server


# Create server instance for module-level access
mcp = create_mcp_server()

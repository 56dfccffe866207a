"""Entry point for the PoB MCP server.

Usage:
    python -m pob_mcp

Environment Variables:
    POB_LUA_ENABLED: Enable the Lua bridge (default: false)
    POB_API_TCP: Use a running PoB GUI over TCP (default: false)
    POB_API_TCP_HOST / POB_API_TCP_PORT: GUI endpoint (default: 127.0.0.1:31337)
    POB_FORK_PATH / POB_CMD / POB_ARGS: Headless engine launch
    POB_TIMEOUT_MS: Per-request timeout (default: 10000)
    POB_LOG_LEVEL: Logging level (default: INFO)
    POB_TRANSPORT: MCP transport type: 'stdio' or 'http' (default: stdio)

See pob_mcp.config for the full list.
"""

from __future__ import annotations

import logging
import sys

from pydantic import ValidationError

from pob_mcp import __version__
from pob_mcp.config import Config, get_config, reset_config, set_config
from pob_mcp.server import create_mcp_server

logger = logging.getLogger(__name__)


def run_server(config: Config) -> int:
    """Run the MCP server until interrupted.

    The bridge session lives inside the server lifespan, so it is stopped
    on every exit path.

    Args:
        config: Application configuration

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    server = create_mcp_server(config)
    try:
        if config.transport == "stdio":
            logger.info("Starting MCP server with stdio transport")
            server.run(transport="stdio")
        else:
            logger.info(
                "Starting MCP server on http://%s:%d/mcp",
                config.http_host,
                config.http_port,
            )
            server.run(transport="streamable-http")
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.error("Server error: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main() -> int:
    """Main entry point."""
    reset_config()

    try:
        config = get_config()
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    config.setup_logging()
    set_config(config)

    # stdout belongs to the stdio transport; banner goes to stderr
    out = sys.stderr
    print(f"PoB MCP Server v{__version__}", file=out)
    print("Configuration:", file=out)
    print(f"  Lua bridge: {'enabled' if config.lua_enabled else 'disabled'}", file=out)
    if config.api_tcp:
        print(f"  Mode: tcp ({config.api_tcp_host}:{config.api_tcp_port})", file=out)
    else:
        print(f"  Mode: headless ({config.cmd} {config.args} in {config.fork_path})", file=out)
    print(f"  Timeout: {config.timeout_ms}ms", file=out)
    print(f"  Log level: {config.log_level}", file=out)
    print(f"  Transport: {config.transport}", file=out)

    return run_server(config)


if __name__ == "__main__":
    sys.exit(main())

"""PoB MCP Server - exposes the Path of Building calculation engine over MCP.

The server owns one BridgeSession, which lazily starts a single PoB Lua
bridge client (headless subprocess or TCP to a running GUI) and shares it
across all tool calls.
"""

__version__ = "0.1.0"

"""Configuration management for the PoB MCP Server.

This module provides centralized configuration with support for:
- Environment variables (primary)
- Sensible defaults for all settings
- Type validation via Pydantic
- Easy testing through config overrides

Environment Variables:
    POB_LUA_ENABLED: Enable the Lua bridge (default: false)
    POB_API_TCP: Connect to a running PoB GUI over TCP instead of
        spawning a headless engine (default: false)
    POB_API_TCP_HOST: GUI API host (default: 127.0.0.1)
    POB_API_TCP_PORT: GUI API port (default: 31337)
    POB_TIMEOUT_MS: Per-request timeout in milliseconds (default: 10000)
    POB_FORK_PATH: The PoB API fork's src directory
    POB_CMD: Engine interpreter (default: luajit)
    POB_ARGS: Engine arguments, shell-quoted (default: HeadlessWrapper.lua)
    POB_WARMUP_ATTEMPTS: Readiness probe attempts (default: 5)
    POB_WARMUP_INTERVAL: Seconds between probe attempts (default: 2.0)
    POB_DIRECTORY: Directory holding saved build files
    POB_LOG_LEVEL: Logging level (default: INFO)
    POB_TRANSPORT: MCP transport, 'stdio' or 'http' (default: stdio)
    POB_HTTP_HOST / POB_HTTP_PORT: Bind address for the http transport

Usage:
    from pob_mcp.config import get_config, Config

    # Get the singleton config instance
    config = get_config()

    # For testing, create a custom config
    test_config = Config(lua_enabled=True, api_tcp=True, api_tcp_port=9999)
"""

from __future__ import annotations

import logging
import shlex
import sys
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_build_directory() -> str:
    """Where Path of Building saves builds on this platform."""
    if sys.platform == "darwin":
        return str(Path.home() / "Path of Building" / "Builds")
    return str(Path.home() / "Documents" / "Path of Building" / "Builds")


class Config(BaseSettings):
    """Application configuration with environment variable support.

    All settings can be overridden via environment variables prefixed with POB_.
    For example, POB_API_TCP_PORT=31338 sets api_tcp_port to 31338.
    """

    model_config = SettingsConfigDict(
        env_prefix="POB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Bridge selection
    lua_enabled: bool = Field(
        default=False,
        description="Enable the PoB Lua bridge (lua_* tools)",
    )
    api_tcp: bool = Field(
        default=False,
        description="Use the TCP transport to a running PoB GUI",
    )

    # TCP transport
    api_tcp_host: str = Field(
        default="127.0.0.1",
        description="Host of the PoB GUI TCP API",
    )
    api_tcp_port: int = Field(
        default=31337,
        ge=1,
        le=65535,
        description="Port of the PoB GUI TCP API",
    )

    # Subprocess transport
    fork_path: str = Field(
        default_factory=lambda: str(Path.home() / "Projects" / "pob-api-fork" / "src"),
        description="The PoB API fork's src directory (engine working directory)",
    )
    cmd: str = Field(
        default="luajit",
        description="Interpreter used to run the headless engine",
    )
    args: str = Field(
        default="HeadlessWrapper.lua",
        description="Engine arguments (shell-quoted)",
    )

    # Request handling
    timeout_ms: int = Field(
        default=10000,
        ge=1,
        description="Per-request timeout in milliseconds",
    )
    warmup_attempts: int = Field(
        default=5,
        ge=1,
        description="Readiness probe attempts after the handshake",
    )
    warmup_interval: float = Field(
        default=2.0,
        ge=0,
        description="Seconds between readiness probe attempts",
    )

    # Build files
    directory: str = Field(
        default_factory=default_build_directory,
        description="Directory holding saved build XML files",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # MCP transport configuration
    transport: Literal["stdio", "http"] = Field(
        default="stdio",
        description="MCP transport type: 'stdio' or 'http' (streamable-http)",
    )
    http_host: str = Field(
        default="127.0.0.1",
        description="Bind host for the http transport",
    )
    http_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port for the http transport",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def validate_engine_command(self) -> Config:
        """Validate that the subprocess transport has something to run."""
        if not self.api_tcp and not self.cmd.strip():
            raise ValueError(
                "cmd must be set when using the subprocess transport. "
                "Set POB_CMD or enable POB_API_TCP."
            )
        return self

    @property
    def timeout(self) -> float:
        """Per-request timeout in seconds."""
        return self.timeout_ms / 1000

    @property
    def command_args(self) -> list[str]:
        """Engine arguments split the way a shell would."""
        return shlex.split(self.args)

    def setup_logging(self) -> None:
        """Configure logging based on config settings.

        Logs go to stderr; stdout belongs to the MCP stdio transport.
        """
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            stream=sys.stderr,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for logging/debugging."""
        return {
            "lua_enabled": self.lua_enabled,
            "api_tcp": self.api_tcp,
            "api_tcp_host": self.api_tcp_host,
            "api_tcp_port": self.api_tcp_port,
            "fork_path": self.fork_path,
            "cmd": self.cmd,
            "args": self.args,
            "timeout_ms": self.timeout_ms,
            "warmup_attempts": self.warmup_attempts,
            "warmup_interval": self.warmup_interval,
            "directory": self.directory,
            "log_level": self.log_level,
            "transport": self.transport,
            "http_host": self.http_host,
            "http_port": self.http_port,
        }


# Module-level singleton instance
_config_instance: Config | None = None


def get_config() -> Config:
    """Get the singleton configuration instance.

    Creates the config on first call, caching it for subsequent calls.
    The config is loaded from environment variables and optional .env file.

    Note:
        For testing, use set_config() to inject a test configuration,
        or call reset_config() to force reloading from environment.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance


def set_config(config: Config) -> None:
    """Set the configuration instance (primarily for testing)."""
    global _config_instance
    _config_instance = config


def reset_config() -> None:
    """Reset the configuration singleton.

    Forces the next get_config() call to reload from environment.
    """
    global _config_instance
    _config_instance = None

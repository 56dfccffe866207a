"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import socket
import sys
from pathlib import Path

import pytest

# Add both package src directories to Python path
# This lets the suite run from a plain checkout as well as an install
_repo_root = Path(__file__).parent
_bridge_src = _repo_root / "bridge" / "src"
_server_src = _repo_root / "server" / "src"

if str(_bridge_src) not in sys.path:
    sys.path.insert(0, str(_bridge_src))
if str(_server_src) not in sys.path:
    sys.path.insert(0, str(_server_src))


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the path to the test fixtures directory."""
    return _repo_root / "tests" / "fixtures"


@pytest.fixture
def fake_engine(fixtures_dir: Path) -> list[str]:
    """Command line that runs the scripted fake engine."""
    return [sys.executable, "-u", str(fixtures_dir / "fake_engine.py")]


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

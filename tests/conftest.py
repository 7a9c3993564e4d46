"""Pytest configuration and shared fixtures for mcp-harness tests."""

import shutil
from pathlib import Path

import pytest

from mcp_harness.config import HarnessConfig
from mcp_harness.harness import Harness

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def fast_config(tmp_path: Path) -> HarnessConfig:
    """Config with short delays so process tests stay quick."""
    return HarnessConfig(
        log_dir=str(tmp_path / "logs"),
        warmup_delay=0.1,
        kill_timeout=1.0,
        settle_delay=0.05,
        health_check_timeout=2.0,
    )


@pytest.fixture
def echo_source(tmp_path: Path) -> Path:
    """A server source directory whose entry point is the echo fixture server."""
    src = tmp_path / "echo-src"
    src.mkdir()
    shutil.copy(FIXTURES / "echo_server.py", src / "server.py")
    return src


@pytest.fixture
async def harness(fast_config: HarnessConfig):
    hx = Harness(fast_config)
    yield hx
    await hx.shutdown()

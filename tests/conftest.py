"""Shared pytest fixtures for MaaS CLI tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from maas_cli.config import Settings
from maas_cli.context import ClientContext
from maas_cli.crypto import CredentialStore

AUTH_BASE = "http://auth.test"
MEMORY_BASE = "http://api.test/api/v1"
MCP_BASE = "http://mcp.test"


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Isolated settings: temp config dir, no discovery, fast timers."""
    return Settings(
        config_dir=tmp_path / "maas",
        environment="production",
        api_key=None,
        api_url=None,
        endpoint_overrides={
            "auth_base": AUTH_BASE,
            "memory_base": MEMORY_BASE,
            "mcp_base": MCP_BASE,
            "mcp_ws_base": "ws://mcp.test/ws",
            "mcp_sse_base": f"{MCP_BASE}/sse",
        },
        verbose=False,
        skip_discovery=True,
        mcp_server_path=None,
        lock_timeout=1.0,
        request_timeout=2.0,
        auth_check_timeout=2.0,
        health_probe_timeout=2.0,
        health_interval=60.0,
        reconnect_delay=0.2,
        handshake_timeout=2.0,
        backoff_base=0.01,
        backoff_cap=0.05,
    )


@pytest.fixture
def credential_store() -> CredentialStore:
    return CredentialStore(fingerprint=lambda: "test-machine")


@pytest_asyncio.fixture
async def ctx(settings, clock, credential_store) -> ClientContext:
    return await ClientContext.create(settings, clock=clock, credentials=credential_store)


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    from loguru import logger

    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)

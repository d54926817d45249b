"""Shared fixtures and utilities for loopback-oauth tests."""

import asyncio
import os
import socket
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from loopback_oauth.config import ENV_PREFIX
from loopback_oauth.oauth.exchange import TokenExchangeClient
from loopback_oauth.oauth.state import FlowState, create_flow_state
from loopback_oauth.oauth.tokens import TokenResult


# ============================================================================
# HTTP helpers
# ============================================================================


async def send_request(
    port: int,
    target: str,
    method: str = "GET",
) -> tuple[int, str]:
    """Send one HTTP request to the loopback listener.

    Returns:
        (status code, body)
    """
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"{method} {target} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    # Listener always answers with Connection: close
    data = await reader.read()
    writer.close()
    await writer.wait_closed()

    head, _, body = data.decode("utf-8").partition("\r\n\r\n")
    status = int(head.split(" ")[1])
    return status, body


def callback_target(code: str | None = None, state: str | None = None) -> str:
    """Build a callback request target."""
    params = []
    if code is not None:
        params.append(f"code={code}")
    if state is not None:
        params.append(f"state={state}")
    query = "&".join(params)
    return f"/oauth/callback?{query}" if query else "/oauth/callback"


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def free_port() -> int:
    """A port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port: int = s.getsockname()[1]
    return port


@pytest.fixture
def flow_state(free_port: int) -> FlowState:
    """A fresh flow state against an example provider."""
    return create_flow_state("https://login.example.com", "client123", free_port)


@pytest.fixture
def sample_tokens() -> TokenResult:
    return TokenResult(access_token="tok1", refresh_token="ref1")


@pytest.fixture
def stub_exchange(sample_tokens: TokenResult) -> MagicMock:
    """Exchange client stub returning sample tokens."""
    client = MagicMock(spec=TokenExchangeClient)
    client.exchange = AsyncMock(return_value=sample_tokens)
    return client


@pytest.fixture
def consumer() -> MagicMock:
    """Token consumer spy."""
    return MagicMock(return_value=None)


@pytest.fixture
def browser() -> MagicMock:
    """Browser capability spy."""
    return MagicMock(return_value=None)


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Remove LOOPBACK_OAUTH_* variables and restore the environment afterwards."""
    saved = dict(os.environ)
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            del os.environ[key]
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(saved)

"""Shared fixtures and utilities for MCP Auth Playground tests."""

import base64
import json
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import pytest_asyncio

from mcp_auth_playground.bridge import ExtensionBridge
from mcp_auth_playground.config import Settings
from mcp_auth_playground.machine import FlowMachine
from mcp_auth_playground.store import StateStore
from mcp_auth_playground.transport import Exchange, HttpRequest, HttpResponse, Transport

SERVER_URL = "https://mcp.example.com/mcp"
AUTH_SERVER = "https://auth.example.com"
RESOURCE_METADATA_URL = "https://mcp.example.com/.well-known/oauth-protected-resource"
PROXY_URL = "http://relay.test:3001"


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def memory_keyring() -> Generator[dict[tuple[str, str], str], None, None]:
    """Replace the OS keyring with an in-memory dict."""
    secrets: dict[tuple[str, str], str] = {}

    def get_password(service: str, username: str) -> str | None:
        return secrets.get((service, username))

    def set_password(service: str, username: str, password: str) -> None:
        secrets[(service, username)] = password

    with patch("mcp_auth_playground.store.keyring.get_password", side_effect=get_password), \
         patch("mcp_auth_playground.store.keyring.set_password", side_effect=set_password):
        yield secrets


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove MCP_PLAYGROUND_* variables from the environment."""
    import os

    for key in list(os.environ):
        if key.startswith("MCP_PLAYGROUND_"):
            monkeypatch.delenv(key)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Directory for the encrypted state blob."""
    return tmp_path / "state"


@pytest.fixture
def settings(tmp_path: Path, state_dir: Path) -> Settings:
    """Settings pointing every path into a temporary directory."""
    return Settings(
        server_url=SERVER_URL,
        request_mode="direct",
        proxy_url=PROXY_URL,
        state_dir=state_dir,
        bridge_socket=tmp_path / "run" / "bridge.sock",
    )


@pytest.fixture
def store(state_dir: Path) -> StateStore:
    """A state store in a temporary directory."""
    return StateStore(state_dir)


@pytest_asyncio.fixture
async def machine(settings: Settings, store: StateStore) -> Any:
    """A flow machine with a real transport (mock the network with respx)."""
    flow = FlowMachine(
        settings,
        transport=Transport(
            proxy_url=settings.proxy_url,
            bridge=ExtensionBridge(settings.bridge_socket),
        ),
        store=store,
    )
    yield flow
    await flow.aclose()


# ============================================================================
# Sample Data
# ============================================================================


@pytest.fixture
def resource_metadata() -> dict[str, Any]:
    """Protected Resource Metadata naming one authorization server."""
    return {
        "resource": SERVER_URL,
        "authorization_servers": [AUTH_SERVER],
        "bearer_methods_supported": ["header"],
    }


@pytest.fixture
def oauth_metadata() -> dict[str, Any]:
    """Authorization Server Metadata supporting DCR and S256."""
    return {
        "issuer": AUTH_SERVER,
        "authorization_endpoint": f"{AUTH_SERVER}/authorize",
        "token_endpoint": f"{AUTH_SERVER}/token",
        "registration_endpoint": f"{AUTH_SERVER}/register",
        "code_challenge_methods_supported": ["S256"],
    }


def make_jwt(claims: dict[str, Any]) -> str:
    """Build an unsigned JWT carrying ``claims``."""

    def segment(data: dict[str, Any]) -> str:
        raw = json.dumps(data).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    return f"{segment({'alg': 'none', 'typ': 'JWT'})}.{segment(claims)}.signature"


def make_exchange(
    status: int = 200,
    body: Any = None,
    headers: dict[str, str] | None = None,
    url: str = SERVER_URL,
    method: str = "GET",
) -> Exchange:
    """Build an Exchange without touching the network."""
    return Exchange(
        request=HttpRequest(method=method, url=url),
        response=HttpResponse(status=status, status_text="", headers=headers or {}, body=body),
        duration=1,
    )


@pytest.fixture
def socket_dir() -> Generator[Path, None, None]:
    """A short temporary directory for Unix sockets (AF_UNIX paths are length-limited)."""
    import shutil
    import tempfile

    path = Path(tempfile.mkdtemp(prefix="mcpap-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)

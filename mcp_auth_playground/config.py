"""Settings discovery and loading for the MCP Auth Playground."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .platform import DEFAULT_STATE_DIR, get_bridge_socket_path

ENV_PREFIX = "MCP_PLAYGROUND_"

DEFAULT_PROXY_URL = "http://localhost:3001"
DEFAULT_REDIRECT_URI = "http://localhost:3000/callback"
DEFAULT_CLIENT_NAME = "MCP Auth Playground"
DEFAULT_HTTP_TIMEOUT = 30.0

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "mcp-auth-playground" / ".env",
]


@dataclass
class Settings:
    """Runtime settings for the playground.

    Every field can be set through an ``MCP_PLAYGROUND_<NAME>`` environment
    variable (or a .env file loaded before the environment is read).
    """

    server_url: str = ""
    request_mode: str = "direct"
    proxy_url: str = DEFAULT_PROXY_URL
    redirect_uri: str = DEFAULT_REDIRECT_URI
    client_name: str = DEFAULT_CLIENT_NAME
    state_dir: Path = DEFAULT_STATE_DIR
    bridge_socket: Path = field(default_factory=get_bridge_socket_path)
    browser_host: str | None = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    env_path: Path | None = None


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _env(name: str) -> str | None:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None or value.strip() == "":
        return None
    return value.strip()


def load_settings(env_path: Path | None = None) -> Settings:
    """Load settings from the environment, after applying any .env file.

    Args:
        env_path: Explicit path to a .env file (optional)

    Returns:
        Settings with environment overrides applied

    Raises:
        ValueError: If a numeric setting cannot be parsed
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    settings = Settings(env_path=env_file)

    if server_url := _env("SERVER_URL"):
        settings.server_url = server_url
    if request_mode := _env("REQUEST_MODE"):
        settings.request_mode = request_mode.lower()
    if proxy_url := _env("PROXY_URL"):
        settings.proxy_url = proxy_url.rstrip("/")
    if redirect_uri := _env("REDIRECT_URI"):
        settings.redirect_uri = redirect_uri
    if client_name := _env("CLIENT_NAME"):
        settings.client_name = client_name
    if state_dir := _env("STATE_DIR"):
        settings.state_dir = Path(state_dir).expanduser()
    if bridge_socket := _env("BRIDGE_SOCKET"):
        settings.bridge_socket = Path(bridge_socket).expanduser()
    if browser_host := _env("BROWSER_HOST"):
        settings.browser_host = browser_host
    if http_timeout := _env("HTTP_TIMEOUT"):
        try:
            settings.http_timeout = float(http_timeout)
        except ValueError as e:
            raise ValueError(
                f"{ENV_PREFIX}HTTP_TIMEOUT must be a number of seconds, got: {http_timeout}"
            ) from e

    return settings

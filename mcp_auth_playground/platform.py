"""Cross-platform paths for playground state and the bridge agent."""

import os
import sys
import tempfile
from pathlib import Path

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default location for the persisted flow state
DEFAULT_STATE_DIR = Path.home() / ".cache" / "mcp-auth-playground"

# File name of the readiness marker published by the bridge agent
BRIDGE_MARKER_NAME = "bridge-ready"


def get_runtime_dir() -> Path:
    """Get the directory holding the bridge socket and readiness marker.

    On Unix: /tmp/mcp-auth-playground-{uid}
    On Windows: %TEMP%\\mcp-auth-playground-{username}
    """
    if IS_WINDOWS:
        owner = os.environ.get("USERNAME", "user")
    else:
        owner = str(os.getuid())
    return Path(tempfile.gettempdir()) / f"mcp-auth-playground-{owner}"


def get_bridge_socket_path() -> Path:
    """Get the Unix socket path the bridge agent listens on."""
    return get_runtime_dir() / "bridge.sock"


def get_bridge_marker_path(socket_path: Path | None = None) -> Path:
    """Get the readiness marker path for a bridge socket.

    The marker lives next to the socket so that a custom socket
    location carries its own marker.
    """
    socket_path = socket_path or get_bridge_socket_path()
    return socket_path.parent / BRIDGE_MARKER_NAME


def supports_unix_sockets() -> bool:
    """Check whether the bridge channel can run on this platform."""
    return not IS_WINDOWS

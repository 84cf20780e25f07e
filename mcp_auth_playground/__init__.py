"""MCP Auth Playground - Step through OAuth 2.1 + PKCE discovery and authorization against an MCP server."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("mcp-auth-playground")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Core modules
    "Settings",
    "load_settings",
    "FlowMachine",
    "FlowState",
    "StateStore",
    "Transport",
    "RequestMode",
    "OutputHandler",
    # Channel services
    "ExtensionBridge",
    "BridgeAgent",
    "create_relay_app",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings
        return {"Settings": Settings, "load_settings": load_settings}[name]
    elif name == "FlowMachine":
        from .machine import FlowMachine
        return FlowMachine
    elif name == "FlowState":
        from .state import FlowState
        return FlowState
    elif name == "StateStore":
        from .store import StateStore
        return StateStore
    elif name in ("Transport", "RequestMode"):
        from .transport import RequestMode, Transport
        return {"Transport": Transport, "RequestMode": RequestMode}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    elif name in ("ExtensionBridge", "BridgeAgent"):
        from .bridge import BridgeAgent, ExtensionBridge
        return {"ExtensionBridge": ExtensionBridge, "BridgeAgent": BridgeAgent}[name]
    elif name == "create_relay_app":
        from .relay import create_relay_app
        return create_relay_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

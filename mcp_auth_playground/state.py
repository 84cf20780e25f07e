"""Flow state for the playground.

``FlowState`` is the single source of truth threaded between protocol
steps. It is immutable: every change produces a new object via
``FlowState.update`` or ``FlowState.with_history``, and the history log
only ever grows.
"""

import logging
import time
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Mapping

from .transport import RequestMode

logger = logging.getLogger(__name__)

FIRST_STEP = 0
LAST_STEP = 8

STEP_TITLES: tuple[str, ...] = (
    "Introduction",
    "Initial Connection",
    "Metadata Discovery",
    "Client Registration",
    "Prepare Authorization",
    "Authorization",
    "Token Request",
    "Auth Complete",
    "MCP Tools",
)

# Keys of the legacy boolean channel flag (True meant direct, False proxy)
LEGACY_MODE_KEYS = ("use_direct_mode", "useDirectMode")


def now_millis() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class HistoryEntry:
    """One recorded request/response pair.

    Attributes:
        request: Wire-shape request dict
        response: Wire-shape response dict
        timestamp: Milliseconds since the epoch
        type: What the call was for (e.g. "connect", "oauth_metadata")
        tool: Tool name, for "call-tool" entries
    """

    request: dict[str, Any]
    response: dict[str, Any]
    timestamp: int = field(default_factory=now_millis)
    type: str | None = None
    tool: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "request": self.request,
            "response": self.response,
            "timestamp": self.timestamp,
        }
        if self.type is not None:
            data["type"] = self.type
        if self.tool is not None:
            data["tool"] = self.tool
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        return cls(
            request=dict(data.get("request") or {}),
            response=dict(data.get("response") or {}),
            timestamp=int(data.get("timestamp") or 0),
            type=data.get("type"),
            tool=data.get("tool"),
        )


@dataclass(frozen=True)
class FlowState:
    """Everything the flow has learned so far.

    Defaults describe a fresh flow; saved state is merged over them field
    by field so fields added later never break older saves.
    """

    current_step: int = FIRST_STEP
    mcp_server_url: str = ""
    request_mode: RequestMode = RequestMode.DIRECT

    # Discovery
    www_authenticate: str | None = None
    resource_metadata_url: str | None = None
    resource_metadata: dict[str, Any] | None = None
    authorization_server_url: str | None = None
    oauth_metadata: dict[str, Any] | None = None
    oauth_metadata_from_fallback: bool = False
    manual_discovery: bool = False

    # Registration
    client_id: str | None = None
    client_secret: str | None = None

    # PKCE, generated together
    code_verifier: str | None = None
    code_challenge: str | None = None
    state: str | None = None
    authorization_url: str | None = None

    # Authorization result
    authorization_code: str | None = None

    # Tokens
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None

    # MCP session
    mcp_session_id: str | None = None
    mcp_server_info: dict[str, Any] | None = None
    tools: tuple[dict[str, Any], ...] = ()
    selected_tool: str | None = None
    tool_result: Any = None

    history: Mapping[int, tuple[HistoryEntry, ...]] = field(default_factory=dict)

    def update(self, **changes: Any) -> "FlowState":
        """Return a copy with the given fields replaced."""
        if "history" in changes:
            raise ValueError("History is append-only; use with_history()")
        return replace(self, **changes)

    def with_history(self, step: int, entry: HistoryEntry) -> "FlowState":
        """Return a copy with ``entry`` appended to the log of ``step``."""
        history = dict(self.history)
        history[step] = (*self.history.get(step, ()), entry)
        return replace(self, history=history)

    def entries(self, step: int, entry_type: str | None = None) -> tuple[HistoryEntry, ...]:
        """History entries of a step, optionally filtered by type."""
        entries = self.history.get(step, ())
        if entry_type is None:
            return entries
        return tuple(e for e in entries if e.type == entry_type)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "request_mode":
                value = value.value
            elif f.name == "tools":
                value = list(value)
            elif f.name == "history":
                value = {
                    str(step): [entry.to_dict() for entry in entries]
                    for step, entries in value.items()
                }
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], defaults: "FlowState | None" = None) -> "FlowState":
        """Merge saved data over defaults.

        Unknown keys are ignored, missing keys keep their default, and a
        value that cannot be loaded is dropped with a warning rather than
        failing the whole load.
        """
        data = migrate_legacy_state(data)
        base = defaults if defaults is not None else cls()

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.debug(f"Ignoring unknown saved state keys: {', '.join(unknown)}")

        changes: dict[str, Any] = {}
        for name in known & set(data):
            loader = _FIELD_LOADERS.get(name)
            try:
                changes[name] = loader(data[name]) if loader else data[name]
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring invalid saved value for {name}: {e}")

        return replace(base, **changes)


def _load_step(value: Any) -> int:
    return min(max(int(value), FIRST_STEP), LAST_STEP)


def _load_optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _load_tools(value: Any) -> tuple[dict[str, Any], ...]:
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"expected a list of tools, got {type(value).__name__}")
    return tuple(value)


def _load_history(value: Any) -> dict[int, tuple[HistoryEntry, ...]]:
    if not isinstance(value, Mapping):
        raise TypeError(f"expected a mapping of steps, got {type(value).__name__}")
    return {
        int(step): tuple(HistoryEntry.from_dict(entry) for entry in entries)
        for step, entries in value.items()
    }


_FIELD_LOADERS: dict[str, Callable[[Any], Any]] = {
    "current_step": _load_step,
    "request_mode": RequestMode.coerce,
    "expires_in": _load_optional_int,
    "tools": _load_tools,
    "history": _load_history,
}


def migrate_legacy_state(data: Mapping[str, Any]) -> dict[str, Any]:
    """Translate the legacy boolean channel flag into ``request_mode``.

    The flag is removed whether or not ``request_mode`` is already set.
    """
    migrated = dict(data)
    for key in LEGACY_MODE_KEYS:
        if key not in migrated:
            continue
        legacy = migrated.pop(key)
        if "request_mode" not in migrated:
            migrated["request_mode"] = RequestMode.coerce(bool(legacy)).value
            logger.debug(f"Migrated legacy {key}={legacy!r} to request_mode")
    return migrated


# Data precondition to leave each step
STEP_GATES: dict[int, Callable[[FlowState], bool]] = {
    0: lambda s: True,
    1: lambda s: bool(s.resource_metadata_url or s.oauth_metadata),
    2: lambda s: bool(s.oauth_metadata),
    3: lambda s: bool(s.client_id),
    4: lambda s: bool(s.code_verifier and s.code_challenge and s.authorization_url),
    5: lambda s: bool(s.authorization_code),
    6: lambda s: bool(s.access_token),
    7: lambda s: True,
}

GATE_HINTS: dict[int, str] = {
    1: "Connect to the server (or run fallback discovery) to find the resource metadata URL",
    2: "Fetch the OAuth authorization server metadata",
    3: "Register a client or enter client credentials manually",
    4: "Generate the PKCE parameters and authorization URL",
    5: "Complete authorization or paste the authorization code",
    6: "Exchange the authorization code for tokens",
}


def can_advance(state: FlowState, step: int | None = None) -> bool:
    """Check whether the gate out of ``step`` (default: current) is open."""
    step = state.current_step if step is None else step
    gate = STEP_GATES.get(step)
    return gate(state) if gate else False


def data_step(state: FlowState) -> int:
    """The furthest step the collected data supports."""
    if state.access_token:
        return 8
    if state.authorization_code:
        return 6
    if state.code_verifier and state.authorization_url:
        return 5
    if state.client_id:
        return 4
    if state.oauth_metadata:
        return 3
    if state.resource_metadata_url:
        return 2
    if state.current_step > 0:
        return 1
    return 0


def furthest_step(state: FlowState) -> int:
    """The furthest step the user may navigate to."""
    return max(state.current_step, data_step(state))


def latest_entry(
    state: FlowState, step: int, entry_type: str | None = None
) -> HistoryEntry | None:
    """Find the most recent history entry of a step (and type).

    Legacy saves without entry types are read positionally for step 2
    only: the first entry is resource metadata, the second OAuth metadata.
    """
    typed = state.entries(step, entry_type)
    if typed:
        return typed[-1]
    if entry_type is None or step != 2:
        return None

    entries = state.entries(step)
    if any(e.type for e in entries):
        return None
    position = {"resource_metadata": 0, "oauth_metadata": 1}.get(entry_type)
    if position is None or position >= len(entries):
        return None
    return entries[position]

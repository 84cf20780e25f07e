"""MCP session client over the authenticated channel.

Runs the three JSON-RPC calls the playground demonstrates after the token
exchange: ``initialize``, ``tools/list`` and ``tools/call``. Requests go
through the same ``Transport`` as every other step, so they can travel
directly, via the relay or via the bridge agent.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from mcp import types

from . import __version__
from .transport import Exchange, HttpRequest, RequestMode, Transport

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
CLIENT_NAME = "MCP Auth Playground"

# Fixed JSON-RPC ids, one per demonstrated call
INITIALIZE_ID = 0
LIST_TOOLS_ID = 1
CALL_TOOL_ID = 2


class McpError(Exception):
    """An MCP call failed or returned a JSON-RPC error."""

    pass


class ToolArgumentsError(McpError):
    """Tool arguments are not a JSON object. Raised before any request."""

    pass


@dataclass(frozen=True)
class McpCallResult:
    """One MCP call: the raw exchange plus its decoded JSON-RPC message."""

    exchange: Exchange
    message: Any
    session_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.exchange.response.status == 200

    @property
    def result(self) -> Any:
        """The JSON-RPC ``result``, or None."""
        if isinstance(self.message, dict):
            return self.message.get("result")
        return None

    @property
    def error(self) -> str | None:
        """A readable JSON-RPC error or HTTP failure, or None."""
        if isinstance(self.message, dict) and isinstance(self.message.get("error"), dict):
            err = self.message["error"]
            return f"JSON-RPC error {err.get('code')}: {err.get('message')}"
        if not self.ok:
            return (
                f"MCP server answered HTTP {self.exchange.response.status} "
                f"{self.exchange.response.status_text}".rstrip()
            )
        return None


def parse_sse_payload(text: str) -> Any | None:
    """Extract the JSON message from a Server-Sent Events body.

    Returns:
        The first ``data:`` line that parses as JSON, or None
    """
    for line in text.splitlines():
        if not line.startswith("data:"):
            continue
        try:
            return json.loads(line[len("data:"):].strip())
        except ValueError:
            logger.debug(f"Skipping non-JSON SSE data line: {line[:80]}")
    return None


def is_sse_body(body: Any) -> bool:
    """Check whether a body looks like SSE framing."""
    if not isinstance(body, str):
        return False
    return any(line.startswith(("event:", "data:")) for line in body.splitlines())


def unwrap_body(body: Any) -> Any:
    """Decode a possibly SSE-framed response body into the JSON-RPC message."""
    if is_sse_body(body):
        parsed = parse_sse_payload(body)
        if parsed is not None:
            return parsed
    return body


def extract_tools(message: Any) -> list[dict[str, Any]]:
    """Read the tool list from ``result.tools`` or a top-level ``tools``."""
    if not isinstance(message, dict):
        return []
    result = message.get("result")
    if isinstance(result, dict) and isinstance(result.get("tools"), list):
        return result["tools"]
    if isinstance(message.get("tools"), list):
        return message["tools"]
    return []


def find_session_id(headers: dict[str, str]) -> str | None:
    """Find the MCP session header, matching its name case-insensitively."""
    for key, value in headers.items():
        if key.lower() == SESSION_HEADER.lower():
            return value
    return None


def parse_tool_arguments(text: str | None) -> dict[str, Any]:
    """Parse user-supplied tool arguments.

    Raises:
        ToolArgumentsError: If the text is not a JSON object
    """
    if text is None or not text.strip():
        return {}
    try:
        arguments = json.loads(text)
    except ValueError as e:
        raise ToolArgumentsError(f"Invalid JSON in tool arguments: {e}") from e
    if not isinstance(arguments, dict):
        raise ToolArgumentsError("Tool arguments must be a JSON object")
    return arguments


def build_jsonrpc_body(request_id: int, method: str, params: dict[str, Any]) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 request body."""
    request = types.JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
    return request.model_dump(by_alias=True, mode="json", exclude_none=True)


def initialize_params() -> dict[str, Any]:
    """Params of the ``initialize`` request."""
    params = types.InitializeRequestParams(
        protocolVersion=types.LATEST_PROTOCOL_VERSION,
        capabilities=types.ClientCapabilities(),
        clientInfo=types.Implementation(name=CLIENT_NAME, version=__version__),
    )
    return params.model_dump(by_alias=True, mode="json", exclude_none=True)


class McpSessionClient:
    """Stateless-by-default MCP client for the playground.

    Carries the bearer token and, once a server hands one out, the session
    id, which is replayed on every later call.
    """

    def __init__(
        self,
        transport: Transport,
        mode: RequestMode,
        server_url: str,
        access_token: str,
        session_id: str | None = None,
    ):
        self.transport = transport
        self.mode = mode
        self.server_url = server_url
        self.access_token = access_token
        self.session_id = session_id

    def build_request(self, request_id: int, method: str, params: dict[str, Any]) -> HttpRequest:
        """Build the HTTP request carrying one JSON-RPC call."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "Authorization": f"Bearer {self.access_token}",
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id

        return HttpRequest(
            method="POST",
            url=self.server_url,
            headers=headers,
            body=build_jsonrpc_body(request_id, method, params),
        )

    async def _call(self, request_id: int, method: str, params: dict[str, Any]) -> McpCallResult:
        request = self.build_request(request_id, method, params)
        logger.debug(f"MCP {method} -> {self.server_url}")
        exchange = await self.transport.send(request, self.mode)
        return McpCallResult(
            exchange=exchange,
            message=unwrap_body(exchange.response.body),
            session_id=find_session_id(exchange.response.headers),
        )

    async def initialize(self) -> McpCallResult:
        """Open a session; captures the session id when the server sends one."""
        result = await self._call(INITIALIZE_ID, "initialize", initialize_params())
        if result.session_id:
            self.session_id = result.session_id
            logger.debug(f"Captured MCP session id {result.session_id}")
        return result

    async def list_tools(self) -> McpCallResult:
        """List the server's tools."""
        return await self._call(LIST_TOOLS_ID, "tools/list", {})

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> McpCallResult:
        """Invoke one tool with already-validated arguments."""
        return await self._call(CALL_TOOL_ID, "tools/call", {"name": name, "arguments": arguments})

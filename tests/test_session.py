"""Tests for the MCP session client."""

import json

import pytest
import respx
from mcp import types

from conftest import SERVER_URL, make_exchange
from mcp_auth_playground.session import (
    SESSION_HEADER,
    McpCallResult,
    McpSessionClient,
    ToolArgumentsError,
    extract_tools,
    find_session_id,
    parse_sse_payload,
    parse_tool_arguments,
    unwrap_body,
)
from mcp_auth_playground.transport import RequestMode, Transport

SSE_BODY = (
    "event: message\n"
    'data: {"jsonrpc": "2.0", "id": 1, "result": {"tools": [{"name": "echo"}]}}\n'
    "\n"
)


class TestBodyHelpers:
    """Tests for SSE unwrapping and tool extraction."""

    def test_parse_sse_payload(self):
        """Test extracting the first JSON data line."""
        assert parse_sse_payload(SSE_BODY)["result"]["tools"] == [{"name": "echo"}]

    def test_parse_sse_skips_non_json(self):
        """Test that non-JSON data lines are skipped."""
        assert parse_sse_payload('data: ping\ndata: {"ok": true}\n') == {"ok": True}
        assert parse_sse_payload("data: nope\n") is None

    def test_unwrap_body(self):
        """Test that SSE bodies are unwrapped and JSON bodies kept."""
        assert unwrap_body(SSE_BODY)["id"] == 1
        assert unwrap_body({"id": 2}) == {"id": 2}
        assert unwrap_body("plain text") == "plain text"

    def test_extract_tools(self):
        """Test both tool list shapes."""
        assert extract_tools({"result": {"tools": [{"name": "a"}]}}) == [{"name": "a"}]
        assert extract_tools({"tools": [{"name": "b"}]}) == [{"name": "b"}]
        assert extract_tools({"result": {}}) == []
        assert extract_tools("text") == []

    def test_find_session_id_case_insensitive(self):
        """Test session header lookup ignores case."""
        assert find_session_id({"mcp-session-id": "s1"}) == "s1"
        assert find_session_id({"MCP-SESSION-ID": "s2"}) == "s2"
        assert find_session_id({}) is None


class TestToolArguments:
    """Tests for tool argument parsing."""

    @pytest.mark.parametrize("text", [None, "", "   "])
    def test_empty_is_empty_object(self, text):
        """Test that empty input means no arguments."""
        assert parse_tool_arguments(text) == {}

    def test_valid_object(self):
        """Test parsing a JSON object."""
        assert parse_tool_arguments('{"message": "hi"}') == {"message": "hi"}

    @pytest.mark.parametrize("text", ["{bad", "[1, 2]", '"str"'])
    def test_invalid(self, text: str):
        """Test that invalid JSON or non-objects raise ToolArgumentsError."""
        with pytest.raises(ToolArgumentsError):
            parse_tool_arguments(text)


class TestMcpCallResult:
    """Tests for McpCallResult accessors."""

    def test_jsonrpc_error(self):
        """Test that JSON-RPC errors are readable."""
        result = McpCallResult(make_exchange(200), {"error": {"code": -32601, "message": "Method not found"}})
        assert result.ok
        assert result.error == "JSON-RPC error -32601: Method not found"

    def test_http_error(self):
        """Test that HTTP failures are reported."""
        result = McpCallResult(make_exchange(401, "Unauthorized"), "Unauthorized")
        assert not result.ok
        assert "HTTP 401" in result.error


class TestMcpSessionClient:
    """Tests for the JSON-RPC calls."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_initialize_captures_session(self):
        """Test initialize sends bearer auth and captures the session id."""
        route = respx.post(SERVER_URL).respond(
            200,
            headers={"Mcp-Session-Id": "sess-1"},
            json={"jsonrpc": "2.0", "id": 0, "result": {"serverInfo": {"name": "demo", "version": "1.0"}}},
        )

        async with Transport() as transport:
            client = McpSessionClient(transport, RequestMode.DIRECT, SERVER_URL, "tok")
            result = await client.initialize()

        request = route.calls[0].request
        assert request.headers["authorization"] == "Bearer tok"
        assert "text/event-stream" in request.headers["accept"]
        body = json.loads(request.content)
        assert body["method"] == "initialize"
        assert body["id"] == 0
        assert body["params"]["protocolVersion"] == types.LATEST_PROTOCOL_VERSION
        assert body["params"]["clientInfo"]["name"] == "MCP Auth Playground"
        assert result.session_id == "sess-1"
        assert client.session_id == "sess-1"
        assert result.result["serverInfo"]["name"] == "demo"

    @pytest.mark.asyncio
    @respx.mock
    async def test_session_id_replayed(self):
        """Test the session id is sent on later calls."""
        route = respx.post(SERVER_URL).respond(
            200, text=SSE_BODY, headers={"Content-Type": "text/event-stream"}
        )

        async with Transport() as transport:
            client = McpSessionClient(transport, RequestMode.DIRECT, SERVER_URL, "tok", session_id="sess-1")
            result = await client.list_tools()

        request = route.calls[0].request
        assert request.headers[SESSION_HEADER] == "sess-1"
        assert json.loads(request.content)["method"] == "tools/list"
        assert extract_tools(result.message) == [{"name": "echo"}]

    @pytest.mark.asyncio
    @respx.mock
    async def test_call_tool(self):
        """Test the tools/call request shape."""
        route = respx.post(SERVER_URL).respond(
            200, json={"jsonrpc": "2.0", "id": 2, "result": {"content": [{"type": "text", "text": "hi"}]}}
        )

        async with Transport() as transport:
            client = McpSessionClient(transport, RequestMode.DIRECT, SERVER_URL, "tok")
            result = await client.call_tool("echo", {"message": "hi"})

        body = json.loads(route.calls[0].request.content)
        assert body["method"] == "tools/call"
        assert body["id"] == 2
        assert body["params"] == {"name": "echo", "arguments": {"message": "hi"}}
        assert result.result["content"][0]["text"] == "hi"

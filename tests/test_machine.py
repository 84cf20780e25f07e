"""End-to-end tests for the flow state machine."""

import asyncio
import base64
import json
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from conftest import AUTH_SERVER, PROXY_URL, RESOURCE_METADATA_URL, SERVER_URL, make_jwt
from mcp_auth_playground.config import Settings
from mcp_auth_playground.machine import AvailabilityMonitor, FlowError, FlowMachine, StepGateError
from mcp_auth_playground.oauth.callback import CallbackResult
from mcp_auth_playground.oauth.discovery import DiscoveryError, DiscoveryResult
from mcp_auth_playground.oauth.flow import (
    AuthorizationError,
    ClientRegistrationError,
    StateMismatchError,
    TokenExchangeError,
)
from mcp_auth_playground.platform import get_bridge_marker_path
from mcp_auth_playground.session import McpError, ToolArgumentsError
from mcp_auth_playground.store import StateStore
from mcp_auth_playground.transport import RequestMode

AS_METADATA_URL = f"{AUTH_SERVER}/.well-known/oauth-authorization-server"
OIDC_URL = f"{AUTH_SERVER}/.well-known/openid-configuration"
WWW_AUTHENTICATE = f'Bearer resource_metadata="{RESOURCE_METADATA_URL}"'


def with_oauth(machine: FlowMachine, oauth_metadata: dict[str, Any], **changes: Any) -> None:
    """Put the machine past metadata discovery."""
    machine.state = machine.state.update(
        resource_metadata_url=RESOURCE_METADATA_URL,
        authorization_server_url=AUTH_SERVER,
        oauth_metadata=oauth_metadata,
        **changes,
    )


def authorized(machine: FlowMachine, oauth_metadata: dict[str, Any]) -> None:
    """Put the machine at the token request with a code in hand."""
    with_oauth(machine, oauth_metadata, client_id="client-1", client_secret="s3cret")
    machine.prepare_authorization()
    machine.set_manual_code("the-code")


class TestConnect:
    """Tests for the unauthenticated probe."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_401_with_hint(self, machine: FlowMachine):
        """Test that the resource metadata URL is taken from WWW-Authenticate."""
        respx.get(SERVER_URL).respond(401, headers={"WWW-Authenticate": WWW_AUTHENTICATE})

        result = await machine.connect()

        assert result.resource_metadata_url == RESOURCE_METADATA_URL
        assert not result.fallback_recommended
        assert machine.state.resource_metadata_url == RESOURCE_METADATA_URL
        assert machine.state.www_authenticate == WWW_AUTHENTICATE
        assert [e.type for e in machine.state.entries(1)] == ["connect"]
        assert machine.can_advance(1)

    @pytest.mark.asyncio
    @respx.mock
    async def test_401_without_hint_recommends_fallback(self, machine: FlowMachine):
        """Test that a bare 401 recommends fallback discovery."""
        respx.get(SERVER_URL).respond(401)

        result = await machine.connect()

        assert result.fallback_recommended
        assert machine.state.resource_metadata_url is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_other_4xx_recommends_fallback(self, machine: FlowMachine):
        """Test that any other client error also recommends fallback."""
        respx.get(SERVER_URL).respond(404)
        assert (await machine.connect()).fallback_recommended

    @pytest.mark.asyncio
    @respx.mock
    async def test_connect_with_new_url(self, machine: FlowMachine):
        """Test that a URL given to connect replaces the stored one."""
        other = "https://other.example.com/mcp"
        respx.get(other).respond(200, json={})

        result = await machine.connect(f"  {other}  ")

        assert machine.state.mcp_server_url == other
        assert not result.fallback_recommended

    @pytest.mark.asyncio
    async def test_missing_url(self, machine: FlowMachine):
        """Test that connecting without a URL is refused."""
        machine.set_server_url("")
        with pytest.raises(FlowError, match="MCP server URL"):
            await machine.connect()

    @pytest.mark.asyncio
    @respx.mock
    async def test_follows_redirect_to_challenge(self, machine: FlowMachine):
        """Test that a redirected endpoint reports the challenge behind it."""
        respx.get(SERVER_URL).respond(307, headers={"Location": f"{SERVER_URL}/"})
        respx.get(f"{SERVER_URL}/").respond(401, headers={"WWW-Authenticate": WWW_AUTHENTICATE})

        result = await machine.connect()

        assert result.exchange.response.status == 401
        assert result.resource_metadata_url == RESOURCE_METADATA_URL
        assert not result.fallback_recommended


class TestFallbackDiscovery:
    """Tests for probing the well-known endpoints."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_probes_origin_then_full_url(self, machine: FlowMachine, resource_metadata: dict[str, Any]):
        """Test probe order and results, including a failed request."""
        respx.get(RESOURCE_METADATA_URL).respond(200, json=resource_metadata)
        respx.get("https://mcp.example.com/.well-known/oauth-authorization-server").respond(404)
        respx.get("https://mcp.example.com/.well-known/openid-configuration").respond(200, text="<html>")
        respx.get(f"{SERVER_URL}/.well-known/oauth-protected-resource").mock(
            side_effect=httpx.ConnectError("refused")
        )
        respx.get(f"{SERVER_URL}/.well-known/oauth-authorization-server").respond(404)
        respx.get(f"{SERVER_URL}/.well-known/openid-configuration").respond(404)

        results = await machine.fallback_discovery()

        assert [r.url for r in results] == [
            RESOURCE_METADATA_URL,
            "https://mcp.example.com/.well-known/oauth-authorization-server",
            "https://mcp.example.com/.well-known/openid-configuration",
            f"{SERVER_URL}/.well-known/oauth-protected-resource",
            f"{SERVER_URL}/.well-known/oauth-authorization-server",
            f"{SERVER_URL}/.well-known/openid-configuration",
        ]
        assert [r.success for r in results] == [True, False, False, False, False, False]
        assert results[0].metadata_type == "resource"
        assert results[3].status == "error"
        # The failed request never produced an exchange to record
        assert len(machine.state.entries(1, "fallback-discovery")) == 5

    def test_select_resource_document(self, machine: FlowMachine, resource_metadata: dict[str, Any]):
        """Test selecting a resource document continues the normal flow."""
        result = DiscoveryResult(
            url=RESOURCE_METADATA_URL,
            base="https://mcp.example.com",
            status=200,
            success=True,
            body=resource_metadata,
            metadata_type="resource",
        )

        state = machine.select_discovery_result(result)

        assert state.resource_metadata_url == RESOURCE_METADATA_URL
        assert state.authorization_server_url == AUTH_SERVER
        assert state.manual_discovery
        assert state.oauth_metadata is None
        assert machine.furthest_step() == 2

    def test_select_authorization_server_document(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test selecting AS metadata skips straight to registration."""
        result = DiscoveryResult(
            url="https://mcp.example.com/.well-known/oauth-authorization-server",
            base="https://mcp.example.com",
            status=200,
            success=True,
            body=oauth_metadata,
            metadata_type="oauth-as",
        )

        state = machine.select_discovery_result(result)

        assert state.oauth_metadata == oauth_metadata
        assert state.oauth_metadata_from_fallback
        assert state.authorization_server_url == AUTH_SERVER
        assert machine.furthest_step() == 3

    def test_select_failed_probe(self, machine: FlowMachine):
        """Test that unsuccessful probes cannot be selected."""
        result = DiscoveryResult(url=RESOURCE_METADATA_URL, base="https://mcp.example.com", status=404, success=False)
        with pytest.raises(DiscoveryError):
            machine.select_discovery_result(result)


class TestMetadataDiscovery:
    """Tests for step 2."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_resource_then_oauth_metadata(
        self,
        machine: FlowMachine,
        resource_metadata: dict[str, Any],
        oauth_metadata: dict[str, Any],
    ):
        """Test the happy path through both documents."""
        machine.state = machine.state.update(resource_metadata_url=RESOURCE_METADATA_URL)
        respx.get(RESOURCE_METADATA_URL).respond(200, json=resource_metadata)
        respx.get(AS_METADATA_URL).respond(200, json=oauth_metadata)

        await machine.fetch_resource_metadata()
        assert machine.state.authorization_server_url == AUTH_SERVER

        await machine.fetch_oauth_metadata()
        assert machine.state.oauth_metadata == oauth_metadata
        assert [e.type for e in machine.state.entries(2)] == ["resource_metadata", "oauth_metadata"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_oidc_candidate_fallback(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test that the OIDC location is tried when RFC 8414 fails."""
        machine.state = machine.state.update(authorization_server_url=AUTH_SERVER)
        respx.get(AS_METADATA_URL).respond(404)
        respx.get(OIDC_URL).respond(200, json=oauth_metadata)

        exchange = await machine.fetch_oauth_metadata()

        assert exchange.request.url == OIDC_URL
        assert len(machine.state.entries(2, "oauth_metadata")) == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_all_candidates_fail(self, machine: FlowMachine):
        """Test the error lists every endpoint tried."""
        machine.state = machine.state.update(authorization_server_url=AUTH_SERVER)
        respx.get(AS_METADATA_URL).respond(404)
        respx.get(OIDC_URL).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(DiscoveryError) as exc_info:
            await machine.fetch_oauth_metadata()

        message = str(exc_info.value)
        assert AS_METADATA_URL in message
        assert OIDC_URL in message
        assert machine.state.oauth_metadata is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_resource_metadata_without_authorization_server(self, machine: FlowMachine):
        """Test that the document is kept even when it names no server."""
        machine.state = machine.state.update(resource_metadata_url=RESOURCE_METADATA_URL)
        respx.get(RESOURCE_METADATA_URL).respond(200, json={"resource": SERVER_URL})

        with pytest.raises(DiscoveryError, match="authorization_servers"):
            await machine.fetch_resource_metadata()
        assert machine.state.resource_metadata == {"resource": SERVER_URL}

    @pytest.mark.asyncio
    @respx.mock
    async def test_resource_metadata_http_error(self, machine: FlowMachine):
        """Test that a failed fetch reports the status."""
        machine.state = machine.state.update(resource_metadata_url=RESOURCE_METADATA_URL)
        respx.get(RESOURCE_METADATA_URL).respond(404)

        with pytest.raises(DiscoveryError, match="HTTP 404"):
            await machine.fetch_resource_metadata()
        assert len(machine.state.entries(2)) == 1

    @pytest.mark.asyncio
    async def test_requires_resource_metadata_url(self, machine: FlowMachine):
        """Test step 2 cannot run before step 1."""
        with pytest.raises(FlowError, match="resource metadata URL"):
            await machine.fetch_resource_metadata()


class TestClientRegistration:
    """Tests for step 3."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_dynamic_registration(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test DCR stores the credentials and runs once."""
        with_oauth(machine, oauth_metadata)
        route = respx.post(f"{AUTH_SERVER}/register").respond(
            201, json={"client_id": "client-1", "client_secret": "s3cret"}
        )

        await machine.register_client()
        assert await machine.register_client() is None

        assert route.call_count == 1
        body = json.loads(route.calls[0].request.content)
        assert body["redirect_uris"] == ["http://localhost:3000/callback"]
        assert body["token_endpoint_auth_method"] == "client_secret_basic"
        assert machine.state.client_id == "client-1"
        assert machine.state.client_secret == "s3cret"
        assert [e.type for e in machine.state.entries(3)] == ["registration"]

    @pytest.mark.asyncio
    async def test_no_registration_endpoint(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test servers without DCR ask for manual credentials."""
        del oauth_metadata["registration_endpoint"]
        with_oauth(machine, oauth_metadata)

        with pytest.raises(ClientRegistrationError, match="manually"):
            await machine.register_client()
        assert not machine.supports_registration()

    def test_supports_registration(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test the registration check before and after discovery."""
        assert not machine.supports_registration()
        with_oauth(machine, oauth_metadata)
        assert machine.supports_registration()

    @pytest.mark.asyncio
    @respx.mock
    async def test_registration_rejected(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test the server's error is surfaced and recorded."""
        with_oauth(machine, oauth_metadata)
        respx.post(f"{AUTH_SERVER}/register").respond(400, json={"error": "invalid_redirect_uri"})

        with pytest.raises(ClientRegistrationError, match="invalid_redirect_uri"):
            await machine.register_client()
        assert machine.state.client_id is None
        assert len(machine.state.entries(3)) == 1

    def test_manual_credentials(self, machine: FlowMachine):
        """Test manual entry strips input and refuses to overwrite."""
        machine.set_manual_credentials("  client-9 ", "  ")
        assert machine.state.client_id == "client-9"
        assert machine.state.client_secret is None

        with pytest.raises(FlowError, match="already set"):
            machine.set_manual_credentials("other")

    def test_manual_credentials_blank(self, machine: FlowMachine):
        """Test that a blank client ID is refused."""
        with pytest.raises(FlowError, match="required"):
            machine.set_manual_credentials("   ")


class TestAuthorization:
    """Tests for steps 4 and 5."""

    def test_prepare_builds_authorization_url(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test the PKCE values and URL are generated together."""
        with_oauth(machine, oauth_metadata, client_id="client-1", authorization_code="stale")

        state = machine.prepare_authorization(["read", "write"])

        params = parse_qs(urlparse(state.authorization_url).query)
        assert params["client_id"] == ["client-1"]
        assert params["code_challenge"] == [state.code_challenge]
        assert params["code_challenge_method"] == ["S256"]
        assert params["state"] == [state.state]
        assert params["scope"] == ["read write"]
        assert state.authorization_code is None
        assert machine.can_advance(4)

    def test_prepare_requires_client(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test step 4 needs a client."""
        with_oauth(machine, oauth_metadata)
        with pytest.raises(FlowError, match="client"):
            machine.prepare_authorization()

    def test_browser_url_appends_prompt_login(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test the opened URL forces the login page."""
        with_oauth(machine, oauth_metadata, client_id="client-1")
        machine.prepare_authorization()
        assert machine.browser_authorization_url().endswith("&prompt=login")

    def test_browser_host_only_in_proxy_mode(self, settings: Settings, oauth_metadata: dict[str, Any]):
        """Test the browser host override applies to proxy mode only."""
        settings.browser_host = "localhost"
        machine = FlowMachine(settings)
        with_oauth(machine, oauth_metadata, client_id="client-1")
        machine.prepare_authorization()

        assert urlparse(machine.browser_authorization_url()).hostname == "auth.example.com"
        machine.set_mode(RequestMode.PROXY)
        assert urlparse(machine.browser_authorization_url()).hostname == "localhost"

    def test_accept_callback_url(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test a matching state stores the code."""
        with_oauth(machine, oauth_metadata, client_id="client-1")
        state = machine.prepare_authorization().state

        code = machine.accept_authorization_response(f"http://localhost:3000/callback?code=abc&state={state}")

        assert code == "abc"
        assert machine.state.authorization_code == "abc"
        assert machine.furthest_step() == 6

    def test_accept_callback_result(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test a captured CallbackResult is accepted."""
        with_oauth(machine, oauth_metadata, client_id="client-1")
        state = machine.prepare_authorization().state
        url = f"http://localhost:3000/callback?code=xyz&state={state}"

        assert machine.accept_authorization_response(CallbackResult(url=url, code="xyz", state=state)) == "xyz"

    def test_state_mismatch_stores_nothing(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test a forged redirect is rejected without storing the code."""
        with_oauth(machine, oauth_metadata, client_id="client-1")
        machine.prepare_authorization()

        with pytest.raises(StateMismatchError, match="CSRF"):
            machine.accept_authorization_response({"code": "abc", "state": "forged"})
        assert machine.state.authorization_code is None

    def test_error_redirect(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test an error redirect is reported."""
        with_oauth(machine, oauth_metadata, client_id="client-1")
        machine.prepare_authorization()

        with pytest.raises(AuthorizationError, match="access_denied"):
            machine.accept_authorization_response("error=access_denied")

    def test_manual_code(self, machine: FlowMachine):
        """Test pasting a code."""
        machine.set_manual_code(" pasted ")
        assert machine.state.authorization_code == "pasted"
        with pytest.raises(FlowError):
            machine.set_manual_code("")


class TestTokenExchange:
    """Tests for steps 6 and 7."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test the token request shape and stored tokens."""
        authorized(machine, oauth_metadata)
        access_token = make_jwt({"sub": "user-1", "aud": SERVER_URL})
        route = respx.post(f"{AUTH_SERVER}/token").respond(
            200,
            json={"access_token": access_token, "token_type": "Bearer", "expires_in": 3600, "refresh_token": "rt"},
        )

        await machine.exchange_token()

        request = route.calls[0].request
        expected_basic = base64.b64encode(b"client-1:s3cret").decode()
        assert request.headers["authorization"] == f"Basic {expected_basic}"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["code_verifier"] == [machine.state.code_verifier]
        assert form["client_id"] == ["client-1"]

        assert machine.state.access_token == access_token
        assert machine.state.expires_in == 3600
        assert machine.token_claims() == {"sub": "user-1", "aud": SERVER_URL}
        assert machine.furthest_step() == 8

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_is_verbatim(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test the server's error and description are shown as sent."""
        authorized(machine, oauth_metadata)
        respx.post(f"{AUTH_SERVER}/token").respond(
            400, json={"error": "invalid_grant", "error_description": "Code expired"}
        )

        with pytest.raises(TokenExchangeError, match="invalid_grant - Code expired"):
            await machine.exchange_token()
        assert machine.state.access_token is None
        assert [e.type for e in machine.state.entries(6)] == ["token"]

    @pytest.mark.asyncio
    async def test_requires_code(self, machine: FlowMachine):
        """Test step 6 needs an authorization code."""
        with pytest.raises(FlowError, match="authorization code"):
            await machine.exchange_token()

    def test_opaque_token_has_no_claims(self, machine: FlowMachine):
        """Test that opaque tokens are not decoded."""
        machine.state = machine.state.update(access_token="opaque-token")
        assert machine.token_claims() is None


class TestMcpTools:
    """Tests for step 8."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_session_lifecycle(self, machine: FlowMachine):
        """Test initialize, list and call with the captured session id."""
        machine.state = machine.state.update(access_token="tok")
        route = respx.post(SERVER_URL).mock(
            side_effect=[
                httpx.Response(
                    200,
                    headers={"Mcp-Session-Id": "sess-1"},
                    json={"jsonrpc": "2.0", "id": 0, "result": {"serverInfo": {"name": "demo"}}},
                ),
                httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"tools": [{"name": "echo"}]}}),
                httpx.Response(
                    200, json={"jsonrpc": "2.0", "id": 2, "result": {"content": [{"type": "text", "text": "hi"}]}}
                ),
            ]
        )

        await machine.mcp_initialize()
        await machine.mcp_list_tools()
        await machine.mcp_call_tool("echo", '{"message": "hi"}')

        assert machine.state.mcp_session_id == "sess-1"
        assert machine.state.mcp_server_info == {"serverInfo": {"name": "demo"}}
        assert machine.state.tools == ({"name": "echo"},)
        assert machine.state.selected_tool == "echo"
        assert machine.state.tool_result == {"content": [{"type": "text", "text": "hi"}]}
        assert route.calls[2].request.headers["mcp-session-id"] == "sess-1"

        entries = machine.state.entries(8)
        assert [e.type for e in entries] == ["initialize", "list-tools", "call-tool"]
        assert entries[2].tool == "echo"

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_arguments_send_nothing(self, machine: FlowMachine):
        """Test that bad JSON produces no request and no history."""
        machine.state = machine.state.update(access_token="tok")
        route = respx.post(SERVER_URL).respond(200, json={})

        with pytest.raises(ToolArgumentsError):
            await machine.mcp_call_tool("echo", "{not json")

        assert not route.called
        assert machine.state.entries(8) == ()

    @pytest.mark.asyncio
    @respx.mock
    async def test_jsonrpc_error_is_recorded(self, machine: FlowMachine):
        """Test that an error answer is kept in history and raised."""
        machine.state = machine.state.update(access_token="tok")
        respx.post(SERVER_URL).respond(
            200, json={"jsonrpc": "2.0", "id": 2, "error": {"code": -32602, "message": "Unknown tool"}}
        )

        with pytest.raises(McpError, match="Unknown tool"):
            await machine.mcp_call_tool("nope")
        assert [e.type for e in machine.state.entries(8)] == ["call-tool"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_listing_clears_old_tools(self, machine: FlowMachine):
        """Test that a server now offering no tools replaces the earlier list."""
        machine.state = machine.state.update(access_token="tok", tools=({"name": "old"},))
        respx.post(SERVER_URL).respond(200, json={"jsonrpc": "2.0", "id": 1, "result": {"tools": []}})

        await machine.mcp_list_tools()

        assert machine.state.tools == ()

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_listing_keeps_tools(self, machine: FlowMachine):
        """Test that an error answer leaves the earlier list alone."""
        machine.state = machine.state.update(access_token="tok", tools=({"name": "old"},))
        respx.post(SERVER_URL).respond(
            200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32603, "message": "boom"}}
        )

        with pytest.raises(McpError, match="boom"):
            await machine.mcp_list_tools()
        assert machine.state.tools == ({"name": "old"},)

    @pytest.mark.asyncio
    async def test_requires_access_token(self, machine: FlowMachine):
        """Test that MCP calls need a token."""
        with pytest.raises(FlowError, match="access token"):
            await machine.mcp_initialize()


class TestNavigation:
    """Tests for step navigation, mode and reset."""

    def test_advance_respects_gates(self, machine: FlowMachine):
        """Test that advancing stops at a closed gate."""
        machine.advance()
        assert machine.state.current_step == 1
        with pytest.raises(StepGateError, match="Connect to the server"):
            machine.advance()

    def test_go_to(self, machine: FlowMachine, oauth_metadata: dict[str, Any]):
        """Test jumping back and forth within the reachable range."""
        with_oauth(machine, oauth_metadata)
        machine.go_to(3)
        machine.go_to(1)
        assert machine.state.current_step == 1
        with pytest.raises(StepGateError, match="not reachable"):
            machine.go_to(5)
        with pytest.raises(FlowError, match="between"):
            machine.go_to(9)

    def test_advance_past_last_step(self, machine: FlowMachine):
        """Test there is no step after MCP Tools."""
        machine.state = machine.state.update(current_step=8)
        with pytest.raises(FlowError, match="last step"):
            machine.advance()

    def test_state_persists_across_machines(self, settings: Settings, store: StateStore):
        """Test that a new machine resumes from the saved state."""
        first = FlowMachine(settings, store=store)
        first.set_manual_credentials("client-1")
        first.go_to(1)

        second = FlowMachine(settings, store=StateStore(settings.state_dir))
        assert second.state.client_id == "client-1"
        assert second.state.current_step == 1

    def test_reset_prefers_available_channels(self, machine: FlowMachine, settings: Settings):
        """Test reset picks proxy, then extension, then direct."""
        machine.set_manual_credentials("client-1")
        assert machine.reset().request_mode is RequestMode.DIRECT
        assert machine.state.client_id is None
        assert not machine.store.path.exists()

        machine.proxy_available = True
        assert machine.reset().request_mode is RequestMode.PROXY

        machine.proxy_available = False
        socket_path = settings.bridge_socket
        socket_path.parent.mkdir(parents=True, exist_ok=True)
        socket_path.touch()
        get_bridge_marker_path(socket_path).write_text("true")
        assert machine.reset().request_mode is RequestMode.EXTENSION

    @pytest.mark.asyncio
    @respx.mock
    async def test_proxy_down_falls_back_to_direct(self, machine: FlowMachine):
        """Test that a dead relay switches proxy mode to direct."""
        respx.get(f"{PROXY_URL}/api/health").mock(side_effect=httpx.ConnectError("refused"))
        machine.set_mode(RequestMode.PROXY)

        assert not await machine.refresh_proxy_availability()
        assert machine.state.request_mode is RequestMode.DIRECT

    @pytest.mark.asyncio
    @respx.mock
    async def test_proxy_mode_routes_through_relay(self, machine: FlowMachine):
        """Test requests in proxy mode go to the relay endpoint."""
        relay = respx.post(f"{PROXY_URL}/api/proxy").respond(
            200,
            json={
                "request": {"method": "GET", "url": SERVER_URL, "headers": {}, "body": None},
                "response": {
                    "status": 401,
                    "statusText": "Unauthorized",
                    "headers": {"www-authenticate": WWW_AUTHENTICATE},
                    "body": None,
                },
                "duration": 5,
            },
        )
        machine.set_mode("proxy")

        result = await machine.connect()

        assert json.loads(relay.calls[0].request.content)["url"] == SERVER_URL
        assert result.resource_metadata_url == RESOURCE_METADATA_URL


class TestAvailabilityMonitor:
    """Tests for the background availability checks."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_checks_both_channels(self, machine: FlowMachine, settings: Settings):
        """Test the monitor updates proxy availability and detects the bridge."""
        health = respx.get(f"{PROXY_URL}/api/health").respond(200, json={"status": "ok"})

        async with AvailabilityMonitor(machine, proxy_interval=0.01, bridge_interval=0.01) as monitor:
            socket_path: Path = settings.bridge_socket
            socket_path.parent.mkdir(parents=True, exist_ok=True)
            socket_path.touch()
            get_bridge_marker_path(socket_path).write_text("true")
            await asyncio.sleep(0.1)
            bridge_task = monitor._tasks[1]
            assert bridge_task.done()

        assert health.called
        assert machine.proxy_available is True
        assert machine.refresh_bridge_availability()

    @pytest.mark.asyncio
    @respx.mock
    async def test_relay_dying_mid_session_switches_to_direct(self, machine: FlowMachine):
        """Test that a relay going away during the flow sends later requests directly."""
        respx.get(f"{PROXY_URL}/api/health").mock(
            side_effect=[httpx.Response(200, json={"status": "ok"})] + [httpx.ConnectError("refused")] * 50
        )
        relay = respx.post(f"{PROXY_URL}/api/proxy")
        direct = respx.get(SERVER_URL).respond(401, headers={"WWW-Authenticate": WWW_AUTHENTICATE})

        async with AvailabilityMonitor(machine, proxy_interval=0.01, bridge_interval=0.01):
            machine.set_mode(RequestMode.PROXY)
            for _ in range(50):
                await asyncio.sleep(0.01)
                if machine.state.request_mode is RequestMode.DIRECT:
                    break
            result = await machine.connect()

        assert machine.proxy_available is False
        assert machine.state.request_mode is RequestMode.DIRECT
        assert not relay.called
        assert direct.called
        assert result.resource_metadata_url == RESOURCE_METADATA_URL

"""The playground's flow state machine.

``FlowMachine`` owns the ``FlowState`` and performs every protocol step:

    0 Introduction
    1 Initial Connection      connect(), fallback_discovery(), select_discovery_result()
    2 Metadata Discovery      fetch_resource_metadata(), fetch_oauth_metadata()
    3 Client Registration     register_client(), set_manual_credentials()
    4 Prepare Authorization   prepare_authorization()
    5 Authorization           browser_authorization_url(), accept_authorization_response(),
                              set_manual_code()
    6 Token Request           exchange_token()
    7 Auth Complete           token_claims()
    8 MCP Tools               mcp_initialize(), mcp_list_tools(), mcp_call_tool()

Every network call is recorded in the step's history before its outcome
is interpreted, and every state change is saved (best effort) right away.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .bridge import ExtensionBridge
from .config import Settings
from .oauth.callback import CallbackResult
from .oauth.discovery import (
    AuthServerMetadata,
    DiscoveryError,
    DiscoveryResult,
    _http_status_hint,
    extract_authorization_server,
    extract_resource_metadata_url,
    failed_probe,
    fallback_probe_targets,
    is_metadata_document,
    oauth_metadata_candidates,
    parse_www_authenticate,
    probe_result,
)
from .oauth.flow import (
    ClientRegistrationError,
    build_authorization_url,
    build_browser_url,
    build_registration_request,
    build_token_request,
    parse_callback_params,
    parse_registration_response,
    parse_token_response,
    validate_authorization_response,
)
from .oauth.pkce import generate_pkce_parameters
from .oauth.tokens import ClientCredentials, TokenDecodeError, decode_jwt_payload
from .session import McpCallResult, McpError, McpSessionClient, extract_tools, parse_tool_arguments
from .state import (
    FIRST_STEP,
    GATE_HINTS,
    LAST_STEP,
    STEP_TITLES,
    FlowState,
    HistoryEntry,
    can_advance,
    furthest_step,
)
from .store import StateStore
from .transport import Exchange, HttpRequest, RequestMode, Transport, TransportError

logger = logging.getLogger(__name__)

# Polling intervals of the availability monitor (seconds)
PROXY_CHECK_INTERVAL = 10.0
BRIDGE_CHECK_INTERVAL = 0.5

ACCEPT_JSON = {"Accept": "application/json"}


class FlowError(Exception):
    """A step cannot run because data it needs is missing or invalid."""

    pass


class StepGateError(FlowError):
    """Navigation was refused because a step's precondition is not met."""

    pass


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of the unauthenticated probe.

    Attributes:
        exchange: The recorded request/response
        resource_metadata_url: URL from the WWW-Authenticate hint, if any
        fallback_recommended: True when the hint is missing and the user
            should run fallback discovery
        challenge: Scheme and auth-params of the WWW-Authenticate header
    """

    exchange: Exchange
    resource_metadata_url: str | None
    fallback_recommended: bool
    challenge: dict[str, str] = field(default_factory=dict)


class FlowMachine:
    """Drives the OAuth + MCP flow one step at a time.

    Usage:
        machine = FlowMachine(settings, store=StateStore(settings.state_dir))
        try:
            await machine.connect("https://mcp.example.com/mcp")
            await machine.fetch_resource_metadata()
        finally:
            await machine.aclose()
    """

    def __init__(
        self,
        settings: Settings,
        transport: Transport | None = None,
        store: StateStore | None = None,
        state: FlowState | None = None,
    ):
        """Initialize the machine.

        Args:
            settings: Runtime settings
            transport: Optional transport (created from settings otherwise)
            store: Optional persistent store; without one state lives in memory
            state: Optional initial state (loaded from the store otherwise)
        """
        self.settings = settings
        self.transport = transport or Transport(
            proxy_url=settings.proxy_url,
            timeout=settings.http_timeout,
            bridge=ExtensionBridge(settings.bridge_socket),
        )
        self.store = store
        self.proxy_available: bool | None = None

        if state is not None:
            self.state = state
        elif store is not None:
            self.state = store.load(self.default_state())
        else:
            self.state = self.default_state()

    def default_state(self, mode: RequestMode | None = None) -> FlowState:
        """A fresh state seeded from settings."""
        return FlowState(
            mcp_server_url=self.settings.server_url,
            request_mode=mode or RequestMode.coerce(self.settings.request_mode),
        )

    # State plumbing

    def _commit(self, state: FlowState) -> FlowState:
        self.state = state
        if self.store is not None:
            self.store.save(state)
        return state

    @staticmethod
    def _entry(exchange: Exchange, entry_type: str, tool: str | None = None) -> HistoryEntry:
        return HistoryEntry(
            request=exchange.request.to_dict(),
            response=exchange.response.to_dict(),
            type=entry_type,
            tool=tool,
        )

    def _record(self, step: int, exchange: Exchange, entry_type: str, tool: str | None = None) -> None:
        self._commit(self.state.with_history(step, self._entry(exchange, entry_type, tool)))

    async def _send(self, request: HttpRequest) -> Exchange:
        return await self.transport.send(request, self.state.request_mode)

    def _auth_server_metadata(self) -> AuthServerMetadata:
        if not self.state.oauth_metadata:
            raise FlowError("No OAuth metadata yet. Complete metadata discovery first.")
        return AuthServerMetadata.from_dict(self.state.oauth_metadata)

    def supports_registration(self) -> bool:
        """Check the discovered metadata for a registration endpoint."""
        return bool(self.state.oauth_metadata) and self._auth_server_metadata().supports_dcr()

    # Step 1: Initial Connection

    async def connect(self, url: str | None = None) -> ConnectResult:
        """Probe the MCP server without credentials, expecting a 401.

        Raises:
            FlowError: If no server URL is set
            TransportError: If the request could not be delivered
        """
        if url is not None:
            self.set_server_url(url)
        server_url = self.state.mcp_server_url
        if not server_url:
            raise FlowError("Please enter an MCP server URL")

        exchange = await self._send(HttpRequest("GET", server_url, dict(ACCEPT_JSON)))
        self._record(1, exchange, "connect")

        status = exchange.response.status
        metadata_url: str | None = None
        challenge: dict[str, str] = {}
        fallback = False

        if status == 401:
            www_authenticate = exchange.response.header("www-authenticate")
            if www_authenticate:
                challenge = parse_www_authenticate(www_authenticate)
                metadata_url = extract_resource_metadata_url(www_authenticate)
                changes: dict[str, Any] = {"www_authenticate": www_authenticate}
                if metadata_url:
                    changes["resource_metadata_url"] = metadata_url
                self._commit(self.state.update(**changes))
                fallback = metadata_url is None
            else:
                fallback = True
        elif 400 <= status < 500:
            fallback = True

        if fallback:
            logger.info(f"No resource_metadata hint from {server_url} (HTTP {status}); fallback discovery recommended")
        return ConnectResult(exchange, metadata_url, fallback, challenge)

    async def fallback_discovery(self) -> list[DiscoveryResult]:
        """Probe the well-known metadata endpoints one after another.

        Transport failures become "error" results; probing always continues.
        """
        server_url = self.state.mcp_server_url
        if not server_url:
            raise FlowError("Please enter an MCP server URL")

        results: list[DiscoveryResult] = []
        for url, base in fallback_probe_targets(server_url):
            try:
                exchange = await self._send(HttpRequest("GET", url, dict(ACCEPT_JSON)))
            except TransportError as e:
                logger.debug(f"Probe {url} failed: {e}")
                results.append(failed_probe(url, base, e))
                continue
            self._record(1, exchange, "fallback-discovery")
            results.append(probe_result(url, base, exchange))

        found = sum(1 for r in results if r.success)
        logger.info(f"Fallback discovery found {found} metadata document(s) in {len(results)} probes")
        return results

    def select_discovery_result(self, result: DiscoveryResult) -> FlowState:
        """Adopt a successful probe as the flow's metadata.

        A resource document continues the normal flow (OAuth metadata is
        fetched in step 2); an authorization server or OIDC document is
        stored as the OAuth metadata directly.

        Raises:
            DiscoveryError: If the result is not a successful probe
        """
        if not result.success or not isinstance(result.body, dict):
            raise DiscoveryError(f"Probe {result.url} did not return metadata and cannot be selected")

        if result.metadata_type == "resource":
            return self._commit(
                self.state.update(
                    resource_metadata_url=result.url,
                    resource_metadata=result.body,
                    authorization_server_url=extract_authorization_server(result.body),
                    manual_discovery=True,
                    oauth_metadata=None,
                    oauth_metadata_from_fallback=False,
                )
            )

        if result.metadata_type in ("oauth-as", "oidc"):
            return self._commit(
                self.state.update(
                    resource_metadata_url=result.url,
                    authorization_server_url=result.body.get("issuer") or result.base,
                    oauth_metadata=result.body,
                    manual_discovery=True,
                    oauth_metadata_from_fallback=True,
                )
            )

        raise DiscoveryError(f"Unrecognized metadata type for {result.url}")

    # Step 2: Metadata Discovery

    async def fetch_resource_metadata(self) -> Exchange:
        """Fetch Protected Resource Metadata (RFC 9728).

        Raises:
            FlowError: If no resource metadata URL is known
            DiscoveryError: If the response is not a metadata document
        """
        url = self.state.resource_metadata_url
        if not url:
            raise FlowError(
                "No resource metadata URL found. Connect first or run fallback discovery."
            )

        exchange = await self._send(HttpRequest("GET", url, dict(ACCEPT_JSON)))
        self._record(2, exchange, "resource_metadata")

        if not is_metadata_document(exchange):
            status = exchange.response.status
            hint = _http_status_hint(status)
            raise DiscoveryError(
                f"Failed to fetch protected resource metadata from {url}: HTTP {status}"
                + (f". {hint}" if hint else "")
            )

        metadata = exchange.response.body
        authorization_server = extract_authorization_server(metadata)
        self._commit(
            self.state.update(
                resource_metadata=metadata,
                authorization_server_url=authorization_server,
            )
        )
        if not authorization_server:
            raise DiscoveryError(
                f"Resource metadata from {url} does not name an authorization server "
                f"('authorization_servers' is missing)"
            )
        return exchange

    async def fetch_oauth_metadata(self) -> Exchange:
        """Fetch Authorization Server Metadata, trying each candidate URL in order.

        Raises:
            FlowError: If no authorization server URL is known
            DiscoveryError: If no candidate returned a metadata document
        """
        authorization_server = self.state.authorization_server_url
        if not authorization_server:
            raise FlowError(
                "No authorization server URL yet. Fetch the resource metadata first."
            )

        errors: list[tuple[str, str]] = []
        for candidate in oauth_metadata_candidates(authorization_server):
            try:
                exchange = await self._send(HttpRequest("GET", candidate, dict(ACCEPT_JSON)))
            except TransportError as e:
                errors.append((candidate, str(e)))
                continue

            self._record(2, exchange, "oauth_metadata")
            if is_metadata_document(exchange):
                self._commit(
                    self.state.update(
                        oauth_metadata=exchange.response.body,
                        oauth_metadata_from_fallback=False,
                    )
                )
                return exchange

            status = exchange.response.status
            hint = _http_status_hint(status)
            errors.append((candidate, f"HTTP {status}" + (f" ({hint})" if hint else "")))

        details = "\n".join(f"  - {url}: {err}" for url, err in errors)
        raise DiscoveryError(
            f"Failed to fetch OAuth metadata for {authorization_server}.\n"
            f"Tried the following endpoints:\n{details}"
        )

    # Step 3: Client Registration

    async def register_client(self, client_name: str | None = None) -> Exchange | None:
        """Register via Dynamic Client Registration (RFC 7591).

        Does nothing once a client_id is set.

        Returns:
            The registration exchange, or None if already registered

        Raises:
            ClientRegistrationError: If the server has no registration
                endpoint or rejects the registration
        """
        if self.state.client_id:
            logger.info(f"Client already registered as {self.state.client_id}; skipping registration")
            return None

        metadata = self._auth_server_metadata()
        endpoint = metadata.registration_endpoint
        if not metadata.supports_dcr() or not endpoint:
            raise ClientRegistrationError(
                "No registration endpoint found in OAuth metadata. "
                "Enter client credentials manually instead."
            )

        request = build_registration_request(
            endpoint,
            self.settings.redirect_uri,
            client_name or self.settings.client_name,
        )
        exchange = await self._send(request)
        self._record(3, exchange, "registration")

        credentials = parse_registration_response(exchange)
        self._commit(
            self.state.update(
                client_id=credentials.client_id,
                client_secret=credentials.client_secret,
            )
        )
        return exchange

    def set_manual_credentials(self, client_id: str, client_secret: str | None = None) -> FlowState:
        """Use pre-provisioned client credentials instead of registering.

        Raises:
            FlowError: If the client ID is blank or a client is already set
        """
        client_id = (client_id or "").strip()
        if not client_id:
            raise FlowError("Client ID is required")
        if self.state.client_id:
            raise FlowError(
                f"A client is already set ({self.state.client_id}). Reset the flow to use another."
            )
        return self._commit(
            self.state.update(
                client_id=client_id,
                client_secret=(client_secret or "").strip() or None,
            )
        )

    # Step 4: Prepare Authorization

    def prepare_authorization(self, scopes: list[str] | None = None) -> FlowState:
        """Generate PKCE values and state, and assemble the authorization URL.

        Raises:
            FlowError: If no client is registered
            DiscoveryError: If the OAuth metadata lacks required endpoints
        """
        if not self.state.client_id:
            raise FlowError("No client ID yet. Register a client first.")
        metadata = self._auth_server_metadata()
        if not metadata.supports_pkce():
            logger.warning("Authorization server does not advertise S256 PKCE support")

        pkce = generate_pkce_parameters()
        authorization_url = build_authorization_url(
            metadata.authorization_endpoint,
            self.state.client_id,
            self.settings.redirect_uri,
            pkce.challenge,
            pkce.state,
            scopes,
        )
        return self._commit(
            self.state.update(
                code_verifier=pkce.verifier,
                code_challenge=pkce.challenge,
                state=pkce.state,
                authorization_url=authorization_url,
                authorization_code=None,
            )
        )

    # Step 5: Authorization

    def browser_authorization_url(self) -> str:
        """The URL to open in the browser, with ``prompt=login`` appended."""
        if not self.state.authorization_url:
            raise FlowError("No authorization URL yet. Prepare authorization first.")
        host = self.settings.browser_host if self.state.request_mode is RequestMode.PROXY else None
        return build_browser_url(self.state.authorization_url, host)

    def accept_authorization_response(self, callback: str | CallbackResult | dict[str, str]) -> str:
        """Validate the authorization redirect and store its code.

        Args:
            callback: The callback URL, a captured CallbackResult, or its query params

        Returns:
            The authorization code

        Raises:
            AuthorizationError: If the server returned an error
            StateMismatchError: If the state does not match (code not stored)
        """
        if isinstance(callback, CallbackResult):
            params = parse_callback_params(callback.url)
        elif isinstance(callback, dict):
            params = dict(callback)
        else:
            params = parse_callback_params(callback)

        code = validate_authorization_response(params, self.state.state)
        self._commit(self.state.update(authorization_code=code))
        return code

    def set_manual_code(self, code: str) -> FlowState:
        """Store a pasted authorization code."""
        code = (code or "").strip()
        if not code:
            raise FlowError("Authorization code is required")
        return self._commit(self.state.update(authorization_code=code))

    # Step 6: Token Request

    async def exchange_token(self) -> Exchange:
        """Exchange the authorization code for tokens.

        Raises:
            FlowError: If the code, client or verifier is missing
            TokenExchangeError: With the server's error verbatim
        """
        if not self.state.authorization_code:
            raise FlowError("No authorization code available")
        if not self.state.client_id or not self.state.code_verifier:
            raise FlowError("Client ID and code verifier are required. Prepare authorization first.")
        metadata = self._auth_server_metadata()

        request = build_token_request(
            metadata.token_endpoint,
            self.state.authorization_code,
            self.settings.redirect_uri,
            ClientCredentials(self.state.client_id, self.state.client_secret),
            self.state.code_verifier,
        )
        exchange = await self._send(request)
        self._record(6, exchange, "token")

        tokens = parse_token_response(exchange)
        self._commit(
            self.state.update(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_type=tokens.token_type,
                expires_in=tokens.expires_in,
            )
        )
        return exchange

    # Step 7: Auth Complete

    def token_claims(self) -> dict[str, Any] | None:
        """Decoded JWT claims of the access token, or None if it is opaque."""
        if not self.state.access_token:
            return None
        try:
            return decode_jwt_payload(self.state.access_token)
        except TokenDecodeError as e:
            logger.debug(f"Access token is not a decodable JWT: {e}")
            return None

    # Step 8: MCP Tools

    def _mcp_client(self) -> McpSessionClient:
        if not self.state.access_token:
            raise FlowError("No access token yet. Complete the token request first.")
        if not self.state.mcp_server_url:
            raise FlowError("Please enter an MCP server URL")
        return McpSessionClient(
            self.transport,
            self.state.request_mode,
            self.state.mcp_server_url,
            self.state.access_token,
            session_id=self.state.mcp_session_id,
        )

    async def mcp_initialize(self) -> McpCallResult:
        """Open an MCP session and remember the session id and server info.

        Raises:
            McpError: If the server answered with an error
        """
        result = await self._mcp_client().initialize()
        state = self.state.with_history(8, self._entry(result.exchange, "initialize"))
        changes: dict[str, Any] = {}
        if result.session_id:
            changes["mcp_session_id"] = result.session_id
        if result.ok and isinstance(result.result, dict):
            changes["mcp_server_info"] = result.result
        self._commit(state.update(**changes) if changes else state)

        if result.error:
            raise McpError(result.error)
        return result

    async def mcp_list_tools(self) -> McpCallResult:
        """List tools, replaying the session id when one was captured.

        Raises:
            McpError: If the server answered with an error
        """
        result = await self._mcp_client().list_tools()
        state = self.state.with_history(8, self._entry(result.exchange, "list-tools"))
        if result.error is None:
            state = state.update(tools=tuple(extract_tools(result.message)))
        self._commit(state)

        if result.error:
            raise McpError(result.error)
        return result

    async def mcp_call_tool(self, name: str, arguments_json: str | None = "{}") -> McpCallResult:
        """Invoke a tool.

        Arguments are validated before anything is sent; invalid JSON
        produces no request and no history entry.

        Raises:
            ToolArgumentsError: If the arguments are not a JSON object
            McpError: If the server answered with an error
        """
        arguments = parse_tool_arguments(arguments_json)
        if not name:
            raise FlowError("Select a tool to call")

        result = await self._mcp_client().call_tool(name, arguments)
        state = self.state.with_history(8, self._entry(result.exchange, "call-tool", tool=name))
        tool_result = result.result if result.result is not None else result.message
        self._commit(state.update(selected_tool=name, tool_result=tool_result))

        if result.error:
            raise McpError(result.error)
        return result

    # Navigation

    def furthest_step(self) -> int:
        """The furthest step reachable from the collected data."""
        return furthest_step(self.state)

    def can_advance(self, step: int | None = None) -> bool:
        """Check the gate out of ``step`` (default: current step)."""
        return can_advance(self.state, step)

    def go_to(self, step: int) -> FlowState:
        """Jump to any step up to the furthest reachable one.

        Raises:
            StepGateError: If the step is beyond the furthest reachable step
        """
        if not FIRST_STEP <= step <= LAST_STEP:
            raise FlowError(f"Step must be between {FIRST_STEP} and {LAST_STEP}, got {step}")
        furthest = self.furthest_step()
        if step > furthest:
            raise StepGateError(
                f"Step {step} ({STEP_TITLES[step]}) is not reachable yet; "
                f"the furthest reachable step is {furthest} ({STEP_TITLES[furthest]})"
            )
        return self._commit(self.state.update(current_step=step))

    def advance(self) -> FlowState:
        """Move to the next step if the current step's gate is open.

        Raises:
            StepGateError: If the gate is closed
        """
        step = self.state.current_step
        if step >= LAST_STEP:
            raise FlowError(f"Already at the last step ({STEP_TITLES[LAST_STEP]})")
        if not self.can_advance(step):
            raise StepGateError(
                f"Cannot leave step {step} ({STEP_TITLES[step]}) yet: {GATE_HINTS.get(step, '')}"
            )
        return self._commit(self.state.update(current_step=step + 1))

    def set_mode(self, mode: RequestMode | str | bool) -> FlowState:
        """Select the transport channel."""
        return self._commit(self.state.update(request_mode=RequestMode.coerce(mode)))

    def set_server_url(self, url: str) -> FlowState:
        """Set the target MCP server URL."""
        return self._commit(self.state.update(mcp_server_url=url.strip()))

    def reset(self) -> FlowState:
        """Wipe the saved state and start over.

        The new state prefers proxy mode when the relay is known to be up,
        then extension mode when the bridge agent is detected, else direct.
        """
        if self.store is not None:
            self.store.clear()

        if self.proxy_available:
            mode = RequestMode.PROXY
        elif self.transport.bridge.is_available():
            mode = RequestMode.EXTENSION
        else:
            mode = RequestMode.DIRECT

        self.state = self.default_state(mode)
        logger.info(f"Flow reset (mode: {mode.value})")
        return self.state

    # Availability

    async def refresh_proxy_availability(self) -> bool:
        """Health-check the relay; fall back to direct mode if it is down while selected."""
        available = await self.transport.check_proxy_health()
        self.proxy_available = available
        if not available and self.state.request_mode is RequestMode.PROXY:
            logger.warning(
                f"Proxy relay at {self.transport.proxy_url} is not responding; "
                f"switching to direct mode"
            )
            self.set_mode(RequestMode.DIRECT)
        return available

    def refresh_bridge_availability(self) -> bool:
        """Check whether the bridge agent is detected."""
        return self.transport.bridge.is_available()

    async def aclose(self) -> None:
        """Release the transport."""
        await self.transport.aclose()


class AvailabilityMonitor:
    """Background checks of the relay and bridge agent.

    Runs two independent tasks, the relay health check every 10 s and the
    bridge readiness check every 0.5 s until the agent is seen. Neither
    blocks flow actions.

    Usage:
        async with AvailabilityMonitor(machine):
            await machine.connect()
    """

    def __init__(
        self,
        machine: FlowMachine,
        proxy_interval: float = PROXY_CHECK_INTERVAL,
        bridge_interval: float = BRIDGE_CHECK_INTERVAL,
    ):
        self.machine = machine
        self.proxy_interval = proxy_interval
        self.bridge_interval = bridge_interval
        self._tasks: list[asyncio.Task[None]] = []

    async def _watch_proxy(self) -> None:
        while True:
            await self.machine.refresh_proxy_availability()
            await asyncio.sleep(self.proxy_interval)

    async def _watch_bridge(self) -> None:
        while not self.machine.refresh_bridge_availability():
            await asyncio.sleep(self.bridge_interval)

    def start(self) -> None:
        """Start both watchers."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._watch_proxy()),
            asyncio.create_task(self._watch_bridge()),
        ]

    async def stop(self) -> None:
        """Cancel both watchers."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "AvailabilityMonitor":
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

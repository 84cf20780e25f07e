"""CLI entry point for the MCP Auth Playground."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import webbrowser
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

import click

from . import __version__
from .bridge import ExtensionBridge, run_bridge_agent
from .config import Settings, load_settings
from .machine import AvailabilityMonitor, FlowError, FlowMachine, StepGateError
from .oauth.callback import DEFAULT_TIMEOUT, CallbackError, LocalhostCallbackServer
from .oauth.discovery import DiscoveryError
from .oauth.flow import ClientRegistrationError, OAuthFlowError, StateMismatchError
from .output import OutputHandler, format_body, preview_secret
from .relay import DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT, run_relay
from .session import McpError, ToolArgumentsError, extract_tools
from .state import STEP_TITLES, latest_entry
from .store import StateStore, StoreError
from .transport import (
    ChannelBlockedError,
    ExtensionUnavailableError,
    RelayError,
    RequestMode,
    TransportError,
)

# Logger for CLI
logger = logging.getLogger("mcpap")

T = TypeVar("T")

# Errors reported to the user instead of crashing with a traceback
PLAYGROUND_ERRORS = (
    FlowError,
    OAuthFlowError,
    DiscoveryError,
    TransportError,
    McpError,
    CallbackError,
    StoreError,
)


def _error_hint(error: Exception) -> str | None:
    """Suggest a next action for a failed step."""
    if isinstance(error, ChannelBlockedError):
        return (
            "The direct channel could not reach the server. Switch channels:\n"
            "  mcpap relay            (in another terminal), then  mcpap mode proxy\n"
            "  mcpap bridge start     (in another terminal), then  mcpap mode extension"
        )
    if isinstance(error, ExtensionUnavailableError):
        return "Start the bridge agent with 'mcpap bridge start' or switch with 'mcpap mode direct'."
    if isinstance(error, RelayError) or (
        isinstance(error, TransportError) and "relay" in str(error)
    ):
        return "Start the proxy relay with 'mcpap relay' or switch with 'mcpap mode direct'."
    if isinstance(error, StepGateError):
        return "Run 'mcpap status' to see which steps are reachable."
    if isinstance(error, StateMismatchError):
        return "Run 'mcpap prepare' to generate a fresh state, then authorize again."
    if isinstance(error, ClientRegistrationError):
        return "Enter credentials manually: mcpap register --client-id <id> [--client-secret <secret>]"
    if isinstance(error, ToolArgumentsError):
        return "Arguments must be a JSON object.\n\nExample: mcpap mcp call echo '{\"message\": \"hi\"}'"
    if isinstance(error, DiscoveryError):
        return "Try 'mcpap fallback' to probe the well-known metadata endpoints."
    return None


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging and full request/response output")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """MCP Auth Playground - Step through OAuth 2.1 + PKCE against an MCP server."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode, verbose=verbose)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_settings(ctx: click.Context) -> Settings | NoReturn:
    """Get settings from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["env_path"])
    except ValueError as e:
        output.error(e, error_type="ConfigError", help_text="Check your MCP_PLAYGROUND_* environment variables.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def run_flow(ctx: click.Context, operation: Callable[[FlowMachine], Awaitable[T]]) -> T | NoReturn:
    """Load the saved flow, run one operation against it, and report errors.

    When proxy mode is selected, the relay is health-checked first and the
    flow falls back to direct mode if it is down.
    """
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    async def runner() -> T:
        machine = FlowMachine(settings, store=StateStore(settings.state_dir))
        try:
            if machine.state.request_mode is RequestMode.PROXY:
                await machine.refresh_proxy_availability()
            return await operation(machine)
        finally:
            await machine.aclose()

    try:
        return asyncio.run(runner())
    except PLAYGROUND_ERRORS as e:
        output.error(e, help_text=_error_hint(e))
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def _enter(machine: FlowMachine, step: int) -> None:
    """Move to ``step`` when navigation allows it."""
    if machine.state.current_step == step:
        return
    if step <= machine.furthest_step():
        machine.go_to(step)
    elif step == machine.state.current_step + 1 and machine.can_advance():
        machine.advance()


# Flow navigation


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show flow progress, the selected channel and collected data."""
    output: OutputHandler = ctx.obj["output"]

    async def show(machine: FlowMachine) -> None:
        proxy_available = machine.proxy_available
        if proxy_available is None:
            proxy_available = await machine.transport.check_proxy_health()
        output.flow_status(
            machine.state,
            machine.furthest_step(),
            proxy_available=proxy_available,
            bridge_available=machine.refresh_bridge_availability(),
            keyring_in_use=machine.store.is_using_keyring() if machine.store else None,
        )

    run_flow(ctx, show)


@main.command()
@click.argument("mode", type=click.Choice([m.value for m in RequestMode]))
@click.pass_context
def mode(ctx: click.Context, mode: str) -> None:
    """Select the transport channel: direct, proxy or extension."""
    output: OutputHandler = ctx.obj["output"]

    async def select(machine: FlowMachine) -> None:
        machine.set_mode(mode)
        warning = None
        if machine.state.request_mode is RequestMode.PROXY:
            if not await machine.refresh_proxy_availability():
                warning = (
                    f"Proxy relay at {machine.transport.proxy_url} is not responding; "
                    f"staying in direct mode. Start it with 'mcpap relay'."
                )
        elif machine.state.request_mode is RequestMode.EXTENSION and not machine.refresh_bridge_availability():
            warning = "Bridge agent not detected yet. Start it with 'mcpap bridge start'."

        selected = machine.state.request_mode.value
        if ctx.obj["json_mode"]:
            output.success({"mode": selected, "warning": warning})
        else:
            click.secho(f"Request mode: {selected}", fg="green")
            if warning:
                click.secho(warning, fg="yellow")

    run_flow(ctx, select)


@main.command()
@click.argument("step", type=click.IntRange(0, len(STEP_TITLES) - 1))
@click.pass_context
def goto(ctx: click.Context, step: int) -> None:
    """Jump to any step up to the furthest reachable one."""
    output: OutputHandler = ctx.obj["output"]

    async def jump(machine: FlowMachine) -> None:
        machine.go_to(step)
        output.success({"currentStep": step}, f"Now at step {step}: {STEP_TITLES[step]}")

    run_flow(ctx, jump)


@main.command("next")
@click.pass_context
def next_step(ctx: click.Context) -> None:
    """Advance to the next step if the current step is complete."""
    output: OutputHandler = ctx.obj["output"]

    async def advance(machine: FlowMachine) -> None:
        machine.advance()
        step = machine.state.current_step
        output.success({"currentStep": step}, f"Now at step {step}: {STEP_TITLES[step]}")

    run_flow(ctx, advance)


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset(ctx: click.Context, yes: bool) -> None:
    """Wipe the saved flow and start over."""
    output: OutputHandler = ctx.obj["output"]
    if not yes and not ctx.obj["json_mode"]:
        click.confirm("Discard all collected data and history?", abort=True)

    async def wipe(machine: FlowMachine) -> None:
        await machine.refresh_proxy_availability()
        machine.reset()
        selected = machine.state.request_mode.value
        output.success({"mode": selected}, f"Flow reset. Request mode: {selected}")

    run_flow(ctx, wipe)


@main.command()
@click.option("--step", "-s", type=click.IntRange(0, len(STEP_TITLES) - 1), help="Only show one step")
@click.option("--type", "-t", "entry_type", help="Only show entries of this type (e.g. oauth_metadata)")
@click.option("--latest", is_flag=True, help="Only show the most recent entry of each step")
@click.pass_context
def history(ctx: click.Context, step: int | None, entry_type: str | None, latest: bool) -> None:
    """Show every recorded request and response."""
    output: OutputHandler = ctx.obj["output"]

    async def show(machine: FlowMachine) -> None:
        state = machine.state
        steps = [step] if step is not None else sorted(state.history)
        entries: dict[int, tuple[Any, ...]] = {}
        for index in steps:
            if latest:
                entry = latest_entry(state, index, entry_type)
                found = (entry,) if entry is not None else ()
            else:
                found = state.entries(index, entry_type)
            if found:
                entries[index] = found
        output.history(entries)

    run_flow(ctx, show)


# Step 1: Initial Connection


@main.command()
@click.argument("url", required=False)
@click.pass_context
def connect(ctx: click.Context, url: str | None) -> None:
    """Probe the MCP server without credentials.

    URL defaults to the saved server URL (or MCP_PLAYGROUND_SERVER_URL).
    """
    output: OutputHandler = ctx.obj["output"]

    async def probe(machine: FlowMachine) -> None:
        _enter(machine, 1)
        result = await machine.connect(url)
        if ctx.obj["json_mode"]:
            output.success({
                "exchange": result.exchange.to_dict(),
                "resourceMetadataUrl": result.resource_metadata_url,
                "fallbackRecommended": result.fallback_recommended,
                "challenge": result.challenge,
            })
            return

        output.exchange(result.exchange, "Initial connection")
        if result.challenge:
            params = ", ".join(f"{key}={value}" for key, value in result.challenge.items() if key != "scheme")
            click.echo(f"\nChallenge: {result.challenge['scheme']} {params}".rstrip())
        if result.resource_metadata_url:
            click.secho(f"\nResource metadata: {result.resource_metadata_url}", fg="green")
            click.echo("Next: ", nl=False)
            click.secho("mcpap discover", fg="cyan")
        elif result.fallback_recommended:
            click.secho("\nNo resource_metadata in WWW-Authenticate.", fg="yellow")
            click.echo("Next: ", nl=False)
            click.secho("mcpap fallback", fg="cyan")
        else:
            click.secho(
                f"\nServer answered HTTP {result.exchange.response.status}; "
                f"no authorization challenge to follow.",
                fg="yellow",
            )

    run_flow(ctx, probe)


@main.command()
@click.option("--select", "-s", "select_index", type=int, help="Adopt the Nth result (1-based)")
@click.pass_context
def fallback(ctx: click.Context, select_index: int | None) -> None:
    """Probe the well-known metadata endpoints of the server."""
    output: OutputHandler = ctx.obj["output"]

    async def probe(machine: FlowMachine) -> None:
        _enter(machine, 1)
        results = await machine.fallback_discovery()

        selected = None
        if select_index is not None:
            if not 1 <= select_index <= len(results):
                raise FlowError(f"--select must be between 1 and {len(results)}")
            selected = results[select_index - 1]
            machine.select_discovery_result(selected)

        if ctx.obj["json_mode"]:
            output.success({
                "results": [r.to_dict() for r in results],
                "selected": selected.to_dict() if selected else None,
            })
            return

        output.discovery_results(results)
        if selected:
            click.secho(f"\nSelected {selected.url} ({selected.metadata_type})", fg="green")
        elif any(r.success for r in results):
            click.echo("\nAdopt a result with: ", nl=False)
            click.secho("mcpap fallback --select <N>", fg="cyan")
        else:
            click.secho("\nNo metadata document found.", fg="yellow")

    run_flow(ctx, probe)


# Step 2: Metadata Discovery


async def _discover(machine: FlowMachine, output: OutputHandler) -> list[Any]:
    """Fetch resource metadata (unless selected already) and then OAuth metadata."""
    exchanges = []
    if machine.state.oauth_metadata_from_fallback and machine.state.oauth_metadata:
        return exchanges
    if not (machine.state.manual_discovery and machine.state.resource_metadata):
        exchange = await machine.fetch_resource_metadata()
        output.exchange(exchange, "Protected resource metadata")
        exchanges.append(exchange)
    exchange = await machine.fetch_oauth_metadata()
    output.exchange(exchange, "Authorization server metadata")
    exchanges.append(exchange)
    return exchanges


@main.command()
@click.pass_context
def discover(ctx: click.Context) -> None:
    """Fetch the resource and authorization server metadata."""
    output: OutputHandler = ctx.obj["output"]

    async def fetch(machine: FlowMachine) -> None:
        _enter(machine, 2)
        exchanges = await _discover(machine, output)
        state = machine.state
        if ctx.obj["json_mode"]:
            output.success({
                "exchanges": [e.to_dict() for e in exchanges],
                "authorizationServer": state.authorization_server_url,
                "oauthMetadata": state.oauth_metadata,
            })
            return
        if not exchanges:
            click.echo("OAuth metadata was adopted from fallback discovery.")
        click.secho(f"\nAuthorization server: {state.authorization_server_url}", fg="green")
        if machine.supports_registration():
            click.echo("Dynamic client registration is supported. Next: ", nl=False)
            click.secho("mcpap register", fg="cyan")
        else:
            click.echo("No registration endpoint. Next: ", nl=False)
            click.secho("mcpap register --client-id <id>", fg="cyan")

    run_flow(ctx, fetch)


# Step 3: Client Registration


@main.command()
@click.option("--client-id", help="Use pre-provisioned client credentials instead of registering")
@click.option("--client-secret", help="Secret for --client-id (omit for a public client)")
@click.option("--client-name", help="client_name sent during dynamic registration")
@click.pass_context
def register(ctx: click.Context, client_id: str | None, client_secret: str | None, client_name: str | None) -> None:
    """Register an OAuth client (RFC 7591) or enter credentials manually."""
    output: OutputHandler = ctx.obj["output"]

    async def run(machine: FlowMachine) -> None:
        _enter(machine, 3)
        exchange = None
        if client_id:
            machine.set_manual_credentials(client_id, client_secret)
        else:
            exchange = await machine.register_client(client_name)
            if exchange is not None:
                output.exchange(exchange, "Client registration")

        state = machine.state
        if ctx.obj["json_mode"]:
            output.success({
                "exchange": exchange.to_dict() if exchange else None,
                "clientId": state.client_id,
                "confidential": bool(state.client_secret),
            })
            return
        if exchange is None and not client_id:
            click.echo(f"Client already registered: {state.client_id}")
        else:
            click.secho(f"\nClient ID: {state.client_id}", fg="green")
            if state.client_secret:
                click.echo(f"Client secret: {preview_secret(state.client_secret)}")

    run_flow(ctx, run)


# Step 4: Prepare Authorization


@main.command()
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable)")
@click.pass_context
def prepare(ctx: click.Context, scopes: tuple[str, ...]) -> None:
    """Generate PKCE values and the authorization URL."""
    output: OutputHandler = ctx.obj["output"]

    async def run(machine: FlowMachine) -> None:
        _enter(machine, 4)
        state = machine.prepare_authorization(list(scopes) or None)
        if ctx.obj["json_mode"]:
            output.success({
                "codeVerifier": state.code_verifier,
                "codeChallenge": state.code_challenge,
                "state": state.state,
                "authorizationUrl": state.authorization_url,
            })
            return
        click.secho("\nPKCE parameters:", bold=True)
        click.echo(f"  code_verifier:  {state.code_verifier}")
        click.echo(f"  code_challenge: {state.code_challenge} (S256)")
        click.echo(f"  state:          {state.state}")
        click.secho("\nAuthorization URL:", bold=True)
        click.echo(f"  {state.authorization_url}")
        click.echo("\nNext: ", nl=False)
        click.secho("mcpap authorize", fg="cyan")

    run_flow(ctx, run)


# Step 5: Authorization


async def _authorize_in_browser(
    machine: FlowMachine, timeout: float, open_browser: bool
) -> str:
    """Open the authorization URL and capture the redirect locally."""
    url = machine.browser_authorization_url()
    async with LocalhostCallbackServer(machine.settings.redirect_uri, timeout) as server:
        click.echo("Opening browser for authorization...", err=True)
        click.echo(f"Waiting for redirect on {machine.settings.redirect_uri}", err=True)
        if not open_browser or not webbrowser.open(url):
            click.echo(f"Open this URL to continue:\n{url}", err=True)
        result = await server.wait_for_callback()
    return machine.accept_authorization_response(result)


@main.command()
@click.option("--code", help="Paste an authorization code instead of using the browser")
@click.option("--callback-url", help="Paste the full redirect URL the browser landed on")
@click.option("--no-browser", is_flag=True, help="Print the URL instead of opening a browser")
@click.option("--timeout", "-t", default=DEFAULT_TIMEOUT, help="Seconds to wait for the redirect")
@click.pass_context
def authorize(
    ctx: click.Context,
    code: str | None,
    callback_url: str | None,
    no_browser: bool,
    timeout: int,
) -> None:
    """Obtain the authorization code.

    By default opens the browser and listens on the redirect URI. The
    state parameter is checked before the code is kept.
    """
    output: OutputHandler = ctx.obj["output"]

    async def run(machine: FlowMachine) -> None:
        _enter(machine, 5)
        if code:
            machine.set_manual_code(code)
        elif callback_url:
            machine.accept_authorization_response(callback_url)
        else:
            await _authorize_in_browser(machine, timeout, open_browser=not no_browser)

        received = machine.state.authorization_code
        output.success(
            {"authorizationCode": received},
            f"Authorization code received: {preview_secret(received)}\nNext: mcpap token",
        )

    run_flow(ctx, run)


# Step 6: Token Request


@main.command()
@click.pass_context
def token(ctx: click.Context) -> None:
    """Exchange the authorization code for tokens."""
    output: OutputHandler = ctx.obj["output"]

    async def run(machine: FlowMachine) -> None:
        _enter(machine, 6)
        exchange = await machine.exchange_token()
        state = machine.state
        if ctx.obj["json_mode"]:
            output.success({
                "exchange": exchange.to_dict(),
                "tokenType": state.token_type,
                "expiresIn": state.expires_in,
                "hasRefreshToken": bool(state.refresh_token),
            })
            return
        output.exchange(exchange, "Token request")
        click.secho(f"\nAccess token: {preview_secret(state.access_token)}", fg="green")
        if state.expires_in is not None:
            click.echo(f"Expires in: {state.expires_in}s")
        if state.refresh_token:
            click.echo(f"Refresh token: {preview_secret(state.refresh_token)}")

    run_flow(ctx, run)


# Step 7: Auth Complete


@main.command("inspect-token")
@click.pass_context
def inspect_token(ctx: click.Context) -> None:
    """Show the access token and its decoded JWT claims."""
    output: OutputHandler = ctx.obj["output"]

    async def run(machine: FlowMachine) -> None:
        if not machine.state.access_token:
            raise FlowError("No access token yet. Run 'mcpap token' first.")
        _enter(machine, 7)
        claims = machine.token_claims()
        if ctx.obj["json_mode"]:
            output.success({"accessToken": machine.state.access_token, "claims": claims})
            return
        click.secho("\nAccess token:", bold=True)
        click.echo(f"  {machine.state.access_token}")
        if claims is None:
            click.secho("\nToken is opaque (not a JWT).", fg="yellow")
        else:
            click.secho("\nClaims:", bold=True)
            click.echo("  " + json.dumps(claims, indent=2).replace("\n", "\n  "))

    run_flow(ctx, run)


# Step 8: MCP Tools


@main.group()
@click.pass_context
def mcp(ctx: click.Context) -> None:
    """Call the MCP server with the access token."""
    pass


@mcp.command("init")
@click.pass_context
def mcp_init(ctx: click.Context) -> None:
    """Send initialize and capture the session id."""
    output: OutputHandler = ctx.obj["output"]

    async def run(machine: FlowMachine) -> None:
        _enter(machine, 8)
        result = await machine.mcp_initialize()
        if ctx.obj["json_mode"]:
            output.success({
                "exchange": result.exchange.to_dict(),
                "result": result.result,
                "sessionId": machine.state.mcp_session_id,
            })
            return
        output.exchange(result.exchange, "MCP initialize")
        info = (result.result or {}).get("serverInfo") or {}
        if info:
            click.secho(f"\nConnected to {info.get('name')} {info.get('version', '')}".rstrip(), fg="green")
        if machine.state.mcp_session_id:
            click.echo(f"Session: {machine.state.mcp_session_id}")

    run_flow(ctx, run)


@mcp.command("tools")
@click.pass_context
def mcp_tools(ctx: click.Context) -> None:
    """List the server's tools."""
    output: OutputHandler = ctx.obj["output"]

    async def run(machine: FlowMachine) -> None:
        _enter(machine, 8)
        result = await machine.mcp_list_tools()
        tools = extract_tools(result.message)
        if ctx.obj["json_mode"]:
            output.success({"exchange": result.exchange.to_dict(), "tools": tools})
            return
        output.exchange(result.exchange, "MCP tools/list")
        click.secho(f"\n{len(tools)} tools:\n", bold=True)
        for tool in tools:
            click.secho(f"  {tool.get('name')}", fg="green", bold=True)
            description = tool.get("description") or ""
            if description:
                click.echo(f"    {description[:70]}{'...' if len(description) > 70 else ''}")
            required = (tool.get("inputSchema") or {}).get("required") or []
            if required:
                click.secho("    Requires: ", fg="yellow", nl=False)
                click.echo(", ".join(required))

    run_flow(ctx, run)


@mcp.command("call")
@click.argument("tool")
@click.argument("arguments", required=False)
@click.option("--stdin", is_flag=True, help="Read arguments from stdin")
@click.pass_context
def mcp_call(ctx: click.Context, tool: str, arguments: str | None, stdin: bool) -> None:
    """Invoke a tool.

    ARGUMENTS should be a JSON object with the tool parameters.
    """
    output: OutputHandler = ctx.obj["output"]
    if stdin:
        arguments = sys.stdin.read()

    async def run(machine: FlowMachine) -> None:
        _enter(machine, 8)
        result = await machine.mcp_call_tool(tool, arguments)
        if ctx.obj["json_mode"]:
            output.success({"exchange": result.exchange.to_dict(), "result": result.result})
            return
        output.exchange(result.exchange, f"MCP tools/call {tool}")
        click.secho("\nResult:", bold=True)
        click.echo("  " + format_body(result.result).replace("\n", "\n  "))

    run_flow(ctx, run)


# Guided walkthrough


@main.command()
@click.option("--timeout", "-t", default=DEFAULT_TIMEOUT, help="Seconds to wait for the redirect")
@click.pass_context
def walk(ctx: click.Context, timeout: int) -> None:
    """Run the whole flow interactively, from connection to tool listing."""
    output: OutputHandler = ctx.obj["output"]
    if ctx.obj["json_mode"]:
        output.error(
            click.UsageError("walk is interactive"),
            help_text="Run the individual step commands with --json instead.",
        )

    def heading(step: int) -> None:
        click.secho(f"\n== Step {step}: {STEP_TITLES[step]} ==", fg="cyan", bold=True)

    async def steps(machine: FlowMachine) -> None:
        if not machine.state.mcp_server_url:
            machine.set_server_url(click.prompt("MCP server URL"))
        click.echo(f"Server: {machine.state.mcp_server_url} (mode: {machine.state.request_mode.value})")

        heading(1)
        _enter(machine, 1)
        result = await machine.connect()
        output.exchange(result.exchange)
        if result.fallback_recommended or not machine.state.resource_metadata_url:
            results = await machine.fallback_discovery()
            output.discovery_results(results)
            found = [i for i, r in enumerate(results, start=1) if r.success]
            if not found:
                raise DiscoveryError("Fallback discovery found no metadata documents")
            index = click.prompt("Select a result", type=click.Choice([str(i) for i in found]), default=str(found[0]))
            machine.select_discovery_result(results[int(index) - 1])

        heading(2)
        _enter(machine, 2)
        await _discover(machine, output)

        heading(3)
        _enter(machine, 3)
        if machine.state.client_id:
            click.echo(f"Using client {machine.state.client_id}")
        elif machine.supports_registration():
            exchange = await machine.register_client()
            if exchange is not None:
                output.exchange(exchange)
        else:
            click.secho("No registration endpoint; enter client credentials.", fg="yellow")
            client_id = click.prompt("Client ID")
            client_secret = click.prompt("Client secret (blank for public)", default="", show_default=False)
            machine.set_manual_credentials(client_id, client_secret or None)

        heading(4)
        _enter(machine, 4)
        state = machine.prepare_authorization()
        click.echo(f"code_challenge: {state.code_challenge}")
        click.echo(f"state: {state.state}")

        heading(5)
        _enter(machine, 5)
        try:
            await _authorize_in_browser(machine, timeout, open_browser=True)
        except CallbackError as e:
            click.secho(str(e), fg="yellow")
            click.echo(f"Open this URL to continue:\n{machine.browser_authorization_url()}")
            machine.accept_authorization_response(click.prompt("Paste the redirect URL"))

        heading(6)
        _enter(machine, 6)
        output.exchange(await machine.exchange_token())

        heading(7)
        _enter(machine, 7)
        claims = machine.token_claims()
        click.echo(json.dumps(claims, indent=2) if claims else "Opaque access token")

        heading(8)
        _enter(machine, 8)
        output.exchange((await machine.mcp_initialize()).exchange)
        tools = extract_tools((await machine.mcp_list_tools()).message)
        click.secho(f"\n{len(tools)} tools available. Call one with: ", fg="green", nl=False)
        click.secho("mcpap mcp call <tool> '{...}'", fg="cyan")

    async def run(machine: FlowMachine) -> None:
        # The relay is rechecked while the flow waits on the user
        async with AvailabilityMonitor(machine):
            await steps(machine)

    run_flow(ctx, run)


# Channel services


@main.command()
@click.option("--host", default=DEFAULT_RELAY_HOST, help="Interface to bind")
@click.option("--port", "-p", default=DEFAULT_RELAY_PORT, help="Port to listen on")
def relay(host: str, port: int) -> None:
    """Run the proxy relay for proxy mode."""
    run_relay(host, port)


@main.group()
@click.pass_context
def bridge(ctx: click.Context) -> None:
    """Run or query the bridge agent for extension mode."""
    pass


@bridge.command("start")
@click.pass_context
def bridge_start(ctx: click.Context) -> None:
    """Run the bridge agent in the foreground."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)
    try:
        asyncio.run(run_bridge_agent(settings.bridge_socket))
    except ExtensionUnavailableError as e:
        output.error(e)


def _query_bridge(ctx: click.Context, query: Callable[[ExtensionBridge], Awaitable[T]]) -> T | NoReturn:
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    async def runner() -> T:
        client = ExtensionBridge(settings.bridge_socket)
        try:
            if not client.is_available():
                raise ExtensionUnavailableError(f"Bridge agent not detected at {settings.bridge_socket}")
            return await query(client)
        finally:
            await client.aclose()

    try:
        return asyncio.run(runner())
    except TransportError as e:
        output.error(e, help_text=_error_hint(e))
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


@bridge.command("stats")
@click.pass_context
def bridge_stats(ctx: click.Context) -> None:
    """Show the agent's request counters."""
    output: OutputHandler = ctx.obj["output"]

    async def query(client: ExtensionBridge) -> None:
        stats = await client.get_stats()
        output.success(
            {"total": stats.total, "success": stats.success, "failed": stats.failed},
            f"Requests: {stats.total} total, {stats.success} succeeded, {stats.failed} failed",
        )

    _query_bridge(ctx, query)


@bridge.command("ping")
@click.pass_context
def bridge_ping(ctx: click.Context) -> None:
    """Check that the agent answers."""
    output: OutputHandler = ctx.obj["output"]

    async def query(client: ExtensionBridge) -> None:
        alive = await client.ping()
        output.success({"pong": alive}, "Bridge agent is running." if alive else "Bridge agent did not answer.")

    _query_bridge(ctx, query)

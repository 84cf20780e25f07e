"""Output formatters for human-readable and JSON output."""

import json
import sys
import traceback
from typing import Any

import click

from .oauth.discovery import DiscoveryResult
from .state import STEP_TITLES, FlowState, HistoryEntry
from .transport import Exchange

# Secrets are shortened to this many leading characters in human output
SECRET_PREVIEW = 12


def format_json(data: Any, success: bool = True) -> str:
    """Format data as JSON output."""
    if success:
        output = {"success": True, "data": data}
    else:
        output = data  # Error dict already has success: false
    return json.dumps(output, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON with helpful information."""
    return json.dumps(
        {
            "success": False,
            "error": {
                "type": error_type or type(error).__name__,
                "message": str(error),
                "traceback": traceback.format_exc(),
                "help": help_text or "",
            },
        },
        indent=2,
    )


def format_body(body: Any) -> str:
    """Pretty-print a request or response body."""
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    return json.dumps(body, indent=2, default=str)


def preview_secret(value: str | None) -> str:
    """Shorten a token or secret for display."""
    if not value:
        return "-"
    if len(value) <= SECRET_PREVIEW:
        return value
    return f"{value[:SECRET_PREVIEW]}... ({len(value)} chars)"


def output_json(data: Any, success: bool = True) -> None:
    """Output data as JSON to stdout."""
    click.echo(format_json(data, success))


def output_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> None:
    """Output an error as JSON to stdout."""
    click.echo(format_error_json(error, error_type, help_text))
    sys.exit(1)


def output_human(message: str) -> None:
    """Output a human-readable message."""
    click.echo(message)


def output_error_human(error: Exception, help_text: str | None = None) -> None:
    """Output an error in human-readable format."""
    click.secho(f"Error: {error}", fg="red", err=True)
    if help_text:
        click.echo(f"\n{help_text}", err=True)
    sys.exit(1)


def _status_color(status: int | str) -> str:
    if not isinstance(status, int):
        return "red"
    if status < 300:
        return "green"
    if status < 500:
        return "yellow"
    return "red"


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False, verbose: bool = False):
        self.json_mode = json_mode
        self.verbose = verbose

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            output_json(data)
        else:
            if human_message:
                output_human(human_message)
            else:
                output_human(json.dumps(data, indent=2, default=str))

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Output error response."""
        if self.json_mode:
            output_error_json(error, error_type, help_text)
        else:
            output_error_human(error, help_text)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Output a table (human mode only, JSON mode outputs raw data)."""
        if self.json_mode:
            data = [dict(zip(headers, row)) for row in rows]
            output_json(data)
        else:
            widths = [len(h) for h in headers]
            for row in rows:
                for i, cell in enumerate(row):
                    widths[i] = max(widths[i], len(str(cell)))

            header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
            click.secho(header_line, bold=True)
            click.echo("-" * len(header_line))

            for row in rows:
                click.echo("  ".join(str(c).ljust(widths[i]) for i, c in enumerate(row)))

    def exchange(self, exchange: Exchange, title: str | None = None) -> None:
        """Render one request/response pair (human mode only).

        Headers and bodies are shown in verbose mode; otherwise only the
        request line, status and a body excerpt.
        """
        if self.json_mode:
            return
        request, response = exchange.request, exchange.response

        if title:
            click.secho(f"\n{title}", bold=True)
        click.secho(f"  > {request.method} ", fg="cyan", nl=False)
        click.echo(request.url)
        if self.verbose:
            for name, value in request.headers.items():
                click.echo(f"    {name}: {value}")
            if request.encoded_body() is not None:
                click.echo("    " + format_body(request.body).replace("\n", "\n    "))

        click.secho(f"  < {response.status} {response.status_text}".rstrip(), fg=_status_color(response.status), nl=False)
        click.secho(f"  ({exchange.duration}ms)", dim=True)
        if self.verbose:
            for name, value in response.headers.items():
                click.echo(f"    {name}: {value}")

        body = format_body(response.body)
        if body:
            if not self.verbose and len(body) > 600:
                body = body[:600] + "\n..."
            click.echo("    " + body.replace("\n", "\n    "))

    def discovery_results(self, results: list[DiscoveryResult]) -> None:
        """Render fallback probe results as a numbered list."""
        if self.json_mode:
            output_json({"results": [r.to_dict() for r in results]})
            return

        click.secho("\nFallback discovery:\n", bold=True)
        for index, result in enumerate(results, start=1):
            click.echo(f"  {index:>2}. ", nl=False)
            click.secho(str(result.status).ljust(5), fg=_status_color(result.status), nl=False)
            click.echo(f" {result.url}", nl=False)
            if result.success:
                click.secho(f"  [{result.metadata_type}]", fg="green")
            elif result.error:
                click.secho(f"  {result.error}", fg="red")
            else:
                click.echo()

    def history(self, entries: dict[int, tuple[HistoryEntry, ...]]) -> None:
        """Render the request history grouped by step."""
        if self.json_mode:
            output_json({
                str(step): [entry.to_dict() for entry in step_entries]
                for step, step_entries in sorted(entries.items())
            })
            return

        if not entries:
            click.echo("No requests recorded yet.")
            return

        for step, step_entries in sorted(entries.items()):
            click.secho(f"\n[{step}] {STEP_TITLES[step]}", bold=True)
            for entry in step_entries:
                status = entry.response.get("status", "?")
                label = entry.type or "-"
                if entry.tool:
                    label = f"{label} ({entry.tool})"
                click.secho(f"  {str(status).ljust(4)}", fg=_status_color(status), nl=False)
                click.echo(f" {entry.request.get('method', 'GET')} {entry.request.get('url', '')}", nl=False)
                click.secho(f"  {label}", dim=True)

    def flow_status(
        self,
        state: FlowState,
        furthest: int,
        proxy_available: bool | None = None,
        bridge_available: bool | None = None,
        keyring_in_use: bool | None = None,
    ) -> None:
        """Render the flow's progress and collected data."""
        if self.json_mode:
            data = state.to_dict()
            data["furthestStep"] = furthest
            data["proxyAvailable"] = proxy_available
            data["bridgeAvailable"] = bridge_available
            data["keyringInUse"] = keyring_in_use
            output_json(data)
            return

        click.secho("\nMCP Auth Playground\n", bold=True)
        click.echo(f"  Server: {state.mcp_server_url or '-'}")
        click.echo(f"  Mode:   {state.request_mode.value}")
        if proxy_available is not None:
            click.echo(f"  Proxy relay:  {'available' if proxy_available else 'not running'}")
        if bridge_available is not None:
            click.echo(f"  Bridge agent: {'detected' if bridge_available else 'not detected'}")
        if keyring_in_use is not None:
            click.echo(f"  State key:    {'OS keyring' if keyring_in_use else 'machine-derived (no keyring)'}")
        click.echo()

        for step, title in enumerate(STEP_TITLES):
            if step == state.current_step:
                marker, color = ">", "cyan"
            elif step <= furthest:
                marker, color = "*", "green"
            else:
                marker, color = " ", None
            click.secho(f"  {marker} {step}. {title}", fg=color, bold=step == state.current_step)

        click.secho("\nCollected:", bold=True)
        rows = [
            ("Resource metadata URL", state.resource_metadata_url),
            ("Authorization server", state.authorization_server_url),
            ("Client ID", state.client_id),
            ("Client secret", preview_secret(state.client_secret) if state.client_secret else None),
            ("Authorization code", preview_secret(state.authorization_code) if state.authorization_code else None),
            ("Access token", preview_secret(state.access_token) if state.access_token else None),
            ("MCP session", state.mcp_session_id),
        ]
        for label, value in rows:
            if value:
                click.echo(f"  {label}: {value}")
        if state.manual_discovery:
            click.secho("  (metadata selected via fallback discovery)", dim=True)

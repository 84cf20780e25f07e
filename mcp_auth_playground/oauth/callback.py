"""Localhost receiver for the authorization redirect.

The playground registers a fixed redirect URI (by default
``http://localhost:3000/callback``), so the receiver binds to exactly that
host, port and path. It captures the query string of the first request to
the callback path, answers with a small HTML page and hands the full
callback URL back to the flow machine, which performs the state check.
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

# Default timeout for waiting for the redirect
DEFAULT_TIMEOUT = 300  # seconds


class CallbackError(Exception):
    """Error while receiving the authorization redirect."""

    pass


class CallbackTimeoutError(CallbackError):
    """No redirect arrived in time."""

    pass


@dataclass(frozen=True)
class CallbackResult:
    """Parameters captured from the authorization redirect.

    Attributes:
        url: The full callback URL as received
        code: The authorization code, if any
        state: The returned state parameter, if any
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    url: str
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if the redirect carried a code and no error."""
        return self.code is not None and self.error is None


RESULT_HTML = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; max-width: 36rem; margin: 4rem auto; color: #222; }}
        h1 {{ font-size: 1.4rem; }}
        code {{ background: #f3f3f3; padding: 0.1rem 0.3rem; border-radius: 4px; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <p>{message}</p>
    <p>Return to the terminal to continue the playground.</p>
</body>
</html>"""


def parse_callback_url(url: str) -> CallbackResult:
    """Parse the query parameters of a callback URL or request target.

    Args:
        url: The callback URL (absolute, or a path with query string)

    Returns:
        CallbackResult with parsed parameters
    """
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        url=url,
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class LocalhostCallbackServer:
    """HTTP listener bound to the registered redirect URI.

    Usage:
        async with LocalhostCallbackServer("http://localhost:3000/callback") as server:
            # Open the browser at the authorization URL
            result = await server.wait_for_callback()
    """

    def __init__(self, redirect_uri: str, timeout: float = DEFAULT_TIMEOUT):
        """Initialize the callback server.

        Args:
            redirect_uri: The redirect URI registered with the authorization server
            timeout: Seconds to wait for the redirect

        Raises:
            CallbackError: If the redirect URI is not a local http URL
        """
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or parsed.hostname not in ("localhost", "127.0.0.1", "::1"):
            raise CallbackError(
                f"Cannot listen for redirects to {redirect_uri}: "
                f"only http://localhost redirect URIs can be received locally. "
                f"Paste the code with 'mcpap authorize --code' instead."
            )

        self.redirect_uri = redirect_uri
        self.host = parsed.hostname
        self.port = parsed.port or 80
        self.path = parsed.path or "/"
        self.timeout = timeout

        self._server: asyncio.Server | None = None
        self._result: CallbackResult | None = None
        self._result_event: asyncio.Event | None = None

    async def start(self) -> None:
        """Start listening on the redirect URI's host and port.

        Raises:
            CallbackError: If the port is already in use
        """
        self._result_event = asyncio.Event()
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self.port
            )
        except OSError as e:
            raise CallbackError(
                f"Could not listen on {self.host}:{self.port} for the redirect: {e}"
            ) from e

        logger.debug(f"Callback server listening for {self.redirect_uri}")

    async def stop(self) -> None:
        """Stop the callback server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> CallbackResult:
        """Wait for the authorization redirect.

        Raises:
            CallbackTimeoutError: If timeout is reached
        """
        if self._result_event is None:
            raise CallbackError("Server not started")

        try:
            await asyncio.wait_for(self._result_event.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"No authorization redirect received after {self.timeout:g} seconds"
            ) from None

        if self._result is None:
            raise CallbackError("No callback result received")
        return self._result

    def _absolute_url(self, target: str) -> str:
        parsed = urlparse(self.redirect_uri)
        return f"{parsed.scheme}://{parsed.netloc}{target}"

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            request_line = (await reader.readline()).decode("utf-8", errors="replace")
            parts = request_line.strip().split(" ")
            if len(parts) < 2:
                await self._send(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return
            method, target = parts[0], parts[1]

            # Drain headers
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            if method != "GET":
                await self._send(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return
            if urlparse(target).path != self.path:
                await self._send(writer, HTTPStatus.NOT_FOUND, "Not found")
                return
            if self._result is not None:
                await self._send(writer, HTTPStatus.GONE, "Redirect already received")
                return

            result = parse_callback_url(self._absolute_url(target))
            self._result = result

            if result.error:
                detail = result.error + (
                    f": {result.error_description}" if result.error_description else ""
                )
                page = RESULT_HTML.format(
                    title="Authorization failed",
                    message=f"The server returned <code>{html.escape(detail)}</code>.",
                )
            else:
                page = RESULT_HTML.format(
                    title="Authorization response received",
                    message="The playground will now check the state parameter.",
                )
            await self._send(writer, HTTPStatus.OK, page, content_type="text/html; charset=utf-8")

            if self._result_event:
                self._result_event.set()

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.warning(f"Error handling callback request: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _send(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
        content_type: str = "text/plain",
    ) -> None:
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

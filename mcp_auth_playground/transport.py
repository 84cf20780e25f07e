"""Request transport for playground HTTP calls.

A logical request can be delivered through one of three channels:

- direct: httpx from this process
- proxy: serialized and relayed by the proxy relay (``mcpap relay``)
- extension: handed to the bridge agent over its local socket (``mcpap bridge start``)

Every channel returns the same ``Exchange`` shape, so flow code never
special-cases how a request travelled.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from .config import DEFAULT_HTTP_TIMEOUT, DEFAULT_PROXY_URL

if TYPE_CHECKING:
    from .bridge import ExtensionBridge

logger = logging.getLogger(__name__)

# Health checks must answer quickly or the relay is treated as down
HEALTH_CHECK_TIMEOUT = 3.0


class TransportError(Exception):
    """A request could not be delivered or answered."""

    pass


class ChannelBlockedError(TransportError):
    """The target could not be reached from the direct channel.

    Raised instead of the raw connection error so callers can tell the
    user to switch to the proxy or extension channel.
    """

    suggest_channel_switch = True

    def __init__(self, url: str, reason: str = "") -> None:
        parsed = urlparse(url)
        self.origin = f"{parsed.scheme}://{parsed.netloc}"
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Could not reach {self.origin} directly{detail}. "
            f"The server may only be reachable from another network context. "
            f"Switch to proxy or extension mode to access this server."
        )


class RelayError(TransportError):
    """The proxy relay answered with an error instead of an exchange."""

    pass


class ExtensionUnavailableError(TransportError):
    """The bridge agent is not running or cannot be reached."""

    pass


class BridgeTimeoutError(TransportError):
    """The bridge agent did not answer a correlated request in time."""

    pass


class RequestMode(str, Enum):
    """Delivery channel for playground requests."""

    DIRECT = "direct"
    PROXY = "proxy"
    EXTENSION = "extension"

    @classmethod
    def coerce(cls, value: "RequestMode | str | bool") -> "RequestMode":
        """Convert a stored or user-supplied value to a RequestMode.

        Booleans are the legacy direct-mode flag: True means direct,
        False means proxy.
        """
        if isinstance(value, bool):
            return cls.DIRECT if value else cls.PROXY
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise ValueError(
                f"Unknown request mode {value!r}; expected one of: "
                + ", ".join(m.value for m in cls)
            ) from e


def decode_body(text: str) -> Any:
    """Decode a response body: JSON when it parses, raw text otherwise."""
    try:
        return json.loads(text)
    except ValueError:
        return text


@dataclass(frozen=True)
class HttpRequest:
    """A logical HTTP request, independent of the channel that sends it."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    def encoded_body(self) -> str | None:
        """Body as sent on the wire.

        Strings (e.g. form-urlencoded token requests) are sent verbatim,
        anything else is JSON-encoded. GET requests never carry a body.
        """
        if self.body is None or self.body == "" or self.method.upper() == "GET":
            return None
        if isinstance(self.body, str):
            return self.body
        return json.dumps(self.body)

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "body": self.body,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HttpRequest":
        return cls(
            method=(data.get("method") or "GET").upper(),
            url=data["url"],
            headers=dict(data.get("headers") or {}),
            body=data.get("body"),
        )


@dataclass(frozen=True)
class HttpResponse:
    """A normalized HTTP response; header names are lower-case."""

    status: int
    status_text: str
    headers: dict[str, str]
    body: Any

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "statusText": self.status_text,
            "headers": dict(self.headers),
            "body": self.body,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HttpResponse":
        return cls(
            status=int(data["status"]),
            status_text=data.get("statusText", data.get("status_text", "")) or "",
            headers={k.lower(): v for k, v in (data.get("headers") or {}).items()},
            body=data.get("body"),
        )


@dataclass(frozen=True)
class Exchange:
    """One request/response pair plus the round-trip time in milliseconds."""

    request: HttpRequest
    response: HttpResponse
    duration: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "response": self.response.to_dict(),
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Exchange":
        return cls(
            request=HttpRequest.from_dict(data["request"]),
            response=HttpResponse.from_dict(data["response"]),
            duration=int(data.get("duration") or 0),
        )


async def perform_request(client: httpx.AsyncClient, request: HttpRequest) -> Exchange:
    """Execute a request with httpx and normalize the result.

    Shared by the direct channel, the proxy relay and the bridge agent.
    Redirects are followed, so the exchange reports the final response.

    Raises:
        httpx.RequestError: On network failures
        httpx.InvalidURL: If the URL cannot be parsed
    """
    method = (request.method or "GET").upper()
    headers = dict(request.headers or {})

    start = time.perf_counter()
    response = await client.request(
        method,
        request.url,
        headers=headers,
        content=request.encoded_body(),
        follow_redirects=True,
    )
    duration = int((time.perf_counter() - start) * 1000)

    return Exchange(
        request=HttpRequest(
            method=method,
            url=request.url,
            headers=headers,
            body=request.body if request.body not in (None, "") else None,
        ),
        response=HttpResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=decode_body(response.text),
        ),
        duration=duration,
    )


class Transport:
    """Sends logical requests through the selected channel.

    Usage:
        async with Transport(proxy_url="http://localhost:3001") as transport:
            exchange = await transport.send(request, RequestMode.PROXY)
    """

    def __init__(
        self,
        proxy_url: str = DEFAULT_PROXY_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
        bridge: "ExtensionBridge | None" = None,
    ) -> None:
        """Initialize the transport.

        Args:
            proxy_url: Base URL of the proxy relay
            timeout: Timeout for relayed and direct requests in seconds
            http_client: Optional HTTP client (owned by the caller)
            bridge: Optional bridge client for extension mode
        """
        self.proxy_url = proxy_url.rstrip("/")
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._bridge = bridge

    @property
    def bridge(self) -> "ExtensionBridge":
        """The bridge client, created on first use."""
        if self._bridge is None:
            from .bridge import ExtensionBridge

            self._bridge = ExtensionBridge()
        return self._bridge

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(self, request: HttpRequest, mode: RequestMode | str | bool) -> Exchange:
        """Send a request through the channel named by ``mode``.

        Returns:
            Exchange with the normalized request, response and duration

        Raises:
            TransportError: If the request could not be delivered
        """
        mode = RequestMode.coerce(mode)
        logger.debug(f"Sending {request.method} {request.url} via {mode.value}")

        if mode is RequestMode.EXTENSION:
            return await self._send_extension(request)
        if mode is RequestMode.PROXY:
            return await self._send_proxy(request)
        return await self._send_direct(request)

    async def _send_direct(self, request: HttpRequest) -> Exchange:
        try:
            return await perform_request(self._get_client(), request)
        except httpx.InvalidURL as e:
            raise TransportError(f"Invalid URL {request.url!r}: {e}") from e
        except httpx.UnsupportedProtocol as e:
            raise TransportError(f"Invalid URL {request.url!r}: {e}") from e
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request to {request.url} timed out after {self.timeout:g}s"
            ) from e
        except (httpx.ConnectError, httpx.NetworkError) as e:
            raise ChannelBlockedError(request.url, type(e).__name__) from e
        except httpx.RequestError as e:
            raise TransportError(f"Request to {request.url} failed: {e}") from e

    async def _send_proxy(self, request: HttpRequest) -> Exchange:
        relay_url = f"{self.proxy_url}/api/proxy"
        try:
            response = await self._get_client().post(relay_url, json=request.to_dict())
        except httpx.RequestError as e:
            raise TransportError(
                f"Proxy relay at {self.proxy_url} is unreachable: {e}. "
                f"Start it with 'mcpap relay' or switch to direct mode."
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise RelayError(
                f"Proxy relay returned a non-JSON reply (HTTP {response.status_code})"
            ) from e

        if not isinstance(data, dict) or "response" not in data:
            error = data.get("error") if isinstance(data, dict) else None
            raise RelayError(f"Proxy relay error: {error or 'malformed relay reply'}")

        try:
            return Exchange.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise RelayError(f"Proxy relay returned a malformed exchange: {e}") from e

    async def _send_extension(self, request: HttpRequest) -> Exchange:
        bridge = self.bridge
        if not bridge.is_available():
            raise ExtensionUnavailableError(
                "The bridge agent is not detected. "
                "Start it with 'mcpap bridge start' and retry."
            )
        return await bridge.request(request)

    async def check_proxy_health(self) -> bool:
        """Check whether the proxy relay is alive.

        Returns:
            True if GET /api/health answered with a 2xx status in time
        """
        try:
            response = await self._get_client().get(
                f"{self.proxy_url}/api/health", timeout=HEALTH_CHECK_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.debug(f"Proxy health check failed: {e}")
            return False
        return response.is_success

    async def aclose(self) -> None:
        """Close owned resources."""
        if self._bridge is not None:
            await self._bridge.aclose()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

"""Bridge agent for the extension channel.

The bridge agent is a separate local process (``mcpap bridge start``) that
performs HTTP requests on the playground's behalf, the way a browser
extension would for a web page. The playground talks to it over a Unix
socket with length-prefixed JSON messages:

    PROXY_REQUEST {requestId, reqData}  ->  PROXY_RESPONSE {requestId, data | error}
    GET_STATS {requestId}               ->  STATS {requestId, total, success, failed}
    PING {requestId}                    ->  PONG {requestId, pong: true}

Readiness is published out of band: while running, the agent keeps a
marker file (``bridge-ready``, content ``true``) next to its socket.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

import httpx

from .config import DEFAULT_HTTP_TIMEOUT
from .ipc import (
    IPCMessage,
    IPCProtocolError,
    UnixIPCServer,
    open_connection,
    read_message,
    write_message,
)
from .platform import get_bridge_marker_path, get_bridge_socket_path, supports_unix_sockets
from .transport import (
    BridgeTimeoutError,
    Exchange,
    ExtensionUnavailableError,
    HttpRequest,
    TransportError,
    perform_request,
)

logger = logging.getLogger(__name__)

# Message actions
PROXY_REQUEST = "PROXY_REQUEST"
PROXY_RESPONSE = "PROXY_RESPONSE"
GET_STATS = "GET_STATS"
STATS = "STATS"
PING = "PING"
PONG = "PONG"
ERROR = "ERROR"

# How long a correlated request may wait for its reply (seconds)
BRIDGE_REQUEST_TIMEOUT = 30.0

READY_MARKER_CONTENT = "true"


@dataclass
class BridgeStats:
    """Request counters kept by the agent."""

    total: int = 0
    success: int = 0
    failed: int = 0


class BridgeAgent:
    """The privileged agent that relays requests for the extension channel."""

    def __init__(
        self,
        socket_path: Path | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self.socket_path = socket_path or get_bridge_socket_path()
        self.marker_path = get_bridge_marker_path(self.socket_path)
        self.stats = BridgeStats()
        self.running = False

        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._server = UnixIPCServer(self.socket_path, self.handle)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def start(self) -> None:
        """Listen on the socket and publish the readiness marker.

        Raises:
            ExtensionUnavailableError: On platforms without Unix sockets
        """
        if not supports_unix_sockets():
            raise ExtensionUnavailableError(
                "The bridge agent needs Unix domain sockets, which this platform lacks. "
                "Use direct or proxy mode instead."
            )

        self.socket_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        await self._server.start()
        self.marker_path.write_text(READY_MARKER_CONTENT)
        self.running = True
        logger.info(f"Bridge agent listening on {self.socket_path}")

    async def stop(self) -> None:
        """Withdraw the readiness marker and stop listening."""
        self.running = False
        self.marker_path.unlink(missing_ok=True)
        await self._server.stop()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Bridge agent stopped")

    async def serve_forever(self) -> None:
        """Run until SIGINT/SIGTERM."""
        await self.start()

        loop = asyncio.get_running_loop()
        stopped = asyncio.Event()

        def handle_signal(sig: signal.Signals) -> None:
            logger.info(f"Received signal {sig.name}, shutting down")
            stopped.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal, sig)

        try:
            await stopped.wait()
        finally:
            await self.stop()

    async def handle(self, message: IPCMessage) -> IPCMessage:
        """Answer one inbound message."""
        request_id = message.payload.get("requestId")

        if message.action == PROXY_REQUEST:
            result = await self._proxy(message.payload.get("reqData") or {})
            return IPCMessage(action=PROXY_RESPONSE, payload={"requestId": request_id, **result})

        if message.action == GET_STATS:
            return IPCMessage(action=STATS, payload={"requestId": request_id, **asdict(self.stats)})

        if message.action == PING:
            return IPCMessage(action=PONG, payload={"requestId": request_id, "pong": True})

        logger.warning(f"Unknown bridge action: {message.action}")
        return IPCMessage(
            action=ERROR,
            payload={"requestId": request_id, "error": f"Unknown action: {message.action}"},
        )

    async def _proxy(self, req_data: dict[str, Any]) -> dict[str, Any]:
        self.stats.total += 1
        try:
            request = HttpRequest.from_dict(req_data)
            logger.info(f"[BRIDGE] {request.method} {request.url}")
            exchange = await perform_request(self._get_client(), request)
        except (httpx.RequestError, httpx.InvalidURL, KeyError, TypeError) as e:
            self.stats.failed += 1
            logger.warning(f"[BRIDGE] Fetch failed: {e}")
            return {"error": f"Fetch failed: {e}"}

        self.stats.success += 1
        logger.info(
            f"[BRIDGE] {exchange.response.status} {exchange.response.status_text} "
            f"({exchange.duration}ms)"
        )
        return {"data": exchange.to_dict()}


class ExtensionBridge:
    """Client side of the extension channel.

    Keeps one connection to the agent and a pending table of in-flight
    requests keyed by correlation ID. A pending entry is removed exactly
    once, by its reply or by its timeout, whichever pops it first.
    """

    def __init__(
        self,
        socket_path: Path | None = None,
        timeout: float = BRIDGE_REQUEST_TIMEOUT,
    ) -> None:
        self.socket_path = socket_path or get_bridge_socket_path()
        self.marker_path = get_bridge_marker_path(self.socket_path)
        self.timeout = timeout
        self.ready = asyncio.Event()

        self._counter = 0
        self._pending: dict[str, asyncio.Future[IPCMessage]] = {}
        self._ready_callbacks: list[Callable[[], None]] = []
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._listener: asyncio.Task[None] | None = None
        self._write_lock: asyncio.Lock | None = None
        self._connect_lock: asyncio.Lock | None = None

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting for a reply."""
        return len(self._pending)

    def _marker_present(self) -> bool:
        try:
            return self.marker_path.read_text().strip() == READY_MARKER_CONTENT
        except OSError:
            return False

    def is_available(self) -> bool:
        """Check for the agent's readiness marker.

        Once the agent has been seen, it stays marked ready; a dead agent
        is reported when the next request fails to connect.
        """
        if self.ready.is_set():
            return True
        if supports_unix_sockets() and self._marker_present() and self.socket_path.exists():
            self._mark_ready()
            return True
        return False

    def on_ready(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` once the agent is detected (now, if it already is)."""
        if self.is_available():
            callback()
        else:
            self._ready_callbacks.append(callback)

    def _mark_ready(self) -> None:
        if self.ready.is_set():
            return
        self.ready.set()
        logger.debug("Bridge agent detected")
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for callback in callbacks:
            callback()

    def _next_request_id(self) -> str:
        self._counter += 1
        return f"req_{self._counter}_{int(time.time() * 1000)}"

    def _connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def _ensure_connected(self) -> None:
        if self._connected():
            return
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        # Concurrent first calls share the one connection
        async with self._connect_lock:
            if self._connected():
                return
            connection = await open_connection(self.socket_path) if supports_unix_sockets() else None
            if connection is None:
                raise ExtensionUnavailableError(
                    f"Cannot reach the bridge agent at {self.socket_path}. "
                    f"Start it with 'mcpap bridge start'."
                )
            self._reader, self._writer = connection
            self._write_lock = asyncio.Lock()
            self._listener = asyncio.create_task(self._listen(self._reader))

    async def _listen(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                message = await read_message(reader)
                if message is None:
                    break
                self._resolve(message)
        except (ConnectionError, IPCProtocolError) as e:
            logger.warning(f"Bridge connection failed: {e}")
        finally:
            # A superseded connection must not touch the current one
            if reader is self._reader:
                self._fail_pending(ExtensionUnavailableError("Bridge agent closed the connection"))
                if self._writer is not None:
                    self._writer.close()
                self._reader = None
                self._writer = None

    def _resolve(self, message: IPCMessage) -> None:
        request_id = message.payload.get("requestId")
        future = self._pending.pop(request_id, None) if request_id else None
        if future is None:
            logger.debug(f"Ignoring uncorrelated bridge reply {message.action} ({request_id})")
            return
        if not future.done():
            future.set_result(message)

    def _fail_pending(self, error: Exception) -> None:
        for request_id in list(self._pending):
            future = self._pending.pop(request_id, None)
            if future is not None and not future.done():
                future.set_exception(error)

    async def call(self, action: str, payload: dict[str, Any] | None = None) -> IPCMessage:
        """Send one correlated message and wait for its reply.

        Raises:
            ExtensionUnavailableError: If the agent cannot be reached
            BridgeTimeoutError: If no reply arrives within the timeout
        """
        await self._ensure_connected()
        writer, write_lock = self._writer, self._write_lock
        if writer is None or write_lock is None:
            raise ExtensionUnavailableError("Bridge connection closed before the request was sent")

        request_id = self._next_request_id()
        future: asyncio.Future[IPCMessage] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            async with write_lock:
                await write_message(
                    writer,
                    IPCMessage(action=action, payload={**(payload or {}), "requestId": request_id}),
                )
        except (ConnectionError, OSError) as e:
            self._pending.pop(request_id, None)
            raise ExtensionUnavailableError(f"Lost connection to the bridge agent: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            self._pending.pop(request_id, None)
            raise BridgeTimeoutError(
                f"Extension request timed out after {self.timeout:g}s"
            ) from None

    async def request(self, request: HttpRequest) -> Exchange:
        """Relay an HTTP request through the agent.

        Raises:
            TransportError: If the agent reports a failure
        """
        reply = await self.call(PROXY_REQUEST, {"reqData": request.to_dict()})
        if reply.action != PROXY_RESPONSE:
            raise TransportError(f"Bridge agent error: {reply.payload.get('error')}")
        if reply.payload.get("error"):
            raise TransportError(str(reply.payload["error"]))
        try:
            return Exchange.from_dict(reply.payload["data"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"Bridge agent returned a malformed exchange: {e}") from e

    async def get_stats(self) -> BridgeStats:
        """Fetch the agent's request counters."""
        reply = await self.call(GET_STATS)
        return BridgeStats(
            total=int(reply.payload.get("total", 0)),
            success=int(reply.payload.get("success", 0)),
            failed=int(reply.payload.get("failed", 0)),
        )

    async def ping(self) -> bool:
        """Check that the agent answers."""
        reply = await self.call(PING)
        return reply.action == PONG and reply.payload.get("pong") is True

    async def aclose(self) -> None:
        """Close the connection and fail anything still pending."""
        writer = self._writer
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
        self._reader = None
        self._writer = None
        self._fail_pending(ExtensionUnavailableError("Bridge connection closed"))


async def run_bridge_agent(socket_path: Path | None = None) -> None:
    """Run the bridge agent until interrupted."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )
    agent = BridgeAgent(socket_path)
    await agent.serve_forever()

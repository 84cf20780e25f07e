"""Proxy relay for the proxy channel.

A small Starlette app that performs HTTP requests server-side for the
playground and returns the full exchange for display. Run it with
``mcpap relay``.

Endpoints:
    GET  /health, /api/health  ->  {status: "ok", timestamp}
    POST /api/proxy            ->  {request, response, duration} or {error, request}
"""

import contextlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .config import DEFAULT_HTTP_TIMEOUT
from .transport import HttpRequest, perform_request

logger = logging.getLogger(__name__)

DEFAULT_RELAY_HOST = "127.0.0.1"
DEFAULT_RELAY_PORT = 3001


def _pretty(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, default=str)


def create_relay_app(
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> Starlette:
    """Build the relay application.

    Args:
        http_client: Optional HTTP client for upstream calls (owned by the caller)
        timeout: Upstream request timeout in seconds when the relay owns its client
    """
    clients: dict[str, httpx.AsyncClient] = {}

    def get_client() -> httpx.AsyncClient:
        if http_client is not None:
            return http_client
        if "upstream" not in clients:
            clients["upstream"] = httpx.AsyncClient(timeout=timeout)
        return clients["upstream"]

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        try:
            yield
        finally:
            owned = clients.pop("upstream", None)
            if owned is not None:
                await owned.aclose()

    async def health(request: Request) -> JSONResponse:
        return JSONResponse(
            {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
        )

    async def proxy(request: Request) -> JSONResponse:
        try:
            req_data = await request.json()
        except ValueError:
            return JSONResponse({"error": "Request body must be JSON"}, status_code=400)

        if not isinstance(req_data, dict) or not req_data.get("url"):
            return JSONResponse({"error": "URL is required"}, status_code=400)

        http_request = HttpRequest.from_dict(req_data)
        logger.info(f"[PROXY] {http_request.method} {http_request.url}")
        logger.info(f"[PROXY] Headers: {_pretty(http_request.headers)}")
        if http_request.encoded_body() is not None:
            logger.info(f"[PROXY] Body: {http_request.encoded_body()}")

        try:
            exchange = await perform_request(get_client(), http_request)
        except (httpx.RequestError, httpx.InvalidURL) as e:
            message = str(e) or type(e).__name__
            logger.error(f"[PROXY] Error: {message}")
            return JSONResponse({"error": message, "request": req_data}, status_code=500)

        response = exchange.response
        logger.info(f"[PROXY] Response: {response.status} ({exchange.duration}ms)")
        logger.info(f"[PROXY] Response Headers: {_pretty(response.headers)}")
        logger.info(f"[PROXY] Response Body: {_pretty(response.body)}")

        return JSONResponse(exchange.to_dict())

    return Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/api/health", health, methods=["GET"]),
            Route("/api/proxy", proxy, methods=["POST"]),
        ],
        lifespan=lifespan,
    )


def run_relay(host: str = DEFAULT_RELAY_HOST, port: int = DEFAULT_RELAY_PORT) -> None:
    """Serve the relay with uvicorn until interrupted."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )
    logger.info(f"Proxy relay on http://{host}:{port} (POST /api/proxy, GET /api/health)")
    uvicorn.run(create_relay_app(), host=host, port=port, log_level="info")

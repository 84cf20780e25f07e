"""OAuth metadata discovery per RFC 9728 and RFC 8414.

This module handles:
- Extracting the resource_metadata hint from WWW-Authenticate headers
- Building and classifying fallback probes against well-known endpoints
- Locating the authorization server named by Protected Resource Metadata
- Building candidate Authorization Server Metadata URLs

Everything here is pure: the flow machine performs the requests through
the transport and feeds the exchanges back in.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from ..transport import Exchange

logger = logging.getLogger(__name__)

RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource"
AUTH_SERVER_METADATA_PATH = "/.well-known/oauth-authorization-server"
OIDC_CONFIGURATION_PATH = "/.well-known/openid-configuration"

# Probe order for fallback discovery, with the metadata type each one yields
WELL_KNOWN_ENDPOINTS: tuple[tuple[str, str], ...] = (
    (RESOURCE_METADATA_PATH, "resource"),
    (AUTH_SERVER_METADATA_PATH, "oauth-as"),
    (OIDC_CONFIGURATION_PATH, "oidc"),
)

_QUOTED_RESOURCE_METADATA = re.compile(r'resource_metadata="([^"]+)"')
_UNQUOTED_RESOURCE_METADATA = re.compile(r"resource_metadata=([^\s,]+)")


def _http_status_hint(status_code: int) -> str:
    """Get a user-friendly hint for common HTTP status codes."""
    hints = {
        401: "Server requires authentication - you may need to authenticate first",
        403: "Access forbidden - check if you have permission to access this resource",
        404: "Endpoint not found - the server may not support OAuth discovery at this URL",
        500: "Server error - the authorization server may be experiencing issues",
        502: "Bad gateway - there may be a proxy or network issue",
        503: "Service unavailable - the server may be temporarily down",
    }
    return hints.get(status_code, "")


class DiscoveryError(Exception):
    """Error during OAuth metadata discovery."""

    pass


@dataclass(frozen=True)
class DiscoveryResult:
    """Outcome of one fallback probe.

    Attributes:
        url: The probed well-known URL
        base: The base URL the well-known suffix was appended to
        status: HTTP status, or "error" when the request never completed
        success: True only for a 200 response with a JSON object body
        body: The parsed metadata document on success
        metadata_type: "resource", "oauth-as", "oidc", or None
        error: Transport error message when status is "error"
    """

    url: str
    base: str
    status: int | str
    success: bool
    body: dict[str, Any] | None = None
    metadata_type: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "base": self.base,
            "status": self.status,
            "success": self.success,
            "body": self.body,
            "metadata_type": self.metadata_type,
            "error": self.error,
        }


@dataclass(frozen=True)
class AuthServerMetadata:
    """The endpoints the flow needs from RFC 8414 metadata.

    Only the authorization and token endpoints are required; servers
    without a registration endpoint still work with manual credentials.
    """

    authorization_endpoint: str
    token_endpoint: str
    issuer: str | None = None
    registration_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None

    def supports_dcr(self) -> bool:
        """Check if the server supports Dynamic Client Registration."""
        return bool(self.registration_endpoint)

    def supports_pkce(self) -> bool:
        """Check if the server advertises S256 (or advertises nothing)."""
        methods = self.code_challenge_methods_supported
        return methods is None or "S256" in methods

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthServerMetadata":
        """Create from a metadata document.

        Raises:
            DiscoveryError: If a required endpoint is missing
        """
        missing = [k for k in ("authorization_endpoint", "token_endpoint") if not data.get(k)]
        if missing:
            raise DiscoveryError(
                f"OAuth metadata is missing required field(s): {', '.join(missing)}"
            )

        return cls(
            authorization_endpoint=data["authorization_endpoint"],
            token_endpoint=data["token_endpoint"],
            issuer=data.get("issuer"),
            registration_endpoint=data.get("registration_endpoint"),
            scopes_supported=data.get("scopes_supported"),
            code_challenge_methods_supported=data.get("code_challenge_methods_supported"),
        )


def extract_resource_metadata_url(www_authenticate: str | None) -> str | None:
    """Extract the resource_metadata URL from a WWW-Authenticate header.

    Both ``resource_metadata="https://..."`` and the unquoted
    ``resource_metadata=https://...`` forms are accepted; the quoted form
    wins when both appear.

    Args:
        www_authenticate: The WWW-Authenticate header value

    Returns:
        The resource_metadata URL, or None when the header carries none
    """
    if not www_authenticate:
        return None

    match = _QUOTED_RESOURCE_METADATA.search(www_authenticate)
    if match is None:
        match = _UNQUOTED_RESOURCE_METADATA.search(www_authenticate)
    return match.group(1) if match else None


def parse_www_authenticate(header: str | None) -> dict[str, str]:
    """Parse the auth-params of a WWW-Authenticate header for display.

    Args:
        header: The WWW-Authenticate header value

    Returns:
        Dictionary with the auth ``scheme`` plus each parameter
    """
    if not header:
        return {}

    params: dict[str, str] = {}
    scheme, _, rest = header.strip().partition(" ")
    params["scheme"] = scheme

    # Match key="value" or key=value patterns
    pattern = r'(\w+)=(?:"([^"]*)"|([^\s,]+))'
    for match in re.finditer(pattern, rest):
        key = match.group(1).lower()
        value = match.group(2) if match.group(2) is not None else match.group(3)
        params[key] = value

    return params


def get_origin(url: str) -> str | None:
    """Get scheme://host[:port] of a URL, or None if it has no host."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def normalize_url(url: str) -> str:
    """Strip trailing slashes."""
    return url.rstrip("/")


def fallback_probe_targets(server_url: str) -> list[tuple[str, str]]:
    """Build the ordered (url, base) probes for fallback discovery.

    The server's origin is probed first when it differs from the
    normalized server URL, then the full server URL. Each base gets the
    three well-known suffixes in order.

    Args:
        server_url: The MCP server URL

    Returns:
        List of (probe_url, base) tuples
    """
    normalized = normalize_url(server_url)
    origin = get_origin(server_url)

    bases: list[str] = []
    if origin and origin != normalized:
        bases.append(origin)
    bases.append(normalized)

    return [(f"{base}{suffix}", base) for base in bases for suffix, _ in WELL_KNOWN_ENDPOINTS]


def classify_metadata_url(url: str) -> str | None:
    """Classify a well-known URL by the metadata document it serves.

    Returns:
        "resource", "oauth-as", "oidc", or None
    """
    if "oauth-protected-resource" in url:
        return "resource"
    if "oauth-authorization-server" in url:
        return "oauth-as"
    if "openid-configuration" in url:
        return "oidc"
    return None


def is_metadata_document(exchange: Exchange) -> bool:
    """Check that a response is a 200 with a parsed JSON object body."""
    return exchange.response.status == 200 and isinstance(exchange.response.body, dict)


def probe_result(url: str, base: str, exchange: Exchange) -> DiscoveryResult:
    """Turn a completed probe exchange into a DiscoveryResult.

    Non-JSON bodies are a failed probe, never an error.
    """
    success = is_metadata_document(exchange)
    if not success:
        hint = _http_status_hint(exchange.response.status)
        logger.debug(
            f"Probe {url} did not yield metadata (HTTP {exchange.response.status})"
            + (f": {hint}" if hint else "")
        )
    return DiscoveryResult(
        url=url,
        base=base,
        status=exchange.response.status,
        success=success,
        body=exchange.response.body if success else None,
        metadata_type=classify_metadata_url(url) if success else None,
    )


def failed_probe(url: str, base: str, error: Exception) -> DiscoveryResult:
    """Record a probe whose request failed before any response."""
    return DiscoveryResult(
        url=url,
        base=base,
        status="error",
        success=False,
        error=str(error),
    )


def extract_authorization_server(metadata: dict[str, Any] | None) -> str | None:
    """Find the authorization server named by Protected Resource Metadata.

    Accepts ``authorization_servers`` as a list (first entry wins) or a
    string, and the singular ``authorization_server`` as a string or list.

    Returns:
        The authorization server URL, or None if the document names none
    """
    if not isinstance(metadata, dict):
        return None

    servers = metadata.get("authorization_servers")
    if isinstance(servers, list) and servers:
        return servers[0]
    if isinstance(servers, str) and servers:
        return servers

    singular = metadata.get("authorization_server")
    if isinstance(singular, list):
        return singular[0] if singular else None
    if singular:
        return singular
    return None


def oauth_metadata_candidates(authorization_server_url: str) -> list[str]:
    """Build candidate Authorization Server Metadata URLs in probe order.

    For ``https://example.com/tenant``:
    - RFC 8414: ``https://example.com/.well-known/oauth-authorization-server/tenant``
    - OpenID Connect (legacy): ``https://example.com/tenant/.well-known/openid-configuration``

    Raises:
        DiscoveryError: If the URL has no scheme or host
    """
    origin = get_origin(authorization_server_url)
    if origin is None:
        raise DiscoveryError(
            f"Authorization server URL is not absolute: {authorization_server_url!r}"
        )

    path = urlparse(authorization_server_url).path.rstrip("/")
    return [
        f"{origin}{AUTH_SERVER_METADATA_PATH}{path}",
        f"{origin}{path}{OIDC_CONFIGURATION_PATH}",
    ]

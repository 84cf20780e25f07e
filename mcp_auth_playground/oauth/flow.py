"""Request builders and response checks for the authorization code flow.

Each function here builds one protocol request (as a transport
``HttpRequest``) or interprets one response. The flow machine decides when
to send them and records every exchange in its history.
"""

import hmac
import logging
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from ..transport import Exchange, HttpRequest
from .tokens import ClientCredentials, TokenSet

logger = logging.getLogger(__name__)


class OAuthFlowError(Exception):
    """Error during the OAuth flow."""

    pass


class ClientRegistrationError(OAuthFlowError):
    """Error during Dynamic Client Registration."""

    pass


class AuthorizationError(OAuthFlowError):
    """The authorization server redirected back with an error."""

    pass


class StateMismatchError(AuthorizationError):
    """The returned state does not match the one sent (possible CSRF)."""

    pass


class TokenExchangeError(OAuthFlowError):
    """Error during token exchange."""

    pass


JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


def _error_detail(body: Any) -> str:
    """Format an OAuth error body as ``error - description``."""
    if not isinstance(body, dict) or not body.get("error"):
        return ""
    description = body.get("error_description")
    return f"{body['error']} - {description}" if description else str(body["error"])


def build_registration_request(
    registration_endpoint: str,
    redirect_uri: str,
    client_name: str,
) -> HttpRequest:
    """Build a Dynamic Client Registration request (RFC 7591).

    The client registers as confidential (``client_secret_basic``) so the
    token request can demonstrate HTTP Basic client authentication.
    """
    return HttpRequest(
        method="POST",
        url=registration_endpoint,
        headers=dict(JSON_HEADERS),
        body={
            "client_name": client_name,
            "redirect_uris": [redirect_uri],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "client_secret_basic",
        },
    )


def parse_registration_response(exchange: Exchange) -> ClientCredentials:
    """Read client credentials from a registration response.

    Raises:
        ClientRegistrationError: If the server did not answer 200/201 with a client_id
    """
    response = exchange.response
    if response.status not in (200, 201):
        detail = _error_detail(response.body)
        raise ClientRegistrationError(
            f"Dynamic Client Registration failed (HTTP {response.status})"
            + (f": {detail}" if detail else "")
        )

    body = response.body
    if not isinstance(body, dict) or not body.get("client_id"):
        raise ClientRegistrationError("Registration response is missing client_id")

    return ClientCredentials(
        client_id=body["client_id"],
        client_secret=body.get("client_secret"),
    )


def build_authorization_url(
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str,
    scopes: list[str] | None = None,
) -> str:
    """Build the authorization URL for the browser redirect.

    Args:
        authorization_endpoint: From the OAuth metadata
        client_id: The client ID
        redirect_uri: The callback URI
        code_challenge: PKCE code challenge
        state: State parameter for CSRF protection
        scopes: Optional list of scopes to request

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if scopes:
        params["scope"] = " ".join(scopes)

    separator = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{separator}{urlencode(params)}"


def build_browser_url(authorization_url: str, host_override: str | None = None) -> str:
    """Build the URL actually opened in the browser.

    Appends ``prompt=login`` so the server shows its login page even with
    an existing session. ``host_override`` replaces the hostname (keeping
    the port) for servers that are addressed differently from the relay
    than from the browser.
    """
    parsed = urlparse(authorization_url)
    if host_override:
        netloc = host_override
        if parsed.port:
            netloc = f"{host_override}:{parsed.port}"
        if parsed.username:
            userinfo = parsed.username + (f":{parsed.password}" if parsed.password else "")
            netloc = f"{userinfo}@{netloc}"
        parsed = parsed._replace(netloc=netloc)

    query = f"{parsed.query}&prompt=login" if parsed.query else "prompt=login"
    return urlunparse(parsed._replace(query=query))


def parse_callback_params(callback: str) -> dict[str, str]:
    """Extract the query parameters of an authorization redirect.

    Accepts a full callback URL or a bare query string.
    """
    query = urlparse(callback).query if "?" in callback or "://" in callback else callback
    return {key: values[0] for key, values in parse_qs(query.lstrip("?")).items() if values}


def validate_authorization_response(params: dict[str, str], expected_state: str | None) -> str:
    """Check an authorization redirect and return its code.

    Args:
        params: Query parameters from the redirect
        expected_state: The state sent in the authorization request

    Returns:
        The authorization code

    Raises:
        AuthorizationError: If the server returned an error or no code
        StateMismatchError: If the returned state is missing or differs
    """
    if params.get("error"):
        description = params.get("error_description")
        raise AuthorizationError(
            f"Authorization error: {params['error']}"
            + (f" - {description}" if description else "")
        )

    code = params.get("code")
    if not code:
        raise AuthorizationError("No authorization code in callback")

    # Constant-time comparison
    if not expected_state or not hmac.compare_digest(params.get("state") or "", expected_state):
        raise StateMismatchError("State mismatch! Possible CSRF attack.")

    return code


def build_token_request(
    token_endpoint: str,
    code: str,
    redirect_uri: str,
    client: ClientCredentials,
    code_verifier: str,
) -> HttpRequest:
    """Build the authorization code token request (RFC 6749 Section 4.1.3).

    Confidential clients authenticate with HTTP Basic; the client_id is
    always sent in the form body too.
    """
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Accept": "application/json",
    }
    if client.is_confidential():
        headers["Authorization"] = client.basic_auth_header()

    body = urlencode(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client.client_id,
            "code_verifier": code_verifier,
        }
    )
    return HttpRequest(method="POST", url=token_endpoint, headers=headers, body=body)


def parse_token_response(exchange: Exchange) -> TokenSet:
    """Read tokens from a token endpoint response.

    Raises:
        TokenExchangeError: With the server's ``error - error_description``
            verbatim when the response is error-shaped
    """
    response = exchange.response
    body = response.body

    if response.status == 200 and isinstance(body, dict) and body.get("access_token"):
        return TokenSet.from_token_response(body)

    detail = _error_detail(body)
    if detail:
        raise TokenExchangeError(f"Token error: {detail}")
    raise TokenExchangeError(
        f"Token exchange failed (HTTP {response.status}): no access_token in response"
    )

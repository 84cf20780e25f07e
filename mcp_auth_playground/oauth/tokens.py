"""OAuth client credential and token data structures.

Also decodes JWT access tokens for display. The playground never verifies
signatures; it only shows learners what the token carries.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class TokenDecodeError(ValueError):
    """The access token is not a decodable JWT."""

    pass


@dataclass(frozen=True)
class ClientCredentials:
    """OAuth client credentials.

    Obtained through Dynamic Client Registration or entered manually.
    A client without a secret is a public client.
    """

    client_id: str
    client_secret: str | None = None

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return self.client_secret is not None and len(self.client_secret) > 0

    def basic_auth_header(self) -> str:
        """Build the HTTP Basic Authorization value for the token endpoint.

        Raises:
            ValueError: If the client has no secret
        """
        if not self.is_confidential():
            raise ValueError("Public clients do not authenticate with HTTP Basic")
        raw = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        return f"Basic {base64.b64encode(raw).decode('ascii')}"


@dataclass(frozen=True)
class TokenSet:
    """Tokens returned by a successful token request.

    Attributes:
        access_token: The access token string
        token_type: Token type as returned by the server (typically "Bearer")
        refresh_token: Optional refresh token
        expires_in: Lifetime of the access token in seconds, if given
        scope: Space-separated list of granted scopes
    """

    access_token: str
    token_type: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "TokenSet":
        """Create a TokenSet from a token endpoint response body.

        Raises:
            KeyError: If the response has no access_token
        """
        expires_in = response.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric expires_in: {expires_in!r}")
            expires_in = None

        return cls(
            access_token=response["access_token"],
            token_type=response.get("token_type"),
            refresh_token=response.get("refresh_token"),
            expires_in=expires_in,
            scope=response.get("scope"),
        )


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def decode_jwt_payload(token: str) -> dict[str, Any]:
    """Decode the claims of a JWT without verifying it.

    Args:
        token: A compact-serialized JWT (header.payload.signature)

    Returns:
        The payload claims

    Raises:
        TokenDecodeError: If the token is opaque or the payload is not JSON
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise TokenDecodeError(
            "Access token is not a JWT (expected three dot-separated segments); "
            "it is probably an opaque token"
        )

    try:
        claims = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise TokenDecodeError(f"Could not decode JWT payload: {e}") from e

    if not isinstance(claims, dict):
        raise TokenDecodeError("JWT payload is not a JSON object")
    return claims

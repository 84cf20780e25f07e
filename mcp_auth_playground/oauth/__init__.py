"""OAuth 2.1 building blocks for the MCP Auth Playground.

The playground executes the authorization code flow one step at a time,
so this package exposes the individual pieces rather than a single
end-to-end flow:

    discovery: WWW-Authenticate parsing, fallback probes, metadata candidates
    pkce: verifier, challenge and state generation
    flow: registration, authorization and token request builders
    callback: localhost receiver for the authorization redirect
    tokens: client credentials, token sets and JWT payload decoding
"""

from .callback import (
    CallbackError,
    CallbackResult,
    CallbackTimeoutError,
    LocalhostCallbackServer,
)
from .discovery import (
    AuthServerMetadata,
    DiscoveryError,
    DiscoveryResult,
    extract_authorization_server,
    extract_resource_metadata_url,
    fallback_probe_targets,
    oauth_metadata_candidates,
    parse_www_authenticate,
)
from .flow import (
    AuthorizationError,
    ClientRegistrationError,
    OAuthFlowError,
    StateMismatchError,
    TokenExchangeError,
)
from .pkce import (
    PKCEParameters,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_parameters,
    generate_state,
)
from .tokens import ClientCredentials, TokenDecodeError, TokenSet, decode_jwt_payload

__all__ = [
    # Flow
    "OAuthFlowError",
    "ClientRegistrationError",
    "AuthorizationError",
    "StateMismatchError",
    "TokenExchangeError",
    # Discovery
    "AuthServerMetadata",
    "DiscoveryError",
    "DiscoveryResult",
    "extract_authorization_server",
    "extract_resource_metadata_url",
    "fallback_probe_targets",
    "oauth_metadata_candidates",
    "parse_www_authenticate",
    # Tokens
    "TokenSet",
    "ClientCredentials",
    "TokenDecodeError",
    "decode_jwt_payload",
    # PKCE
    "PKCEParameters",
    "generate_pkce_parameters",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    # Callback
    "LocalhostCallbackServer",
    "CallbackResult",
    "CallbackError",
    "CallbackTimeoutError",
]

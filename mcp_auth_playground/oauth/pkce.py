"""PKCE (Proof Key for Code Exchange) helpers per RFC 7636.

The playground generates a fresh verifier, challenge and state for every
authorization attempt so learners can see each value travel through the
authorization and token requests.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


# PKCE code verifier length constraints per RFC 7636
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64

DEFAULT_STATE_LENGTH = 32

# Unreserved URI characters, used for both verifier and state
VERIFIER_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEParameters:
    """Everything the authorization request needs from PKCE and CSRF protection.

    The verifier is kept client-side and only sent in the token request.
    The challenge goes into the authorization URL. The state is echoed back
    by the authorization server and compared on the callback.
    """

    verifier: str
    challenge: str
    state: str
    method: str = CHALLENGE_METHOD


def generate_random_string(length: int) -> str:
    """Generate a random string over the unreserved URI alphabet.

    Args:
        length: Number of characters

    Returns:
        Cryptographically random string
    """
    return "".join(secrets.choice(VERIFIER_CHARS) for _ in range(length))


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically random code verifier.

    Per RFC 7636 Section 4.1, the code verifier must be:
    - Between 43 and 128 characters
    - Use only unreserved URI characters: [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"

    Args:
        length: Length of the verifier (default 64, must be 43-128)

    Returns:
        Cryptographically random code verifier string

    Raises:
        ValueError: If length is outside allowed range
    """
    if length < MIN_VERIFIER_LENGTH or length > MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )

    return generate_random_string(length)


def generate_code_challenge(verifier: str) -> str:
    """Generate the S256 code challenge for a verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 hash of the verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state(length: int = DEFAULT_STATE_LENGTH) -> str:
    """Generate a random state parameter for CSRF protection.

    Args:
        length: Number of characters (default 32)

    Returns:
        Random string over the unreserved URI alphabet
    """
    return generate_random_string(length)


def generate_pkce_parameters(
    verifier_length: int = DEFAULT_VERIFIER_LENGTH,
    state_length: int = DEFAULT_STATE_LENGTH,
) -> PKCEParameters:
    """Generate a verifier, its S256 challenge and a fresh state.

    Args:
        verifier_length: Length of the code verifier (default 64)
        state_length: Length of the state (default 32)

    Returns:
        PKCEParameters for one authorization attempt
    """
    verifier = generate_code_verifier(verifier_length)
    return PKCEParameters(
        verifier=verifier,
        challenge=generate_code_challenge(verifier),
        state=generate_state(state_length),
    )

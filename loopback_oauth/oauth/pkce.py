"""PKCE (RFC 7636) and CSRF token generation.

Every authorization attempt gets a fresh verifier/challenge pair and a fresh
CSRF token. Both come from the ``secrets`` module.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


# Verifier length constraints per RFC 7636 Section 4.1
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64

# Bytes of randomness in a CSRF token (256 bits)
CSRF_TOKEN_BYTES = 32

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and its S256 challenge.

    The verifier stays in memory and is only sent in the token request.
    The challenge goes out in the authorization URL.
    """

    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD

    def __repr__(self) -> str:
        return f"PKCEPair(verifier=<redacted>, challenge={self.challenge!r}, method={self.method!r})"


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Generate a random code verifier of ``length`` characters.

    The URL-safe base64 alphabet is a subset of the RFC 7636 unreserved
    characters, so the output needs no further encoding.

    Raises:
        ValueError: If length is outside 43..128
    """
    if length < MIN_VERIFIER_LENGTH or length > MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )

    # token_urlsafe(n) yields about 1.3 * n characters
    return secrets.token_urlsafe(length)[:length]


def generate_code_challenge(verifier: str) -> str:
    """Return BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PKCEPair:
    """Generate a verifier and its matching S256 challenge."""
    verifier = generate_code_verifier(length)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_csrf_token() -> str:
    """Generate the per-attempt CSRF token sent as the ``state`` parameter."""
    return secrets.token_urlsafe(CSRF_TOKEN_BYTES)

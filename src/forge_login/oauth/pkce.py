"""PKCE (Proof Key for Code Exchange) implementation.

Implements RFC 7636 S256 challenges for the Authorization Code flow.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass

from forge_login.security import random_alphanumeric

# Verifier length; RFC 7636 allows 43-128 characters
VERIFIER_LENGTH = 64


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Lives only for one login attempt. The verifier stays with the caller
    until the token exchange; the challenge goes into the authorize URL.

    Attributes:
        verifier: Random alphanumeric string sent with the token request
        challenge: base64url(SHA256(verifier)) without padding, 43 characters
    """

    verifier: str
    challenge: str

    @classmethod
    def from_verifier(cls, verifier: str) -> PKCEChallenge:
        """Build the pair for an existing verifier."""
        return cls(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        length: Number of characters (43-128)

    Returns:
        Alphanumeric code verifier

    Raises:
        ValueError: If length falls outside the RFC 7636 range
    """
    if not 43 <= length <= 128:
        msg = "verifier length must be between 43 and 128 characters"
        raise ValueError(msg)

    return random_alphanumeric(length)


def generate_code_challenge(verifier: str) -> str:
    """Compute the S256 code challenge for a verifier.

    Args:
        verifier: The code verifier string

    Returns:
        Base64url-encoded SHA256 hash (without padding)
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def new_pkce() -> PKCEChallenge:
    """Create a fresh PKCE pair with a 64 character verifier."""
    return PKCEChallenge.from_verifier(generate_code_verifier())

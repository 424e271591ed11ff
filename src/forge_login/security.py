"""Security utilities for forge-login.

Provides CSRF state generation, constant-time comparison and helpers
that keep secrets out of log output.
"""

from __future__ import annotations

import hmac
import secrets
import string
from collections.abc import Collection
from typing import Any

ALPHANUMERIC = string.ascii_letters + string.digits

# Default length of the CSRF state token
STATE_LENGTH = 32


def random_alphanumeric(length: int) -> str:
    """Draw a uniform alphanumeric string from the OS CSPRNG.

    Args:
        length: Number of characters

    Returns:
        Random string of ``length`` characters from ``[A-Za-z0-9]``

    Raises:
        ValueError: If length is not positive
    """
    if length <= 0:
        msg = "length must be positive"
        raise ValueError(msg)
    return "".join(secrets.choice(ALPHANUMERIC) for _ in range(length))


def generate_state(length: int = STATE_LENGTH) -> str:
    """Generate an unguessable CSRF state token.

    The value is echoed back by the provider on the redirect and must be
    compared against the issued one before the code is used.

    Args:
        length: Number of characters (default 32)

    Returns:
        Alphanumeric state token
    """
    return random_alphanumeric(length)


def redact(value: str | None) -> str:
    """Stand-in for a secret in log output.

    Shows only whether a value was supplied, never any of its characters.
    """
    return "***" if value else "<empty>"


def constant_time_equals(expected: str | None, received: str | None) -> bool:
    """Compare a secret against a received value without timing leaks.

    Used for the CSRF state echoed on the redirect. Two missing values
    compare equal; one missing value never does.
    """
    if expected is None or received is None:
        return expected is received
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


# Key fragments whose values never appear in log output
SENSITIVE_KEYS = frozenset(
    {"token", "secret", "password", "authorization", "code", "verifier"}
)


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: Collection[str] = SENSITIVE_KEYS
) -> dict[str, Any]:
    """Copy a request or response payload with secret values replaced.

    A key is masked when it contains any of ``sensitive_keys``
    (case-insensitive), so ``code_verifier`` and ``refresh_token`` are
    caught along with ``code`` and ``token``. Nested objects are masked
    recursively.

    Args:
        data: Payload about to be logged
        sensitive_keys: Key fragments to mask

    Returns:
        Masked copy; ``data`` is left untouched
    """

    def mask(key: str, value: Any) -> Any:
        if isinstance(value, dict):
            return mask_sensitive_data(value, sensitive_keys)
        lowered = key.lower()
        if any(fragment in lowered for fragment in sensitive_keys):
            return "***"
        return value

    return {key: mask(key, value) for key, value in data.items()}

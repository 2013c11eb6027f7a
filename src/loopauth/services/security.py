"""Security utilities for OAuth 2.0 flows.

Provides cryptographically secure state generation and validation for the
CSRF protection the ``state`` parameter gives redirect callbacks.
"""

from __future__ import annotations

import secrets
import string
from collections.abc import Iterable

from loopauth.models.errors import StateValidationError

STATE_ALPHABET = string.ascii_letters + string.digits + "-._~"


def generate_state(length: int = 32) -> str:
    """Generate cryptographically secure state parameter.

    The state parameter provides CSRF protection by ensuring the callback
    matches the original authorization request.

    Returns:
        Cryptographically secure random state string
    """
    return "".join(secrets.choice(STATE_ALPHABET) for _ in range(length))


def validate_state(expected: str, actual: str | None) -> None:
    """Validate state parameter matches expected value.

    Args:
        expected: State parameter from original authorization request
        actual: State parameter from callback URL

    Raises:
        StateValidationError: If state parameters don't match
    """
    if actual is None:
        raise StateValidationError(
            "Authorization server callback missing required state parameter"
        )
    if not secrets.compare_digest(expected.encode(), actual.encode()):
        raise StateValidationError("State parameter mismatch - possible CSRF attack")


def match_state(candidates: Iterable[str], actual: str) -> str | None:
    """Return the candidate equal to ``actual``, compared in constant time."""
    for candidate in candidates:
        if secrets.compare_digest(candidate.encode(), actual.encode()):
            return candidate
    return None

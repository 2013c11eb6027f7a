"""PKCE (Proof Key for Code Exchange) parameter generation.

Binds an authorization code to the native client that requested it
(RFC 7636), so an intercepted redirect cannot be redeemed elsewhere.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from loopauth.models.errors import PKCEError
from loopauth.models.security import CODE_CHALLENGE_METHOD_S256, PKCEParameters

UNRESERVED_ALPHABET = string.ascii_letters + string.digits + "-._~"


class PKCEManager:
    """Creates code verifier / S256 challenge pairs.

    Verifiers are drawn from the RFC 7636 unreserved alphabet with
    :mod:`secrets`; only the S256 method is offered.
    """

    def __init__(self, verifier_length: int = 128):
        """Initialize the PKCE manager.

        Args:
            verifier_length: Characters per code verifier, 43 to 128
        """
        if not (43 <= verifier_length <= 128):
            raise ValueError("verifier_length must be between 43 and 128")
        self.verifier_length = verifier_length

    def generate_parameters(self) -> PKCEParameters:
        """Create a fresh verifier and its challenge.

        Returns:
            PKCEParameters: Verifier, challenge and method for one request

        Raises:
            PKCEError: If the parameters could not be produced
        """
        try:
            verifier = self.generate_code_verifier()
            challenge = self.code_challenge_for(verifier)
            return PKCEParameters(
                code_verifier=verifier,
                code_challenge=challenge,
                code_challenge_method=CODE_CHALLENGE_METHOD_S256,
            )
        except Exception as e:
            raise PKCEError(f"Failed to generate PKCE parameters: {e}") from e

    def generate_code_verifier(self) -> str:
        """Random high-entropy verifier (RFC 7636 Section 4.1)."""
        return "".join(
            secrets.choice(UNRESERVED_ALPHABET) for _ in range(self.verifier_length)
        )

    @staticmethod
    def code_challenge_for(code_verifier: str) -> str:
        """BASE64URL(SHA256(verifier)) without padding (RFC 7636 Section 4.2)."""
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

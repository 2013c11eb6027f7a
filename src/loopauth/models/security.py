"""PKCE value object stored on each authorization request."""

from __future__ import annotations

from dataclasses import dataclass

CODE_CHALLENGE_METHOD_S256 = "S256"


@dataclass(frozen=True)
class PKCEParameters:
    """Verifier and challenge generated for a single authorization request.

    The verifier stays on the client until the token request; only the
    challenge and its method are sent to the authorization endpoint.
    """

    code_verifier: str
    code_challenge: str
    code_challenge_method: str = CODE_CHALLENGE_METHOD_S256

    def __post_init__(self) -> None:
        for name in ("code_verifier", "code_challenge"):
            if not (43 <= len(getattr(self, name)) <= 128):
                raise ValueError(f"{name} must be 43-128 characters")
        if self.code_challenge_method != CODE_CHALLENGE_METHOD_S256:
            raise ValueError(
                f"Unsupported code challenge method: {self.code_challenge_method}"
            )

    def as_internal(self) -> dict[str, str]:
        """Return the parameters in the shape stored on a request."""
        return {
            "code_verifier": self.code_verifier,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }

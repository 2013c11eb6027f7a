"""Token request and response models for OAuth 2.0.

Contains the token endpoint request descriptors (RFC 6749 Section 4.1.3 and
Section 6), the revocation request (RFC 7009) and the token endpoint's
success and error responses (RFC 6749 Section 5).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
GRANT_TYPE_REFRESH_TOKEN = "refresh_token"

# Tokens expiring within this many seconds are treated as already expired.
AUTH_EXPIRY_BUFFER = 10 * 60

TokenTypeHint = Literal["access_token", "refresh_token"]


def now_in_seconds() -> int:
    return int(time.time())


@dataclass
class TokenRequest:
    """Token endpoint request for either supported grant type.

    ``code`` is only meaningful for the ``authorization_code`` grant and
    ``refresh_token`` only for the ``refresh_token`` grant.
    """

    client_id: str
    redirect_uri: str
    grant_type: str = GRANT_TYPE_AUTHORIZATION_CODE
    client_secret: str | None = None
    code: str | None = None
    refresh_token: str | None = None
    extras: dict[str, str] | None = None

    def to_string_map(self) -> dict[str, str]:
        """Convert to form fields for application/x-www-form-urlencoded.

        Extras never replace fields the request already sets.
        """
        data = {
            "grant_type": self.grant_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
        }

        if self.code:
            data["code"] = self.code
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token

        for key, value in (self.extras or {}).items():
            if key not in data:
                data[key] = value

        return data

    def to_json(self) -> dict[str, Any]:
        return {
            "grant_type": self.grant_type,
            "code": self.code,
            "refresh_token": self.refresh_token,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "extras": dict(self.extras) if self.extras is not None else None,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> TokenRequest:
        extras = data.get("extras")
        return cls(
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            grant_type=data.get("grant_type", GRANT_TYPE_AUTHORIZATION_CODE),
            client_secret=data.get("client_secret"),
            code=data.get("code"),
            refresh_token=data.get("refresh_token"),
            extras=dict(extras) if extras is not None else None,
        )


@dataclass(frozen=True)
class RevokeTokenRequest:
    """Token revocation request (RFC 7009 Section 2.1)."""

    token: str
    token_type_hint: TokenTypeHint | None = None
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)

    def to_json(self) -> dict[str, str]:
        data = {"token": self.token}
        if self.token_type_hint:
            data["token_type_hint"] = self.token_type_hint
        if self.client_id:
            data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    def to_string_map(self) -> dict[str, str]:
        return self.to_json()


class TokenResponse(BaseModel):
    """Successful token endpoint response (RFC 6749 Section 5.1).

    ``issued_at`` is fixed when the response is constructed; validity is
    always derived from it, never stored.
    """

    access_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None
    id_token: str | None = None
    issued_at: int = Field(default_factory=now_in_seconds)

    def is_valid(self, buffer_seconds: float = AUTH_EXPIRY_BUFFER) -> bool:
        """Check whether the access token is still usable.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early
        """
        if self.expires_in is None:
            return True  # No expiry means token doesn't expire

        return now_in_seconds() < self.issued_at + self.expires_in - buffer_seconds

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TokenError(BaseModel):
    """Token endpoint error response (RFC 6749 Section 5.2)."""

    error: str
    error_description: str | None = None
    error_uri: str | None = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

"""Discovery-related models for OpenID Connect provider metadata.

Contains the endpoint set read from an issuer's
``/.well-known/openid-configuration`` document.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from loopauth.models.errors import MissingEndpointError


class ServiceConfiguration(BaseModel):
    """OpenID Connect provider endpoints (OpenID Connect Discovery 1.0).

    Endpoint URLs are kept verbatim from the discovery document. A fresh
    fetch replaces the whole object; it is never patched in place.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Required for the authorization code flow
    authorization_endpoint: str
    token_endpoint: str

    # Optional but commonly used
    revocation_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    end_session_endpoint: str | None = None

    def require(self, name: str) -> str:
        """Return the named endpoint, raising if the provider has none."""
        endpoint = getattr(self, name)
        if not endpoint:
            raise MissingEndpointError(f"Service configuration has no {name}")
        return endpoint

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ServiceConfiguration:
        return cls.model_validate(data)

"""Authorization flow models for OAuth 2.0.

Contains the authorization request descriptor (with its lazily generated
PKCE material) and the two possible outcomes of a redirect callback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from loopauth.primitives.pkce import PKCEManager
from loopauth.services.security import generate_state

RESPONSE_TYPE_CODE = "code"
RESPONSE_TYPE_TOKEN = "token"

# Parameter names owned by the request itself; extras never override them.
BUILT_IN_PARAMETERS = (
    "redirect_uri",
    "client_id",
    "response_type",
    "state",
    "scope",
)
PKCE_PARAMETERS = ("code_challenge", "code_challenge_method")


@dataclass
class AuthorizationRequest:
    """Authorization request parameters for the authorization code flow.

    ``state`` and the PKCE material in ``internal`` are generated by
    :meth:`setup_code_verifier` and stay fixed for the life of the request.
    The whole request, ``internal`` included, survives a
    :meth:`to_json` / :meth:`from_json` round trip so a pending flow can be
    resumed after a restart.
    """

    RESPONSE_TYPE_CODE = RESPONSE_TYPE_CODE
    RESPONSE_TYPE_TOKEN = RESPONSE_TYPE_TOKEN

    client_id: str
    redirect_uri: str
    scope: str
    response_type: str = RESPONSE_TYPE_CODE
    state: str | None = None
    extras: dict[str, str] = field(default_factory=dict)
    internal: dict[str, str] | None = None

    def setup_code_verifier(self, pkce_manager: PKCEManager | None = None) -> None:
        """Generate the PKCE material and state, once."""
        if self.internal is not None:
            return

        pkce_params = (pkce_manager or PKCEManager()).generate_parameters()
        self.internal = pkce_params.as_internal()
        if not self.state:
            self.state = generate_state()

    @property
    def code_verifier(self) -> str | None:
        return self.internal.get("code_verifier") if self.internal else None

    def authorization_params(self) -> dict[str, str]:
        """Build the flat query parameters for the authorization URL."""
        params = {
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "response_type": self.response_type,
            "state": self.state,
            "scope": self.scope,
        }
        if self.internal:
            for name in PKCE_PARAMETERS:
                if self.internal.get(name):
                    params[name] = self.internal[name]

        for key, value in self.extras.items():
            if key not in BUILT_IN_PARAMETERS and key not in PKCE_PARAMETERS:
                params[key] = value

        return params

    def to_json(self) -> dict[str, Any]:
        return {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "extras": dict(self.extras),
            "internal": dict(self.internal) if self.internal is not None else None,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AuthorizationRequest:
        internal = data.get("internal")
        return cls(
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            scope=data["scope"],
            response_type=data.get("response_type", RESPONSE_TYPE_CODE),
            state=data.get("state"),
            extras=dict(data.get("extras") or {}),
            internal=dict(internal) if internal is not None else None,
        )


class AuthorizationResponse(BaseModel):
    """Successful authorization redirect (RFC 6749 Section 4.1.2)."""

    code: str
    state: str

    def to_json(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AuthorizationResponse:
        return cls.model_validate(data)


class AuthorizationError(BaseModel):
    """Provider-reported authorization failure (RFC 6749 Section 4.1.2.1)."""

    error: str
    error_description: str | None = None
    error_uri: str | None = None
    state: str | None = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AuthorizationError:
        return cls.model_validate(data)


@dataclass(frozen=True)
class AuthorizationRequestResponse:
    """A completed redirect correlated with the request that caused it.

    Exactly one of ``response`` and ``error`` is set.
    """

    request: AuthorizationRequest
    response: AuthorizationResponse | None = None
    error: AuthorizationError | None = None

    def __post_init__(self) -> None:
        if (self.response is None) == (self.error is None):
            raise ValueError("Exactly one of response or error must be set")

    def is_success(self) -> bool:
        return self.response is not None

    def is_error(self) -> bool:
        return self.error is not None

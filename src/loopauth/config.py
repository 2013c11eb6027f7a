"""Provider settings for the authorization code flow.

Settings are plain pydantic models; :meth:`ProviderSettings.from_env` reads
them from ``LOOPAUTH_*`` environment variables, after loading a ``.env``
file when one is present.
"""

from __future__ import annotations

import os
from urllib.parse import urlparse

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator

from loopauth.models.flow import RESPONSE_TYPE_CODE
from loopauth.primitives.query_string import QueryStringUtils

ENV_PREFIX = "LOOPAUTH_"
LOOPBACK_HOSTS = ("127.0.0.1", "::1", "localhost")


class ProviderSettings(BaseModel):
    """Client registration and redirect listener settings for one provider."""

    issuer_url: str
    client_id: str
    client_secret: str | None = None
    redirect_uri: str = "http://127.0.0.1:8000"
    scope: str = "openid profile"
    response_type: str = RESPONSE_TYPE_CODE
    extras: dict[str, str] = Field(default_factory=dict)

    # Derived from redirect_uri when unset
    listener_host: str | None = None
    listener_port: int | None = None

    @field_validator("redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v: str) -> str:
        """Native clients redirect to a plain-HTTP loopback address (RFC 8252)."""
        parsed = urlparse(v)
        if parsed.scheme != "http" or parsed.hostname not in LOOPBACK_HOSTS:
            raise ValueError(f"Redirect URI must be an http loopback address: {v}")
        return v

    @field_validator("issuer_url")
    @classmethod
    def validate_issuer_url(cls, v: str) -> str:
        if urlparse(v).scheme not in ("http", "https"):
            raise ValueError(f"Issuer URL must be an http(s) URL: {v}")
        return v

    @classmethod
    def from_env(
        cls, prefix: str = ENV_PREFIX, env_file: str | None = None
    ) -> ProviderSettings:
        """Read settings from the environment.

        Args:
            prefix: Environment variable prefix, e.g. ``LOOPAUTH_CLIENT_ID``
            env_file: ``.env`` file to load; searched from the working
                directory when omitted. Existing variables win.

        Raises:
            pydantic.ValidationError: If required settings are missing
        """
        dotenv_path = env_file or find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path, override=False)

        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None:
                values[name] = raw

        if "extras" in values:
            values["extras"] = QueryStringUtils().parse_query_string(str(values["extras"]))

        return cls.model_validate(values)

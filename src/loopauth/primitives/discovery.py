"""OpenID Connect discovery primitive.

Fetches an issuer's provider metadata document and maps it to a
:class:`~loopauth.models.discovery.ServiceConfiguration`.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from loopauth.models.discovery import ServiceConfiguration
from loopauth.models.errors import ConfigFetchError

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = ".well-known"
OPENID_CONFIGURATION = "openid-configuration"


class OIDCDiscovery:
    """Handles OpenID Connect provider discovery.

    Issues a single GET per call; nothing is cached, so callers that need
    fresh metadata simply fetch again.
    """

    def __init__(
        self, http_client: httpx.AsyncClient | None = None, timeout: float = 30.0
    ):
        """Initialize discovery.

        Args:
            http_client: Transport to use; one is created when omitted
            timeout: HTTP request timeout in seconds for a created client
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @staticmethod
    def discovery_url(issuer_url: str) -> str:
        """Build the well-known discovery URL for an issuer."""
        return f"{issuer_url.rstrip('/')}/{WELL_KNOWN_PATH}/{OPENID_CONFIGURATION}"

    async def fetch_from_issuer(self, issuer_url: str) -> ServiceConfiguration:
        """Fetch and parse the issuer's discovery document.

        Args:
            issuer_url: Issuer base URL, e.g. ``https://accounts.example.com``

        Returns:
            ServiceConfiguration with the provider's endpoints

        Raises:
            ConfigFetchError: If the document cannot be fetched or lacks
                required endpoints
        """
        url = self.discovery_url(issuer_url)
        logger.debug(f"Fetching service configuration from: {url}")

        try:
            response = await self._http_client.get(
                url, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
            configuration = ServiceConfiguration.model_validate(response.json())

        except httpx.HTTPStatusError as e:
            raise ConfigFetchError(
                f"Failed to fetch service configuration from {url}: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise ConfigFetchError(
                f"HTTP error fetching service configuration from {url}: {e}"
            ) from e
        except ValidationError as e:
            raise ConfigFetchError(
                f"Invalid service configuration from {url}: {e}"
            ) from e
        except ValueError as e:
            raise ConfigFetchError(
                f"Service configuration from {url} is not valid JSON: {e}"
            ) from e

        logger.debug(
            f"Discovered endpoints: authorization={configuration.authorization_endpoint}"
            f" token={configuration.token_endpoint}"
        )
        return configuration

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

"""OAuth 2.0 token exchange and revocation service.

Implements RFC 6749 token endpoint interactions (authorization code and
refresh token grants) and RFC 7009 token revocation.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from loopauth.models.discovery import ServiceConfiguration
from loopauth.models.errors import TokenExchangeError, TransportError
from loopauth.models.tokens import (
    RevokeTokenRequest,
    TokenError,
    TokenRequest,
    TokenResponse,
)
from loopauth.primitives.query_string import QueryStringUtils

logger = logging.getLogger(__name__)

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class TokenExchangeHandler:
    """Performs token endpoint and revocation endpoint exchanges.

    Success and failure are told apart by the shape of the JSON body, not
    the HTTP status: providers answer errors with structured JSON on 4xx,
    and a body carrying an ``error`` field is a
    :class:`~loopauth.models.tokens.TokenError` whatever the status.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        utils: QueryStringUtils | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the token exchange handler.

        Args:
            http_client: Transport to use; one is created when omitted
            utils: Form body encoder
            timeout: HTTP request timeout in seconds for a created client
        """
        self.timeout = timeout
        self.utils = utils or QueryStringUtils()
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def perform_token_request(
        self, configuration: ServiceConfiguration, request: TokenRequest
    ) -> TokenResponse:
        """Exchange a code or refresh token at the token endpoint.

        Args:
            configuration: Provider endpoints
            request: Token request for either grant type

        Returns:
            TokenResponse: Parsed successful response

        Raises:
            TokenExchangeError: If the provider answered with an error body
            TransportError: If the exchange failed or the body is not JSON
        """
        form_data = request.to_string_map()

        # Log request details (without sensitive data)
        logger.debug(
            f"Token request to {configuration.token_endpoint}: "
            f"grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}"
        )

        payload = await self._post_form(
            configuration.token_endpoint, form_data, expect_json=True
        )

        if not isinstance(payload, dict):
            raise TransportError("Token endpoint returned a non-object JSON body")

        try:
            if "error" in payload:
                token_error = TokenError.model_validate(payload)
                logger.warning(
                    f"Token request failed: {token_error.error} - "
                    f"{token_error.error_description or 'No description provided'}"
                )
                raise TokenExchangeError(token_error)

            token_response = TokenResponse.model_validate(payload)
        except ValidationError as e:
            raise TransportError(f"Invalid token response format: {e}") from e

        logger.info(f"Token request successful ({request.grant_type})")
        return token_response

    async def perform_revoke_token_request(
        self, configuration: ServiceConfiguration, request: RevokeTokenRequest
    ) -> bool:
        """Revoke a token at the revocation endpoint.

        Completion of the HTTP exchange is success; the body is not read.

        Raises:
            MissingEndpointError: If the provider has no revocation endpoint
            TransportError: If the exchange failed
        """
        endpoint = configuration.require("revocation_endpoint")
        logger.debug(f"Revoking token at {endpoint}")
        await self._post_form(endpoint, request.to_string_map(), expect_json=False)
        return True

    async def _post_form(
        self, url: str, form_data: dict[str, str], expect_json: bool
    ) -> Any:
        try:
            response = await self._http_client.post(
                url,
                content=self.utils.stringify(form_data),
                headers=FORM_HEADERS,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error during request to {url}: {e}") from e

        if not expect_json:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"Non-JSON response from {url} (status {response.status_code}): {e}"
            ) from e

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

"""OpenID Connect authorization code flow orchestration for native clients.

Coordinates discovery, the loopback authorization request, code exchange,
refresh and the user info call for a single provider.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar
from urllib.parse import urlparse, urlsplit

import httpx

from loopauth.config import ProviderSettings
from loopauth.models.discovery import ServiceConfiguration
from loopauth.models.errors import (
    AuthorizationCallbackError,
    AuthorizationFlowError,
    ConfigFetchError,
    NoAccessTokenError,
    TokenExchangeError,
    TransportError,
)
from loopauth.models.flow import (
    RESPONSE_TYPE_CODE,
    AuthorizationError,
    AuthorizationRequest,
    AuthorizationRequestResponse,
    AuthorizationResponse,
)
from loopauth.models.tokens import (
    GRANT_TYPE_AUTHORIZATION_CODE,
    GRANT_TYPE_REFRESH_TOKEN,
    RevokeTokenRequest,
    TokenError,
    TokenRequest,
    TokenResponse,
    TokenTypeHint,
)
from loopauth.primitives.discovery import OIDCDiscovery
from loopauth.primitives.query_string import QueryStringUtils
from loopauth.services.redirect_listener import RedirectListenerHandler
from loopauth.services.security import validate_state
from loopauth.services.tokens import TokenExchangeHandler

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FlowState:
    """Completion flags gating each step of the flow."""

    authorization_complete: bool = False
    token_request_complete: bool = False


class AuthOrchestrator:
    """Runs the end-to-end authorization code flow with PKCE.

    Steps are called in order: :meth:`fetch_service_configuration`,
    :meth:`make_auth_request` (or :meth:`open_auth_url` plus
    :meth:`complete_authorization_from_url`), :meth:`make_token_request`,
    then :meth:`refresh_access_token` / :meth:`fetch_user_info` as needed.

    A step called before its preconditions hold logs a warning and returns
    ``None``, so UI-driven callers can simply retry. Transport and protocol
    failures are raised.
    """

    def __init__(
        self,
        issuer_url: str,
        client_id: str,
        redirect_uri: str,
        scope: str,
        response_type: str = RESPONSE_TYPE_CODE,
        extras: dict[str, str] | None = None,
        client_secret: str | None = None,
        *,
        listener_host: str | None = None,
        listener_port: int | None = None,
        http_client: httpx.AsyncClient | None = None,
        open_browser: Callable[[str], object] | None = None,
        discovery: OIDCDiscovery | None = None,
        redirect_handler: RedirectListenerHandler | None = None,
        token_handler: TokenExchangeHandler | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            issuer_url: OpenID Connect issuer to discover endpoints from
            client_id: Registered client identifier
            redirect_uri: Loopback redirect URI registered with the provider
            scope: Space separated scopes to request
            response_type: Authorization response type
            extras: Additional authorization request parameters
            client_secret: Secret for confidential clients
            listener_host: Interface for the redirect listener; defaults to
                the redirect URI's host
            listener_port: Port for the redirect listener; defaults to the
                redirect URI's port
            http_client: Shared transport for all outbound calls
            open_browser: Opens a URL in the system browser
        """
        self.issuer_url = issuer_url
        self.utils = QueryStringUtils()

        self.authorization_request = AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            response_type=response_type,
            state=None,
            extras=dict(extras or {}),
        )
        self.token_request = TokenRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            grant_type=GRANT_TYPE_AUTHORIZATION_CODE,
            client_secret=client_secret,
        )

        self.flow_state = FlowState()
        self.configuration: ServiceConfiguration | None = None
        self.authorization_response: AuthorizationResponse | None = None
        self.authorization_error: AuthorizationError | None = None
        self.token_response: TokenResponse | None = None
        self.token_error: TokenError | None = None

        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._open_browser = open_browser or webbrowser.open

        parsed = urlparse(redirect_uri)
        self.discovery = discovery or OIDCDiscovery(http_client=self._http_client)
        self.redirect_handler = redirect_handler or RedirectListenerHandler(
            port=listener_port if listener_port is not None else parsed.port or 80,
            host=listener_host or parsed.hostname or "127.0.0.1",
            open_browser=self._open_browser,
            utils=self.utils,
        )
        self.token_handler = token_handler or TokenExchangeHandler(
            http_client=self._http_client, utils=self.utils
        )

    @classmethod
    def from_settings(cls, settings: ProviderSettings, **kwargs: Any) -> AuthOrchestrator:
        """Build an orchestrator from provider settings."""
        return cls(
            issuer_url=settings.issuer_url,
            client_id=settings.client_id,
            redirect_uri=settings.redirect_uri,
            scope=settings.scope,
            response_type=settings.response_type,
            extras=settings.extras,
            client_secret=settings.client_secret,
            listener_host=settings.listener_host,
            listener_port=settings.listener_port,
            **kwargs,
        )

    async def fetch_service_configuration(self) -> ServiceConfiguration | None:
        """Discover the provider's endpoints, replacing any previous set."""
        logger.debug(f"Fetching service configuration for {self.issuer_url}")
        try:
            configuration = await self.discovery.fetch_from_issuer(self.issuer_url)
        except ConfigFetchError as e:
            logger.error(f"Service configuration unavailable: {e}")
            return None

        self.configuration = configuration
        return configuration

    async def make_auth_request(self) -> AuthorizationRequestResponse | None:
        """Run the authorization request through the loopback listener.

        Opens the browser and waits for the redirect. A provider-reported
        denial is returned in the result's ``error`` and kept on
        :attr:`authorization_error`.

        Raises:
            ListenerBindError: If the redirect listener cannot start
        """
        if self.configuration is None:
            logger.warning("Unknown service configuration")
            return None
        self._start_new_flow()

        logger.debug(
            f"Making authorization request for client "
            f"{self.authorization_request.client_id}"
        )
        future = await self.redirect_handler.perform_authorization_request(
            self.configuration, self.authorization_request
        )
        try:
            result = await future
        except asyncio.CancelledError:
            await self.redirect_handler.cancel(self.authorization_request.state)
            raise

        self._store_authorization_result(result)
        return result

    async def open_auth_url(self) -> str | None:
        """Open the authorization URL without a loopback listener.

        For redirects delivered some other way (for example a custom URL
        scheme), followed by :meth:`complete_authorization_from_url`.
        """
        if self.configuration is None:
            logger.warning("Unknown service configuration")
            return None

        self._start_new_flow()
        self.authorization_request.setup_code_verifier()
        url = self.redirect_handler.build_request_url(
            self.configuration, self.authorization_request
        )
        logger.debug(f"Opening authorization URL for {self.authorization_request.client_id}")
        await asyncio.to_thread(self._open_browser, url)
        self.flow_state.authorization_complete = True
        return url

    def complete_authorization_from_url(
        self, callback_url: str
    ) -> AuthorizationRequestResponse:
        """Accept a redirect URL delivered outside the loopback listener.

        Raises:
            AuthorizationFlowError: If no authorization request was started
            StateValidationError: If the echoed state does not match
            AuthorizationCallbackError: If the URL carries neither code nor error
        """
        query = self.utils.parse_redirect_query(urlsplit(callback_url).query)
        self._validate_echoed_state(query.get("state"))
        if query.get("error"):
            return self.accept_authorization_error(
                AuthorizationError(
                    error=query["error"],
                    error_description=query.get("error_description"),
                    error_uri=query.get("error_uri"),
                    state=query.get("state"),
                )
            )
        if not query.get("code"):
            raise AuthorizationCallbackError(
                "Authorization callback missing both code and error"
            )
        return self.accept_authorization_response(
            AuthorizationResponse(code=query["code"], state=query["state"])
        )

    def accept_authorization_response(
        self, response: AuthorizationResponse
    ) -> AuthorizationRequestResponse:
        """Record a successful redirect after checking its state."""
        self._validate_echoed_state(response.state)
        result = AuthorizationRequestResponse(
            request=self.authorization_request, response=response
        )
        self._store_authorization_result(result)
        return result

    def accept_authorization_error(
        self, error: AuthorizationError
    ) -> AuthorizationRequestResponse:
        """Record a provider-reported denial after checking its state."""
        self._validate_echoed_state(error.state)
        result = AuthorizationRequestResponse(
            request=self.authorization_request, error=error
        )
        self._store_authorization_result(result)
        return result

    async def make_token_request(self) -> TokenResponse | None:
        """Exchange the authorization code for tokens.

        Raises:
            TokenExchangeError: If the provider rejected the exchange
            TransportError: If the exchange failed
        """
        if self.configuration is None:
            logger.warning("Unknown service configuration")
            return None
        if not self.flow_state.authorization_complete:
            logger.warning("Authorization is not complete, cannot make token request")
            return None
        if self.authorization_response is None:
            logger.warning("Authorization produced no code, cannot make token request")
            return None

        extras: dict[str, str] | None = None
        if self.authorization_request.code_verifier:
            extras = {"code_verifier": self.authorization_request.code_verifier}

        self.token_request.code = self.authorization_response.code
        self.token_request.extras = extras
        logger.debug("Making token request")

        try:
            response = await self.token_handler.perform_token_request(
                self.configuration, self.token_request
            )
        except TokenExchangeError as e:
            self.token_error = e.error
            raise

        self.token_response = response
        self.token_error = None
        self.flow_state.token_request_complete = True
        return response

    async def refresh_access_token(self, refresh_token: str | None = None) -> str | None:
        """Return a valid access token, refreshing it when needed.

        Args:
            refresh_token: Refresh token to use instead of the cached one,
                e.g. one loaded from persistent storage

        Raises:
            NoAccessTokenError: If the refresh response carries no access token
            TokenExchangeError: If the provider rejected the refresh
            TransportError: If the exchange failed
        """
        if not self.flow_state.token_request_complete and not refresh_token:
            logger.warning(
                "Token request is not complete and no refresh token was given, "
                "cannot refresh access token"
            )
            return None
        if self.configuration is None:
            logger.warning("Unknown service configuration")
            return None

        cached = self.token_response
        if cached is not None and cached.access_token and cached.is_valid():
            logger.debug("Access token is still valid, no need to refresh")
            return cached.access_token

        if not refresh_token and not (cached and cached.refresh_token):
            logger.warning("Refresh token is not available, cannot refresh access token")
            return None

        request = TokenRequest(
            client_id=self.token_request.client_id,
            client_secret=self.token_request.client_secret,
            redirect_uri=self.token_request.redirect_uri,
            grant_type=GRANT_TYPE_REFRESH_TOKEN,
            refresh_token=refresh_token or cached.refresh_token,
        )
        logger.debug("Refreshing access token")

        try:
            response = await self.token_handler.perform_token_request(
                self.configuration, request
            )
        except TokenExchangeError as e:
            self.token_error = e.error
            raise

        if not response.access_token:
            raise NoAccessTokenError(
                "No access token available, refreshing the access token failed"
            )
        if not response.refresh_token:
            response.refresh_token = request.refresh_token

        self.token_response = response
        self.token_error = None
        self.flow_state.token_request_complete = True
        logger.info("Successfully refreshed access token")
        return response.access_token

    async def perform_with_token(
        self, callback: Callable[[str], Awaitable[T]]
    ) -> T:
        """Run ``callback`` with a valid access token.

        Raises:
            NoAccessTokenError: If no access token can be obtained
        """
        access_token = await self.refresh_access_token()
        if not access_token:
            raise NoAccessTokenError("Access token is not available")
        return await callback(access_token)

    async def fetch_user_info(self) -> dict[str, Any] | None:
        """Fetch the signed-in user's claims from the userinfo endpoint."""
        if self.configuration is None:
            logger.warning("Unknown service configuration")
            return None
        if not self.flow_state.token_request_complete:
            logger.warning("Token request is not complete, cannot fetch user info")
            return None
        if not self.configuration.userinfo_endpoint:
            logger.warning("Provider has no userinfo endpoint")
            return None

        endpoint = self.configuration.userinfo_endpoint

        async def request_user_info(access_token: str) -> dict[str, Any]:
            try:
                response = await self._http_client.post(
                    endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                raise TransportError(f"Failed to fetch user info: {e}") from e
            except ValueError as e:
                raise TransportError(f"Invalid user info response: {e}") from e

        return await self.perform_with_token(request_user_info)

    async def revoke_token(
        self,
        token: str | None = None,
        token_type_hint: TokenTypeHint | None = None,
    ) -> bool | None:
        """Revoke a token, by default the cached refresh token."""
        if self.configuration is None:
            logger.warning("Unknown service configuration")
            return None

        if token is None and self.token_response is not None:
            if self.token_response.refresh_token:
                token = self.token_response.refresh_token
                token_type_hint = token_type_hint or "refresh_token"
            else:
                token = self.token_response.access_token
                token_type_hint = token_type_hint or "access_token"
        if not token:
            logger.warning("No token available to revoke")
            return None

        request = RevokeTokenRequest(
            token=token,
            token_type_hint=token_type_hint,
            client_id=self.token_request.client_id,
            client_secret=self.token_request.client_secret,
        )
        return await self.token_handler.perform_revoke_token_request(
            self.configuration, request
        )

    async def logout(self) -> None:
        """Forget the session locally and open the provider's logout page."""
        id_token = self.token_response.id_token if self.token_response else None
        self.flow_state.authorization_complete = False
        self.flow_state.token_request_complete = False
        self.token_response = None
        self._reset_authorization_request()

        if self.configuration is None or not self.configuration.end_session_endpoint:
            logger.warning("Provider has no end session endpoint")
            return

        url = self.configuration.end_session_endpoint
        if id_token:
            separator = "&" if "?" in url else "?"
            url += separator + self.utils.stringify({"id_token_hint": id_token})
        await asyncio.to_thread(self._open_browser, url)

    async def aclose(self) -> None:
        """Close the redirect listener and owned HTTP resources."""
        await self.redirect_handler.aclose()
        if self._owns_http_client:
            await self._http_client.aclose()

    def _start_new_flow(self) -> None:
        # A request whose PKCE material was already issued belongs to an
        # earlier flow; state and verifier are never sent twice.
        if self.authorization_request.internal is not None:
            logger.debug("Starting a new authorization request")
            self._reset_authorization_request()

    def _reset_authorization_request(self) -> None:
        previous = self.authorization_request
        self.authorization_request = replace(
            previous, state=None, internal=None, extras=dict(previous.extras)
        )
        self.authorization_response = None
        self.authorization_error = None
        self.flow_state.authorization_complete = False

    def _validate_echoed_state(self, state: str | None) -> None:
        expected = self.authorization_request.state
        if expected is None:
            raise AuthorizationFlowError(
                "No authorization request has been started for this redirect"
            )
        validate_state(expected, state)

    def _store_authorization_result(self, result: AuthorizationRequestResponse) -> None:
        self.authorization_response = result.response
        self.authorization_error = result.error
        self.flow_state.authorization_complete = True
        if result.error is not None:
            logger.warning(f"Authorization denied by provider: {result.error.error}")

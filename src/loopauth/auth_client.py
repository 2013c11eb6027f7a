"""Sign-in client combining the orchestrator with persisted credentials."""

from __future__ import annotations

import logging
from typing import Any

from loopauth.config import ProviderSettings
from loopauth.models.errors import AuthorizationFailedError, OAuth2Error
from loopauth.models.flow import AuthorizationResponse
from loopauth.oauth_client import AuthOrchestrator
from loopauth.storage import CredentialStore

logger = logging.getLogger(__name__)

TOKEN_KEYS = ("access_token", "refresh_token", "id_token")


class AuthClient:
    """Keeps a user signed in across runs.

    On start-up a stored refresh token is tried first; when there is none,
    or the provider rejects it, the interactive browser flow runs. Tokens
    are written back to the credential store after every successful
    exchange.
    """

    def __init__(self, auth: AuthOrchestrator, store: CredentialStore):
        self.auth = auth
        self.store = store
        self.user_info: dict[str, Any] | None = None

    @classmethod
    def from_settings(
        cls, settings: ProviderSettings, store: CredentialStore, **kwargs: Any
    ) -> AuthClient:
        return cls(AuthOrchestrator.from_settings(settings, **kwargs), store)

    async def init(self) -> bool:
        """Discover the provider, then restore or start a session.

        Returns:
            True if the client ends up signed in
        """
        if await self.auth.fetch_service_configuration() is None:
            logger.warning("Service configuration unavailable, cannot sign in")
            return False

        if self.store.list_all():
            logger.debug("Found stored credentials, refreshing access token")
            if await self.handle_local_token():
                return True
            logger.info("Stored credentials are invalid or expired, signing in again")
        else:
            logger.debug("No stored credentials, starting sign-in")

        return await self.auth_flow()

    async def auth_flow(self) -> bool:
        """Run the interactive loopback sign-in.

        Raises:
            AuthorizationFailedError: If the provider denied authorization
        """
        logger.debug("Starting auth flow")
        result = await self.auth.make_auth_request()
        if result is None:
            return False
        if result.error is not None:
            raise AuthorizationFailedError(result.error)
        return await self._complete_sign_in()

    async def token_flow(self, code: str, state: str) -> bool:
        """Finish sign-in from a redirect delivered outside the listener."""
        logger.debug("Received authorization response")
        self.auth.accept_authorization_response(
            AuthorizationResponse(code=code, state=state)
        )
        return await self._complete_sign_in()

    async def handle_local_token(self) -> bool:
        """Restore the session from the stored refresh token."""
        refresh_token = self.store.get("refresh_token")
        if not refresh_token:
            return False

        try:
            access_token = await self.auth.refresh_access_token(refresh_token)
        except OAuth2Error as e:
            logger.error(f"Refreshing stored credentials failed: {e}")
            self.delete_local_token()
            return False

        if access_token is None:
            return False

        self._persist_tokens()
        await self.fetch_user_info()
        return True

    async def fetch_user_info(self) -> dict[str, Any] | None:
        if not self.auth.flow_state.token_request_complete:
            logger.debug("Token request not complete, sign in first")
            return None

        self.user_info = await self.auth.fetch_user_info()
        return self.user_info

    async def sign_out(self) -> None:
        await self.auth.logout()
        self.user_info = None
        self.delete_local_token()

    def get_token(self, key: str) -> str | None:
        """Return one of the current ``access_token``/``refresh_token``/``id_token``."""
        if key not in TOKEN_KEYS:
            raise KeyError(key)
        if not self.auth.flow_state.token_request_complete or not self.auth.token_response:
            logger.debug("Token request not complete, sign in first")
            return None
        return getattr(self.auth.token_response, key)

    def delete_local_token(self) -> None:
        for key in TOKEN_KEYS:
            self.store.delete(key)

    async def _complete_sign_in(self) -> bool:
        if await self.auth.make_token_request() is None:
            return False
        logger.debug("Token request complete, saving tokens")
        self._persist_tokens()
        await self.fetch_user_info()
        return True

    def _persist_tokens(self) -> None:
        for key in TOKEN_KEYS:
            value = self.get_token(key)
            if value:
                self.store.set(key, value)

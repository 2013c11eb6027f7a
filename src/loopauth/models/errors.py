"""Exception hierarchy for the OAuth 2.0 / OpenID Connect client.

Provides specific exception types for different failure modes to enable
precise error handling by callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loopauth.models.flow import AuthorizationError
    from loopauth.models.tokens import TokenError


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.0 related errors."""

    pass


class ConfigFetchError(OAuth2Error):
    """Raised when the discovery document is unreachable or malformed."""

    pass


class MissingEndpointError(OAuth2Error):
    """Raised when the service configuration lacks a needed endpoint."""

    pass


class TransportError(OAuth2Error):
    """Raised when an HTTP exchange fails below the OAuth protocol layer."""

    pass


class ListenerBindError(OAuth2Error):
    """Raised when the local redirect listener cannot bind its port."""

    def __init__(self, port: int, host: str = "127.0.0.1", reason: str = ""):
        self.port = port
        self.host = host
        message = f"Unable to create HTTP server at {host}:{port}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class AuthorizationFlowError(OAuth2Error):
    """Raised when the authorization flow is driven out of order."""

    pass


class AuthorizationFailedError(OAuth2Error):
    """Raised when the provider denies the authorization request.

    Wraps the :class:`~loopauth.models.flow.AuthorizationError` the provider
    sent back on the redirect.
    """

    def __init__(self, error: AuthorizationError):
        self.error = error
        message = f"Authorization failed: {error.error}"
        if error.error_description:
            message += f" ({error.error_description})"
        if error.error_uri:
            message += f" See: {error.error_uri}"
        super().__init__(message)


class AuthorizationCallbackError(OAuth2Error):
    """Raised when authorization server callback data is malformed or invalid.

    This indicates the authorization server sent an invalid callback URL,
    not that our callback handling code failed.
    """

    pass


class StateValidationError(AuthorizationCallbackError):
    """Raised when OAuth state parameter validation fails.

    This indicates either a missing state parameter or a state mismatch,
    which could indicate a CSRF attack or authorization server issue.
    """

    pass


class PKCEError(OAuth2Error):
    """Raised when PKCE parameter generation fails."""

    pass


class TokenExchangeError(OAuth2Error):
    """Raised when the token endpoint answers with an error body.

    Wraps the :class:`~loopauth.models.tokens.TokenError` parsed from the
    provider's response.
    """

    def __init__(self, error: TokenError):
        self.error = error
        message = f"Token request failed: {error.error}"
        if error.error_description:
            message += f" ({error.error_description})"
        super().__init__(message)


class NoAccessTokenError(OAuth2Error):
    """Raised when a token exchange succeeded but carried no access token."""

    pass

"""Loopback redirect listener for the authorization code flow.

Binds a local HTTP server, sends the user to the authorization endpoint in
the system browser, and correlates the browser's redirect back to the
pending request through its ``state`` parameter (RFC 8252 Section 7.3).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import socket
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass

import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from loopauth.models.discovery import ServiceConfiguration
from loopauth.models.errors import AuthorizationFlowError, ListenerBindError
from loopauth.models.flow import (
    AuthorizationError,
    AuthorizationRequest,
    AuthorizationRequestResponse,
    AuthorizationResponse,
)
from loopauth.primitives.pkce import PKCEManager
from loopauth.primitives.query_string import QueryStringUtils
from loopauth.services.security import match_state

logger = logging.getLogger(__name__)

CONFIRMATION_PAGE = "<html><body><h1>You can now close this window</h1></body></html>"
REJECTION_PAGE = "<html><body><h1>Unknown authorization request</h1></body></html>"


class ListenerState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PendingAuthorization:
    request: AuthorizationRequest
    future: asyncio.Future[AuthorizationRequestResponse]


class RedirectListenerHandler:
    """Owns the loopback listener and the pending authorization requests.

    Pending requests are kept in a registry keyed by ``state``. The first
    well-formed callback whose ``state`` matches a pending request resolves
    that request's future, exactly once. Callbacks without a ``state`` or
    without a ``code``/``error`` (favicon requests and the like) are ignored
    and leave the listener open; callbacks carrying an unknown ``state`` are
    rejected. The listener shuts down as soon as nothing is pending.
    """

    def __init__(
        self,
        port: int = 8000,
        host: str = "127.0.0.1",
        open_browser: Callable[[str], object] | None = None,
        utils: QueryStringUtils | None = None,
        pkce_manager: PKCEManager | None = None,
    ):
        """Initialize the redirect listener handler.

        Args:
            port: Local port the redirect URI points at (0 picks a free one)
            host: Loopback interface to bind
            open_browser: Opens a URL in the system browser
            utils: Query string encoder/decoder
            pkce_manager: PKCE generator used for request setup
        """
        self.port = port
        self.host = host
        self.utils = utils or QueryStringUtils()
        self.state = ListenerState.IDLE
        self._open_browser = open_browser or webbrowser.open
        self._pkce_manager = pkce_manager or PKCEManager()

        self._pending: dict[str, PendingAuthorization] = {}
        self._latest: asyncio.Future[AuthorizationRequestResponse] | None = None
        self._bound_port: int | None = None

        self._app = Starlette(
            routes=[Route("/{path:path}", self._handle_callback, methods=["GET"])]
        )
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None

    @property
    def bound_port(self) -> int | None:
        """Port the listener is actually bound to, while it is open."""
        return self._bound_port

    @property
    def is_listening(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    @property
    def pending_states(self) -> list[str]:
        return list(self._pending)

    def build_request_url(
        self, configuration: ServiceConfiguration, request: AuthorizationRequest
    ) -> str:
        """Build the authorization URL the browser is sent to."""
        query = self.utils.stringify(request.authorization_params())
        return f"{configuration.authorization_endpoint}?{query}"

    async def perform_authorization_request(
        self, configuration: ServiceConfiguration, request: AuthorizationRequest
    ) -> asyncio.Future[AuthorizationRequestResponse]:
        """Start an authorization request and return its correlation future.

        Ensures the request's PKCE material and state exist, opens the
        listener (reusing it if already open), registers the request and
        opens the authorization URL in the browser.

        Returns:
            Future resolved with the correlated AuthorizationRequestResponse,
            or failed with ListenerBindError if the port is unavailable
        """
        future: asyncio.Future[AuthorizationRequestResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._latest = future

        request.setup_code_verifier(self._pkce_manager)
        url = self.build_request_url(configuration, request)

        try:
            await self._ensure_listening()
        except ListenerBindError as e:
            logger.error(f"Redirect listener failed to start: {e}")
            self.state = ListenerState.FAILED
            future.set_exception(e)
            return future

        superseded = self._pending.pop(request.state, None)
        if superseded is not None and not superseded.future.done():
            logger.debug("Superseding pending authorization request with same state")
            superseded.future.cancel()

        self._pending[request.state] = PendingAuthorization(request, future)
        self.state = ListenerState.PENDING
        logger.debug(
            f"Authorization flow pending on {self.host}:{self._bound_port} "
            f"for client {request.client_id}"
        )

        try:
            await asyncio.to_thread(self._open_browser, url)
        except BaseException:
            await self.cancel(request.state)
            raise

        return future

    async def complete_authorization_request(self) -> AuthorizationRequestResponse:
        """Wait for the most recently started authorization request.

        Raises:
            AuthorizationFlowError: If no request was ever started
        """
        if self._latest is None:
            raise AuthorizationFlowError(
                "No pending authorization request. "
                "Call perform_authorization_request() first"
            )
        return await self._latest

    async def cancel(self, state: str) -> None:
        """Abandon a pending request and close the listener if idle."""
        pending = self._pending.pop(state, None)
        if pending is not None and not pending.future.done():
            logger.debug("Cancelling pending authorization request")
            pending.future.cancel()

        if not self._pending:
            if self.state == ListenerState.PENDING:
                self.state = ListenerState.IDLE
            await self._stop_listener()

    async def aclose(self) -> None:
        """Cancel every pending request and close the listener."""
        for state in list(self._pending):
            await self.cancel(state)
        await self._stop_listener()

    async def wait_closed(self) -> None:
        """Wait until the listener has fully shut down."""
        if self._serve_task is not None:
            await asyncio.shield(self._serve_task)

    async def __aenter__(self) -> RedirectListenerHandler:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _handle_callback(self, request: Request) -> Response:
        """Inspect one inbound request on the listener."""
        query = self.utils.parse_redirect_query(request.url.query)
        state = query.get("state")
        code = query.get("code")
        error = query.get("error")

        if not state or (not code and not error):
            logger.debug(f"Ignoring non-callback request for {request.url.path}")
            return Response(status_code=404)

        matched = match_state(self._pending, state)
        if matched is None:
            logger.warning("Rejected redirect callback with unknown state parameter")
            return HTMLResponse(REJECTION_PAGE, status_code=400)

        pending = self._pending.pop(matched)
        if error:
            logger.warning(
                f"Authorization callback contained error: {error} - "
                f"{query.get('error_description')}"
            )
            result = AuthorizationRequestResponse(
                request=pending.request,
                error=AuthorizationError(
                    error=error,
                    error_description=query.get("error_description"),
                    error_uri=query.get("error_uri"),
                    state=state,
                ),
            )
        else:
            logger.info("Authorization callback successful - received code")
            result = AuthorizationRequestResponse(
                request=pending.request,
                response=AuthorizationResponse(code=code, state=state),
            )

        # Resolve only after the confirmation page has been written, and
        # close the connection instead of keeping it alive.
        return HTMLResponse(
            CONFIRMATION_PAGE,
            headers={"Connection": "close"},
            background=BackgroundTask(self._complete, pending.future, result),
        )

    async def _complete(
        self,
        future: asyncio.Future[AuthorizationRequestResponse],
        result: AuthorizationRequestResponse,
    ) -> None:
        if not future.done():
            future.set_result(result)

        if not self._pending:
            self.state = ListenerState.COMPLETED
            # Runs inside a connection task; awaiting shutdown here would
            # wait on ourselves.
            if self._server is not None:
                self._server.should_exit = True
            logger.debug("Authorization flow complete, closing redirect listener")

    async def _ensure_listening(self) -> None:
        if self.is_listening and self._server is not None:
            if not self._server.should_exit:
                return
            await self._stop_listener()

        sock = self._bind_socket()
        config = uvicorn.Config(
            app=self._app,
            log_config=None,
            log_level="warning",
            lifespan="off",
            timeout_keep_alive=1,
            timeout_graceful_shutdown=1,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))
        logger.debug(f"Redirect listener started on {self.host}:{self._bound_port}")

    def _bind_socket(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen()
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise ListenerBindError(self.port, self.host, str(e)) from e

        self._bound_port = sock.getsockname()[1]
        return sock

    async def _stop_listener(self) -> None:
        if self._server is None:
            return

        self._server.should_exit = True
        serve_task = self._serve_task
        self._server = None
        self._serve_task = None
        self._bound_port = None
        if serve_task is not None:
            await serve_task
        logger.debug("Redirect listener closed")

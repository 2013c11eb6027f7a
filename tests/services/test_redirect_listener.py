"""Tests for the loopback redirect listener.

These bind real sockets on 127.0.0.1 and drive the listener with an HTTP
client playing the browser's part.
"""

import asyncio
import socket
from unittest.mock import MagicMock

import httpx
import pytest

from loopauth.models.discovery import ServiceConfiguration
from loopauth.models.errors import AuthorizationFlowError, ListenerBindError
from loopauth.models.flow import AuthorizationRequest
from loopauth.primitives.query_string import QueryStringUtils
from loopauth.services.redirect_listener import (
    CONFIRMATION_PAGE,
    ListenerState,
    RedirectListenerHandler,
)

WAIT_TIMEOUT = 5.0


def make_request(**kwargs) -> AuthorizationRequest:
    return AuthorizationRequest(
        client_id="c",
        redirect_uri="http://127.0.0.1:8000",
        scope="openid profile",
        response_type="code",
        **kwargs,
    )


class TestRedirectListenerHandler:
    def setup_method(self):
        self.open_browser = MagicMock()
        self.handler = RedirectListenerHandler(port=0, open_browser=self.open_browser)
        self.configuration = ServiceConfiguration(
            authorization_endpoint="https://op.example/authorize",
            token_endpoint="https://op.example/token",
        )
        self.client = httpx.AsyncClient(trust_env=False, timeout=WAIT_TIMEOUT)

    @pytest.fixture(autouse=True)
    async def close_listener(self, request):
        yield
        await request.instance.client.aclose()
        await request.instance.handler.aclose()

    def _callback_url(self, query: str, path: str = "/") -> str:
        return f"http://127.0.0.1:{self.handler.bound_port}{path}?{query}"

    async def test_build_request_url(self):
        # Arrange
        request = make_request()
        request.setup_code_verifier()

        # Act
        url = self.handler.build_request_url(self.configuration, request)

        # Assert
        assert url.startswith("https://op.example/authorize?")
        params = QueryStringUtils().parse(url)
        assert params == request.authorization_params()

    async def test_opens_browser_with_authorization_url(self):
        # Arrange
        request = make_request()

        # Act
        await self.handler.perform_authorization_request(self.configuration, request)

        # Assert
        self.open_browser.assert_called_once()
        url = self.open_browser.call_args[0][0]
        params = QueryStringUtils().parse(url)
        assert params["client_id"] == "c"
        assert params["state"] == request.state
        assert params["code_challenge"] == request.internal["code_challenge"]
        assert params["code_challenge_method"] == "S256"
        assert self.handler.state == ListenerState.PENDING
        assert self.handler.is_listening
        assert self.handler.pending_states == [request.state]

    async def test_code_callback_resolves_future_and_closes_listener(self):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )

        # Act
        response = await self.client.get(
            self._callback_url(f"code=abc&state={request.state}")
        )
        result = await asyncio.wait_for(future, WAIT_TIMEOUT)

        # Assert
        assert response.status_code == 200
        assert response.text == CONFIRMATION_PAGE
        assert result.is_success()
        assert result.request is request
        assert result.response.code == "abc"
        assert result.response.state == request.state
        assert self.handler.state == ListenerState.COMPLETED

        await asyncio.wait_for(self.handler.wait_closed(), WAIT_TIMEOUT)
        assert not self.handler.is_listening

    async def test_listener_refuses_connections_after_completion(self):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )
        url = self._callback_url(f"code=abc&state={request.state}")
        await self.client.get(url)
        await asyncio.wait_for(future, WAIT_TIMEOUT)
        await asyncio.wait_for(self.handler.wait_closed(), WAIT_TIMEOUT)

        # Act / Assert
        with pytest.raises(httpx.ConnectError):
            await self.client.get(url)

    async def test_error_callback(self):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )

        # Act
        response = await self.client.get(
            self._callback_url(
                f"error=access_denied&error_description=User%20denied&state={request.state}"
            )
        )
        result = await asyncio.wait_for(future, WAIT_TIMEOUT)

        # Assert
        assert response.status_code == 200
        assert result.is_error()
        assert result.response is None
        assert result.error.error == "access_denied"
        assert result.error.error_description == "User denied"
        assert result.error.state == request.state
        assert self.handler.state == ListenerState.COMPLETED

    async def test_form_encoded_error_description(self):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )

        # Act
        await self.client.get(
            self._callback_url(
                "error=access_denied&error_description=User+denied+access"
                f"&state={request.state}"
            )
        )
        result = await asyncio.wait_for(future, WAIT_TIMEOUT)

        # Assert
        assert result.error.error_description == "User denied access"

    @pytest.mark.parametrize(
        "path, query",
        [
            ("/favicon.ico", ""),
            ("/", "code=abc"),
            ("/", "state=only-state"),
            ("/", "foo=bar"),
        ],
    )
    async def test_non_callback_requests_are_ignored(self, path, query):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )

        # Act
        response = await self.client.get(self._callback_url(query, path=path))

        # Assert
        assert response.status_code == 404
        assert not future.done()
        assert self.handler.state == ListenerState.PENDING
        assert self.handler.is_listening

        # The real callback still resolves the flow afterwards
        await self.client.get(self._callback_url(f"code=abc&state={request.state}"))
        result = await asyncio.wait_for(future, WAIT_TIMEOUT)
        assert result.response.code == "abc"

    async def test_unknown_state_is_rejected(self):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )

        # Act
        response = await self.client.get(self._callback_url("code=abc&state=forged"))

        # Assert
        assert response.status_code == 400
        assert not future.done()
        assert self.handler.state == ListenerState.PENDING
        assert self.handler.pending_states == [request.state]

    async def test_future_resolves_only_once(self):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )
        await self.client.get(self._callback_url(f"code=first&state={request.state}"))
        result = await asyncio.wait_for(future, WAIT_TIMEOUT)

        # Act
        try:
            await self.client.get(
                self._callback_url(f"code=second&state={request.state}")
            )
        except httpx.HTTPError:
            pass  # listener may already be gone

        # Assert
        assert future.result() is result
        assert result.response.code == "first"

    async def test_concurrent_requests_are_correlated_by_state(self):
        # Arrange
        first = make_request()
        second = make_request()
        first_future = await self.handler.perform_authorization_request(
            self.configuration, first
        )
        second_future = await self.handler.perform_authorization_request(
            self.configuration, second
        )
        assert set(self.handler.pending_states) == {first.state, second.state}

        # Act
        await self.client.get(self._callback_url(f"code=two&state={second.state}"))
        second_result = await asyncio.wait_for(second_future, WAIT_TIMEOUT)

        # Assert
        assert second_result.response.code == "two"
        assert not first_future.done()
        assert self.handler.state == ListenerState.PENDING
        assert self.handler.is_listening

        await self.client.get(self._callback_url(f"code=one&state={first.state}"))
        first_result = await asyncio.wait_for(first_future, WAIT_TIMEOUT)
        assert first_result.response.code == "one"
        assert self.handler.state == ListenerState.COMPLETED

    async def test_bind_failure_fails_the_future(self):
        # Arrange
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        port = blocker.getsockname()[1]
        handler = RedirectListenerHandler(port=port, open_browser=self.open_browser)

        try:
            # Act
            future = await handler.perform_authorization_request(
                self.configuration, make_request()
            )

            # Assert
            with pytest.raises(ListenerBindError) as exc_info:
                await future
            assert exc_info.value.port == port
            assert f"127.0.0.1:{port}" in str(exc_info.value)
            assert handler.state == ListenerState.FAILED
            assert not handler.is_listening
            self.open_browser.assert_not_called()
        finally:
            blocker.close()
            await handler.aclose()

    async def test_cancel_pending_request(self):
        # Arrange
        request = make_request()
        future = await self.handler.perform_authorization_request(
            self.configuration, request
        )

        # Act
        await self.handler.cancel(request.state)

        # Assert
        assert future.cancelled()
        assert self.handler.state == ListenerState.IDLE
        assert not self.handler.is_listening
        assert self.handler.pending_states == []

    async def test_browser_failure_cancels_request(self):
        # Arrange
        self.open_browser.side_effect = RuntimeError("no browser")
        request = make_request()

        # Act
        with pytest.raises(RuntimeError):
            await self.handler.perform_authorization_request(
                self.configuration, request
            )

        # Assert
        assert self.handler.pending_states == []
        assert not self.handler.is_listening

    async def test_complete_authorization_request_waits_for_latest(self):
        # Arrange
        request = make_request()
        await self.handler.perform_authorization_request(self.configuration, request)
        waiter = asyncio.create_task(self.handler.complete_authorization_request())

        # Act
        await self.client.get(self._callback_url(f"code=abc&state={request.state}"))
        result = await asyncio.wait_for(waiter, WAIT_TIMEOUT)

        # Assert
        assert result.response.code == "abc"

    async def test_complete_authorization_request_without_start(self):
        with pytest.raises(AuthorizationFlowError):
            await self.handler.complete_authorization_request()

    async def test_listener_restarts_for_next_flow(self):
        # Arrange
        first = make_request()
        first_future = await self.handler.perform_authorization_request(
            self.configuration, first
        )
        await self.client.get(self._callback_url(f"code=one&state={first.state}"))
        await asyncio.wait_for(first_future, WAIT_TIMEOUT)

        # Act
        second = make_request()
        second_future = await self.handler.perform_authorization_request(
            self.configuration, second
        )
        await self.client.get(self._callback_url(f"code=two&state={second.state}"))
        result = await asyncio.wait_for(second_future, WAIT_TIMEOUT)

        # Assert
        assert result.response.code == "two"


class TestLoopbackScenario:
    async def test_end_to_end_code_delivery(self):
        # Arrange
        request = make_request()
        request.setup_code_verifier()
        state = request.state
        verifier = request.code_verifier
        request.setup_code_verifier()
        assert request.state == state
        assert request.code_verifier == verifier

        configuration = ServiceConfiguration(
            authorization_endpoint="https://op.example/authorize",
            token_endpoint="https://op.example/token",
        )

        async with RedirectListenerHandler(port=0, open_browser=MagicMock()) as handler:
            future = await handler.perform_authorization_request(configuration, request)

            # Act
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(
                    f"http://127.0.0.1:{handler.bound_port}/?code=abc&state={state}"
                )
            result = await asyncio.wait_for(future, WAIT_TIMEOUT)

            # Assert
            assert response.status_code == 200
            assert "You can now close this window" in response.text
            assert result.response.code == "abc"
            assert result.request.code_verifier == verifier
            assert handler.state == ListenerState.COMPLETED

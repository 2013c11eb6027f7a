from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from loopauth.models.errors import ConfigFetchError
from loopauth.primitives.discovery import OIDCDiscovery

DISCOVERY_DOCUMENT = {
    "issuer": "https://op.example",
    "authorization_endpoint": "https://op.example/authorize",
    "token_endpoint": "https://op.example/token",
    "revocation_endpoint": "https://op.example/revoke",
    "userinfo_endpoint": "https://op.example/userinfo",
    "end_session_endpoint": "https://op.example/logout",
}


class TestOIDCDiscovery:
    def setup_method(self):
        self.discovery = OIDCDiscovery(http_client=AsyncMock())

    def _mock_response(self, payload=None, status_error=None, json_error=None):
        response = MagicMock()
        if status_error is not None:
            response.raise_for_status.side_effect = status_error
        if json_error is not None:
            response.json.side_effect = json_error
        else:
            response.json.return_value = payload
        self.discovery._http_client.get.return_value = response
        return response

    @pytest.mark.parametrize(
        "issuer",
        ["https://op.example", "https://op.example/"],
    )
    def test_discovery_url(self, issuer):
        assert (
            OIDCDiscovery.discovery_url(issuer)
            == "https://op.example/.well-known/openid-configuration"
        )

    def test_discovery_url_keeps_issuer_path(self):
        assert (
            OIDCDiscovery.discovery_url("https://op.example/realms/demo")
            == "https://op.example/realms/demo/.well-known/openid-configuration"
        )

    async def test_fetch_from_issuer_success(self):
        # Arrange
        self._mock_response(DISCOVERY_DOCUMENT)

        # Act
        configuration = await self.discovery.fetch_from_issuer("https://op.example")

        # Assert
        assert configuration.authorization_endpoint == "https://op.example/authorize"
        assert configuration.token_endpoint == "https://op.example/token"
        assert configuration.revocation_endpoint == "https://op.example/revoke"
        assert configuration.userinfo_endpoint == "https://op.example/userinfo"
        assert configuration.end_session_endpoint == "https://op.example/logout"

        call_args = self.discovery._http_client.get.call_args
        assert call_args[0][0] == "https://op.example/.well-known/openid-configuration"
        assert call_args[1]["headers"]["Accept"] == "application/json"

    async def test_optional_endpoints_may_be_absent(self):
        self._mock_response(
            {
                "authorization_endpoint": "https://op.example/authorize",
                "token_endpoint": "https://op.example/token",
            }
        )

        configuration = await self.discovery.fetch_from_issuer("https://op.example")

        assert configuration.revocation_endpoint is None
        assert configuration.userinfo_endpoint is None
        assert configuration.end_session_endpoint is None

    @pytest.mark.parametrize("missing", ["authorization_endpoint", "token_endpoint"])
    async def test_missing_required_endpoint(self, missing):
        document = dict(DISCOVERY_DOCUMENT)
        del document[missing]
        self._mock_response(document)

        with pytest.raises(ConfigFetchError, match="Invalid service configuration"):
            await self.discovery.fetch_from_issuer("https://op.example")

    async def test_http_status_error(self):
        request = httpx.Request("GET", "https://op.example/.well-known/openid-configuration")
        status_error = httpx.HTTPStatusError(
            "Not Found", request=request, response=httpx.Response(404, request=request)
        )
        self._mock_response(DISCOVERY_DOCUMENT, status_error=status_error)

        with pytest.raises(ConfigFetchError, match="Failed to fetch"):
            await self.discovery.fetch_from_issuer("https://op.example")

    async def test_network_error(self):
        self.discovery._http_client.get.side_effect = httpx.ConnectError(
            "Connection refused"
        )

        with pytest.raises(ConfigFetchError, match="HTTP error"):
            await self.discovery.fetch_from_issuer("https://op.example")

    async def test_non_json_body(self):
        self._mock_response(json_error=ValueError("Expecting value"))

        with pytest.raises(ConfigFetchError, match="not valid JSON"):
            await self.discovery.fetch_from_issuer("https://op.example")

    async def test_close_leaves_injected_client_open(self):
        await self.discovery.close()

        self.discovery._http_client.aclose.assert_not_called()

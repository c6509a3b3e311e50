"""
Tests for HighLevelConnector — authorize URL, grants and location lookup.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config.settings import Settings
from connectors.base import TokenEndpointError, TokenSet
from connectors.highlevel import HighLevelConnector


class TestConfiguration:
    def test_configured(self, connector):
        assert connector.is_configured() is True

    def test_missing_secret_not_configured(self):
        settings = Settings(_env_file=None, highlevel_client_id="client-123", highlevel_client_secret="")
        assert HighLevelConnector(settings).is_configured() is False

    def test_identity(self, connector):
        assert connector.provider_name == "highlevel"
        assert connector.display_name == "HighLevel"
        assert "voice-ai-agents.readonly" in connector.scopes


class TestGetAuthUrl:
    def test_extra_params_appended(self, connector):
        url = connector.get_auth_url("abc", {"access_token": "jwt"})
        params = parse_qs(urlparse(url).query)
        assert params["state"] == ["abc"]
        assert params["access_token"] == ["jwt"]

    def test_scope_space_separated(self, connector):
        url = connector.get_auth_url("abc")
        assert " " in parse_qs(urlparse(url).query)["scope"][0]


class TestTokenGrants:
    @pytest.mark.asyncio
    async def test_exchange_parses_response(self, connector, auth_server):
        auth_server.queue_token(
            access_token="at-1",
            refresh_token="rt-1",
            expires_in=86399,
            scope="locations.readonly",
            locationId="loc-1",
            companyId="co-1",
            userId="hl-user",
        )

        tokens = await connector.exchange_code("code-abc")

        assert tokens == TokenSet(
            access_token="at-1",
            refresh_token="rt-1",
            expires_in=86399,
            scope="locations.readonly",
            location_id="loc-1",
            company_id="co-1",
            provider_user_id="hl-user",
        )
        assert auth_server.token_requests[0]["user_type"] == "Company"

    @pytest.mark.asyncio
    async def test_error_description_preferred(self, connector, auth_server):
        auth_server.queue_token(401, error="invalid_client", error_description="Bad client credentials")

        with pytest.raises(TokenEndpointError) as excinfo:
            await connector.exchange_code("code-abc")

        assert excinfo.value.status_code == 401
        assert excinfo.value.detail == "Bad client credentials"
        assert excinfo.value.error_code == "TOKEN_EXCHANGE_FAILED"

    @pytest.mark.asyncio
    async def test_message_used_without_description(self, connector, auth_server):
        auth_server.queue_token(422, message="Refresh token expired")

        with pytest.raises(TokenEndpointError) as excinfo:
            await connector.refresh_access_token("rt-1")

        assert excinfo.value.detail == "Refresh token expired"
        assert excinfo.value.error_code == "TOKEN_REFRESH_FAILED"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            connector = HighLevelConnector(settings, http_client=client)
            with pytest.raises(TokenEndpointError) as excinfo:
                await connector.exchange_code("code-abc")

        assert excinfo.value.status_code == 502
        assert excinfo.value.detail == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_success_without_access_token(self, connector, auth_server):
        auth_server.queue_token(refresh_token="rt-1", expires_in=3600)

        with pytest.raises(ValueError):
            await connector.refresh_access_token("rt-1", location_id="loc-1")

    @pytest.mark.asyncio
    async def test_refresh_user_type_follows_location(self, connector, auth_server):
        auth_server.queue_token(access_token="a", expires_in=1)
        auth_server.queue_token(access_token="b", expires_in=1)

        await connector.refresh_access_token("rt-1", location_id="loc-1")
        await connector.refresh_access_token("rt-1")

        assert [r["user_type"] for r in auth_server.token_requests] == ["Location", "Company"]
        assert all(r["redirect_uri"] == "https://dash.test/oauth/callback" for r in auth_server.token_requests)


class TestFetchLocation:
    @pytest.mark.asyncio
    async def test_nested_location(self, connector):
        details = await connector.fetch_location("loc-1", "at-1")
        assert details.name == "Acme Dental"
        assert details.timezone == "America/Chicago"

    @pytest.mark.asyncio
    async def test_flat_body_with_default_timezone(self, connector, auth_server):
        auth_server.location_answer = (200, {"businessName": "Acme Holdings"})

        details = await connector.fetch_location("loc-1", "at-1")

        assert details.name == "Acme Holdings"
        assert details.timezone == "America/New_York"

    @pytest.mark.asyncio
    async def test_error_returns_none(self, connector, auth_server):
        auth_server.location_answer = (401, {"message": "Unauthorized"})
        assert await connector.fetch_location("loc-1", "at-1") is None

    @pytest.mark.asyncio
    async def test_non_object_body_raises_value_error(self, connector, auth_server):
        auth_server.location_answer = (200, ["unexpected"])

        with pytest.raises(ValueError):
            await connector.fetch_location("loc-1", "at-1")

    @pytest.mark.asyncio
    async def test_non_object_nested_location_is_ignored(self, connector, auth_server):
        auth_server.location_answer = (200, {"location": "loc-1", "businessName": "Acme Holdings"})

        details = await connector.fetch_location("loc-1", "at-1")

        assert details.name == "Acme Holdings"
        assert details.timezone == "America/New_York"

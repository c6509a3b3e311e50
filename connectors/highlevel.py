"""
HighLevelConnector — OAuth2 web flow against the HighLevel marketplace.

Token calls go straight to the token endpoint from this backend, so the
client secret never reaches the browser.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from config.settings import Settings, config
from connectors.base import BaseConnector, LocationDetails, TokenEndpointError, TokenSet

logger = logging.getLogger(__name__)

_DEFAULT_TIMEZONE = "America/New_York"


class HighLevelConnector(BaseConnector):
    """OAuth2 connector for HighLevel (LeadConnector) sub-accounts."""

    def __init__(
        self,
        settings: Settings = config,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client

    @property
    def provider_name(self) -> str:
        return "highlevel"

    @property
    def display_name(self) -> str:
        return "HighLevel"

    @property
    def scopes(self) -> List[str]:
        return self._settings.highlevel_scopes.split()

    @property
    def redirect_uri(self) -> str:
        return self._settings.highlevel_redirect_uri

    def is_configured(self) -> bool:
        s = self._settings
        return bool(
            s.highlevel_client_id
            and s.highlevel_client_secret
            and s.highlevel_auth_url
            and s.highlevel_token_url
        )

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
            yield client

    def get_auth_url(self, state: str, extra_params: Optional[Dict[str, str]] = None) -> str:
        params = {
            "client_id": self._settings.highlevel_client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
            "scope": " ".join(self.scopes),
        }
        if extra_params:
            params.update(extra_params)
        return f"{self._settings.highlevel_auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange auth code for tokens."""
        data = await self._token_request(
            {
                "client_id": self._settings.highlevel_client_id,
                "client_secret": self._settings.highlevel_client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "user_type": "Company",
            },
            error_code="TOKEN_EXCHANGE_FAILED",
        )
        return TokenSet.from_response(data)

    async def refresh_access_token(
        self,
        refresh_token: str,
        *,
        location_id: Optional[str] = None,
    ) -> TokenSet:
        """Use refresh token to get a new access token."""
        # Location-level tokens must be refreshed as such
        user_type = "Location" if location_id else "Company"
        data = await self._token_request(
            {
                "client_id": self._settings.highlevel_client_id,
                "client_secret": self._settings.highlevel_client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "user_type": user_type,
                "redirect_uri": self.redirect_uri,
            },
            error_code="TOKEN_REFRESH_FAILED",
        )
        return TokenSet.from_response(data)

    async def _token_request(self, form: Dict[str, str], *, error_code: str) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(
                self._settings.highlevel_token_url,
                data=form,
                headers={"Accept": "application/json"},
            )

        if resp.is_success:
            return resp.json()

        detail = resp.text
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("error_description") or body.get("message") or body.get("error") or detail

        logger.warning(
            "HighLevel %s grant failed: HTTP %s %s",
            form["grant_type"],
            resp.status_code,
            detail[:200],
        )
        raise TokenEndpointError(
            f"Token endpoint returned HTTP {resp.status_code}: {detail}",
            status_code=resp.status_code,
            detail=detail,
            error_code=error_code,
        )

    async def fetch_location(self, location_id: str, access_token: str) -> Optional[LocationDetails]:
        """
        Fetch the location's display name and timezone.

        None on a non-2xx answer; ValueError when a 2xx body is not a JSON object.
        """
        async with self._client() as client:
            resp = await client.get(
                f"{self._settings.highlevel_api_url}/locations/{location_id}",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Version": self._settings.highlevel_api_version,
                    "Accept": "application/json",
                },
            )

        if not resp.is_success:
            logger.warning(
                "Location lookup for %s failed: HTTP %s", location_id, resp.status_code
            )
            return None

        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected location response for {location_id}: {type(data).__name__}")
        nested = data.get("location")
        if not isinstance(nested, dict):
            nested = {}
        name = data.get("name") or nested.get("name") or data.get("businessName")
        tz = data.get("timezone") or nested.get("timezone") or _DEFAULT_TIMEZONE
        return LocationDetails(location_id=location_id, name=name, timezone=tz)

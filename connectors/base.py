"""
BaseConnector — abstract interface for the external authorization server.

The connection manager only talks to the provider through this interface,
so tests (and a future second provider) can substitute their own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class TokenEndpointError(Exception):
    """The token endpoint answered with a non-2xx status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        detail: str = "",
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.error_code = error_code


@dataclass(frozen=True)
class TokenSet:
    """Parsed token endpoint response."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: str = ""
    location_id: Optional[str] = None
    company_id: Optional[str] = None
    provider_user_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        if not isinstance(data, dict):
            raise ValueError(f"Token response is not a JSON object: {type(data).__name__}")
        if not data.get("access_token"):
            raise ValueError("Token response did not include an access_token")
        return cls(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in") or 0),
            refresh_token=data.get("refresh_token") or None,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or "",
            location_id=data.get("locationId") or None,
            company_id=data.get("companyId") or None,
            provider_user_id=data.get("userId") or None,
            raw=data,
        )


@dataclass(frozen=True)
class LocationDetails:
    location_id: str
    name: Optional[str]
    timezone: Optional[str]


class BaseConnector(ABC):
    """Abstract base for an OAuth2 authorization server."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Service key stored on the connection row, e.g. 'highlevel'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str, extra_params: Optional[Dict[str, str]] = None) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Single-use anti-CSRF token.
        extra_params : dict, optional
            Additional query parameters appended verbatim.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange the authorization code for tokens.

        Raises ``TokenEndpointError`` on a non-2xx answer and
        ``httpx.HTTPError`` on transport failure.
        """
        ...

    @abstractmethod
    async def refresh_access_token(
        self,
        refresh_token: str,
        *,
        location_id: Optional[str] = None,
    ) -> TokenSet:
        """Run the refresh-token grant. Same error contract as ``exchange_code``."""
        ...

    async def fetch_location(self, location_id: str, access_token: str) -> Optional[LocationDetails]:
        """Resolve a location's display details. Optional for providers."""
        return None

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """Return True if client id / secret and endpoints are present."""
        return True

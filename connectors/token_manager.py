"""
Connection manager — the OAuth token lifecycle for one provider.

Issues single-use state tokens, exchanges authorization codes, refreshes
access tokens ahead of expiry and keeps connection telemetry.  All
collaborators are injected; the manager itself holds no per-user state.

Lifecycle per user::

    [none] --exchange ok--> [active] --refresh ok--> [active]
    [active] --refresh rejected--> [inactive, expired] --exchange ok--> [active]
    [active] --disconnect--> [none]

Concurrent callers are not serialised: two requests that both see a
near-expiry token may both refresh.  The token write is a compare-and-swap
on the refresh token that was read, so the second writer loses cleanly
instead of overwriting newer credentials.  Deactivation after a rejected
refresh is guarded the same way: a stale refresh token rejected after a
concurrent rotation leaves the refreshed connection alone.
"""

from __future__ import annotations

import logging
import secrets
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from config.settings import config
from connectors.base import BaseConnector, TokenEndpointError
from connectors.store import ConnectionStore, StateStore, StoredConnection
from connectors.telemetry import ActivityLogger

logger = logging.getLogger(__name__)

ERROR_SOURCE = "highlevel_oauth"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuthorizedState:
    user_id: str
    admin_id: str


@dataclass(frozen=True)
class ConnectionView:
    """What the dashboard shows about a connection. Never carries tokens."""

    id: str
    location_id: Optional[str]
    location_name: Optional[str]
    company_id: Optional[str]
    token_expires_at: Optional[datetime]
    is_active: bool
    created_at: Optional[datetime]
    last_used_at: Optional[datetime]
    expired_at: Optional[datetime]
    is_expired: bool

    @classmethod
    def from_stored(cls, conn: StoredConnection, *, is_expired: bool) -> "ConnectionView":
        return cls(
            id=str(conn.id),
            location_id=conn.location_id,
            location_name=conn.location_name,
            company_id=conn.company_id,
            token_expires_at=conn.token_expires_at,
            is_active=conn.is_active,
            created_at=conn.created_at,
            last_used_at=conn.last_used_at,
            expired_at=conn.expired_at,
            is_expired=is_expired,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("token_expires_at", "created_at", "last_used_at", "expired_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class ConnectionManager:
    """OAuth connection lifecycle for one provider."""

    def __init__(
        self,
        connector: BaseConnector,
        connections: ConnectionStore,
        states: StateStore,
        telemetry: ActivityLogger,
        *,
        clock: Callable[[], datetime] = _utcnow,
        state_ttl: timedelta = timedelta(seconds=config.oauth_state_ttl_seconds),
        refresh_lookahead: timedelta = timedelta(seconds=config.token_refresh_lookahead_seconds),
    ) -> None:
        self._connector = connector
        self._connections = connections
        self._states = states
        self._telemetry = telemetry
        self._clock = clock
        self._state_ttl = state_ttl
        self._lookahead = refresh_lookahead

    @property
    def service(self) -> str:
        return self._connector.provider_name

    def is_configured(self) -> bool:
        return self._connector.is_configured()

    # ── Authorization state ─────────────────────────────────────────────

    async def generate_authorization_url(
        self,
        user_id: str,
        admin_id: str,
        *,
        session_token: Optional[str] = None,
    ) -> str:
        """
        Issue a state token for ``(user_id, admin_id)`` and return the
        provider's authorize URL carrying it.

        *session_token* is the admin's own bearer token; when given it is
        passed through as ``access_token`` for the callback page.
        """
        state = secrets.token_hex(32)
        await self._states.save(state, user_id, admin_id, self._clock() + self._state_ttl)

        extra = {"access_token": session_token} if session_token else None
        url = self._connector.get_auth_url(state, extra)
        logger.info(
            "Generated %s authorization URL for user %s (state %s…)",
            self.service,
            user_id,
            state[:10],
        )
        return url

    async def validate_state(self, state: str) -> Optional[AuthorizedState]:
        """Redeem a state token. Any second redemption returns None."""
        if not state:
            return None

        record = await self._states.consume(state)
        if record is None:
            logger.warning("Unknown or already used OAuth state %s…", state[:10])
            return None
        if record.expires_at <= self._clock():
            logger.warning("Expired OAuth state %s… for user %s", state[:10], record.user_id)
            return None
        return AuthorizedState(user_id=record.user_id, admin_id=record.admin_id)

    async def purge_expired_states(self) -> int:
        """Drop state tokens from authorization flows that were never completed."""
        purged = await self._states.purge_expired(self._clock())
        if purged:
            logger.info("Purged %d expired OAuth state(s)", purged)
        return purged

    # ── Code exchange ───────────────────────────────────────────────────

    async def exchange_code_for_tokens(self, code: str, user_id: str) -> bool:
        """
        Exchange *code* and store the result as the user's active connection.

        Raises whatever the exchange raised; in that case nothing was stored.
        """
        try:
            tokens = await self._connector.exchange_code(code)
            now = self._clock()
            expires_at = now + timedelta(seconds=tokens.expires_in)
            await self._connections.upsert(user_id, tokens, expires_at, now)
        except Exception as exc:
            await self._record_exchange_failure(user_id, exc, traceback.format_exc())
            raise

        logger.info("User %s connected to %s (location %s)", user_id, self.service, tokens.location_id)
        await self._telemetry.log_connection_event(
            user_id,
            "connected",
            location_id=tokens.location_id,
            token_expires_at=expires_at,
            metadata={"scope": self.service},
        )
        await self._telemetry.log_activity(
            user_id,
            event_type="connection_event",
            event_category="oauth_connect",
            event_name=f"{self._connector.display_name} Connected",
            description=f"Successfully connected to {self._connector.display_name} via OAuth",
            metadata={"locationId": tokens.location_id, "companyId": tokens.company_id},
        )

        if tokens.location_id:
            await self._backfill_location(user_id, tokens.location_id, tokens.access_token)
        return True

    async def _record_exchange_failure(self, user_id: str, exc: Exception, stack: str) -> None:
        logger.error("Token exchange failed for user %s: %s", user_id, exc)
        response_data: Dict[str, Any] = {}
        if isinstance(exc, TokenEndpointError):
            response_data = {"status_code": exc.status_code, "detail": exc.detail}

        await self._telemetry.log_integration_error(
            user_id,
            error_type="oauth_connection_failed",
            error_source=ERROR_SOURCE,
            error_message=str(exc) or "Failed to exchange code for tokens",
            error_code=getattr(exc, "error_code", None) or "TOKEN_EXCHANGE_FAILED",
            request_data={"redirectUri": getattr(self._connector, "redirect_uri", None)},
            response_data=response_data,
            stack_trace=stack,
        )
        await self._telemetry.log_activity(
            user_id,
            event_type="integration_error",
            event_category="oauth_connect",
            event_name="Connection Failed",
            description=f"Failed to connect to {self._connector.display_name} via OAuth",
            severity="error",
            metadata={"error": str(exc)},
        )

    # ── Refresh ─────────────────────────────────────────────────────────

    async def refresh_access_token(self, user_id: str, *, refreshed_by: str = "on_demand") -> bool:
        """
        Run one refresh-token grant for the user's active connection.

        A rejected refresh deactivates the connection; the user must
        re-authorize.  A transport error leaves it active so the next
        caller can try again.  Never retries inside the call.
        """
        current = await self._connections.get(user_id)
        if current is None or not current.refresh_token:
            logger.warning("No refresh token available for user %s", user_id)
            return False

        try:
            tokens = await self._connector.refresh_access_token(
                current.refresh_token, location_id=current.location_id
            )
        except TokenEndpointError as exc:
            superseded = await self._handle_rejected_refresh(
                current, exc, traceback.format_exc(), refreshed_by
            )
            if superseded:
                return await self._connections.get(user_id) is not None
            return False
        except (httpx.HTTPError, ValueError) as exc:
            await self._record_refresh_failure(user_id, exc, traceback.format_exc(), refreshed_by)
            return False

        now = self._clock()
        expires_at = now + timedelta(seconds=tokens.expires_in)
        swapped = await self._connections.swap_tokens(
            current,
            access_token=tokens.access_token,
            # Not every server rotates refresh tokens
            refresh_token=tokens.refresh_token or current.refresh_token,
            expires_at=expires_at,
            location_id=tokens.location_id or current.location_id,
            used_at=now,
        )
        if not swapped:
            logger.info("Concurrent refresh already stored new tokens for user %s", user_id)
            return await self._connections.get(user_id) is not None

        logger.info("Refreshed %s token for user %s", self.service, user_id)
        await self._telemetry.log_connection_event(
            user_id,
            "token_refreshed",
            location_id=tokens.location_id or current.location_id,
            token_expires_at=expires_at,
            metadata={
                "previousExpiry": current.token_expires_at.isoformat()
                if current.token_expires_at
                else None,
                "refreshedBy": refreshed_by,
            },
        )
        await self._telemetry.log_token_refresh(
            user_id, status="success", refreshed_by=refreshed_by, token_expires_at=expires_at
        )
        return True

    async def _handle_rejected_refresh(
        self,
        current: StoredConnection,
        exc: TokenEndpointError,
        stack: str,
        refreshed_by: str,
    ) -> bool:
        """
        Deactivate the connection the rejected refresh token came from.

        Returns True when a concurrent refresh had already replaced that
        token; the rejection is then stale and nothing is recorded.
        """
        user_id = current.user_id
        now = self._clock()
        try:
            marked = await self._connections.mark_expired(user_id, now, current=current)
        except SQLAlchemyError:
            logger.exception("Failed to mark connection as expired for user %s", user_id)
            marked = False
        else:
            if not marked:
                logger.info(
                    "Rejected refresh for user %s superseded by a concurrent refresh", user_id
                )
                return True

        if marked:
            logger.warning("Connection for user %s marked expired after rejected refresh", user_id)
            await self._telemetry.log_connection_event(
                user_id, "token_expired", metadata={"expiredAt": now.isoformat()}
            )
            await self._telemetry.log_activity(
                user_id,
                event_type="connection_event",
                event_category="token_expired",
                event_name="Token Expired",
                description=(
                    f"{self._connector.display_name} OAuth token has expired "
                    "and could not be refreshed"
                ),
                severity="warning",
                metadata={"expiredAt": now.isoformat()},
            )
        await self._record_refresh_failure(user_id, exc, stack, refreshed_by)
        return False

    async def _record_refresh_failure(
        self, user_id: str, exc: Exception, stack: str, refreshed_by: str
    ) -> None:
        logger.error("Token refresh failed for user %s: %s", user_id, exc)
        message = str(exc) or "Token refresh failed"
        response_data: Dict[str, Any] = {}
        if isinstance(exc, TokenEndpointError):
            response_data = {"status_code": exc.status_code, "detail": exc.detail}

        await self._telemetry.log_connection_event(
            user_id,
            "refresh_failed",
            error_message=message,
            metadata={"error": message, "refreshedBy": refreshed_by},
        )
        await self._telemetry.log_integration_error(
            user_id,
            error_type="token_refresh_failed",
            error_source=ERROR_SOURCE,
            error_message=message,
            error_code="TOKEN_REFRESH_FAILED",
            response_data=response_data,
            stack_trace=stack,
        )
        await self._telemetry.log_token_refresh(
            user_id, status="failure", refreshed_by=refreshed_by, error_message=message
        )

    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        """
        Return a usable access token, refreshing first when it expires
        within the look-ahead window.  The fresh-token path is one read.
        """
        current = await self._connections.get(user_id)
        if current is None:
            logger.info("No active %s connection for user %s", self.service, user_id)
            return None
        if not current.access_token:
            logger.error("Access token is null for user %s", user_id)
            return None

        expires_at = current.token_expires_at
        if expires_at is not None and expires_at > self._clock() + self._lookahead:
            return current.access_token

        logger.info("Access token for user %s expired or expiring soon, refreshing", user_id)
        if not current.refresh_token:
            logger.error("No refresh token available for user %s", user_id)
            return None
        if not await self.refresh_access_token(user_id):
            return None

        refreshed = await self._connections.get(user_id)
        return refreshed.access_token if refreshed else None

    # ── Disconnect ──────────────────────────────────────────────────────

    async def disconnect_user(self, user_id: str) -> bool:
        """Delete the user's connection. False (never raises) on a storage error."""
        try:
            current = await self._connections.get(user_id, active_only=False)
            await self._connections.delete(user_id)
        except SQLAlchemyError:
            logger.exception("Error disconnecting user %s", user_id)
            return False

        if current is None:
            logger.info("Disconnect for user %s: nothing to remove", user_id)
            return True

        logger.info("Disconnected %s for user %s", self.service, user_id)
        await self._telemetry.log_connection_event(
            user_id,
            "disconnected",
            location_id=current.location_id,
            location_name=current.location_name,
            metadata={"disconnectedAt": self._clock().isoformat()},
        )
        await self._telemetry.log_activity(
            user_id,
            event_type="connection_event",
            event_category="oauth_disconnect",
            event_name=f"{self._connector.display_name} Disconnected",
            description=f"{self._connector.display_name} connection was disconnected",
            severity="warning",
            metadata={"locationId": current.location_id, "locationName": current.location_name},
        )
        return True

    # ── Read-only projections ───────────────────────────────────────────

    def _is_expired(self, conn: StoredConnection) -> bool:
        return conn.token_expires_at is None or conn.token_expires_at < self._clock()

    async def get_user_connection(self, user_id: str) -> Optional[ConnectionView]:
        """Active connection only; fills in a missing location name on the way."""
        current = await self._connections.get(user_id)
        if current is None:
            return None

        is_expired = self._is_expired(current)
        if not (current.location_id and not current.location_name and not is_expired):
            return ConnectionView.from_stored(current, is_expired=is_expired)

        token = await self.get_valid_access_token(user_id)
        if token:
            await self._backfill_location(user_id, current.location_id, token)
        # The token fetch may have refreshed or deactivated the connection
        updated = await self._connections.get(user_id)
        if updated is None:
            return None
        return ConnectionView.from_stored(updated, is_expired=self._is_expired(updated))

    async def get_connection_with_expired_check(self, user_id: str) -> Optional[ConnectionView]:
        """Any connection, active or not, with ``is_expired`` computed."""
        current = await self._connections.get(user_id, active_only=False)
        if current is None:
            return None
        return ConnectionView.from_stored(current, is_expired=self._is_expired(current))

    async def _backfill_location(self, user_id: str, location_id: str, access_token: str) -> None:
        try:
            details = await self._connector.fetch_location(location_id, access_token)
            if details is None:
                return
            await self._connections.set_location_details(
                user_id, name=details.name, timezone_name=details.timezone
            )
            logger.info("Stored location details for user %s: %s", user_id, details.name)
        except (httpx.HTTPError, SQLAlchemyError, ValueError) as exc:
            logger.warning("Location lookup for user %s failed: %s", user_id, exc)

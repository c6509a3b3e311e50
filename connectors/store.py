"""
Persistence for OAuth state tokens and stored connections.

Both stores open a short-lived session per call from the injected
``async_sessionmaker``; nothing is cached between calls.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.base import TokenSet
from connectors.encryption import TokenCipher, default_cipher
from database.models import ApiKey, OAuthState, User

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a datetime read back from the DB to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class StateRecord:
    state: str
    user_id: str
    admin_id: str
    expires_at: datetime


@dataclass(frozen=True)
class StoredConnection:
    """A decrypted snapshot of one ``api_keys`` row."""

    id: uuid.UUID
    user_id: str
    service: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    token_expires_at: Optional[datetime]
    location_id: Optional[str]
    location_name: Optional[str]
    location_timezone: Optional[str]
    company_id: Optional[str]
    is_active: bool
    created_at: Optional[datetime]
    last_used_at: Optional[datetime]
    expired_at: Optional[datetime]
    # Raw column value, used as the compare-and-swap guard on refresh
    refresh_token_ciphertext: Optional[str] = field(default=None, repr=False)


class StateStore:
    """Single-use authorization state tokens (``oauth_states``)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, state: str, user_id: str, admin_id: str, expires_at: datetime) -> None:
        async with self._session_factory() as session:
            session.add(
                OAuthState(
                    state=state,
                    user_id=user_id,
                    admin_id=admin_id,
                    expires_at=expires_at,
                    created_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def consume(self, state: str) -> Optional[StateRecord]:
        """
        Delete the state row and return what it held.

        ``DELETE .. RETURNING`` makes redemption atomic: of two concurrent
        callers with the same state, only one gets the row back.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                delete(OAuthState)
                .where(OAuthState.state == state)
                .returning(OAuthState.user_id, OAuthState.admin_id, OAuthState.expires_at)
            )
            row = result.first()
            await session.commit()

        if row is None:
            return None
        return StateRecord(
            state=state,
            user_id=row.user_id,
            admin_id=row.admin_id,
            expires_at=as_utc(row.expires_at),
        )

    async def purge_expired(self, now: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(OAuthState).where(OAuthState.expires_at < now)
            )
            await session.commit()
            return result.rowcount or 0


class ConnectionStore:
    """Stored OAuth credentials (``api_keys``) for one service."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service: str,
        *,
        cipher: Optional[TokenCipher] = None,
    ) -> None:
        self._session_factory = session_factory
        self._service = service
        self._cipher = cipher or default_cipher()

    @property
    def service(self) -> str:
        return self._service

    def _to_snapshot(self, row: ApiKey) -> StoredConnection:
        return StoredConnection(
            id=row.id,
            user_id=row.user_id,
            service=row.service,
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token),
            token_expires_at=as_utc(row.token_expires_at),
            location_id=row.location_id,
            location_name=row.location_name,
            location_timezone=row.location_timezone,
            company_id=row.company_id,
            is_active=bool(row.is_active),
            created_at=as_utc(row.created_at),
            last_used_at=as_utc(row.last_used_at),
            expired_at=as_utc(row.expired_at),
            refresh_token_ciphertext=row.refresh_token,
        )

    def _scope(self, user_id: str):
        return (ApiKey.user_id == user_id, ApiKey.service == self._service)

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, user_id: str, *, active_only: bool = True) -> Optional[StoredConnection]:
        stmt = select(ApiKey).where(*self._scope(user_id))
        if active_only:
            stmt = stmt.where(ApiKey.is_active.is_(True))
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_snapshot(row) if row else None

    async def list_expiring(self, before: datetime) -> List[StoredConnection]:
        """Active connections whose token expires before *before*."""
        stmt = (
            select(ApiKey)
            .where(
                ApiKey.service == self._service,
                ApiKey.is_active.is_(True),
                ApiKey.token_expires_at < before,
            )
            .order_by(ApiKey.token_expires_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._to_snapshot(r) for r in rows]

    async def list_unhealthy(self, now: datetime) -> List[Tuple[StoredConnection, Dict[str, Any]]]:
        """Connections that are expired, inactive or missing an access token."""
        stmt = (
            select(ApiKey, User)
            .outerjoin(User, User.id == ApiKey.user_id)
            .where(
                ApiKey.service == self._service,
                or_(
                    ApiKey.token_expires_at < now,
                    ApiKey.is_active.is_(False),
                    ApiKey.access_token.is_(None),
                ),
            )
            .order_by(ApiKey.token_expires_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
            return [
                (
                    self._to_snapshot(key),
                    {
                        "first_name": user.first_name if user else None,
                        "last_name": user.last_name if user else None,
                        "business_name": user.business_name if user else None,
                    },
                )
                for key, user in rows
            ]

    # ── Writes ──────────────────────────────────────────────────────────

    async def upsert(self, user_id: str, tokens: TokenSet, expires_at: datetime, now: datetime) -> None:
        """
        Insert the user's connection or replace the existing one in place.

        The unique ``(user_id, service)`` constraint plus ``ON CONFLICT DO
        UPDATE`` supersedes any previous connection in a single statement.
        """
        values = {
            "access_token": self._cipher.encrypt(tokens.access_token),
            "refresh_token": self._cipher.encrypt(tokens.refresh_token),
            "token_expires_at": expires_at,
            "location_id": tokens.location_id,
            "location_name": None,
            "location_timezone": None,
            "company_id": tokens.company_id,
            "is_active": True,
            "created_at": now,
            "last_used_at": None,
            "expired_at": None,
        }
        async with self._session_factory() as session:
            insert = _dialect_insert(session)
            stmt = insert(ApiKey).values(
                id=uuid.uuid4(),
                name="HighLevel OAuth Connection",
                service=self._service,
                user_id=user_id,
                **values,
            )
            stmt = stmt.on_conflict_do_update(index_elements=["user_id", "service"], set_=values)
            await session.execute(stmt)
            await session.commit()

    async def swap_tokens(
        self,
        current: StoredConnection,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        location_id: Optional[str],
        used_at: datetime,
    ) -> bool:
        """
        Store refreshed tokens if nobody else refreshed since *current* was read.
        The refreshed token is about to be served, so ``last_used_at`` is
        stamped too.

        Returns False when the guard (still active, same refresh token) no
        longer matches.
        """
        stmt = (
            update(ApiKey)
            .where(
                ApiKey.id == current.id,
                ApiKey.is_active.is_(True),
                ApiKey.refresh_token == current.refresh_token_ciphertext,
            )
            .values(
                access_token=self._cipher.encrypt(access_token),
                refresh_token=self._cipher.encrypt(refresh_token),
                token_expires_at=expires_at,
                location_id=location_id,
                last_used_at=used_at,
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return (result.rowcount or 0) == 1

    async def mark_expired(
        self,
        user_id: str,
        now: datetime,
        *,
        current: Optional[StoredConnection] = None,
    ) -> bool:
        """
        Deactivate the user's connection.

        With *current*, only the row as it was read is deactivated: if a
        concurrent refresh already replaced its refresh token, nothing
        changes and False is returned.
        """
        stmt = update(ApiKey).where(*self._scope(user_id))
        if current is not None:
            stmt = stmt.where(
                ApiKey.id == current.id,
                ApiKey.is_active.is_(True),
                ApiKey.refresh_token == current.refresh_token_ciphertext,
            )
        async with self._session_factory() as session:
            result = await session.execute(stmt.values(is_active=False, expired_at=now))
            await session.commit()
            return (result.rowcount or 0) > 0

    async def stamp_expired_at(self, ids: List[uuid.UUID], now: datetime) -> int:
        """Set ``expired_at`` on inactive rows that never got one."""
        if not ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(ApiKey)
                .where(ApiKey.id.in_(ids), ApiKey.expired_at.is_(None))
                .values(expired_at=now)
            )
            await session.commit()
            return result.rowcount or 0

    async def set_location_details(
        self,
        user_id: str,
        *,
        name: Optional[str],
        timezone_name: Optional[str],
    ) -> None:
        values: Dict[str, Any] = {}
        if name:
            values["location_name"] = name
        if timezone_name:
            values["location_timezone"] = timezone_name
        if not values:
            return
        async with self._session_factory() as session:
            await session.execute(update(ApiKey).where(*self._scope(user_id)).values(**values))
            await session.commit()

    async def delete(self, user_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(ApiKey).where(*self._scope(user_id)))
            await session.commit()
            return result.rowcount or 0


def _dialect_insert(session: AsyncSession):
    """Return the dialect-specific ``insert`` that supports ON CONFLICT."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Connection upsert not supported on {name!r}")
    return insert

"""
Activity logger — append-only telemetry for connection lifecycle events,
integration errors and the per-user activity feed.

Writes never raise: a telemetry failure is logged and the caller carries on.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import ActivityLog, ConnectionEvent, IntegrationError, TokenRefreshLog

logger = logging.getLogger(__name__)

CONNECTION_EVENT_TYPES = frozenset(
    {
        "connected",
        "disconnected",
        "token_refreshed",
        "token_expired",
        "refresh_failed",
        "connection_attempted",
    }
)
ACTIVITY_EVENT_TYPES = frozenset(
    {"user_action", "connection_event", "integration_error", "system_event", "admin_action"}
)
SEVERITIES = frozenset({"info", "warning", "error", "critical"})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ActivityLogger:
    """Telemetry sink backed by the ``user_*`` log tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def _insert(self, row: Any, what: str) -> Optional[str]:
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                return str(row.id)
        except SQLAlchemyError:
            logger.exception("Error logging %s", what)
            return None

    # ── Writes ──────────────────────────────────────────────────────────

    async def log_connection_event(
        self,
        user_id: str,
        event_type: str,
        *,
        location_id: Optional[str] = None,
        location_name: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None,
    ) -> Optional[str]:
        if event_type not in CONNECTION_EVENT_TYPES:
            raise ValueError(f"Unknown connection event type: {event_type}")
        return await self._insert(
            ConnectionEvent(
                user_id=user_id,
                event_type=event_type,
                location_id=location_id,
                location_name=location_name,
                token_expires_at=token_expires_at,
                error_message=error_message,
                metadata_=metadata or {},
                created_by=created_by,
                created_at=self._clock(),
            ),
            "connection event",
        )

    async def log_integration_error(
        self,
        user_id: str,
        *,
        error_type: str,
        error_source: str,
        error_message: str,
        error_code: Optional[str] = None,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        stack_trace: Optional[str] = None,
        retry_count: int = 0,
    ) -> Optional[str]:
        return await self._insert(
            IntegrationError(
                user_id=user_id,
                error_type=error_type,
                error_source=error_source,
                error_message=error_message,
                error_code=error_code,
                request_data=request_data or {},
                response_data=response_data or {},
                stack_trace=stack_trace,
                retry_count=retry_count,
                created_at=self._clock(),
            ),
            "integration error",
        )

    async def log_activity(
        self,
        user_id: str,
        *,
        event_type: str,
        event_category: str,
        event_name: str,
        description: str,
        severity: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None,
    ) -> Optional[str]:
        if event_type not in ACTIVITY_EVENT_TYPES:
            raise ValueError(f"Unknown activity event type: {event_type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        return await self._insert(
            ActivityLog(
                user_id=user_id,
                event_type=event_type,
                event_category=event_category,
                event_name=event_name,
                description=description,
                severity=severity,
                metadata_=metadata or {},
                created_by=created_by,
                created_at=self._clock(),
            ),
            "activity",
        )

    async def log_token_refresh(
        self,
        user_id: str,
        *,
        status: str,
        refreshed_by: str,
        token_expires_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
    ) -> Optional[str]:
        return await self._insert(
            TokenRefreshLog(
                user_id=user_id,
                refresh_status=status,
                token_expires_at=token_expires_at,
                error_message=error_message[:500] if error_message else None,
                refreshed_by=refreshed_by,
                created_at=self._clock(),
            ),
            "token refresh",
        )

    async def mark_error_resolved(self, error_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(IntegrationError)
                    .where(IntegrationError.id == uuid.UUID(str(error_id)))
                    .values(resolved=True, resolved_at=self._clock())
                )
                await session.commit()
                return (result.rowcount or 0) > 0
        except (SQLAlchemyError, ValueError):
            logger.exception("Error marking integration error %s as resolved", error_id)
            return False

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_user_connection_events(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(ConnectionEvent)
                    .where(ConnectionEvent.user_id == user_id)
                    .order_by(ConnectionEvent.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()
        return [
            {
                "id": str(r.id),
                "user_id": r.user_id,
                "event_type": r.event_type,
                "location_id": r.location_id,
                "location_name": r.location_name,
                "token_expires_at": _iso(r.token_expires_at),
                "error_message": r.error_message,
                "metadata": r.metadata_ or {},
                "created_at": _iso(r.created_at),
            }
            for r in rows
        ]

    async def get_user_integration_errors(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        include_resolved: bool = False,
    ) -> List[Dict[str, Any]]:
        stmt = select(IntegrationError).where(IntegrationError.user_id == user_id)
        if not include_resolved:
            stmt = stmt.where(IntegrationError.resolved.is_(False))
        stmt = stmt.order_by(IntegrationError.created_at.desc()).offset(offset).limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "id": str(r.id),
                "user_id": r.user_id,
                "error_type": r.error_type,
                "error_source": r.error_source,
                "error_message": r.error_message,
                "error_code": r.error_code,
                "resolved": r.resolved,
                "resolved_at": _iso(r.resolved_at),
                "created_at": _iso(r.created_at),
            }
            for r in rows
        ]

    async def get_user_activity_logs(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(ActivityLog)
                    .where(ActivityLog.user_id == user_id)
                    .order_by(ActivityLog.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()
        return [
            {
                "id": str(r.id),
                "event_type": r.event_type,
                "event_category": r.event_category,
                "event_name": r.event_name,
                "description": r.description,
                "severity": r.severity,
                "metadata": r.metadata_ or {},
                "created_at": _iso(r.created_at),
            }
            for r in rows
        ]

    async def get_activity_log_stats(self, user_id: str) -> Dict[str, int]:
        async def _count(session: AsyncSession, stmt) -> int:
            return int((await session.execute(stmt)).scalar_one())

        async with self._session_factory() as session:
            return {
                "total_activities": await _count(
                    session,
                    select(func.count()).select_from(ActivityLog).where(ActivityLog.user_id == user_id),
                ),
                "total_connection_events": await _count(
                    session,
                    select(func.count())
                    .select_from(ConnectionEvent)
                    .where(ConnectionEvent.user_id == user_id),
                ),
                "unresolved_errors": await _count(
                    session,
                    select(func.count())
                    .select_from(IntegrationError)
                    .where(IntegrationError.user_id == user_id, IntegrationError.resolved.is_(False)),
                ),
                "critical_events": await _count(
                    session,
                    select(func.count())
                    .select_from(ActivityLog)
                    .where(
                        ActivityLog.user_id == user_id,
                        ActivityLog.severity.in_(["error", "critical"]),
                    ),
                ),
            }

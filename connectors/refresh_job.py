"""
Scheduled maintenance for stored connections.

``refresh_expiring_tokens`` refreshes every active connection expiring in
the next few hours so users never hit the on-demand refresh path.
``find_connection_issues`` lists connections an admin has to look at.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.store import ConnectionStore
from connectors.token_manager import ConnectionManager
from database.models import IntegrationError, ScheduledJobRun, User

logger = logging.getLogger(__name__)

JOB_NAME = "token_refresh"


class TokenRefreshJob:
    def __init__(
        self,
        manager: ConnectionManager,
        connections: ConnectionStore,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        pause_seconds: float = 1.0,
    ) -> None:
        self._manager = manager
        self._connections = connections
        self._session_factory = session_factory
        self._clock = clock
        self._pause = pause_seconds

    async def _start_run(self, metadata: Dict[str, Any]) -> ScheduledJobRun:
        async with self._session_factory() as session:
            run = ScheduledJobRun(
                job_name=JOB_NAME,
                status="running",
                started_at=self._clock(),
                metadata_=metadata,
            )
            session.add(run)
            await session.commit()
            return run

    async def _finish_run(self, run_id, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ScheduledJobRun)
                .where(ScheduledJobRun.id == run_id)
                .values(completed_at=self._clock(), **values)
            )
            await session.commit()

    async def refresh_expiring_tokens(
        self,
        hours_ahead: int = 24,
        scheduled_by: str = "manual_trigger",
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Refresh every active connection expiring within *hours_ahead*.

        Each connection gets a single refresh attempt through the manager;
        a rejected refresh deactivates that connection like any other.
        """
        run = await self._start_run(
            {"hoursAhead": hours_ahead, "scheduledBy": scheduled_by, "dryRun": dry_run}
        )
        refreshed_by = "scheduled_job" if scheduled_by == "scheduled_job" else "manual_trigger"
        logger.info(
            "Token refresh job %s started (hours_ahead=%s, by=%s, dry_run=%s)",
            run.id,
            hours_ahead,
            scheduled_by,
            dry_run,
        )

        try:
            now = self._clock()
            expiring = await self._connections.list_expiring(now + timedelta(hours=hours_ahead))
            results: List[Dict[str, Any]] = []
            refreshed = failed = purged = 0

            for conn in expiring:
                hours_left = (
                    (conn.token_expires_at - now).total_seconds() / 3600
                    if conn.token_expires_at
                    else None
                )
                if dry_run:
                    results.append(
                        {"userId": conn.user_id, "status": "dry_run", "hoursUntilExpiry": hours_left}
                    )
                    continue

                ok = await self._manager.refresh_access_token(conn.user_id, refreshed_by=refreshed_by)
                if ok:
                    refreshed += 1
                else:
                    failed += 1
                results.append({"userId": conn.user_id, "status": "success" if ok else "failure"})

                if self._pause:
                    await asyncio.sleep(self._pause)

            if not dry_run:
                purged = await self._manager.purge_expired_states()
        except Exception as exc:
            logger.exception("Token refresh job %s failed", run.id)
            await self._finish_run(run.id, status="failed", error_message=str(exc))
            raise

        await self._finish_run(
            run.id,
            status="completed",
            tokens_checked=len(expiring),
            tokens_refreshed=refreshed,
            tokens_failed=failed,
        )
        logger.info(
            "Token refresh job %s completed: checked=%d refreshed=%d failed=%d",
            run.id,
            len(expiring),
            refreshed,
            failed,
        )
        return {
            "success": True,
            "job_run_id": str(run.id),
            "tokens_checked": len(expiring),
            "tokens_refreshed": refreshed,
            "tokens_failed": failed,
            "states_purged": purged,
            "dry_run": dry_run,
            "results": results,
        }

    async def find_connection_issues(self) -> List[Dict[str, Any]]:
        """
        Connections that need an admin: expired, inactive or missing a
        token, plus users with unresolved integration errors from the last
        24 hours.
        """
        now = self._clock()
        unhealthy = await self._connections.list_unhealthy(now)

        await self._connections.stamp_expired_at(
            [conn.id for conn, _ in unhealthy if not conn.is_active and conn.expired_at is None],
            now,
        )

        issues: List[Dict[str, Any]] = []
        for conn, person in unhealthy:
            if not conn.is_active:
                issue_type, details = "disconnected", "Connection is marked as inactive"
            elif not conn.access_token:
                issue_type, details = "broken", "Access token is missing"
            else:
                issue_type = "expired_token"
                details = f"Token expired on {conn.token_expires_at.isoformat()}"
            issues.append(
                {
                    "user_id": conn.user_id,
                    **person,
                    "location_name": conn.location_name,
                    "issue_type": issue_type,
                    "details": details,
                    "timestamp": (conn.token_expires_at or now).isoformat(),
                }
            )

        flagged = {i["user_id"] for i in issues}
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(IntegrationError, User)
                    .outerjoin(User, User.id == IntegrationError.user_id)
                    .where(
                        IntegrationError.resolved.is_(False),
                        IntegrationError.created_at >= now - timedelta(days=1),
                    )
                    .order_by(IntegrationError.created_at.desc())
                )
            ).all()
        for err, user in rows:
            if err.user_id in flagged:
                continue
            flagged.add(err.user_id)
            issues.append(
                {
                    "user_id": err.user_id,
                    "first_name": user.first_name if user else None,
                    "last_name": user.last_name if user else None,
                    "business_name": user.business_name if user else None,
                    "location_name": None,
                    "issue_type": "integration_error",
                    "details": f"Error: {err.error_message}",
                    "timestamp": err.created_at.isoformat() if err.created_at else now.isoformat(),
                }
            )

        logger.info("Connection health check found %d issue(s)", len(issues))
        return issues

"""
Connection API routes — authorize, callback, status, refresh, disconnect,
telemetry and maintenance jobs.

Route prefix: /api/v1
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_activity_logger, get_connection_manager, get_refresh_job
from auth.dependencies import db_session, get_current_claims, require_admin
from auth.jwt import TokenClaims
from connectors.refresh_job import TokenRefreshJob
from connectors.telemetry import ActivityLogger
from connectors.token_manager import ConnectionManager
from database.models import User

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connections"])


# ── Request schemas ────────────────────────────────────────────────────


class RefreshJobRequest(BaseModel):
    hours_ahead: int = Field(24, ge=1, le=24 * 30)
    scheduled_by: str = "manual_trigger"
    dry_run: bool = False


def _ensure_can_view(user_id: str, claims: TokenClaims) -> None:
    if claims.role != "admin" and claims.user_id != user_id:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not allowed to view this user")


# ── Authorization flow ─────────────────────────────────────────────────


@router.get("/connections/issues")
async def connection_issues(
    _admin_id: str = Depends(require_admin),
    job: TokenRefreshJob = Depends(get_refresh_job),
) -> List[Dict[str, Any]]:
    """Connections an admin should look at (expired, inactive, erroring)."""
    return await job.find_connection_issues()


@router.get("/connections/{user_id}/auth-url")
async def get_auth_url(
    user_id: str,
    admin_id: str = Depends(require_admin),
    session: AsyncSession = Depends(db_session),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, str]:
    """
    Start the OAuth flow on behalf of a client user.

    The dashboard opens the returned URL; the provider redirects back to
    ``/oauth/callback``.
    """
    target = await session.get(User, user_id)
    if target is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "User not found")
    if target.role == "admin":
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Admin accounts cannot hold connections")

    auth_url = await manager.generate_authorization_url(user_id, admin_id)
    return {"auth_url": auth_url, "provider": manager.service}


@router.get("/oauth/callback")
async def oauth_callback(
    code: str = Query(...),
    state: str = Query(...),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    """Redeem the state, exchange the code and store the connection."""
    authorized = await manager.validate_state(state)
    if authorized is None:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            "Invalid or expired authorization state, please restart the connection",
        )

    try:
        await manager.exchange_code_for_tokens(code, authorized.user_id)
    except Exception as exc:
        logger.error("OAuth callback failed for user %s: %s", authorized.user_id, exc)
        raise HTTPException(
            status.HTTP_502_BAD_GATEWAY,
            f"Connection failed: {exc}. Please try connecting again.",
        )

    view = await manager.get_connection_with_expired_check(authorized.user_id)
    return {
        "success": True,
        "user_id": authorized.user_id,
        "admin_id": authorized.admin_id,
        "connection": view.to_dict() if view else None,
    }


# ── Connection status ──────────────────────────────────────────────────


@router.get("/connections/{user_id}")
async def get_connection(
    user_id: str,
    claims: TokenClaims = Depends(get_current_claims),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    _ensure_can_view(user_id, claims)
    view = await manager.get_user_connection(user_id)
    if view is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "No active connection")
    return view.to_dict()


@router.get("/connections/{user_id}/status")
async def get_connection_status(
    user_id: str,
    claims: TokenClaims = Depends(get_current_claims),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    """Tell "never connected" (404) apart from "connected but expired"."""
    _ensure_can_view(user_id, claims)
    view = await manager.get_connection_with_expired_check(user_id)
    if view is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Never connected")
    return view.to_dict()


@router.post("/connections/{user_id}/refresh")
async def refresh_connection(
    user_id: str,
    _admin_id: str = Depends(require_admin),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, bool]:
    return {"success": await manager.refresh_access_token(user_id, refreshed_by="manual_trigger")}


@router.delete("/connections/{user_id}")
async def delete_connection(
    user_id: str,
    _admin_id: str = Depends(require_admin),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, bool]:
    return {"success": await manager.disconnect_user(user_id)}


# ── Telemetry ──────────────────────────────────────────────────────────


@router.get("/connections/{user_id}/events")
async def list_connection_events(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    claims: TokenClaims = Depends(get_current_claims),
    activity: ActivityLogger = Depends(get_activity_logger),
) -> List[Dict[str, Any]]:
    _ensure_can_view(user_id, claims)
    return await activity.get_user_connection_events(user_id, limit, offset)


@router.get("/connections/{user_id}/errors")
async def list_integration_errors(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    include_resolved: bool = False,
    claims: TokenClaims = Depends(get_current_claims),
    activity: ActivityLogger = Depends(get_activity_logger),
) -> List[Dict[str, Any]]:
    _ensure_can_view(user_id, claims)
    return await activity.get_user_integration_errors(user_id, limit, offset, include_resolved)


@router.get("/connections/{user_id}/activity")
async def list_activity(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    claims: TokenClaims = Depends(get_current_claims),
    activity: ActivityLogger = Depends(get_activity_logger),
) -> List[Dict[str, Any]]:
    _ensure_can_view(user_id, claims)
    return await activity.get_user_activity_logs(user_id, limit, offset)


@router.get("/connections/{user_id}/stats")
async def activity_stats(
    user_id: str,
    claims: TokenClaims = Depends(get_current_claims),
    activity: ActivityLogger = Depends(get_activity_logger),
) -> Dict[str, int]:
    _ensure_can_view(user_id, claims)
    return await activity.get_activity_log_stats(user_id)


@router.post("/errors/{error_id}/resolve")
async def resolve_error(
    error_id: str,
    _admin_id: str = Depends(require_admin),
    activity: ActivityLogger = Depends(get_activity_logger),
) -> Dict[str, bool]:
    if not await activity.mark_error_resolved(error_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Integration error not found")
    return {"success": True}


# ── Maintenance ────────────────────────────────────────────────────────


@router.post("/jobs/refresh-expiring")
async def run_refresh_job(
    req: RefreshJobRequest,
    _admin_id: str = Depends(require_admin),
    job: TokenRefreshJob = Depends(get_refresh_job),
) -> Dict[str, Any]:
    return await job.refresh_expiring_tokens(
        hours_ahead=req.hours_ahead,
        scheduled_by=req.scheduled_by,
        dry_run=req.dry_run,
    )

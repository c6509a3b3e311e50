"""
FastAPI dependencies for authentication.

``get_current_claims`` verifies the Bearer token; ``require_admin``
additionally checks the caller's role against the ``users`` table, so a
demoted admin loses access before their token expires.
"""

from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from auth.jwt import InvalidTokenError, TokenClaims, verify_token
from config.settings import config
from database.models import User
from database.session import get_db_session

_bearer_scheme = HTTPBearer()


async def db_session(
    session: AsyncSession = Depends(get_db_session),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session for route handlers."""
    yield session


async def get_current_claims(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> TokenClaims:
    try:
        return verify_token(credentials.credentials, secret=config.jwt_secret)
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )


async def require_admin(
    claims: TokenClaims = Depends(get_current_claims),
    session: AsyncSession = Depends(db_session),
) -> str:
    """Return the admin's user id, or 403."""
    user = await session.get(User, claims.user_id)
    if user is None or user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user.id

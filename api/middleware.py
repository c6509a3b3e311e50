"""
Global middleware.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)

# OAuth callback query strings carry codes and state tokens
_REDACTED_PATHS = ("/api/v1/oauth/callback",)


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        path = request.url.path
        if request.url.query and path not in _REDACTED_PATHS:
            path = f"{path}?{request.url.query}"
        logger.debug("%s %s → %s — %.3fs", request.method, path, response.status_code, elapsed)
        return response

"""
Service wiring shared across routes.

Each getter builds its object once per process; tests replace them via
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from connectors.highlevel import HighLevelConnector
from connectors.refresh_job import TokenRefreshJob
from connectors.store import ConnectionStore, StateStore
from connectors.telemetry import ActivityLogger
from connectors.token_manager import ConnectionManager
from database.session import async_session_factory


@lru_cache(maxsize=1)
def get_connection_store() -> ConnectionStore:
    return ConnectionStore(async_session_factory, HighLevelConnector().provider_name)


@lru_cache(maxsize=1)
def get_activity_logger() -> ActivityLogger:
    return ActivityLogger(async_session_factory)


@lru_cache(maxsize=1)
def get_connection_manager() -> ConnectionManager:
    return ConnectionManager(
        connector=HighLevelConnector(),
        connections=get_connection_store(),
        states=StateStore(async_session_factory),
        telemetry=get_activity_logger(),
    )


@lru_cache(maxsize=1)
def get_refresh_job() -> TokenRefreshJob:
    return TokenRefreshJob(get_connection_manager(), get_connection_store(), async_session_factory)

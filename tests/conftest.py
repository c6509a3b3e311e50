"""
Shared fixtures: in-memory database, frozen clock and a fake HighLevel
authorization server behind ``httpx.MockTransport``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.settings import Settings
from connectors.base import TokenSet
from connectors.encryption import TokenCipher
from connectors.highlevel import HighLevelConnector
from connectors.store import ConnectionStore, StateStore
from connectors.telemetry import ActivityLogger
from connectors.token_manager import ConnectionManager
from database.models import Base

T0 = datetime(2025, 11, 20, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeAuthServer:
    """Token endpoint + locations API with scripted answers."""

    def __init__(self) -> None:
        self.token_requests: List[Dict[str, str]] = []
        self.location_requests: List[httpx.Request] = []
        self._token_answers: List[Any] = []
        self.location_answer: Tuple[int, Dict[str, Any]] = (
            200,
            {"location": {"name": "Acme Dental", "timezone": "America/Chicago"}},
        )

    def queue_token(self, status: int = 200, **body: Any) -> None:
        self._token_answers.append((status, body))

    def queue_token_body(self, status: int, body: Any) -> None:
        self._token_answers.append((status, body))

    def queue_token_error(self, exc: Exception) -> None:
        self._token_answers.append(exc)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            if not self._token_answers:
                return httpx.Response(500, json={"error": "nothing queued"})
            answer = self._token_answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            status, body = answer
            return httpx.Response(status, json=body)
        if request.url.path.startswith("/locations/"):
            self.location_requests.append(request)
            status, body = self.location_answer
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        highlevel_client_id="client-123",
        highlevel_client_secret="secret-xyz",
        highlevel_auth_url="https://marketplace.test/oauth/chooselocation",
        highlevel_token_url="https://api.test/oauth/token",
        highlevel_api_url="https://api.test",
        highlevel_redirect_uri="https://dash.test/oauth/callback",
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def http_client(auth_server):
    async with httpx.AsyncClient(transport=httpx.MockTransport(auth_server.handler)) as client:
        yield client


@pytest.fixture
def connector(settings, http_client) -> HighLevelConnector:
    return HighLevelConnector(settings, http_client=http_client)


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(Fernet.generate_key())


@pytest.fixture
def connections(session_factory, cipher) -> ConnectionStore:
    return ConnectionStore(session_factory, "highlevel", cipher=cipher)


@pytest.fixture
def states(session_factory) -> StateStore:
    return StateStore(session_factory)


@pytest.fixture
def telemetry(session_factory, clock) -> ActivityLogger:
    return ActivityLogger(session_factory, clock=clock)


@pytest.fixture
def manager(connector, connections, states, telemetry, clock) -> ConnectionManager:
    return ConnectionManager(
        connector,
        connections,
        states,
        telemetry,
        clock=clock,
        state_ttl=timedelta(minutes=10),
        refresh_lookahead=timedelta(minutes=5),
    )


@pytest.fixture
def seed_connection(connections, clock):
    """Store a connection for *user_id* expiring *expires_in* from now."""

    async def _seed(
        user_id: str = "u1",
        *,
        expires_in: timedelta = timedelta(hours=1),
        access_token: str = "at-1",
        refresh_token: Optional[str] = "rt-1",
        location_id: Optional[str] = "loc-1",
    ) -> None:
        tokens = TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(expires_in.total_seconds()),
            location_id=location_id,
            company_id="co-1",
        )
        await connections.upsert(user_id, tokens, clock() + expires_in, clock())

    return _seed

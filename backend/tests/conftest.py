"""
CodeQuest API — Test Configuration (conftest.py)
==================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Every test builds its own fully wired app from injected collaborators:
       a fake connect callable, a fake clock for the rate gate, and settings
       with known limits. No real database, no environment coupling.

Fixture Hierarchy:
    settings            Production-mode Settings for https://app.example.com
    connect             AsyncMock standing in for Database.connect
    connection_manager  ConnectionManager around `connect`
    clock               FakeClock driving the rate gate
    business_router     Sample handlers under /api (echo, errors, ...)
    make_app            Factory: create_app(...) with the fixtures above
    test_client         httpx AsyncClient bound to make_app()
"""

import os
from typing import Any
from unittest.mock import AsyncMock

# Override settings for testing BEFORE any app imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi import APIRouter, Depends, HTTPException, Request  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from codequest.config import Settings  # noqa: E402
from codequest.connection import ConnectionManager  # noqa: E402
from codequest.exceptions import NotFoundError, UnauthorizedError  # noqa: E402
from codequest.main import create_app  # noqa: E402
from codequest.middleware.body import parsed_body  # noqa: E402
from codequest.middleware.rate_limit import RateGate  # noqa: E402

FRONTEND_URL = "https://app.example.com"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        environment="production",
        frontend_url=FRONTEND_URL,
        rate_limit_requests=100,
        rate_limit_window=900,
        max_body_size=10 * 1024 * 1024,
        serverless=True,
    )


@pytest.fixture
def connect():
    return AsyncMock(return_value=None)


@pytest.fixture
def connection_manager(connect):
    return ConnectionManager(connect=connect)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def business_router():
    """
    Stand-ins for the external business handlers.

    Each route exercises one way a handler can finish or fail.
    """
    router = APIRouter()

    @router.post("/echo")
    async def echo(body: Any = Depends(parsed_body)):
        return {"body": body}

    @router.post("/anything")
    async def anything():
        return {"ok": True}

    @router.get("/quests/{quest_id}")
    async def get_quest(quest_id: str):
        raise NotFoundError(resource="quest", resource_id=quest_id)

    @router.get("/relics/{relic_id}")
    async def get_relic(relic_id: str):
        raise HTTPException(status_code=404)

    @router.post("/raw")
    async def raw(request: Request):
        return {"size": len(await request.body())}

    @router.get("/private")
    async def private():
        raise UnauthorizedError()

    @router.get("/boom")
    async def boom():
        raise RuntimeError("kaboom: db password is hunter2")

    @router.get("/levels/{level}")
    async def get_level(level: int):
        return {"level": level}

    return router


@pytest.fixture
def make_app(settings, connection_manager, clock, business_router):
    """
    Build an app; keyword overrides replace the default fixtures.

    Usage:
        app = make_app(settings=Settings(environment="development"))
    """

    def _make(**overrides):
        app_settings = overrides.pop("settings", settings)
        rate_gate = overrides.pop("rate_gate", None) or RateGate.from_settings(
            app_settings, clock=clock
        )
        return create_app(
            settings=app_settings,
            connection_manager=overrides.pop("connection_manager", connection_manager),
            routers=overrides.pop("routers", [business_router]),
            rate_gate=rate_gate,
            **overrides,
        )

    return _make


@pytest_asyncio.fixture
async def test_client(make_app):
    """
    Async HTTP client talking to a freshly built app through ASGITransport.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/api/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=make_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def client_for():
    """Open an AsyncClient for an arbitrary app; closed at teardown."""
    clients = []

    async def _open(app):
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield _open
    for client in clients:
        await client.aclose()

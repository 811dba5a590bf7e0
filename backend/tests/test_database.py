"""
CodeQuest API — Database Tests
================================

What:  Tests for the lazy engine, the connectivity probe and the session
       dependency.
How:   A real in-memory SQLite database via aiosqlite; session commit and
       rollback are checked against a mocked session factory.

What we test:
    ✅ Engine is not built until first use
    ✅ connect() succeeds against a reachable database
    ✅ connect() failure surfaces through ConnectionManager as a 503 error
    ✅ get_db_session commits on success and rolls back on error
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import pytest
from sqlalchemy import text

from codequest.connection import ConnectionManager
from codequest.database import Database, get_db_session
from codequest.exceptions import ConnectionFailureError

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


def fake_request(database: Database):
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(database=database)))


class TestDatabase:
    """Tests for engine lifecycle and the connectivity probe."""

    @pytest.mark.asyncio
    async def test_engine_is_lazy(self):
        database = Database(MEMORY_URL)
        assert database._engine is None

        await database.connect()
        assert database._engine is not None

        await database.dispose()
        assert database._engine is None

    @pytest.mark.asyncio
    async def test_dispose_without_engine_is_noop(self):
        await Database(MEMORY_URL).dispose()

    @pytest.mark.asyncio
    async def test_unreachable_database_fails_through_gate(self, tmp_path):
        missing = tmp_path / "no-such-dir" / "quest.db"
        database = Database(f"sqlite+aiosqlite:///{missing}")
        manager = ConnectionManager(connect=database.connect, disconnect=database.dispose)

        with pytest.raises(ConnectionFailureError):
            await manager.ensure_connected()

        assert manager.established is False
        await manager.dispose()


class TestGetDbSession:
    """Tests for the per-request session dependency."""

    @pytest.mark.asyncio
    async def test_yields_working_session(self):
        database = Database(MEMORY_URL)
        sessions = get_db_session(fake_request(database))

        session = await sessions.__anext__()
        result = await session.execute(text("SELECT 1"))
        assert result.scalar() == 1

        with pytest.raises(StopAsyncIteration):
            await sessions.__anext__()
        await database.dispose()

    @pytest.mark.asyncio
    async def test_commit_on_success_rollback_on_error(self):
        session = AsyncMock()
        factory = MagicMock()
        factory.return_value.__aenter__ = AsyncMock(return_value=session)
        factory.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch.object(
            Database, "session_factory", new_callable=PropertyMock, return_value=factory
        ):
            database = Database(MEMORY_URL)

            ok = get_db_session(fake_request(database))
            await ok.__anext__()
            with pytest.raises(StopAsyncIteration):
                await ok.__anext__()
            session.commit.assert_awaited_once()
            session.rollback.assert_not_awaited()

            session.reset_mock()
            failing = get_db_session(fake_request(database))
            await failing.__anext__()
            with pytest.raises(RuntimeError):
                await failing.athrow(RuntimeError("handler failed"))
            session.rollback.assert_awaited_once()
            session.commit.assert_not_awaited()

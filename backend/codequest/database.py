"""
CodeQuest API — Database Engine & Session Management
======================================================

What:  Async SQLAlchemy engine, connectivity probe, and per-request session
       dependency for route handlers.
Why:   The Connection Gate needs a single "connect" callable to establish the
       backing-store connection; handlers need sessions. Both live here.
How:   The engine is created lazily on first use so importing the app (or
       spinning up a fresh serverless instance) never touches the network.
Who:   Database.connect / Database.dispose are handed to ConnectionManager;
       get_db_session is used by handlers via FastAPI's Depends().

Connection Pooling Strategy:
    pool_size=5:       Small persistent pool; serverless instances are many and short-lived
    max_overflow=10:   Temporary connections for traffic spikes
    pool_pre_ping:     Validates connections before use (catches stale connections)
    pool_recycle=1800: Recycles connections every 30 minutes
"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from starlette.requests import Request

from codequest.config import Settings

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the async engine and session factory for one application instance.

    The engine is built on first access of `engine`, not in __init__.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_pre_ping: bool = True,
        echo: bool = False,
    ):
        self.url = url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_pre_ping = pool_pre_ping
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            echo=settings.log_level == "DEBUG",
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._build()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._build()
        return self._session_factory

    def _build(self) -> None:
        kwargs = {"echo": self._echo, "pool_pre_ping": self._pool_pre_ping}
        # SQLite pools do not accept sizing arguments
        if make_url(self.url).get_backend_name() != "sqlite":
            kwargs.update(
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                pool_recycle=1800,
            )
        self._engine = create_async_engine(self.url, **kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def connect(self) -> None:
        """
        Establish and verify connectivity by running SELECT 1 on a pooled
        connection. Raises whatever the driver raises on failure.
        """
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Database connection established (%s)",
            make_url(self.url).render_as_string(hide_password=True),
        )

    async def dispose(self) -> None:
        """Close all pooled connections. No-op if the engine was never built."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    Commits when the handler returns, rolls back when it raises, and
    always returns the connection to the pool.

    Example usage in a route:
        @router.get("/quests")
        async def list_quests(db: AsyncSession = Depends(get_db_session)):
            ...
    """
    database: Database = request.app.state.database
    async with database.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

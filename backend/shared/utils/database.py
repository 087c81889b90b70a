"""
SQLAlchemy 2.0 async engine and session handling for the relational storage backend.

Postgres via asyncpg in deployment; any async SQLAlchemy URL works, e.g.
sqlite+aiosqlite for local runs and tests. Pool settings apply to Postgres only.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)


def engine_options(settings: Settings) -> dict[str, Any]:
    """create_async_engine keyword arguments for the configured URL."""
    if not settings.database_url.startswith("postgresql"):
        return {}
    return {
        "pool_size": settings.db_pool_min,
        "max_overflow": max(0, settings.db_pool_max - settings.db_pool_min),
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "connect_args": {
            "timeout": settings.db_command_timeout,
            "command_timeout": settings.db_command_timeout,
        },
    }


class DatabaseManager:
    """Owns one async engine; hands out sessions to SqlFixtureRepository."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected; call connect() first")
        return self._engine

    async def connect(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_async_engine(self._settings.database_url, **engine_options(self._settings))
        self._sessions = async_sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info("database_connected", url=self._settings.database_url_safe_log)

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("database_disconnected")

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            raise RuntimeError("DatabaseManager not connected; call connect() first")
        return self._sessions

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Session for queries; never commits."""
        async with self._factory()() as session:
            yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        """One transaction: committed when the block exits cleanly, rolled back otherwise."""
        async with self._factory()() as session, session.begin():
            yield session

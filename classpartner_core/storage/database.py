"""
Database Engine

Declarative base plus the async engine and unit-of-work sessions behind
the transcript store. The store is a local SQLite file: the ingestion
path writes segments while retrieval reads them, so file databases run
in WAL mode and every connection enforces foreign keys.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for the transcript store tables."""


def normalize_url(database_url: str) -> str:
    """Route plain `sqlite://` URLs through the aiosqlite driver."""
    url = make_url(database_url)
    if url.drivername == "sqlite":
        url = url.set(drivername="sqlite+aiosqlite")
    return url.render_as_string(hide_password=False)


class DatabaseManager:
    """
    Owns the engine and hands out sessions.

    The engine is created lazily so a manager can be built before the
    event loop that will use it exists.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.url = normalize_url(database_url)
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def is_memory(self) -> bool:
        database = make_url(self.url).database
        return not database or database == ":memory:"

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, echo=self.echo)
            event.listen(self._engine.sync_engine, "connect", self._on_connect)
        return self._engine

    def _on_connect(self, dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not self.is_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Unit of work: commits on success, rolls back on any error.

        Usage:
            async with db.session() as session:
                session.add(record)
        """
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Create any missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug(f"Tables ready on {self.url}")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


__all__ = ["Base", "DatabaseManager", "normalize_url"]

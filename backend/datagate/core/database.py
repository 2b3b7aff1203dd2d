"""
Database handle and session management.

The store connection is an explicitly constructed object with a clear
lifecycle (connect -> use -> dispose). The application lifespan owns one
instance and stores it on ``app.state``; services receive it through their
constructors instead of importing a global engine.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy import event, make_url, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from datagate.models.base import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the async engine and session factory for one store.

    For SQLite:
    - In-memory databases use StaticPool so every session sees the same data
    - Foreign keys are enforced through a connect-time pragma

    Example:
        database = Database("sqlite+aiosqlite:///./data/datagate.db")
        await database.connect()
        async with database.session() as session:
            ...
        await database.dispose()
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._session_factory

    async def connect(self) -> None:
        """Create the engine and session factory."""
        if self._engine is not None:
            logger.warning("Database already connected")
            return

        engine_kwargs: dict = {"echo": self.echo}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.url:
                engine_kwargs["poolclass"] = StaticPool
            else:
                database_path = make_url(self.url).database
                if database_path:
                    Path(database_path).parent.mkdir(parents=True, exist_ok=True)

        self._engine = create_async_engine(self.url, **engine_kwargs)

        if self.is_sqlite:
            @event.listens_for(self._engine.sync_engine, "connect")
            def _set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ANN001
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        logger.info(
            "Database connected",
            extra={"dialect": self._engine.dialect.name}
        )

    async def dispose(self) -> None:
        """Close every pooled connection."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection pool closed")

    async def create_all(self) -> None:
        """
        Create all tables for registered models.

        Intended for development and tests; production schemas are
        managed outside this service.
        """
        from datagate import models  # noqa: F401 - populate metadata

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Open a session that commits on success and rolls back on error.

        Usage:
            async with database.session() as session:
                session.add(obj)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def resolve_isolation_level(self, level: str) -> str:
        """
        Map a requested isolation level onto one the dialect supports.

        SQLite only offers SERIALIZABLE among the levels we accept, which is
        at least as strict as anything that can be requested.
        """
        if self.is_sqlite:
            return "SERIALIZABLE"
        return level

    async def ping(self) -> bool:
        """Return True if the store answers a trivial query."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            return True
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False

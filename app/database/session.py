"""
============================================================================
Budget Request Service - Database Session
============================================================================

Input Constraints: SQLAlchemy async URL (postgresql+asyncpg / sqlite+aiosqlite)
Side Effects: Database connections

LIFECYCLE:
- No module-level engine: a Database is connected explicitly at startup
  and disconnected at shutdown
- session() yields an AsyncSession that commits on success and rolls
  back on any exception
- All timestamps are UTC (session timezone pinned on PostgreSQL)

============================================================================
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging
import os

from dotenv import load_dotenv
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.database.models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./budget_requests.db"


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Database URL from the environment.

    Environment Variables:
        BUDGET_DATABASE_URL: full SQLAlchemy async URL (preferred)
        DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD: used to build a
            postgresql+asyncpg URL when BUDGET_DATABASE_URL is unset and
            DB_HOST is set
    """
    load_dotenv()

    url = os.getenv("BUDGET_DATABASE_URL")
    if url:
        return url

    host = os.getenv("DB_HOST")
    if not host:
        return DEFAULT_DATABASE_URL

    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "budget_requests")
    user = os.getenv("DB_USER", "budget_service")
    password = os.getenv("DB_PASSWORD", "")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


# ============================================================================
# DATABASE
# ============================================================================

class Database:
    """
    Async engine + session factory with an explicit lifecycle.

    Usage:
        db = Database(url)
        await db.connect()
        await db.create_all()
        async with db.session() as session:
            ...
        await db.disconnect()
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False) -> None:
        self.url = url or get_database_url()
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._engine

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def connect(self) -> None:
        if self._engine is not None:
            return

        if self.url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self.url or self.url.rstrip("/").endswith("sqlite+aiosqlite:"):
                # One shared connection, otherwise every checkout sees an empty DB
                kwargs["poolclass"] = StaticPool
        else:
            kwargs = {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 1800,
                "pool_pre_ping": True,
            }

        self._engine = create_async_engine(self.url, echo=self.echo, **kwargs)

        if self._engine.dialect.name == "sqlite":
            event.listen(self._engine.sync_engine, "connect", _sqlite_pragmas)
        elif self._engine.dialect.name == "postgresql":
            event.listen(self._engine.sync_engine, "connect", _postgres_utc)

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        logger.info(
            f"[BR-DB] Database engine created | dialect={self._engine.dialect.name}"
        )

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("[BR-DB] Database engine disposed")

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Transactional session scope.

        Commits when the block exits cleanly, rolls back and re-raises
        on any exception.
        """
        if self._session_factory is None:
            raise RuntimeError("Database is not connected; call connect() first")

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def check_connection(self) -> bool:
        """
        Verify database connectivity.

        Raises:
            RuntimeError: If the database cannot be reached
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            raise RuntimeError(f"Database connection failed: {e}") from e


# ============================================================================
# CONNECTION EVENT LISTENERS
# ============================================================================

def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _postgres_utc(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("SET timezone TO 'UTC'")
    cursor.close()


__all__ = ["Database", "get_database_url", "DEFAULT_DATABASE_URL"]

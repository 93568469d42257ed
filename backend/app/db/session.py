# backend/app/db/session.py
"""
Async database resource management for SQLAlchemy.

The engine is owned by a Database instance with an explicit lifecycle
(construct → create_all → use → dispose). Nothing here is created at import
time; the application lifespan and the test fixtures each build their own.

Production considerations:
- Uses asyncpg for PostgreSQL
- Uses aiosqlite for SQLite (local development and tests)
- Pool settings differ for SQLite (no pooling) vs PostgreSQL

Security considerations:
- DATABASE_ECHO disabled by default (prevents SQL query exposure)
- Connection pool overflow limited to prevent resource exhaustion
- Pool pre-ping enabled to detect stale connections
"""
import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from backend.app.core.config import Settings, get_settings
from backend.app.core.exceptions import TransientError, ZeroLockError
from backend.app.db.base import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _create_async_engine(url: str, echo: bool) -> AsyncEngine:
    """
    Create and configure the async SQLAlchemy engine.

    SQLite (local development, tests):
    - NullPool, a new connection per checkout
    - check_same_thread=False for async compatibility

    PostgreSQL (production):
    - AsyncAdaptedQueuePool, pool_size=5, max_overflow=10
    - pool_pre_ping=True to drop stale connections
    - pool_recycle=300 for cloud databases that close idle connections
    """
    if "sqlite" in url.lower():
        return create_async_engine(
            url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        url,
        echo=echo,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
    )


class Database:
    """Owns the engine and session factory for one process or test."""

    def __init__(self, url: str, *, echo: bool = False, settings: Optional[Settings] = None):
        self.url = url
        self.settings = settings or get_settings()
        self.engine: AsyncEngine = _create_async_engine(url, echo)
        # expire_on_commit=False keeps attributes readable after commit
        # autoflush=False keeps writes explicit
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
            # Store functions read their knobs from the session that carries them
            info={"settings": self.settings},
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Database":
        settings = settings or get_settings()
        return cls(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, settings=settings)

    async def create_all(self) -> None:
        # Import models so their tables are registered on Base.metadata
        from backend.app import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    async def drop_all(self) -> None:
        from backend.app import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def check_connection(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("Database connection failed: %s", exc.__class__.__name__)
            return False
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session; the caller decides when to commit."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session wrapped in a single transaction.

        Commits when the block exits normally, rolls back otherwise. Storage
        errors surface as TransientError; service errors pass through.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except ZeroLockError:
                await session.rollback()
                raise
            except SQLAlchemyError as exc:
                # Includes unique violations raised at commit by concurrent writers
                await session.rollback()
                logger.error("Transaction failed: %s", exc.__class__.__name__)
                raise TransientError() from exc


def session_settings(db: Optional[AsyncSession]) -> Settings:
    """Settings of the Database that opened `db`, else the process-wide ones."""
    if isinstance(db, AsyncSession):
        settings = db.info.get("settings")
        if settings is not None:
            return settings
    return get_settings()


def storage_operation(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Give a store coroutine a caller-visible timeout and translate driver
    failures into TransientError. Unique-constraint violations are left to
    the store, which knows what they mean.
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        db = args[0] if args else kwargs.get("db")
        timeout = session_settings(db).DB_OPERATION_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Storage operation %s timed out after %ss", func.__qualname__, timeout)
            raise TransientError("Storage operation timed out") from exc
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Storage operation %s failed: %s", func.__qualname__, exc.__class__.__name__)
            raise TransientError() from exc

    return wrapper

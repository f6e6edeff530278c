"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobqueue.config import Settings
from jobqueue.db.models import Base

logger = logging.getLogger(__name__)

# Seconds a SQLite connection waits on a locked database before failing
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def get_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async database engine for the configured store.

    PostgreSQL (asyncpg) gets a sized connection pool; SQLite (aiosqlite)
    gets a busy timeout so concurrent claimers wait on the write lock
    instead of failing.

    Args:
        settings: Application settings.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    url = make_url(settings.database_url)
    echo = settings.log_level.upper() == "DEBUG"

    if url.get_backend_name() == "sqlite":
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=echo,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory bound to the engine.

    Args:
        engine: The async engine.

    Returns:
        A session factory producing non-expiring sessions.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine, create_tables: bool = True) -> None:
    """
    Initialize the database schema.
    Should be called on application startup.

    Args:
        engine: The async engine.
        create_tables: Create missing tables from the model metadata.
    """
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    logger.info(
        "Database connection initialized",
        extra={"backend": engine.dialect.name},
    )


async def close_db(engine: AsyncEngine) -> None:
    """
    Close the database connection pool.
    Should be called on application shutdown.
    """
    await engine.dispose()
    logger.info("Database connection closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """
    Context manager for one unit of work.
    Commits on success, rolls back on error.

    Yields:
        AsyncSession: An async database session.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

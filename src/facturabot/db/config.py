"""Database configuration and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from facturabot.config.settings import Settings, get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create an async engine for the configured database.

    SQLite does not accept pool sizing, so those options are only passed to
    server databases.
    """
    kwargs: dict[str, Any] = {"echo": settings.DEBUG}
    if settings.ENVIRONMENT == "test":
        kwargs["poolclass"] = NullPool
    elif not settings.DATABASE_URL.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(settings.DATABASE_URL, **kwargs)


def get_engine() -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = create_engine_from_settings(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db() -> None:
    """Verify database connectivity at startup."""
    async with get_engine().begin() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    """Close database connections gracefully.

    Called during application shutdown to release all connections
    in the pool.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for obtaining a database session.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(query)
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()

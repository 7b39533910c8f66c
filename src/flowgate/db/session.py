"""Async database session management.

- Asyncpg driver in production, aiosqlite for tests and local runs
- Connection pooling for PostgreSQL; SQLite uses the driver's default pool
- ``db_session()`` commits on success and rolls back on any exception
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from flowgate.config import settings

# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


def _engine_kwargs(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"future": True}
    # - overflow for bursts
    # - recycle connections every hour (prevent stale)
    # - pre-ping to detect bad connections
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_pool_size,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
        "future": True,
    }


def build_engine(url: str | None = None) -> AsyncEngine:
    """Create an async engine for *url* (defaults to ``settings.database_url``)."""
    url = url or settings.database_url
    return create_async_engine(url, echo=False, **_engine_kwargs(url))


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues
        autoflush=False,
    )


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory, created on first use."""
    global _engine, _sessionmaker
    if _sessionmaker is None:
        _engine = build_engine()
        _sessionmaker = build_sessionmaker(_engine)
    return _sessionmaker


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def db_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Context manager for one unit of work.

    Usage:
        async with db_session(factory) as db:
            result = await db.execute(...)
    """
    factory = factory or get_sessionmaker()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create tables directly. Production schemas are managed by Alembic."""
    from flowgate.db.models import Base

    if engine is None:
        get_sessionmaker()
        engine = _engine
    assert engine is not None
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Clean shutdown: dispose of all connections."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None

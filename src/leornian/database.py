"""Async SQLAlchemy engine and session management."""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from leornian.config import get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> dict[str, Any]:
    """Pool sizing from settings. SQLite keeps its default pool; asyncpg disables its statement cache."""
    settings = get_settings()
    if url.startswith("sqlite"):
        return {"echo": False}
    options: dict[str, Any] = {
        "pool_size": settings.db_min_connections,
        "max_overflow": max(0, settings.db_max_connections - settings.db_min_connections),
        "pool_recycle": settings.db_max_conn_lifetime_seconds,
        "pool_timeout": settings.db_connect_timeout_seconds,
        "pool_pre_ping": True,
        "echo": False,
    }
    if url.startswith("postgresql+asyncpg"):
        options["connect_args"] = {
            "statement_cache_size": 0,
            "timeout": settings.db_connect_timeout_seconds,
        }
    return options


async def init_db(url: str) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    if not url:
        msg = "Database URL is not configured"
        raise RuntimeError(msg)
    _engine = create_async_engine(url, **_engine_options(url))
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Get the async engine instance."""
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session (FastAPI dependency)."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    async with _session_factory() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Short-lived session for work outside a request, such as a socket loop."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    async with _session_factory() as session:
        yield session

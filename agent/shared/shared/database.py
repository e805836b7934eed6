"""Async SQLAlchemy engine and session factory shared by every service.

Each service process holds one engine. The poll loop, the HTTP handlers and
the CLI all take sessions from the same factory; ``SqlDispatchStore`` opens
one session per store operation.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings


def create_engine(settings: Settings | None = None, database_url: str | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    # Rows outlive their session (the store hands them to the pipeline)
    return async_sessionmaker(engine or create_engine(), expire_on_commit=False)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory, created on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def dispose_engine() -> None:
    """Close pooled connections; used on service shutdown and by the CLI."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None

"""
Database Session Management - Async SQLAlchemy session factory.

Settlement transitions always run on the primary. Balance and pending
purchase views read from the replica when DATABASE_READ_URL is set;
otherwise they share the primary's pool instead of opening a second one.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from settlement.config import settings

# Engines and session factories keyed by database URL
_engines: dict[str, AsyncEngine] = {}
_session_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def _engine_for(url: str) -> AsyncEngine:
    engine = _engines.get(url)
    if engine is None:
        engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level == "DEBUG",
        )
        _engines[url] = engine
    return engine


def _session_factory_for(url: str) -> async_sessionmaker[AsyncSession]:
    factory = _session_factories.get(url)
    if factory is None:
        factory = async_sessionmaker(_engine_for(url), class_=AsyncSession, expire_on_commit=False)
        _session_factories[url] = factory
    return factory


def get_write_engine() -> AsyncEngine:
    """Primary engine (also instrumented for tracing at startup)."""
    return _engine_for(settings.database_url)


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: session on the primary, used for every transition."""
    async with _session_factory_for(settings.database_url)() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: session on the replica (or the primary if none)."""
    async with _session_factory_for(settings.read_database_url)() as session:
        yield session


async def close_engines() -> None:
    """Dispose every pool on shutdown."""
    for engine in _engines.values():
        await engine.dispose()
    _engines.clear()
    _session_factories.clear()

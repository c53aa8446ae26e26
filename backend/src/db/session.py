"""Async SQLAlchemy engine and session factory."""
import logging
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from core.config import Settings, get_settings
from models.base import Base

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    Postgres gets a sized connection pool; in-memory SQLite shares one
    connection so every session sees the same database.
    """
    if settings.is_sqlite:
        kwargs: dict = {}
        if settings.database_url in ("sqlite+aiosqlite://", "sqlite+aiosqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(
            settings.database_url,
            echo=False,
            **kwargs,
        )
    return create_async_engine(
        settings.database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


class _DatabaseState:
    """Container for the lazily-built engine and session factory."""

    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None


_state = _DatabaseState()


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    if _state.engine is None:
        _state.engine = build_engine(get_settings())
    return _state.engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory for services that manage their own transactions."""
    if _state.session_factory is None:
        _state.session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _state.session_factory


async def init_db() -> None:
    """Create missing tables."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
    if _state.engine is not None:
        await _state.engine.dispose()
    _state.engine = None
    _state.session_factory = None


async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """
    Yield an async database session.

    Uses unit-of-work pattern: commit happens once here at request end. If
    anything fails, all changes are rolled back.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

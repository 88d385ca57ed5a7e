"""
Database configuration and session management

The engine is created on first use so that importing the models (tests,
migrations, hosts that bring their own session) never opens a connection.
Both session entry points share one unit of work: commit on a clean exit,
rollback on any error.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from parcelgate.core.config import settings

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def _pool_options() -> dict:
    # Bounded pool in production only
    if settings.ENVIRONMENT == "production":
        return {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    return {"pool_pre_ping": True}


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, **_pool_options())
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def dispose_engine() -> None:
    """Close pooled connections. Safe to call when no engine was created."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def _unit_of_work() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one unit of work per request."""
    async with _unit_of_work() as session:
        yield session


def get_db_session():
    """
    Unit of work outside a request, for jobs and scripts:

        async with get_db_session() as db:
            repo = TrackingEventRepository(db)
    """
    return _unit_of_work()

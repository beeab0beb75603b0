"""
Database Configuration

Async engine and sessions for the receiving side (jobs and location history).

SECURITY:
- SQL echo follows settings.sqlalchemy_echo, which is off in production
- The connection string is never logged
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from trackpro.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str) -> AsyncEngine:
    options = {"echo": settings.sqlalchemy_echo, "future": True}
    if not url.startswith("sqlite"):
        # Pool sizing only applies to server databases
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=3600,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **options)


engine = build_engine(settings.DATABASE_URL)


@event.listens_for(engine.sync_engine, "before_cursor_execute")
def _mark_query_start(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_start_time", []).append(time.monotonic())


@event.listens_for(engine.sync_engine, "after_cursor_execute")
def _log_slow_query(conn, cursor, statement, parameters, context, executemany):
    starts = conn.info.get("query_start_time")
    if not starts:
        return
    elapsed_ms = (time.monotonic() - starts.pop()) * 1000
    if elapsed_ms < settings.SLOW_QUERY_THRESHOLD_MS:
        return
    # Statement only; bound parameters may hold coordinates of a live technician
    logger.warning(f"Slow query ({elapsed_ms:.0f}ms): {statement[:200]}")


async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session.

    Endpoints and services commit explicitly; this only closes.
    """
    session = async_session_maker()
    try:
        yield session
    finally:
        await session.close()


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session for scripts and background work: commit on success, roll back on error."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create the jobs and job_locations tables."""
    import trackpro.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    await engine.dispose()

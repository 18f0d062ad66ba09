"""
Kindred Ops - Database Connection
=================================

Async SQLAlchemy engine and session factories.

Request handlers, the heartbeat scheduler and every agent worker open
their own sessions against the same engine. On SQLite that means several
writers, so connections run in WAL mode with a busy timeout.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from kindred_ops.core.config import settings

SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Base class for all ops models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        # No pool sizing on SQLite
        return {"connect_args": {"check_same_thread": False}}

    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_pre_ping": True,
    }


def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """
    Create the async engine for ``url`` (defaults to DATABASE_URL).

    SQLite connections get WAL journaling, a busy timeout and foreign key
    enforcement.
    """
    url = url or settings.DATABASE_URL
    engine = create_async_engine(url, echo=settings.DATABASE_ECHO, **_engine_options(url))

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = create_engine()


# ==========================================================================
# Session Factory
# ==========================================================================

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Session Dependencies
# ==========================================================================

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency providing a request-scoped session.

    Ops services commit their own units of work; anything left
    uncommitted when a handler raises is rolled back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Session for scripts and tasks running outside a request."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db() -> None:
    """Create missing ops tables (development; production uses alembic)."""
    from kindred_ops.core import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine's connections."""
    await engine.dispose()

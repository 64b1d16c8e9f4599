"""Async database engine for the change-event audit log.

SQLite through aiosqlite by default; set AGENTDESK_DATABASE_URL to point the
audit log elsewhere.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from agentdesk.config import get_settings

# Created on first use so tests can swap the URL before anything connects
_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, echo=settings.debug)
    return _engine


async def init_db() -> None:
    """Create the audit tables. Called from the application lifespan."""
    # Registers the table models on SQLModel.metadata
    from agentdesk.db import models as _models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Session that commits on success and rolls back on error.

    Usage:
        async with get_session() as session:
            session.add(row)
    """
    factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

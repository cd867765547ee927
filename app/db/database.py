"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings


def _engine_kwargs(database_url: str, **pool_options: Any) -> dict[str, Any]:
    """SQLite (בדיקות/פיתוח מקומי) לא מקבל pool_size/max_overflow"""
    kwargs: dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_options)
    return kwargs


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Fresh session for a Celery task.

    Every replay tick runs in its own event loop (app.workers.tasks.run_async),
    so the engine is created per task and disposed afterwards. The module-level
    engine is bound to whichever loop first used it.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        **_engine_kwargs(settings.DATABASE_URL, pool_size=5, max_overflow=10),
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()

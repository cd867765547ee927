"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- HTTP test client with DB override
- Failed webhook event factory
"""
# הגדרת DATABASE_URL לפני ייבוא app - ה-engine נוצר בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import itertools
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base, get_db
from app.db.models.failed_webhook_event import (
    FailedEventStatus,
    FailedWebhookEvent,
    utcnow,
)
from app.domain.services.replay_handlers import clear_replay_handlers
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Replay handler registry reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_replay_handlers():
    """ה-registry גלובלי - מנקים לפני ואחרי כל בדיקה"""
    clear_replay_handlers()
    yield
    clear_replay_handlers()


# ============================================================================
# Test Data Factories
# ============================================================================

_event_counter = itertools.count(1)

# sentinel - None הוא ערך חוקי ל-next_retry_at (dead_letter)
_DUE_NOW = object()


@pytest.fixture
def failed_event_factory(db_session: AsyncSession):
    """Factory for creating failed webhook event rows directly"""
    async def _create_event(
        provider: str = "mux",
        event_id: str | None = None,
        event_type: str = "video.asset.ready",
        payload: dict[str, Any] | None = None,
        status: FailedEventStatus = FailedEventStatus.PENDING,
        retry_count: int = 0,
        last_error: str | None = "boom",
        next_retry_at: Any = _DUE_NOW,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> FailedWebhookEvent:
        now = utcnow()
        if next_retry_at is _DUE_NOW:
            next_retry_at = None if status == FailedEventStatus.DEAD_LETTER else now - timedelta(seconds=1)

        event = FailedWebhookEvent(
            provider=provider,
            event_id=event_id or f"evt_{next(_event_counter)}",
            event_type=event_type,
            payload=payload if payload is not None else {"id": "asset_1"},
            status=status,
            retry_count=retry_count,
            last_error=last_error,
            next_retry_at=next_retry_at,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        db_session.add(event)
        await db_session.commit()
        await db_session.refresh(event)
        return event

    return _create_event

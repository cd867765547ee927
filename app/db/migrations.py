"""
מיגרציות DB מרכזיות - מקור אמת יחיד לשינויי סכמה של תור ה-retry.

רצות ב-startup (main.py) רק על PostgreSQL. ב-SQLite (בדיקות) create_all מספיק.
כל המיגרציות idempotent (בטוח להריץ מספר פעמים).
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from app.core.logging import get_logger

logger = get_logger(__name__)


async def run_migration_001(conn: AsyncConnection) -> None:
    """מיגרציה 001 - טבלת failed_webhook_events עם מפתח טבעי (provider, event_id)."""
    await conn.execute(text("""
        DO $$ BEGIN
            CREATE TYPE failed_event_status AS ENUM ('pending', 'processing', 'dead_letter');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """))

    await conn.execute(text("""
        CREATE TABLE IF NOT EXISTS failed_webhook_events (
            id SERIAL PRIMARY KEY,
            provider VARCHAR(50) NOT NULL,
            event_id VARCHAR(255) NOT NULL,
            event_type VARCHAR(100) NOT NULL,
            payload JSON NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            next_retry_at TIMESTAMP,
            status failed_event_status NOT NULL DEFAULT 'pending',
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_failed_webhook_events_provider_event UNIQUE (provider, event_id)
        );
    """))

    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_failed_webhook_events_status_next_retry
        ON failed_webhook_events(status, next_retry_at);
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS ix_failed_webhook_events_status_provider_created
        ON failed_webhook_events(status, provider, created_at);
    """))


async def run_migration_002(conn: AsyncConnection) -> None:
    """מיגרציה 002 - אינדקס חלקי לשליפת רשומות שהגיע זמנן (הטבלה נשלטת ע"י dead_letter ישנים)."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_failed_webhook_events_due
        ON failed_webhook_events(next_retry_at)
        WHERE status = 'pending';
    """))


async def run_all_migrations(conn: AsyncConnection) -> None:
    """הרצת כל המיגרציות ברצף."""
    logger.info("Running migration 001...")
    await run_migration_001(conn)
    logger.info("Running migration 002...")
    await run_migration_002(conn)

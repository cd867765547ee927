"""
Failed Event Store - שכבת גישה לטבלת failed_webhook_events.

כל פעולת כתיבה מבצעת commit משלה, כך שכל מעבר מצב נשמר בנפרד
גם אם ה-batch נקטע באמצע.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, List

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import FailedWebhookEventNotFoundError
from app.db.models.failed_webhook_event import (
    FailedEventStatus,
    FailedWebhookEvent,
    utcnow,
)


class FailedWebhookEventStore:
    """Persistence operations over the failed webhook event table"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self):
        """INSERT עם תמיכה ב-ON CONFLICT לפי הדיאלקט (PostgreSQL בפרודקשן, SQLite בבדיקות)"""
        dialect = self.db.bind.dialect.name if self.db.bind is not None else "postgresql"
        if dialect == "sqlite":
            return sqlite_insert(FailedWebhookEvent)
        return pg_insert(FailedWebhookEvent)

    async def upsert_failed_event(
        self,
        *,
        provider: str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        last_error: str,
        next_retry_at: datetime,
    ) -> FailedWebhookEvent:
        """
        Insert a pending row for (provider, event_id) or update the existing one.

        On conflict only event_type, payload, last_error and updated_at are
        refreshed. retry_count, status and next_retry_at are left as they are:
        a redelivered event does not reset the retry budget, and a row already
        in dead_letter stays there until retry_dead_letter_event resubmits it.
        """
        now = utcnow()
        stmt = self._insert().values(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            retry_count=0,
            last_error=last_error,
            next_retry_at=next_retry_at,
            status=FailedEventStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider", "event_id"],
            set_={
                "event_type": stmt.excluded.event_type,
                "payload": stmt.excluded.payload,
                "last_error": stmt.excluded.last_error,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()

        event = await self.get_by_identity(provider, event_id)
        if event is None:
            # נמחק ע"י replay מוצלח בין ה-upsert לקריאה
            raise FailedWebhookEventNotFoundError(f"{provider}:{event_id}")
        return event

    async def get(self, row_id: int) -> FailedWebhookEvent | None:
        result = await self.db.execute(
            select(FailedWebhookEvent)
            .where(FailedWebhookEvent.id == row_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_identity(self, provider: str, event_id: str) -> FailedWebhookEvent | None:
        result = await self.db.execute(
            select(FailedWebhookEvent)
            .where(
                FailedWebhookEvent.provider == provider,
                FailedWebhookEvent.event_id == event_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def fetch_due(
        self,
        limit: int,
        now: datetime | None = None,
        preferred_providers: Collection[str] | None = None,
    ) -> List[FailedWebhookEvent]:
        """
        Pending rows whose next_retry_at has passed, oldest-due first.

        With preferred_providers, due rows of those providers are selected
        before due rows of any other provider.
        """
        order_by = [FailedWebhookEvent.next_retry_at.asc(), FailedWebhookEvent.id.asc()]
        if preferred_providers:
            order_by.insert(
                0,
                case(
                    (FailedWebhookEvent.provider.in_(list(preferred_providers)), 0),
                    else_=1,
                ),
            )

        result = await self.db.execute(
            select(FailedWebhookEvent)
            .where(
                FailedWebhookEvent.status == FailedEventStatus.PENDING,
                FailedWebhookEvent.next_retry_at <= (now or utcnow()),
            )
            .order_by(*order_by)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def claim(self, row_id: int) -> bool:
        """
        Atomically move a row from pending to processing.

        Returns False when another worker already claimed it (zero rows affected).
        """
        result = await self.db.execute(
            update(FailedWebhookEvent)
            .where(
                FailedWebhookEvent.id == row_id,
                FailedWebhookEvent.status == FailedEventStatus.PENDING,
            )
            .values(status=FailedEventStatus.PROCESSING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def reschedule(
        self,
        row_id: int,
        *,
        retry_count: int,
        last_error: str,
        next_retry_at: datetime,
    ) -> None:
        """Back to pending after a failed replay"""
        await self.db.execute(
            update(FailedWebhookEvent)
            .where(FailedWebhookEvent.id == row_id)
            .values(
                status=FailedEventStatus.PENDING,
                retry_count=retry_count,
                last_error=last_error,
                next_retry_at=next_retry_at,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def mark_dead_letter(self, row_id: int, *, retry_count: int, last_error: str) -> None:
        await self.db.execute(
            update(FailedWebhookEvent)
            .where(FailedWebhookEvent.id == row_id)
            .values(
                status=FailedEventStatus.DEAD_LETTER,
                retry_count=retry_count,
                last_error=last_error,
                next_retry_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def reset_for_retry(self, row_id: int, *, next_retry_at: datetime) -> bool:
        """
        Manual resubmission: dead_letter -> pending with retry_count reset to 0.

        Returns False when the row is no longer in dead_letter.
        """
        result = await self.db.execute(
            update(FailedWebhookEvent)
            .where(
                FailedWebhookEvent.id == row_id,
                FailedWebhookEvent.status == FailedEventStatus.DEAD_LETTER,
            )
            .values(
                status=FailedEventStatus.PENDING,
                retry_count=0,
                next_retry_at=next_retry_at,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def delete(self, row_id: int) -> None:
        await self.db.execute(
            delete(FailedWebhookEvent)
            .where(FailedWebhookEvent.id == row_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def list_dead_letter(
        self, provider: str | None = None, limit: int = 50
    ) -> List[FailedWebhookEvent]:
        """Dead-letter rows, newest first"""
        query = (
            select(FailedWebhookEvent)
            .where(FailedWebhookEvent.status == FailedEventStatus.DEAD_LETTER)
            .order_by(FailedWebhookEvent.created_at.desc(), FailedWebhookEvent.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        if provider:
            query = query.where(FailedWebhookEvent.provider == provider)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_pending(self, limit: int = 50) -> List[FailedWebhookEvent]:
        """Pending rows in due order, including those not yet due"""
        result = await self.db.execute(
            select(FailedWebhookEvent)
            .where(FailedWebhookEvent.status == FailedEventStatus.PENDING)
            .order_by(FailedWebhookEvent.next_retry_at.asc(), FailedWebhookEvent.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(FailedWebhookEvent.status, func.count(FailedWebhookEvent.id))
            .group_by(FailedWebhookEvent.status)
        )
        counts: dict[str, int] = {}
        for row_status, count in result.all():
            counts[row_status.value if hasattr(row_status, "value") else str(row_status)] = count
        return counts

    async def release_stale_processing(self, updated_before: datetime) -> int:
        """processing rows untouched since updated_before go back to pending, due now"""
        now = utcnow()
        result = await self.db.execute(
            update(FailedWebhookEvent)
            .where(
                FailedWebhookEvent.status == FailedEventStatus.PROCESSING,
                FailedWebhookEvent.updated_at < updated_before,
            )
            .values(
                status=FailedEventStatus.PENDING,
                next_retry_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

"""
Webhook Retry Service - לכידת כשלונות webhook, replay מתוזמן ו-dead-letter.

Flow:
1. process_webhook_with_retry עוטף את עיבוד ה-webhook המקורי. כשלון נשמר
   בתור כ-pending עם next_retry_at לפי מדיניות הספק.
2. process_pending_retries (מופעל ע"י Celery beat) שולף רשומות שהגיע זמנן,
   תופס כל אחת אטומית ומריץ מחדש את ה-handler של הספק.
3. רשומה שמיצתה את max_retries עוברת ל-dead_letter עד retry ידני.

ה-handlers חייבים להיות idempotent: אותו אירוע עלול לרוץ שוב אחרי
שה-handler הצליח חלקית וזרק שגיאה.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    FailedWebhookEventNotFoundError,
    InvalidFailedEventStatusError,
    ServiceTimeoutError,
)
from app.core.logging import event_correlation_scope, get_logger, log_async_operation
from app.db.models.failed_webhook_event import (
    FailedEventStatus,
    FailedWebhookEvent,
    WebhookProvider,
    utcnow,
)
from app.domain.services.failed_event_store import FailedWebhookEventStore
from app.domain.services.replay_handlers import ReplayHandler
from app.domain.services.retry_policy import calculate_next_retry_at, get_retry_policy

logger = get_logger(__name__)

CaptureHandler = Callable[[], Awaitable[None]]


@dataclass
class RetryCaptureResult:
    success: bool
    error: str | None = None


@dataclass
class RetryBatchResult:
    """Counts for one replay batch; processed counts every selected row"""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _provider_key(provider: WebhookProvider | str) -> str:
    """Known providers map to their enum value; unknown names are kept as given"""
    if isinstance(provider, WebhookProvider):
        return provider.value
    parsed = WebhookProvider.parse(provider)
    return parsed.value if parsed is not None else str(provider)


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class WebhookRetryService:
    """
    Retry queue for failed webhook processing.

    Takes an AsyncSession like the other domain services; the store
    commits after every state transition.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        handler_timeout_seconds: float | None = None,
    ):
        self.db = db
        self.store = FailedWebhookEventStore(db)
        self.handler_timeout_seconds = (
            handler_timeout_seconds or settings.WEBHOOK_RETRY_HANDLER_TIMEOUT_SECONDS
        )

    # ==================== לכידה ====================

    async def process_webhook_with_retry(
        self,
        provider: WebhookProvider | str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        handler: CaptureHandler,
    ) -> RetryCaptureResult:
        """
        Run the webhook handler; on failure queue the event for retry.

        A successful webhook never touches the store. Handler failures are
        returned, not raised: once queued, the retry subsystem owns completion
        and the caller may acknowledge the webhook to the provider.
        """
        provider_name = _provider_key(provider)

        try:
            await handler()
            return RetryCaptureResult(success=True)
        except Exception as exc:
            error_message = _error_message(exc)

        logger.error(
            "Webhook processing failed, queueing for retry",
            extra_data={
                "provider": provider_name,
                "event_id": event_id,
                "event_type": event_type,
                "error": error_message,
            },
        )

        policy = get_retry_policy(provider_name)
        try:
            await self.store.upsert_failed_event(
                provider=provider_name,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                last_error=error_message,
                next_retry_at=calculate_next_retry_at(0, policy),
            )
        except SQLAlchemyError as store_exc:
            # capture לא זורק; ה-webhook המקורי נשאר באחריות הספק
            await self.db.rollback()
            logger.error(
                "Failed to store webhook for retry",
                extra_data={
                    "provider": provider_name,
                    "event_id": event_id,
                    "error": str(store_exc),
                },
                exc_info=True,
            )

        return RetryCaptureResult(success=False, error=error_message)

    # ==================== replay ====================

    @log_async_operation("webhook retry batch")
    async def process_pending_retries(
        self,
        handlers: Mapping[WebhookProvider | str, ReplayHandler],
        limit: int | None = None,
    ) -> RetryBatchResult:
        """
        Replay up to `limit` due rows, oldest-due first.

        Rows are handled sequentially. Each one is claimed with a conditional
        update, so an overlapping invocation skips rows it did not claim.
        Store errors propagate to the caller.
        """
        handlers_by_provider = {_provider_key(k): v for k, v in handlers.items()}
        events = await self.store.fetch_due(
            limit or settings.WEBHOOK_RETRY_BATCH_LIMIT,
            preferred_providers=handlers_by_provider.keys(),
        )

        result = RetryBatchResult(processed=len(events))
        for event in events:
            with event_correlation_scope(event.provider, event.event_id):
                outcome = await self._replay_event(event, handlers_by_provider)
            if outcome is None:
                result.skipped += 1
            elif outcome:
                result.succeeded += 1
            else:
                result.failed += 1

        return result

    async def _replay_event(
        self,
        event: FailedWebhookEvent,
        handlers: Mapping[str, ReplayHandler],
    ) -> bool | None:
        """Returns True on success, False on failure, None when skipped"""
        handler = handlers.get(event.provider)
        if handler is None:
            logger.warning(
                "No replay handler for provider, leaving event pending",
                extra_data={"provider": event.provider, "event_id": event.event_id, "row_id": event.id},
            )
            return None

        # snapshot לפני ה-commit הראשון - session עם expire_on_commit יפקיע את האובייקט
        row_id = event.id
        provider = event.provider
        event_id = event.event_id
        retry_count = event.retry_count
        payload = event.payload

        if not await self.store.claim(row_id):
            logger.info(
                "Event already claimed by another worker",
                extra_data={"provider": provider, "event_id": event_id, "row_id": row_id},
            )
            return None

        try:
            await asyncio.wait_for(handler(payload), timeout=self.handler_timeout_seconds)
        except asyncio.TimeoutError:
            error_message = ServiceTimeoutError(
                f"{provider} replay handler", self.handler_timeout_seconds
            ).message
        except Exception as exc:
            error_message = _error_message(exc)
        else:
            await self.store.delete(row_id)
            logger.info(
                "Successfully reprocessed webhook",
                extra_data={"provider": provider, "event_id": event_id, "retry_count": retry_count},
            )
            return True

        await self._record_replay_failure(row_id, provider, event_id, retry_count + 1, error_message)
        return False

    async def _record_replay_failure(
        self,
        row_id: int,
        provider: str,
        event_id: str,
        new_retry_count: int,
        error_message: str,
    ) -> None:
        policy = get_retry_policy(provider)

        if new_retry_count >= policy.max_retries:
            await self.store.mark_dead_letter(
                row_id, retry_count=new_retry_count, last_error=error_message
            )
            logger.error(
                "Event moved to dead letter queue",
                extra_data={
                    "provider": provider,
                    "event_id": event_id,
                    "retry_count": new_retry_count,
                    "max_retries": policy.max_retries,
                    "error": error_message,
                },
            )
            return

        next_retry_at = calculate_next_retry_at(new_retry_count, policy)
        await self.store.reschedule(
            row_id,
            retry_count=new_retry_count,
            last_error=error_message,
            next_retry_at=next_retry_at,
        )
        logger.warning(
            "Webhook replay failed, rescheduled",
            extra_data={
                "provider": provider,
                "event_id": event_id,
                "retry_count": new_retry_count,
                "next_retry_at": next_retry_at.isoformat(),
                "error": error_message,
            },
        )

    # ==================== dead letter ====================

    async def get_dead_letter_events(
        self,
        provider: WebhookProvider | str | None = None,
        limit: int | None = None,
    ) -> List[FailedWebhookEvent]:
        """Dead-letter events for manual review, newest first"""
        return await self.store.list_dead_letter(
            provider=_provider_key(provider) if provider else None,
            limit=limit or settings.WEBHOOK_DEAD_LETTER_LIST_LIMIT,
        )

    async def retry_dead_letter_event(self, row_id: int) -> FailedWebhookEvent:
        """
        Put a dead-letter event back into the retry cycle.

        retry_count resets to 0 and next_retry_at is computed from the row's
        provider policy. Does not check that the underlying cause was fixed.
        """
        event = await self.store.get(row_id)
        if event is None:
            raise FailedWebhookEventNotFoundError(row_id)

        if event.status != FailedEventStatus.DEAD_LETTER:
            raise InvalidFailedEventStatusError(
                row_id, event.status.value, FailedEventStatus.DEAD_LETTER.value
            )

        previous_retry_count = event.retry_count
        next_retry_at = calculate_next_retry_at(0, get_retry_policy(event.provider))
        if not await self.store.reset_for_retry(row_id, next_retry_at=next_retry_at):
            # נתפס במקביל ע"י פעולה אחרת בין הבדיקה לעדכון
            current = await self.store.get(row_id)
            if current is None:
                raise FailedWebhookEventNotFoundError(row_id)
            raise InvalidFailedEventStatusError(
                row_id, current.status.value, FailedEventStatus.DEAD_LETTER.value
            )

        logger.info(
            "Dead letter event resubmitted",
            extra_data={
                "row_id": row_id,
                "provider": event.provider,
                "event_id": event.event_id,
                "previous_retry_count": previous_retry_count,
            },
        )

        refreshed = await self.store.get(row_id)
        if refreshed is None:
            raise FailedWebhookEventNotFoundError(row_id)
        return refreshed

    # ==================== תחזוקה ====================

    async def list_pending_events(self, limit: int = 50) -> List[FailedWebhookEvent]:
        return await self.store.list_pending(limit)

    async def get_status_summary(self) -> dict[str, int]:
        """Row count per status, zero-filled"""
        counts = await self.store.count_by_status()
        summary = {s.value: counts.get(s.value, 0) for s in FailedEventStatus}
        summary["total"] = sum(counts.values())
        return summary

    async def release_stale_processing(self, older_than_minutes: int | None = None) -> int:
        """Return rows left in processing by a crashed worker to the pending cycle"""
        minutes = older_than_minutes or settings.WEBHOOK_RETRY_STALE_PROCESSING_MINUTES
        released = await self.store.release_stale_processing(utcnow() - timedelta(minutes=minutes))
        if released:
            logger.warning(
                "Released stale processing webhook events",
                extra_data={"released": released, "older_than_minutes": minutes},
            )
        return released

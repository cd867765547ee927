"""
Celery Tasks for Webhook Retry Replay

The scheduler side of the retry queue: beat fires process_webhook_retries on a
fixed cadence and each run replays one bounded batch of due events with the
handlers from the replay handler registry.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.replay_handlers import get_replay_handlers, load_replay_handler_modules
from app.domain.services.webhook_retry_service import WebhookRetryService
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.process_webhook_retries")
def process_webhook_retries(limit: int | None = None):
    """
    Replay one batch of due webhook events.

    Store errors propagate so the failed run is visible in Celery; rows
    claimed before the error are recovered by release_stale_webhook_retries.
    """

    async def _process():
        load_replay_handler_modules()
        handlers = get_replay_handlers()
        if not handlers:
            logger.warning("No replay handlers registered, skipping webhook retry batch")
            return {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}

        async with get_task_session() as db:
            service = WebhookRetryService(db)
            result = await service.process_pending_retries(handlers, limit=limit)

        logger.info("Webhook retry batch finished", extra_data=result.to_dict())
        return result.to_dict()

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.release_stale_webhook_retries")
def release_stale_webhook_retries(older_than_minutes: int | None = None):
    """החזרת רשומות שנתקעו ב-processing לתור ה-pending"""

    async def _release():
        async with get_task_session() as db:
            service = WebhookRetryService(db)
            released = await service.release_stale_processing(older_than_minutes)
        return {"released": released}

    return run_async(_release())

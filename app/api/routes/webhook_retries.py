"""
Webhook Retry Admin Endpoints - ניטור וטיפול ידני בתור ה-retry ללא גישה ישירה ל-DB.

1. סיכום כמותי לפי סטטוס
2. רשימת dead-letter (עם סינון לפי ספק) ורשימת pending
3. retry ידני לאירוע dead-letter
4. הרצה ידנית של batch replay
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.config import settings
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.failed_webhook_event import FailedWebhookEvent, WebhookProvider
from app.domain.services.replay_handlers import get_replay_handlers, load_replay_handler_modules
from app.domain.services.webhook_retry_service import WebhookRetryService

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי או לא מוגדר"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class FailedWebhookEventResponse(BaseModel):
    """אירוע webhook בודד בתור ה-retry"""
    id: int
    provider: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    status: str = Field(description="pending | processing | dead_letter")
    retry_count: int
    last_error: str | None
    next_retry_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class WebhookRetrySummaryResponse(BaseModel):
    """סיכום כמותי של התור"""
    pending: int = 0
    processing: int = 0
    dead_letter: int = 0
    total: int = 0


class WebhookRetryResubmitResponse(BaseModel):
    """תשובה לפעולת retry ידני"""
    row_id: int
    previous_status: str
    new_status: str
    retry_count: int
    next_retry_at: datetime | None


class RetryBatchResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    skipped: int


def _to_response(event: FailedWebhookEvent) -> FailedWebhookEventResponse:
    return FailedWebhookEventResponse(
        id=event.id,
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type,
        payload=event.payload or {},
        status=event.status.value,
        retry_count=event.retry_count,
        last_error=event.last_error,
        next_retry_at=event.next_retry_at,
        created_at=event.created_at,
        updated_at=event.updated_at,
    )


def _parse_provider(provider: str | None) -> WebhookProvider | None:
    if not provider:
        return None
    parsed = WebhookProvider.parse(provider)
    if parsed is None:
        raise ValidationException(
            f"Unknown webhook provider: {provider}",
            field="provider",
            details={"allowed": sorted(p.value for p in WebhookProvider)},
        )
    return parsed


# ─── endpoints ──────────────────────────────────────────────────────────────

@router.get(
    "/summary",
    response_model=WebhookRetrySummaryResponse,
    summary="סיכום כמותי של תור ה-retry",
    responses={200: {"description": "ספירה לפי סטטוס"}, **_AUTH_RESPONSES},
)
async def get_webhook_retry_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookRetrySummaryResponse:
    summary = await WebhookRetryService(db).get_status_summary()
    return WebhookRetrySummaryResponse(**summary)


@router.get(
    "/dead-letter",
    response_model=list[FailedWebhookEventResponse],
    summary="רשימת אירועי dead-letter",
    description="אירועים שמיצו את מספר הניסיונות של הספק, מהחדש לישן.",
    responses={200: {"description": "רשימת אירועים"}, 400: {"description": "ספק לא מוכר"}, **_AUTH_RESPONSES},
)
async def list_dead_letter_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    provider: Optional[str] = Query(default=None, description="stripe | mux | twilio"),
    limit: int = Query(default=settings.WEBHOOK_DEAD_LETTER_LIST_LIMIT, ge=1, le=200),
) -> list[FailedWebhookEventResponse]:
    events = await WebhookRetryService(db).get_dead_letter_events(
        provider=_parse_provider(provider), limit=limit
    )
    return [_to_response(e) for e in events]


@router.get(
    "/pending",
    response_model=list[FailedWebhookEventResponse],
    summary="רשימת אירועים שממתינים ל-retry",
    description="כולל אירועים שעוד לא הגיע זמנם, לפי סדר next_retry_at.",
    responses={200: {"description": "רשימת אירועים"}, **_AUTH_RESPONSES},
)
async def list_pending_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[FailedWebhookEventResponse]:
    events = await WebhookRetryService(db).list_pending_events(limit=limit)
    return [_to_response(e) for e in events]


@router.post(
    "/{row_id}/retry",
    response_model=WebhookRetryResubmitResponse,
    summary="retry ידני לאירוע dead-letter",
    description=(
        "מחזיר את האירוע ל-pending עם retry_count=0 ו-next_retry_at לפי מדיניות הספק. "
        "לא בודק שהגורם לכשלון תוקן."
    ),
    responses={
        200: {"description": "האירוע הוחזר לתור"},
        400: {"description": "האירוע לא בסטטוס dead_letter"},
        404: {"description": "אירוע לא נמצא"},
        **_AUTH_RESPONSES,
    },
)
async def retry_dead_letter_event(
    row_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookRetryResubmitResponse:
    event = await WebhookRetryService(db).retry_dead_letter_event(row_id)
    return WebhookRetryResubmitResponse(
        row_id=event.id,
        previous_status="dead_letter",
        new_status=event.status.value,
        retry_count=event.retry_count,
        next_retry_at=event.next_retry_at,
    )


@router.post(
    "/process",
    response_model=RetryBatchResponse,
    summary="הרצה ידנית של batch replay",
    description="מריץ batch אחד מיד עם ה-handlers הרשומים, בלי לחכות ל-beat.",
    responses={200: {"description": "ספירות ה-batch"}, **_AUTH_RESPONSES},
)
async def process_webhook_retries_now(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=settings.WEBHOOK_RETRY_BATCH_LIMIT, ge=1, le=200),
) -> RetryBatchResponse:
    load_replay_handler_modules()
    result = await WebhookRetryService(db).process_pending_retries(get_replay_handlers(), limit=limit)
    logger.info("batch replay ידני הסתיים", extra_data=result.to_dict())
    return RetryBatchResponse(**result.to_dict())

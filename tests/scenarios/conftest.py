"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- בוני payload ל-Mux, Stripe ו-Twilio
- handler מבוקר שנכשל N פעמים ואז מצליח
- "שעון" שמקדם את כל הרשומות ל-due
"""
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.failed_webhook_event import FailedEventStatus, FailedWebhookEvent, utcnow


# ============================================================================
# בוני Payload
# ============================================================================

def build_mux_event(asset_id: str, event_type: str = "video.asset.ready") -> dict[str, Any]:
    return {
        "type": event_type,
        "id": f"mux_{asset_id}",
        "data": {"id": asset_id, "status": "ready", "playback_ids": [{"id": f"pb_{asset_id}"}]},
    }


def build_stripe_event(event_id: str, amount: int = 1000) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {"amount_total": amount, "currency": "usd"}},
    }


def build_twilio_status(message_sid: str, status: str = "delivered") -> dict[str, Any]:
    return {"MessageSid": message_sid, "MessageStatus": status}


# ============================================================================
# handlers מבוקרים
# ============================================================================

class FlakyHandler:
    """נכשל failures_before_success פעמים ואז מצליח; שומר את כל ה-payloads"""

    def __init__(self, failures_before_success: int, error: str = "downstream unavailable"):
        self.failures_before_success = failures_before_success
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, payload: dict[str, Any] | None = None) -> None:
        self.calls.append(payload or {})
        if len(self.calls) <= self.failures_before_success:
            raise RuntimeError(self.error)


@pytest.fixture
def make_all_due(db_session: AsyncSession):
    """מקדם את next_retry_at של כל רשומות ה-pending לעבר (במקום לחכות ל-backoff)"""
    async def _make_all_due() -> None:
        await db_session.execute(
            update(FailedWebhookEvent)
            .where(FailedWebhookEvent.status == FailedEventStatus.PENDING)
            .values(next_retry_at=utcnow() - timedelta(seconds=1))
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

    return _make_all_due

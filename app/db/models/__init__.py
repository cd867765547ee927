"""
Database Models
"""
from app.db.models.failed_webhook_event import (
    FailedEventStatus,
    FailedWebhookEvent,
    WebhookProvider,
)

__all__ = [
    "FailedEventStatus",
    "FailedWebhookEvent",
    "WebhookProvider",
]

"""
Domain Services
"""
from app.domain.services.failed_event_store import FailedWebhookEventStore
from app.domain.services.retry_policy import RetryPolicy, get_retry_policy
from app.domain.services.webhook_retry_service import WebhookRetryService

__all__ = [
    "FailedWebhookEventStore",
    "RetryPolicy",
    "get_retry_policy",
    "WebhookRetryService",
]

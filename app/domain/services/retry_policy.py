"""
Retry Policy - מדיניות retry לכל ספק webhook וחישוב exponential backoff.

המדיניות סטטית (קונפיגורציה בקוד, לא ב-DB). שינוי מדיניות לא משנה
next_retry_at של רשומות שכבר תוזמנו - הן מחושבות מחדש רק במעבר הבא.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.db.models.failed_webhook_event import WebhookProvider, utcnow


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff bounds for one provider"""
    max_retries: int
    initial_delay_ms: int
    max_delay_ms: int


RETRY_POLICIES: dict[WebhookProvider, RetryPolicy] = {
    # ערך גבוה, נפח נמוך - יותר ניסיונות עם תקרה ארוכה
    WebhookProvider.STRIPE: RetryPolicy(max_retries=5, initial_delay_ms=5_000, max_delay_ms=3_600_000),
    WebhookProvider.MUX: RetryPolicy(max_retries=3, initial_delay_ms=2_000, max_delay_ms=60_000),
    WebhookProvider.TWILIO: RetryPolicy(max_retries=3, initial_delay_ms=1_000, max_delay_ms=30_000),
}

# ספק לא מוכר מקבל את המדיניות הזהירה ביותר
DEFAULT_RETRY_POLICY = RETRY_POLICIES[WebhookProvider.STRIPE]


def get_retry_policy(provider: WebhookProvider | str | None) -> RetryPolicy:
    """Policy for a provider; unknown names fall back to DEFAULT_RETRY_POLICY"""
    if not isinstance(provider, WebhookProvider):
        provider = WebhookProvider.parse(provider)
    if provider is None:
        return DEFAULT_RETRY_POLICY
    return RETRY_POLICIES.get(provider, DEFAULT_RETRY_POLICY)


def calculate_backoff_ms(
    retry_count: int,
    *,
    initial_delay_ms: int,
    max_delay_ms: int,
) -> int:
    """
    Exponential backoff with a hard upper bound.

        delay = min(initial_delay_ms * 2 ** retry_count, max_delay_ms)

    Avoids computing huge powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if initial_delay_ms <= 0 or max_delay_ms <= 0:
        return 0

    if initial_delay_ms >= max_delay_ms:
        return max_delay_ms

    # 2**retry_count >= ceil(max/initial) means we're at the cap already.
    required_multiplier = (max_delay_ms + initial_delay_ms - 1) // initial_delay_ms
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_delay_ms

    return min(initial_delay_ms * (1 << retry_count), max_delay_ms)


def calculate_next_retry_at(
    retry_count: int,
    policy: RetryPolicy,
    now: datetime | None = None,
) -> datetime:
    """Timestamp of the next attempt for a row that has failed retry_count replays"""
    delay_ms = calculate_backoff_ms(
        retry_count,
        initial_delay_ms=policy.initial_delay_ms,
        max_delay_ms=policy.max_delay_ms,
    )
    return (now or utcnow()) + timedelta(milliseconds=delay_ms)

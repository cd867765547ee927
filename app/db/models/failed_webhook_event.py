"""
Failed Webhook Event Model - תור retry ו-dead-letter ל-webhooks שנכשלו בעיבוד.

רשומה נוצרת רק כשה-handler נכשל. הצלחה ב-replay מוחקת את הרשומה;
מיצוי ניסיונות מעביר אותה ל-dead_letter עד טיפול ידני.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)

from app.db.database import Base


def utcnow() -> datetime:
    """UTC naive - העמודות הן TIMESTAMP ללא אזור זמן (PostgreSQL ו-SQLite)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WebhookProvider(str, enum.Enum):
    """ספקי webhook מוכרים. ה-DB שומר מחרוזת; ההמרה קורית בגבול המערכת."""

    STRIPE = "stripe"
    MUX = "mux"
    TWILIO = "twilio"

    @classmethod
    def parse(cls, name: str | None) -> "WebhookProvider | None":
        """Case-insensitive lookup; returns None for unknown providers"""
        if not name:
            return None
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


class FailedEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DEAD_LETTER = "dead_letter"


class FailedWebhookEvent(Base):
    """Failed webhook processing attempt awaiting replay or manual review"""

    __tablename__ = "failed_webhook_events"

    id = Column(Integer, primary_key=True, index=True)

    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    # NULL רק כשהרשומה ב-dead_letter
    next_retry_at = Column(DateTime, nullable=True)
    status = Column(
        SQLEnum(
            FailedEventStatus,
            name="failed_event_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=FailedEventStatus.PENDING,
    )

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_failed_webhook_events_provider_event"),
        Index("ix_failed_webhook_events_status_next_retry", "status", "next_retry_at"),
        Index("ix_failed_webhook_events_status_provider_created", "status", "provider", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<FailedWebhookEvent id={self.id} {self.provider}:{self.event_id} "
            f"status={self.status} retry_count={self.retry_count}>"
        )

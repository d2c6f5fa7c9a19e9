"""
WebhookEvent model: idempotency ledger for billing-provider events.

Lifecycle per event id:
1. First delivery inserts status="processing"
2. Handler finishes -> status="processed" (duplicates are acknowledged, not re-run)
3. Handler raises -> status="failed" with a truncated error (provider retries)
4. "failed" rows, and "processing" rows older than the staleness threshold,
   can be reclaimed back to "processing" by a later delivery
"""
import enum
from sqlalchemy import Column, String, Integer, DateTime, Text, Enum as SQLEnum, Index

from reviseflow.models.base import Base, utcnow


class WebhookEventStatus(str, enum.Enum):
    """Processing status of a webhook event."""
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(Base):
    """One row per provider event id."""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    status = Column(
        SQLEnum(
            WebhookEventStatus,
            name="webhookeventstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=WebhookEventStatus.PROCESSING,
    )
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_webhook_event_status", "status"),
    )

    def __repr__(self):
        return f"<WebhookEvent(id={self.event_id}, type={self.event_type}, status={self.status})>"

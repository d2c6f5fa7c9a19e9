"""
Usage counter models for quota enforcement.

AIUsageCounter: accumulated input/output tokens per (user, period key, model).
The period key is "YYYY-MM-DD" for daily plans and "YYYY-MM" for monthly
plans, computed in the user's timezone. Rows are created on first use and
never deleted; a new period simply addresses a new row.

ImageUsageCounter: generated image count per (user, day, model).
"""
from sqlalchemy import Column, String, Integer, DateTime, UniqueConstraint

from reviseflow.models.base import Base, generate_uuid, utcnow


class AIUsageCounter(Base):
    """Token usage per user per period per model."""

    __tablename__ = "ai_usage_counters"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False)

    period = Column(String(10), nullable=False)  # "daily" or "monthly"
    period_key = Column(String(10), nullable=False)  # e.g., "2024-01-31" or "2024-01"
    model = Column(String(100), nullable=False)

    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "period_key", "model", name="uq_ai_usage_user_period_model"),
    )

    @property
    def used(self) -> int:
        return (self.input_tokens or 0) + (self.output_tokens or 0)

    def __repr__(self):
        return (
            f"<AIUsageCounter(user_id={self.user_id}, period_key={self.period_key}, "
            f"model={self.model}, used={self.used})>"
        )


class ImageUsageCounter(Base):
    """Generated images per user per day per model."""

    __tablename__ = "image_usage_counters"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False)
    day = Column(String(10), nullable=False)  # "YYYY-MM-DD"
    model = Column(String(100), nullable=False)

    count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "day", "model", name="uq_image_usage_user_day_model"),
    )

    def __repr__(self):
        return f"<ImageUsageCounter(user_id={self.user_id}, day={self.day}, model={self.model}, count={self.count})>"

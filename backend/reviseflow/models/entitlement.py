"""
UserEntitlement model: the tier/role that selects a user's plan limits.

Written only by the billing webhook processor; read by the quota engine.
Users without a row are treated as tier "free" in timezone "UTC".
"""
from sqlalchemy import Column, String, DateTime
import enum

from reviseflow.models.base import Base, utcnow


class Tier(str, enum.Enum):
    """Subscription tier. Role mirrors tier for authorization checks."""
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"
    ADMIN = "admin"


class UserEntitlement(Base):
    """Per-user entitlement state synchronized from the billing provider."""

    __tablename__ = "user_entitlements"

    # No FK to users: billing events may name a user before their first login
    user_id = Column(String(36), primary_key=True)

    tier = Column(String(20), nullable=False, default=Tier.FREE.value)
    role = Column(String(20), nullable=False, default=Tier.FREE.value)
    stripe_subscription_id = Column(String(255), nullable=True)

    # Used to compute daily/monthly period keys
    timezone = Column(String(64), nullable=False, default="UTC")

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<UserEntitlement(user_id={self.user_id}, tier={self.tier}, role={self.role})>"

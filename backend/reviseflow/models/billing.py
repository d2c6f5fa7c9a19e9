"""
Identity mapping between local users and billing-provider entities.

Used only to resolve which user a billing event belongs to when the event
itself does not carry an explicit user id.
"""
from sqlalchemy import Column, String, DateTime, Index

from reviseflow.models.base import Base, utcnow


class BillingCustomer(Base):
    """Stripe customer id -> user id."""

    __tablename__ = "billing_customers"

    stripe_customer_id = Column(String(255), primary_key=True)
    user_id = Column(String(36), nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_billing_customer_user_id", "user_id"),
    )

    def __repr__(self):
        return f"<BillingCustomer(customer={self.stripe_customer_id}, user_id={self.user_id})>"


class BillingSubscription(Base):
    """Stripe subscription id -> (user, customer, status, plan). Many per user."""

    __tablename__ = "billing_subscriptions"

    stripe_subscription_id = Column(String(255), primary_key=True)
    user_id = Column(String(36), nullable=False)
    stripe_customer_id = Column(String(255), nullable=True)
    status = Column(String(50), nullable=True)  # active, trialing, canceled, unpaid, ...
    plan = Column(String(50), nullable=True)  # plan from subscription metadata

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_billing_subscription_user_id", "user_id"),
    )

    def __repr__(self):
        return (
            f"<BillingSubscription(id={self.stripe_subscription_id}, "
            f"user_id={self.user_id}, status={self.status}, plan={self.plan})>"
        )

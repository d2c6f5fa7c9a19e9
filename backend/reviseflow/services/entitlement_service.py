"""
Entitlement service.
Reads a user's tier/role/timezone and applies billing-driven tier changes.

Write methods do not commit; the webhook processor commits them together
with the idempotency record.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from sqlalchemy import select, case
from sqlalchemy.ext.asyncio import AsyncSession

from reviseflow.database import dialect_insert
from reviseflow.models.billing import BillingCustomer, BillingSubscription
from reviseflow.models.entitlement import UserEntitlement, Tier
from reviseflow.models.base import utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})
GRANTABLE_TIERS = frozenset({Tier.PLUS.value, Tier.PRO.value})


@dataclass(frozen=True)
class EntitlementView:
    """Entitlement as seen by the quota engine; defaults for users without a row."""
    user_id: str
    tier: str = Tier.FREE.value
    role: str = Tier.FREE.value
    stripe_subscription_id: Optional[str] = None
    timezone: str = "UTC"


def _clean(value: Any) -> Optional[str]:
    """Non-empty stripped string, else None."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def compute_tier(subscription: Dict[str, Any], force_free: bool = False) -> str:
    """
    Tier granted by a subscription.

    Active or trialing subscriptions grant the plan named in their metadata
    (plus or pro only). Anything else, or a forced downgrade, is free.
    """
    if force_free:
        return Tier.FREE.value
    if subscription.get("status") not in ACTIVE_STATUSES:
        return Tier.FREE.value
    metadata = subscription.get("metadata") or {}
    plan = (_clean(metadata.get("plan")) or "").lower()
    if plan in GRANTABLE_TIERS:
        return plan
    return Tier.FREE.value


class EntitlementService:
    """Service for entitlement reads and billing-driven updates."""

    @staticmethod
    async def get_entitlement(db: AsyncSession, user_id: str) -> EntitlementView:
        """
        Load a user's entitlement.

        Returns:
            EntitlementView (tier "free", timezone "UTC" when no row exists)
        """
        result = await db.execute(
            select(UserEntitlement)
            .where(UserEntitlement.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return EntitlementView(user_id=user_id)
        return EntitlementView(
            user_id=row.user_id,
            tier=row.tier or Tier.FREE.value,
            role=row.role or Tier.FREE.value,
            stripe_subscription_id=row.stripe_subscription_id,
            timezone=row.timezone or "UTC",
        )

    @staticmethod
    async def find_user_by_subscription(db: AsyncSession, subscription_id: Optional[str]) -> Optional[str]:
        if not subscription_id:
            return None
        result = await db.execute(
            select(BillingSubscription.user_id).where(
                BillingSubscription.stripe_subscription_id == subscription_id
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_user_by_customer(db: AsyncSession, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        result = await db.execute(
            select(BillingCustomer.user_id).where(BillingCustomer.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def apply_tier(
        db: AsyncSession,
        user_id: str,
        tier: str,
        subscription_id: Optional[str],
    ) -> None:
        """
        Upsert tier, mirrored role and subscription id.

        An existing admin role is kept; only tier and subscription change.
        """
        now = utcnow()
        stmt = dialect_insert(db, UserEntitlement).values(
            user_id=user_id,
            tier=tier,
            role=tier,
            stripe_subscription_id=subscription_id,
            timezone="UTC",
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "tier": stmt.excluded.tier,
                "role": case(
                    (UserEntitlement.role == Tier.ADMIN.value, UserEntitlement.role),
                    else_=stmt.excluded.role,
                ),
                "stripe_subscription_id": stmt.excluded.stripe_subscription_id,
                "updated_at": now,
            },
        )
        await db.execute(stmt)

    @staticmethod
    async def link_customer(db: AsyncSession, customer_id: str, user_id: str) -> None:
        """Map a billing customer to a user (last writer wins)."""
        now = utcnow()
        stmt = dialect_insert(db, BillingCustomer).values(
            stripe_customer_id=customer_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["stripe_customer_id"],
            set_={"user_id": stmt.excluded.user_id, "updated_at": now},
        )
        await db.execute(stmt)

    @staticmethod
    async def link_subscription(
        db: AsyncSession,
        subscription_id: str,
        user_id: str,
        customer_id: Optional[str],
        status: Optional[str],
        plan: Optional[str],
    ) -> None:
        """Record subscription -> (user, customer, status, plan)."""
        now = utcnow()
        stmt = dialect_insert(db, BillingSubscription).values(
            stripe_subscription_id=subscription_id,
            user_id=user_id,
            stripe_customer_id=customer_id,
            status=status,
            plan=plan,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["stripe_subscription_id"],
            set_={
                "user_id": stmt.excluded.user_id,
                "stripe_customer_id": stmt.excluded.stripe_customer_id,
                "status": stmt.excluded.status,
                "plan": stmt.excluded.plan,
                "updated_at": now,
            },
        )
        await db.execute(stmt)

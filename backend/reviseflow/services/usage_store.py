"""
Durable usage counters with atomic reserve/adjust operations.

Every mutation is a single conditional SQL statement so concurrent requests
for the same (user, period key, model) cannot push usage past the limit:

    INSERT ... ON CONFLICT DO NOTHING            -- materialize the row
    UPDATE ... WHERE input + output + :add <= :limit RETURNING ...

A rejected reservation matches zero rows and leaves the counter untouched.
"""
from dataclasses import dataclass
from typing import Tuple

from sqlalchemy import select, update, case
from sqlalchemy.ext.asyncio import AsyncSession

from reviseflow.database import dialect_insert
from reviseflow.models.ai_usage import AIUsageCounter, ImageUsageCounter
from reviseflow.models.base import generate_uuid, utcnow


@dataclass(frozen=True)
class ReserveResult:
    """Outcome of a reservation attempt. Counts are post-increment when allowed."""
    allowed: bool
    input_tokens: int
    output_tokens: int

    @property
    def used(self) -> int:
        return self.input_tokens + self.output_tokens


def _clamped_add(column, delta: int):
    """column + delta, never below zero."""
    return case((column + delta < 0, 0), else_=column + delta)


class UsageStore:
    """Atomic counter operations. Each call commits its own statement."""

    @staticmethod
    async def _ensure_token_row(
        db: AsyncSession, user_id: str, period: str, period_key: str, model: str
    ) -> None:
        now = utcnow()
        stmt = dialect_insert(db, AIUsageCounter).values(
            id=generate_uuid(),
            user_id=user_id,
            period=period,
            period_key=period_key,
            model=model,
            input_tokens=0,
            output_tokens=0,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["user_id", "period_key", "model"])
        await db.execute(stmt)

    @staticmethod
    async def load_tokens(db: AsyncSession, user_id: str, period_key: str, model: str) -> Tuple[int, int]:
        """
        Read accumulated usage.

        Returns:
            (input_tokens, output_tokens), (0, 0) when no row exists yet
        """
        result = await db.execute(
            select(AIUsageCounter.input_tokens, AIUsageCounter.output_tokens).where(
                AIUsageCounter.user_id == user_id,
                AIUsageCounter.period_key == period_key,
                AIUsageCounter.model == model,
            )
        )
        row = result.first()
        if row is None:
            return 0, 0
        return int(row[0] or 0), int(row[1] or 0)

    @staticmethod
    async def reserve_tokens(
        db: AsyncSession,
        user_id: str,
        period: str,
        period_key: str,
        model: str,
        add_input: int,
        add_output: int,
        limit: int,
    ) -> ReserveResult:
        """
        Atomically add to the counter if the result stays within limit.

        Args:
            db: Database session
            user_id: User ID
            period: "daily" or "monthly"
            period_key: Period key for the counter row
            model: Model id
            add_input: Estimated input tokens to reserve
            add_output: Output cap to reserve
            limit: Inclusive plan limit for the period

        Returns:
            ReserveResult; when not allowed, the counts are the unchanged current usage

        Raises:
            ValueError: If an amount is negative
        """
        if add_input < 0 or add_output < 0:
            raise ValueError("Cannot reserve a negative amount")

        add = add_input + add_output
        if add > limit:
            # Cannot fit even in an empty period; no row is created
            current_input, current_output = await UsageStore.load_tokens(db, user_id, period_key, model)
            return ReserveResult(False, current_input, current_output)

        await UsageStore._ensure_token_row(db, user_id, period, period_key, model)

        result = await db.execute(
            update(AIUsageCounter)
            .where(AIUsageCounter.user_id == user_id)
            .where(AIUsageCounter.period_key == period_key)
            .where(AIUsageCounter.model == model)
            .where(AIUsageCounter.input_tokens + AIUsageCounter.output_tokens + add <= limit)
            .values(
                input_tokens=AIUsageCounter.input_tokens + add_input,
                output_tokens=AIUsageCounter.output_tokens + add_output,
                updated_at=utcnow(),
            )
            .returning(AIUsageCounter.input_tokens, AIUsageCounter.output_tokens)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        await db.commit()

        if row is None:
            current_input, current_output = await UsageStore.load_tokens(db, user_id, period_key, model)
            return ReserveResult(False, current_input, current_output)
        return ReserveResult(True, int(row[0]), int(row[1]))

    @staticmethod
    async def adjust_tokens(
        db: AsyncSession,
        user_id: str,
        period_key: str,
        model: str,
        delta_input: int,
        delta_output: int,
    ) -> bool:
        """
        Apply a signed adjustment to an existing counter, clamping each side at zero.

        Used both to reconcile a reservation against measured usage and, with the
        negated reservation, to roll it back. Not capped by the plan limit.

        Returns:
            True if a counter row was updated
        """
        if delta_input == 0 and delta_output == 0:
            return True

        result = await db.execute(
            update(AIUsageCounter)
            .where(AIUsageCounter.user_id == user_id)
            .where(AIUsageCounter.period_key == period_key)
            .where(AIUsageCounter.model == model)
            .values(
                input_tokens=_clamped_add(AIUsageCounter.input_tokens, delta_input),
                output_tokens=_clamped_add(AIUsageCounter.output_tokens, delta_output),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount > 0

    @staticmethod
    async def consume_image(
        db: AsyncSession, user_id: str, day: str, model: str, limit: int
    ) -> Tuple[bool, int]:
        """
        Atomically increment the daily image count by one if under limit.

        Returns:
            (allowed, count) where count is post-increment when allowed
        """
        if limit <= 0:
            return False, 0

        now = utcnow()
        await db.execute(
            dialect_insert(db, ImageUsageCounter).values(
                id=generate_uuid(),
                user_id=user_id,
                day=day,
                model=model,
                count=0,
                created_at=now,
                updated_at=now,
            ).on_conflict_do_nothing(index_elements=["user_id", "day", "model"])
        )

        result = await db.execute(
            update(ImageUsageCounter)
            .where(ImageUsageCounter.user_id == user_id)
            .where(ImageUsageCounter.day == day)
            .where(ImageUsageCounter.model == model)
            .where(ImageUsageCounter.count + 1 <= limit)
            .values(count=ImageUsageCounter.count + 1, updated_at=utcnow())
            .returning(ImageUsageCounter.count)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        await db.commit()

        if row is None:
            current = await db.execute(
                select(ImageUsageCounter.count).where(
                    ImageUsageCounter.user_id == user_id,
                    ImageUsageCounter.day == day,
                    ImageUsageCounter.model == model,
                )
            )
            return False, int(current.scalar_one_or_none() or 0)
        return True, int(row[0])

    @staticmethod
    async def release_image(db: AsyncSession, user_id: str, day: str, model: str) -> bool:
        """Give back one image slot. Never goes below zero."""
        result = await db.execute(
            update(ImageUsageCounter)
            .where(ImageUsageCounter.user_id == user_id)
            .where(ImageUsageCounter.day == day)
            .where(ImageUsageCounter.model == model)
            .where(ImageUsageCounter.count > 0)
            .values(count=ImageUsageCounter.count - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount > 0

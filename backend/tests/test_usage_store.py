"""
Tests for the atomic usage counters.
"""
import asyncio
import os
import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from reviseflow.models.base import Base
from reviseflow.services.usage_store import UsageStore


PERIOD_KEY = "2024-03-15"
MODEL = "gpt-4o-mini"


async def _reserve(db, user_id, add_input, add_output, limit=6000, period_key=PERIOD_KEY):
    return await UsageStore.reserve_tokens(
        db,
        user_id=user_id,
        period="daily",
        period_key=period_key,
        model=MODEL,
        add_input=add_input,
        add_output=add_output,
        limit=limit,
    )


class TestReserveTokens:
    """Tests for UsageStore.reserve_tokens."""

    @pytest.mark.asyncio
    async def test_first_reservation_creates_counter(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        result = await _reserve(db_session, user_id, 100, 450)

        assert result.allowed is True
        assert result.input_tokens == 100
        assert result.output_tokens == 450
        assert result.used == 550
        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (100, 450)

    @pytest.mark.asyncio
    async def test_reservations_accumulate(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 100, 450)
        result = await _reserve(db_session, user_id, 80, 450)

        assert result.allowed is True
        assert result.used == 1080

    @pytest.mark.asyncio
    async def test_near_limit_scenario(self, db_session: AsyncSession):
        """5950 used of 6000: 100+450 is refused, 30+20 fills the limit exactly."""
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 5950, 0)

        rejected = await _reserve(db_session, user_id, 100, 450)
        assert rejected.allowed is False
        assert rejected.used == 5950
        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (5950, 0)

        accepted = await _reserve(db_session, user_id, 30, 20)
        assert accepted.allowed is True
        assert accepted.used == 6000

    @pytest.mark.asyncio
    async def test_rejection_does_not_mutate(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 1000, 0, limit=1000)

        for _ in range(3):
            result = await _reserve(db_session, user_id, 1, 0, limit=1000)
            assert result.allowed is False

        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (1000, 0)

    @pytest.mark.asyncio
    async def test_amount_larger_than_limit_creates_nothing(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        result = await _reserve(db_session, user_id, 80, 450, limit=0)

        assert result.allowed is False
        assert result.used == 0
        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (0, 0)

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, db_session: AsyncSession):
        with pytest.raises(ValueError):
            await _reserve(db_session, str(uuid.uuid4()), -1, 0)

    @pytest.mark.asyncio
    async def test_new_period_uses_new_counter(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 6000, 0)

        next_day = await _reserve(db_session, user_id, 100, 450, period_key="2024-03-16")
        assert next_day.allowed is True
        assert next_day.used == 550

    @pytest.mark.asyncio
    async def test_users_are_independent(self, db_session: AsyncSession):
        first, second = str(uuid.uuid4()), str(uuid.uuid4())
        await _reserve(db_session, first, 6000, 0)

        result = await _reserve(db_session, second, 100, 100)
        assert result.allowed is True
        assert result.used == 200

    @pytest.mark.asyncio
    async def test_sequential_attempts_never_exceed_limit(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        accepted = 0
        for _ in range(20):
            result = await _reserve(db_session, user_id, 80, 450, limit=2000)
            if result.allowed:
                accepted += 1
        # 530 per attempt: three fit in 2000
        assert accepted == 3
        input_tokens, output_tokens = await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL)
        assert input_tokens + output_tokens == 1590


class TestAdjustTokens:
    """Tests for UsageStore.adjust_tokens."""

    @pytest.mark.asyncio
    async def test_negative_delta_refunds(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 100, 450)

        updated = await UsageStore.adjust_tokens(db_session, user_id, PERIOD_KEY, MODEL, -50, -350)
        assert updated is True
        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (50, 100)

    @pytest.mark.asyncio
    async def test_positive_delta_charges_past_limit(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 5000, 1000)

        await UsageStore.adjust_tokens(db_session, user_id, PERIOD_KEY, MODEL, 20, 0)
        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (5020, 1000)

    @pytest.mark.asyncio
    async def test_full_refund_restores_previous_value(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 300, 200)
        await _reserve(db_session, user_id, 80, 900)

        await UsageStore.adjust_tokens(db_session, user_id, PERIOD_KEY, MODEL, -80, -900)
        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (300, 200)

    @pytest.mark.asyncio
    async def test_clamps_at_zero(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await _reserve(db_session, user_id, 10, 10)

        await UsageStore.adjust_tokens(db_session, user_id, PERIOD_KEY, MODEL, -100, -5)
        assert await UsageStore.load_tokens(db_session, user_id, PERIOD_KEY, MODEL) == (0, 5)

    @pytest.mark.asyncio
    async def test_missing_counter_reports_no_update(self, db_session: AsyncSession):
        updated = await UsageStore.adjust_tokens(db_session, str(uuid.uuid4()), PERIOD_KEY, MODEL, -10, 0)
        assert updated is False


class TestImageCounters:
    """Tests for image slot consumption."""

    @pytest.mark.asyncio
    async def test_consume_until_limit(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        assert await UsageStore.consume_image(db_session, user_id, PERIOD_KEY, "dall-e-2", 2) == (True, 1)
        assert await UsageStore.consume_image(db_session, user_id, PERIOD_KEY, "dall-e-2", 2) == (True, 2)
        assert await UsageStore.consume_image(db_session, user_id, PERIOD_KEY, "dall-e-2", 2) == (False, 2)

    @pytest.mark.asyncio
    async def test_zero_limit_never_allowed(self, db_session: AsyncSession):
        assert await UsageStore.consume_image(db_session, str(uuid.uuid4()), PERIOD_KEY, "dall-e-3", 0) == (False, 0)

    @pytest.mark.asyncio
    async def test_release_gives_slot_back(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        await UsageStore.consume_image(db_session, user_id, PERIOD_KEY, "dall-e-2", 1)

        assert await UsageStore.release_image(db_session, user_id, PERIOD_KEY, "dall-e-2") is True
        assert await UsageStore.consume_image(db_session, user_id, PERIOD_KEY, "dall-e-2", 1) == (True, 1)

    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self, db_session: AsyncSession):
        user_id = str(uuid.uuid4())
        assert await UsageStore.release_image(db_session, user_id, PERIOD_KEY, "dall-e-2") is False


POSTGRES_URL = os.environ.get("TEST_POSTGRES_URL")


@pytest.mark.skipif(not POSTGRES_URL, reason="TEST_POSTGRES_URL not set")
class TestConcurrentReservations:
    """Races between independent sessions; needs row-level locking from PostgreSQL."""

    @pytest.mark.asyncio
    async def test_racing_reservations_never_exceed_limit(self):
        engine = create_async_engine(POSTGRES_URL, pool_size=20, max_overflow=0)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        user_id = str(uuid.uuid4())
        limit = 5000

        async def attempt():
            async with session_maker() as session:
                return await _reserve(session, user_id, 80, 450, limit=limit)

        try:
            results = await asyncio.gather(*[attempt() for _ in range(30)])
            async with session_maker() as session:
                input_tokens, output_tokens = await UsageStore.load_tokens(session, user_id, PERIOD_KEY, MODEL)
        finally:
            await engine.dispose()

        accepted = sum(1 for r in results if r.allowed)
        assert accepted == limit // 530
        assert input_tokens + output_tokens == accepted * 530
        assert input_tokens + output_tokens <= limit


class TestConcurrentReservationsSQLite:
    """Races between independent connections to a file-backed database; writers serialize on the busy timeout."""

    @pytest.mark.asyncio
    async def test_racing_reservations_never_exceed_limit(self, tmp_path):
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}",
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        user_id = str(uuid.uuid4())
        limit = 5000

        async def attempt():
            async with session_maker() as session:
                return await _reserve(session, user_id, 80, 450, limit=limit)

        try:
            results = await asyncio.gather(*[attempt() for _ in range(30)])
            async with session_maker() as session:
                input_tokens, output_tokens = await UsageStore.load_tokens(session, user_id, PERIOD_KEY, MODEL)
        finally:
            await engine.dispose()

        accepted = sum(1 for r in results if r.allowed)
        assert accepted == limit // 530
        assert input_tokens + output_tokens == accepted * 530
        assert all(r.used <= limit for r in results)

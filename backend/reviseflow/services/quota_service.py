"""
Quota reservation engine.

Per request: resolve plan -> estimate -> reserve (degrading the output cap
once) -> provider call -> settle against measured usage, or roll back on
failure -> report remaining tokens.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Union
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from reviseflow.errors import ModelNotEntitledError, PlanExcludesModelError, QuotaExhaustedError
from reviseflow.services.quota_plans import (
    QuotaConfig,
    QuotaPlan,
    UNLIMITED,
    normalize_role,
    period_key_for,
)
from reviseflow.services.token_estimator import is_detailed_request
from reviseflow.services.usage_store import UsageStore
from reviseflow.utils.logging import (
    log_quota_reserved,
    log_quota_rejected,
    log_quota_settled,
    log_quota_rolled_back,
    log_quota_rollback_failed,
)
from reviseflow.utils.metrics import (
    errors_total,
    quota_reservations_total,
    quota_adjustments_total,
    quota_rollbacks_total,
)

logger = logging.getLogger(__name__)

Remaining = Union[int, str]


@dataclass
class Reservation:
    """A committed provisional charge. period_key is None for unlimited roles."""
    user_id: str
    role: str
    model: str
    period: str
    period_key: Optional[str]
    limit: Optional[int]
    reserved_input: int
    reserved_output: int
    used_after_reserve: int = 0
    degraded: bool = False

    @property
    def unlimited(self) -> bool:
        return self.period_key is None

    @property
    def output_cap(self) -> int:
        """Hard ceiling passed to the provider."""
        return self.reserved_output


@dataclass(frozen=True)
class CountedUsage:
    """Measured usage as charged, plus the raw provider totals."""
    counted_input_tokens: int
    counted_output_tokens: int
    raw_input_tokens: int
    raw_output_tokens: int
    attachment_tokens_excluded: bool
    used_fallback_totals: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counted_input_tokens": self.counted_input_tokens,
            "counted_output_tokens": self.counted_output_tokens,
            "raw_input_tokens": self.raw_input_tokens,
            "raw_output_tokens": self.raw_output_tokens,
            "attachment_tokens_excluded": self.attachment_tokens_excluded,
            "used_fallback_totals": self.used_fallback_totals,
        }


@dataclass(frozen=True)
class QuotaSnapshot:
    """Current standing for one model, as reported by /api/me/quota."""
    model: str
    period: str
    period_key: Optional[str]
    limit: Optional[int]
    used: int
    remaining: Remaining


def _as_count(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value >= 0:
        return int(value)
    return None


def count_text_tokens(usage: Optional[Dict[str, Any]], attachments_sent: bool) -> CountedUsage:
    """
    Decide what to charge from a provider usage dict.

    Text-only counts are preferred when attachments were sent and the provider
    reports a breakdown; otherwise the totals are charged.

    Args:
        usage: Provider usage, e.g. {"input_tokens": 10, "input_tokens_details": {...}}
        attachments_sent: Whether the request carried attachments

    Returns:
        CountedUsage with the charged and raw figures
    """
    usage = usage or {}
    raw_input = _as_count(usage.get("input_tokens")) or 0
    raw_output = _as_count(usage.get("output_tokens")) or 0

    input_details = usage.get("input_token_details") or usage.get("input_tokens_details") or {}
    output_details = usage.get("output_token_details") or usage.get("output_tokens_details") or {}
    text_input = _as_count(input_details.get("text_tokens")) if isinstance(input_details, dict) else None
    text_output = _as_count(output_details.get("text_tokens")) if isinstance(output_details, dict) else None

    used_fallback_totals = text_input is None and text_output is None
    exclude = attachments_sent and not used_fallback_totals

    # A side without a text breakdown is charged its total
    counted_input = text_input if exclude and text_input is not None else raw_input
    counted_output = text_output if exclude and text_output is not None else raw_output

    return CountedUsage(
        counted_input_tokens=counted_input,
        counted_output_tokens=counted_output,
        raw_input_tokens=raw_input,
        raw_output_tokens=raw_output,
        attachment_tokens_excluded=exclude,
        used_fallback_totals=used_fallback_totals,
    )


class QuotaService:
    """Reserve/settle/rollback against the durable usage counters."""

    def __init__(self, config: Optional[QuotaConfig] = None):
        self.config = config or QuotaConfig()

    def select_model(self, role: Optional[str], requested: Optional[str]) -> str:
        """Requested model, or the role's default when none is named."""
        model = (requested or "").strip()
        return model or self.config.default_model_for(role)

    def resolve_plan(self, role: Optional[str], model: str) -> Tuple[QuotaPlan, Optional[int]]:
        """
        Map role and model to the plan and its limit.

        Returns:
            (plan, limit); limit is None for unlimited plans

        Raises:
            PlanExcludesModelError: If the plan has no entry for the model
        """
        plan = self.config.plan_for(role)
        if plan.unlimited:
            if model not in self.config.chat_models:
                raise PlanExcludesModelError(f"Model {model} is not available")
            return plan, None
        if model not in plan.models:
            raise PlanExcludesModelError(f"Your plan does not include {model}")
        return plan, int(plan.models[model])

    def estimate(
        self, question: str, history: Sequence[Dict[str, Any]], detailed: bool = False
    ) -> Tuple[int, int, bool]:
        """
        Estimate reservation size.

        Returns:
            (estimated_input, output_cap, detailed)
        """
        estimated_input = self.config.estimator.estimate_input_tokens(question, history)
        wants_detail = bool(detailed) or is_detailed_request(question)
        cap = self.config.detailed_output_cap if wants_detail else self.config.default_output_cap
        return estimated_input, cap, wants_detail

    async def reserve(
        self,
        db: AsyncSession,
        user_id: str,
        role: Optional[str],
        timezone: Optional[str],
        model: str,
        question: str,
        history: Sequence[Dict[str, Any]] = (),
        detailed: bool = False,
    ) -> Reservation:
        """
        Reserve estimated input plus the output cap before calling the provider.

        A detailed request that does not fit is retried once with the default cap.

        Raises:
            PlanExcludesModelError: Model not in the role's plan
            ModelNotEntitledError: Model limit is zero
            QuotaExhaustedError: Period budget used up
        """
        role = normalize_role(role)
        plan, limit = self.resolve_plan(role, model)
        estimated_input, cap, wants_detail = self.estimate(question, history, detailed)

        if plan.unlimited:
            quota_reservations_total.labels(model=model, outcome="unlimited").inc()
            return Reservation(
                user_id=user_id,
                role=role,
                model=model,
                period=plan.period,
                period_key=None,
                limit=None,
                reserved_input=estimated_input,
                reserved_output=cap,
            )

        period_key = period_key_for(plan.period, timezone)
        caps = [cap]
        if wants_detail and self.config.default_output_cap < cap:
            caps.append(self.config.default_output_cap)

        result = None
        for attempt, output_cap in enumerate(caps):
            result = await UsageStore.reserve_tokens(
                db,
                user_id=user_id,
                period=plan.period,
                period_key=period_key,
                model=model,
                add_input=estimated_input,
                add_output=output_cap,
                limit=limit,
            )
            if result.allowed:
                degraded = attempt > 0
                quota_reservations_total.labels(
                    model=model, outcome="degraded" if degraded else "reserved"
                ).inc()
                log_quota_reserved(
                    logger,
                    user_id=user_id,
                    model=model,
                    period_key=period_key,
                    reserved_input=estimated_input,
                    reserved_output=output_cap,
                    used=result.used,
                    limit=limit,
                    degraded=degraded,
                )
                return Reservation(
                    user_id=user_id,
                    role=role,
                    model=model,
                    period=plan.period,
                    period_key=period_key,
                    limit=limit,
                    reserved_input=estimated_input,
                    reserved_output=output_cap,
                    used_after_reserve=result.used,
                    degraded=degraded,
                )

        if limit == 0:
            quota_reservations_total.labels(model=model, outcome="not_entitled").inc()
            log_quota_rejected(logger, user_id=user_id, model=model, reason="model_not_entitled", limit=limit)
            raise ModelNotEntitledError(f"Your plan does not allow {model}")

        quota_reservations_total.labels(model=model, outcome="exhausted").inc()
        log_quota_rejected(
            logger, user_id=user_id, model=model, reason="quota_exhausted", limit=limit, used=result.used
        )
        raise QuotaExhaustedError(
            f"Token limit reached for {model}. Try again next period.",
            limit=limit,
            used=result.used,
        )

    async def settle(
        self,
        db: AsyncSession,
        reservation: Reservation,
        usage: Optional[Dict[str, Any]],
        attachments_sent: bool = False,
    ) -> CountedUsage:
        """
        Reconcile a reservation against measured usage.

        The delta (measured - reserved) may be negative (refund) or positive
        (extra charge). A failed adjustment is logged and the reservation stays
        charged; the cap enforced at reserve time already bounds spend.
        """
        counted = count_text_tokens(usage, attachments_sent)
        if reservation.unlimited:
            return counted

        delta_input = counted.counted_input_tokens - reservation.reserved_input
        delta_output = counted.counted_output_tokens - reservation.reserved_output

        try:
            await UsageStore.adjust_tokens(
                db,
                user_id=reservation.user_id,
                period_key=reservation.period_key,
                model=reservation.model,
                delta_input=delta_input,
                delta_output=delta_output,
            )
        except Exception as e:
            await db.rollback()
            errors_total.labels(error_type="quota_settle_failed").inc()
            logger.error(
                f"Quota settlement failed for user {reservation.user_id}: {e}",
                extra={"event": "quota_settle_failed", "user_id": reservation.user_id, "model": reservation.model},
                exc_info=True,
            )
            return counted

        net = delta_input + delta_output
        direction = "refund" if net < 0 else "charge" if net > 0 else "exact"
        quota_adjustments_total.labels(model=reservation.model, direction=direction).inc()
        log_quota_settled(
            logger,
            user_id=reservation.user_id,
            model=reservation.model,
            delta_input=delta_input,
            delta_output=delta_output,
            used_fallback_totals=counted.used_fallback_totals,
        )
        return counted

    async def rollback(self, db: AsyncSession, reservation: Reservation) -> bool:
        """
        Refund the full reservation after a failed provider call.

        Never raises: a failed rollback is logged so the original error can
        still reach the caller.

        Returns:
            True if the refund was applied (or nothing needed refunding)
        """
        if reservation.unlimited:
            return True

        try:
            await db.rollback()
            await UsageStore.adjust_tokens(
                db,
                user_id=reservation.user_id,
                period_key=reservation.period_key,
                model=reservation.model,
                delta_input=-reservation.reserved_input,
                delta_output=-reservation.reserved_output,
            )
        except Exception as e:
            quota_rollbacks_total.labels(model=reservation.model, status="failed").inc()
            log_quota_rollback_failed(logger, user_id=reservation.user_id, model=reservation.model, error=str(e))
            return False

        quota_rollbacks_total.labels(model=reservation.model, status="ok").inc()
        log_quota_rolled_back(
            logger,
            user_id=reservation.user_id,
            model=reservation.model,
            refunded=reservation.reserved_input + reservation.reserved_output,
        )
        return True

    async def remaining(
        self, db: AsyncSession, reservation: Reservation, counted: Optional[CountedUsage] = None
    ) -> Remaining:
        """
        Remaining tokens for the reservation's period after settlement.

        Falls back to the figure implied by the reservation and the settled
        usage if the counter cannot be re-read.
        """
        if reservation.unlimited:
            return UNLIMITED

        try:
            input_tokens, output_tokens = await UsageStore.load_tokens(
                db, reservation.user_id, reservation.period_key, reservation.model
            )
            used = input_tokens + output_tokens
        except Exception as e:
            await db.rollback()
            logger.warning(f"Could not re-read usage for user {reservation.user_id}: {e}")
            used = reservation.used_after_reserve
            if counted is not None:
                used += (counted.counted_input_tokens - reservation.reserved_input)
                used += (counted.counted_output_tokens - reservation.reserved_output)

        return max(0, reservation.limit - used)

    async def snapshot(
        self,
        db: AsyncSession,
        user_id: str,
        role: Optional[str],
        timezone: Optional[str],
        model: Optional[str] = None,
    ) -> QuotaSnapshot:
        """Read-only view of a user's standing for one model."""
        model = self.select_model(role, model)
        plan, limit = self.resolve_plan(role, model)
        if plan.unlimited:
            return QuotaSnapshot(model, plan.period, None, None, 0, UNLIMITED)

        period_key = period_key_for(plan.period, timezone)
        input_tokens, output_tokens = await UsageStore.load_tokens(db, user_id, period_key, model)
        used = input_tokens + output_tokens
        return QuotaSnapshot(model, plan.period, period_key, limit, used, max(0, limit - used))

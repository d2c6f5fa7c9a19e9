"""
Quota plan configuration.

Maps a role to its usage period and per-model limits. QuotaConfig bundles the
plan tables with the estimator and output caps so services receive everything
they need at construction instead of reading module globals.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from reviseflow.models.entitlement import Tier
from reviseflow.services.token_estimator import CharRatioEstimator, TokenEstimator

logger = logging.getLogger(__name__)

PERIOD_DAILY = "daily"
PERIOD_MONTHLY = "monthly"
PERIOD_NONE = "none"

UNLIMITED = "unlimited"


@dataclass(frozen=True)
class QuotaPlan:
    """Usage period plus model -> token limit. A zero limit forbids the model."""
    period: str
    models: Dict[str, int] = field(default_factory=dict)

    @property
    def unlimited(self) -> bool:
        return self.period == PERIOD_NONE


# Token plans per role
DEFAULT_TOKEN_PLANS: Dict[str, QuotaPlan] = {
    Tier.FREE.value: QuotaPlan(PERIOD_DAILY, {"gpt-4o-mini": 6000}),
    Tier.PLUS.value: QuotaPlan(PERIOD_MONTHLY, {"gpt-5-mini": 1_000_000, "gpt-4o-mini": 2_000_000}),
    Tier.PRO.value: QuotaPlan(PERIOD_MONTHLY, {"gpt-5-mini": 3_000_000, "gpt-4o-mini": 2_000_000}),
    Tier.ADMIN.value: QuotaPlan(PERIOD_NONE, {}),
}

# Daily image limits per role; None means unlimited
DEFAULT_IMAGE_LIMITS: Dict[str, Optional[Dict[str, int]]] = {
    Tier.FREE.value: {"dall-e-2": 0, "dall-e-3": 0},
    Tier.PLUS.value: {"dall-e-2": 1, "dall-e-3": 0},
    Tier.PRO.value: {"dall-e-2": 4, "dall-e-3": 2},
    Tier.ADMIN.value: None,
}

DEFAULT_CHAT_MODELS: Tuple[str, ...] = ("gpt-5-mini", "gpt-4o-mini")
DEFAULT_IMAGE_MODELS: Tuple[str, ...] = ("dall-e-2", "dall-e-3")

DEFAULT_MODEL_BY_ROLE: Dict[str, str] = {
    Tier.FREE.value: "gpt-4o-mini",
    Tier.PLUS.value: "gpt-5-mini",
    Tier.PRO.value: "gpt-5-mini",
    Tier.ADMIN.value: "gpt-5-mini",
}

ATTACHMENT_ROLES: Tuple[str, ...] = (Tier.PLUS.value, Tier.PRO.value, Tier.ADMIN.value)


def normalize_role(role: Optional[str]) -> str:
    """Lower-case a stored role; "user" and unknown values become "free"."""
    value = (role or "").strip().lower()
    if value == "user":
        return Tier.FREE.value
    if value in DEFAULT_TOKEN_PLANS:
        return value
    return Tier.FREE.value


def resolve_timezone(tz_name: Optional[str]) -> ZoneInfo:
    """Return the named zone, falling back to UTC for unknown names."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone {tz_name!r}, using UTC")
    return ZoneInfo("UTC")


def period_key_for(period: str, tz_name: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """
    Compute the counter period key in the user's timezone.

    Args:
        period: "daily", "monthly" or "none"
        tz_name: IANA timezone name (invalid names fall back to UTC)
        now: Aware datetime to use instead of the current time

    Returns:
        "YYYY-MM-DD", "YYYY-MM", or None for unlimited plans
    """
    if period == PERIOD_NONE:
        return None
    current = (now or datetime.now(timezone.utc)).astimezone(resolve_timezone(tz_name))
    if period == PERIOD_DAILY:
        return current.strftime("%Y-%m-%d")
    if period == PERIOD_MONTHLY:
        return current.strftime("%Y-%m")
    raise ValueError(f"Unknown quota period: {period}")


@dataclass
class QuotaConfig:
    """Everything the quota engine needs, passed in at construction."""
    token_plans: Dict[str, QuotaPlan] = field(default_factory=lambda: dict(DEFAULT_TOKEN_PLANS))
    image_limits: Dict[str, Optional[Dict[str, int]]] = field(default_factory=lambda: dict(DEFAULT_IMAGE_LIMITS))
    chat_models: Tuple[str, ...] = DEFAULT_CHAT_MODELS
    image_models: Tuple[str, ...] = DEFAULT_IMAGE_MODELS
    default_models: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODEL_BY_ROLE))
    attachment_roles: Tuple[str, ...] = ATTACHMENT_ROLES
    default_output_cap: int = 450
    detailed_output_cap: int = 900
    estimator: TokenEstimator = field(default_factory=CharRatioEstimator)

    @classmethod
    def from_settings(cls, settings) -> "QuotaConfig":
        """Build a config from application settings."""
        return cls(
            default_output_cap=settings.default_output_cap,
            detailed_output_cap=settings.detailed_output_cap,
            estimator=CharRatioEstimator(
                chars_per_token=settings.estimate_chars_per_token,
                minimum=settings.estimate_min_tokens,
                maximum=settings.estimate_max_tokens,
            ),
        )

    def plan_for(self, role: Optional[str]) -> QuotaPlan:
        return self.token_plans.get(normalize_role(role), self.token_plans[Tier.FREE.value])

    def default_model_for(self, role: Optional[str]) -> str:
        return self.default_models.get(normalize_role(role), self.default_models[Tier.FREE.value])

    def image_limit_for(self, role: Optional[str], model: str) -> Optional[int]:
        """
        Daily image limit for a role and model.

        Returns:
            None for unlimited roles, 0 when the model is not in the role's table
        """
        limits = self.image_limits.get(normalize_role(role), {})
        if limits is None:
            return None
        return int(limits.get(model, 0))

    def can_attach(self, role: Optional[str]) -> bool:
        return normalize_role(role) in self.attachment_roles

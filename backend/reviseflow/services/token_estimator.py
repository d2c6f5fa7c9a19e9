"""
Pre-call token estimation.

The estimate only sizes the reservation; the measured usage returned by the
provider is what is finally charged. Estimators sit behind TokenEstimator so
a provider tokenizer can replace the character heuristic without touching the
reservation protocol.
"""
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Sequence

_DETAILED_PATTERN = re.compile(
    r"(^|\b)(detailed|in detail|step[- ]by[- ]step|full marks)(\b|$)",
    re.IGNORECASE,
)

CHAT_ROLES = ("user", "assistant")


def clamp_int(value: Any, lower: int, upper: int) -> int:
    """Clamp to [lower, upper]; non-numeric input becomes lower."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = lower
    return max(lower, min(upper, number))


def is_detailed_request(question: str) -> bool:
    """True when the question explicitly asks for a long-form answer."""
    return bool(_DETAILED_PATTERN.search(question or ""))


def history_text(history: Sequence[Dict[str, Any]]) -> str:
    """Join the text of user/assistant turns, ignoring anything else."""
    return "\n".join(
        str(turn.get("content") or "")
        for turn in history
        if isinstance(turn, dict) and turn.get("role") in CHAT_ROLES
    )


class TokenEstimator(ABC):
    """Estimates input tokens for a chat request before it is sent."""

    @abstractmethod
    def estimate_input_tokens(self, question: str, history: Sequence[Dict[str, Any]]) -> int:
        """
        Estimate input tokens for a question plus prior turns.

        Returns:
            Non-negative integer estimate
        """
        pass


class CharRatioEstimator(TokenEstimator):
    """Fixed characters-per-token ratio, clamped to [minimum, maximum]."""

    def __init__(self, chars_per_token: int = 4, minimum: int = 80, maximum: int = 6000):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        if minimum < 0 or maximum < minimum:
            raise ValueError("Estimator bounds must satisfy 0 <= minimum <= maximum")
        self.chars_per_token = chars_per_token
        self.minimum = minimum
        self.maximum = maximum

    def estimate_input_tokens(self, question: str, history: Sequence[Dict[str, Any]]) -> int:
        chars = len(question or "") + len(history_text(history))
        return clamp_int(math.ceil(chars / self.chars_per_token), self.minimum, self.maximum)

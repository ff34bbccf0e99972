"""Cost estimation and the per-generation USD budget.

Provides the model rate card, token/cost estimators, the thread-safe
:class:`CostBudget` consumed across attempts, and the pre-flight check
that rejects requests whose worst-case spend exceeds the ceiling.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Mapping

from spritegate.errors import BudgetExceededError
from spritegate.logging import get_logger
from spritegate.models import ModelProfile, normalize_whitespace
from spritegate.utils import js_round

logger = get_logger("budget")


# ---------------------------------------------------------------------------
# Rate card
# ---------------------------------------------------------------------------

DEFAULT_MODEL_RATES: dict[str, ModelProfile] = {
    "gpt-4.1": ModelProfile(
        input_per_m_tokens=2.0,
        output_per_m_tokens=8.0,
        max_attempts=4,
        compact_prompt=False,
        correction_issue_limit=2,
    ),
    "gpt-4.1-mini": ModelProfile(
        input_per_m_tokens=0.4,
        output_per_m_tokens=1.6,
        max_attempts=3,
        compact_prompt=True,
        correction_issue_limit=2,
    ),
    "gpt-4.1-nano": ModelProfile(
        input_per_m_tokens=0.1,
        output_per_m_tokens=0.4,
        max_attempts=4,
        compact_prompt=True,
        correction_issue_limit=3,
    ),
    "gpt-4o": ModelProfile(
        input_per_m_tokens=2.5,
        output_per_m_tokens=10.0,
        max_attempts=3,
        compact_prompt=False,
        correction_issue_limit=2,
    ),
    "gpt-4o-mini": ModelProfile(
        input_per_m_tokens=0.15,
        output_per_m_tokens=0.6,
        max_attempts=2,
        compact_prompt=True,
        correction_issue_limit=2,
    ),
    "gpt-image-1": ModelProfile(
        input_per_m_tokens=0.4,
        output_per_m_tokens=0.0,
        max_attempts=4,
        compact_prompt=False,
        correction_issue_limit=4,
    ),
}

# Used for any model id missing from the rate card.
DEFAULT_PROFILE = ModelProfile(
    input_per_m_tokens=0.4,
    output_per_m_tokens=0.0,
    max_attempts=3,
    compact_prompt=False,
    correction_issue_limit=2,
)


def get_model_profile(
    model: str, overrides: Mapping[str, ModelProfile] | None = None
) -> ModelProfile:
    """Look up *model* in the overrides, then the default rate card.

    Unknown models fall back to :data:`DEFAULT_PROFILE`.
    """
    if overrides and model in overrides:
        return overrides[model]
    return DEFAULT_MODEL_RATES.get(model, DEFAULT_PROFILE)


def effective_max_attempts(profile: ModelProfile, configured_max: int) -> int:
    """Attempt ceiling: the model's own limit capped by configuration."""
    return min(profile.max_attempts, max(1, configured_max))


# ---------------------------------------------------------------------------
# Estimators
# ---------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """Approximate prompt tokens at one token per four characters.

    Returns 0 for blank text and at least 1 otherwise.
    """
    normalized = normalize_whitespace(text)
    if not normalized:
        return 0
    return max(1, math.ceil(len(normalized) / 4))


def estimate_output_tokens(sprite_size: int, columns: int, rows: int) -> int:
    """Output-token estimate for one sheet: ``clamp(round(px/20), 512, 12000)``."""
    sheet_pixels = sprite_size * sprite_size * columns * rows
    return min(max(js_round(sheet_pixels / 20), 512), 12000)


def estimate_cost_usd(
    model: str,
    input_tokens: int,
    output_tokens: int = 0,
    overrides: Mapping[str, ModelProfile] | None = None,
) -> float:
    """Price *input_tokens* and *output_tokens* with the model's rates."""
    rates = get_model_profile(model, overrides)
    input_cost = (input_tokens / 1_000_000) * rates.input_per_m_tokens
    output_cost = (output_tokens / 1_000_000) * rates.output_per_m_tokens
    return input_cost + output_cost


def estimate_total_cost_usd(
    model: str,
    input_tokens: int,
    output_tokens: int,
    estimated_output_tokens: int,
    overrides: Mapping[str, ModelProfile] | None = None,
) -> float:
    """Cost of a finished generation, using the estimate when no output was reported."""
    output_for_cost = output_tokens if output_tokens > 0 else estimated_output_tokens
    return estimate_cost_usd(model, input_tokens, output_for_cost, overrides)


def should_queue(frame_count: int, sprite_size: int) -> bool:
    """Whether a request is heavy enough to go through the job queue."""
    return frame_count * sprite_size > 768 or frame_count > 10 or sprite_size > 96


# ---------------------------------------------------------------------------
# Budget tracking
# ---------------------------------------------------------------------------


class CostBudget:
    """Thread-safe remaining USD allowance for one generation.

    ``remaining`` never goes below zero and only ever decreases.
    """

    def __init__(self, limit_usd: float) -> None:
        self._limit = max(0.0, float(limit_usd))
        self._remaining = self._limit
        self._lock = threading.Lock()

    @property
    def limit(self) -> float:
        return self._limit

    @property
    def remaining(self) -> float:
        """Remaining allowance in USD (thread-safe)."""
        with self._lock:
            return self._remaining

    @property
    def spent(self) -> float:
        with self._lock:
            return self._limit - self._remaining

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._remaining <= 0

    def can_afford(self, cost_usd: float) -> bool:
        """True when *cost_usd* does not exceed what remains."""
        with self._lock:
            return cost_usd <= self._remaining

    def consume(self, cost_usd: float) -> float:
        """Deduct *cost_usd* (floored at zero) and return the new remainder."""
        with self._lock:
            self._remaining = max(0.0, self._remaining - max(0.0, cost_usd))
            remaining = self._remaining
        logger.debug(
            "Budget consumed $%.6f, remaining $%.6f of $%.2f",
            cost_usd,
            remaining,
            self._limit,
        )
        return remaining


# ---------------------------------------------------------------------------
# Pre-flight check
# ---------------------------------------------------------------------------


@dataclass
class CostEstimate:
    """Worst-case spend for a generation request.

    Attributes:
        model: Model the estimate was priced with.
        prompt_tokens: Estimated tokens for one attempt's prompt.
        output_tokens_per_attempt: Estimated output tokens per attempt.
        max_attempts: Attempt ceiling for the model.
        estimated_cost_usd: Cost if every attempt runs.
        budget_usd: Configured ceiling.
        queued: Whether the request would go through the job queue.
    """

    model: str
    prompt_tokens: int
    output_tokens_per_attempt: int
    max_attempts: int
    estimated_cost_usd: float
    budget_usd: float
    queued: bool

    @property
    def within_budget(self) -> bool:
        return self.estimated_cost_usd <= self.budget_usd


def estimate_generation_cost(
    *,
    model: str,
    prompt: str,
    sprite_size: int,
    frame_count: int,
    columns: int,
    rows: int,
    configured_max_attempts: int,
    budget_usd: float,
    overrides: Mapping[str, ModelProfile] | None = None,
) -> CostEstimate:
    """Estimate the worst-case USD spend of a generation without running it."""
    profile = get_model_profile(model, overrides)
    max_attempts = effective_max_attempts(profile, configured_max_attempts)
    prompt_tokens = estimate_tokens(prompt)
    output_tokens = estimate_output_tokens(sprite_size, columns, rows)
    cost = estimate_cost_usd(
        model,
        prompt_tokens * max_attempts,
        output_tokens * max_attempts,
        overrides,
    )
    return CostEstimate(
        model=model,
        prompt_tokens=prompt_tokens,
        output_tokens_per_attempt=output_tokens,
        max_attempts=max_attempts,
        estimated_cost_usd=cost,
        budget_usd=budget_usd,
        queued=should_queue(frame_count, sprite_size),
    )


def precheck_generation_cost(estimate: CostEstimate) -> None:
    """Reject a request whose worst-case spend exceeds the ceiling.

    Raises:
        BudgetExceededError: If ``estimate.estimated_cost_usd`` is above
            ``estimate.budget_usd``.
    """
    if estimate.within_budget:
        return
    logger.warning(
        "Budget precheck FAILED: model=%s estimated=$%.4f budget=$%.2f "
        "(prompt_tokens=%d, output_tokens/attempt=%d, attempts=%d)",
        estimate.model,
        estimate.estimated_cost_usd,
        estimate.budget_usd,
        estimate.prompt_tokens,
        estimate.output_tokens_per_attempt,
        estimate.max_attempts,
    )
    raise BudgetExceededError(
        "Estimated token spend exceeds configured budget. "
        "Reduce frame size or choose a cheaper model."
    )

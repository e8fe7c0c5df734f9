"""
Pricing calculations.

Handles cost estimates for admission and actual cost for completed
generations. All arithmetic is done in Decimal and rounded UP so that
estimates err on the expensive side.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Optional

from .token_counter import TokenUsage

# Admission heuristic: every job is assumed to use this many tokens.
ESTIMATED_PROMPT_TOKENS = 1000
ESTIMATED_COMPLETION_TOKENS = 500

CENT = Decimal("0.01")
MICRO_DOLLAR = Decimal("0.000001")


@dataclass(frozen=True)
class FallbackRate:
    """Blended per-1K-token rate used when a provider's prices are unknown."""
    cost_per_1k: Decimal


FALLBACK_RATES: Dict[str, FallbackRate] = {
    "openai": FallbackRate(cost_per_1k=Decimal("0.03")),
    "anthropic": FallbackRate(cost_per_1k=Decimal("0.025")),
}
DEFAULT_FALLBACK_RATE = FallbackRate(cost_per_1k=Decimal("0.02"))


def estimate_job_cost(
    cost_per_input_token: Optional[float] = None,
    cost_per_output_token: Optional[float] = None,
    provider_id: Optional[str] = None,
) -> float:
    """Estimate the cost of a single job before it runs.

    Uses the provider's per-token prices when both are known, otherwise a
    blended per-1K rate keyed by provider name.

    Returns:
        Estimated cost rounded UP to the cent
    """
    if cost_per_input_token is not None and cost_per_output_token is not None:
        estimate = (
            Decimal(ESTIMATED_PROMPT_TOKENS) * Decimal(str(cost_per_input_token))
            + Decimal(ESTIMATED_COMPLETION_TOKENS) * Decimal(str(cost_per_output_token))
        )
    else:
        rate = FALLBACK_RATES.get(provider_id or "", DEFAULT_FALLBACK_RATE)
        total_tokens = ESTIMATED_PROMPT_TOKENS + ESTIMATED_COMPLETION_TOKENS
        estimate = (Decimal(total_tokens) / Decimal("1000")) * rate.cost_per_1k

    return float(estimate.quantize(CENT, rounding=ROUND_UP))


def calculate_cost(
    usage: TokenUsage,
    cost_per_input_token: float,
    cost_per_output_token: float,
) -> float:
    """Calculate actual cost for reported usage with conservative rounding.

    Args:
        usage: Token usage data
        cost_per_input_token: Price of one prompt token
        cost_per_output_token: Price of one completion token

    Returns:
        Total cost rounded UP to the micro-dollar
    """
    prompt_cost = Decimal(usage.prompt_tokens) * Decimal(str(cost_per_input_token))
    completion_cost = Decimal(usage.completion_tokens) * Decimal(str(cost_per_output_token))
    total_cost = prompt_cost + completion_cost
    return float(total_cost.quantize(MICRO_DOLLAR, rounding=ROUND_UP))

"""Credit pricing for analyses.

Token usage reported by Gemini is priced at the provider's per-token rate,
marked up, converted to credits and rounded up to a whole credit. Every
analysis costs at least ``minimum_charge`` credits.
"""
import math
from dataclasses import dataclass
from decimal import Decimal

from streamslicer.config import Settings


TOKENS_PER_MILLION = Decimal(1_000_000)


@dataclass(frozen=True)
class PriceTable:
    """Pricing constants. Prices are USD per 1M tokens."""
    input_price_per_million: Decimal = Decimal("0.10")
    output_price_per_million: Decimal = Decimal("0.40")
    markup_multiplier: Decimal = Decimal(10)
    credits_per_usd: int = 1000
    minimum_charge: int = 5
    estimate_tokens_per_second: int = 300
    estimate_completion_tokens: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceTable":
        # str() keeps 0.1 as 0.1 instead of its binary expansion
        return cls(
            input_price_per_million=Decimal(str(settings.input_price_per_million)),
            output_price_per_million=Decimal(str(settings.output_price_per_million)),
            markup_multiplier=Decimal(str(settings.markup_multiplier)),
            credits_per_usd=settings.credits_per_usd,
            minimum_charge=settings.minimum_charge,
            estimate_tokens_per_second=settings.estimate_tokens_per_second,
            estimate_completion_tokens=settings.estimate_completion_tokens,
        )


DEFAULT_PRICES = PriceTable()


def calculate_cost(
    prompt_tokens: int,
    completion_tokens: int,
    table: PriceTable = DEFAULT_PRICES,
) -> int:
    """Calculate credits for an analysis from its token usage.

    Raises:
        ValueError: if either token count is negative
    """
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("Token counts must be non-negative")

    base_usd = (
        Decimal(prompt_tokens) / TOKENS_PER_MILLION * table.input_price_per_million
        + Decimal(completion_tokens) / TOKENS_PER_MILLION * table.output_price_per_million
    )
    retail_usd = base_usd * table.markup_multiplier
    credits = math.ceil(retail_usd * table.credits_per_usd)

    return max(credits, table.minimum_charge)


def estimate_video_cost(duration_seconds: float, table: PriceTable = DEFAULT_PRICES) -> int:
    """Rough pre-flight estimate for a video of the given length.

    Advisory only, never used for admission.
    """
    if duration_seconds < 0:
        raise ValueError("Duration must be non-negative")

    prompt_tokens = math.ceil(duration_seconds * table.estimate_tokens_per_second)
    return calculate_cost(prompt_tokens, table.estimate_completion_tokens, table)

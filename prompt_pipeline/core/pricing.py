"""
Pricing calculations and rate management.

Handles cost estimates for the generative models the pipeline calls.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict

from .token_counter import TokenUsage

DEFAULT_MODEL = "gemini-2.5-flash"

_ONE_MILLION = Decimal("1000000")
_COST_PRECISION = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_million: Decimal  # Cost per 1M input tokens
    output_cost_per_million: Decimal  # Cost per 1M output tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table with a designated fallback entry."""
    prices: Dict[str, ModelPricing]
    default_model: str

    def __post_init__(self):
        if self.default_model not in self.prices:
            raise ValueError(f"Default model {self.default_model} missing from pricing table")

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, falling back to the default entry.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or for the default model when the
            name is unknown
        """
        return self.prices.get(model, self.prices[self.default_model])


PRICING_TABLE = PricingTable(
    prices={
        "gemini-2.5-flash": ModelPricing(
            input_cost_per_million=Decimal("0.30"),
            output_cost_per_million=Decimal("2.50")
        ),
        "gemini-2.0-flash": ModelPricing(
            input_cost_per_million=Decimal("0.10"),
            output_cost_per_million=Decimal("0.40")
        ),
        "gemini-1.5-flash": ModelPricing(
            input_cost_per_million=Decimal("0.075"),
            output_cost_per_million=Decimal("0.30")
        ),
    },
    default_model=DEFAULT_MODEL
)


@dataclass(frozen=True)
class CostEstimate:
    """Input and output cost of one call, rounded to 6 decimal places."""
    input_cost: float
    output_cost: float

    @property
    def total_cost(self) -> float:
        return round(self.input_cost + self.output_cost, 6)


def calculate_cost(
    model: str,
    usage: TokenUsage,
    pricing_table: PricingTable = PRICING_TABLE
) -> CostEstimate:
    """Calculate input and output cost for model usage.

    Args:
        model: Model identifier; unknown models use the default pricing
        usage: Token usage data
        pricing_table: Table to price against

    Returns:
        CostEstimate with both fields rounded to 6 decimal places
    """
    pricing = pricing_table.get_pricing(model)

    input_cost = (Decimal(usage.prompt_tokens) / _ONE_MILLION) * pricing.input_cost_per_million
    output_cost = (Decimal(usage.completion_tokens) / _ONE_MILLION) * pricing.output_cost_per_million

    return CostEstimate(
        input_cost=float(input_cost.quantize(_COST_PRECISION, rounding=ROUND_HALF_UP)),
        output_cost=float(output_cost.quantize(_COST_PRECISION, rounding=ROUND_HALF_UP))
    )

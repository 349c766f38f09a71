"""Static pricing and volume-discount tables.

Prices are in cents per token (EUR minor units) and are exact Decimals so
per-call costs can be summed without float drift before the single
round-up to whole cents.

Token discount tiers (monthly tokens, lower bound inclusive):
┌──────────┬──────────────────────────┬──────────┐
│   Tier   │      Monthly tokens      │ Discount │
├──────────┼──────────────────────────┼──────────┤
│ Bronze   │ 0 - 100,000              │    0%    │
│ Silver   │ 100,001 - 500,000        │    5%    │
│ Gold     │ 500,001 - 2,000,000      │   10%    │
│ Platinum │ 2,000,001+               │   15%    │
└──────────┴──────────────────────────┴──────────┘

Voice discount tiers are keyed by monthly minutes: Bronze below 60,
Silver from 60 (5%), Gold from 300 (10%), Platinum from 1,000 (15%) and
Diamond from 5,000 (20%).
"""

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ModelPricing:
    """Per-token prices for one model.

    Attributes:
        input_cents_per_token: Price of one prompt token in cents.
        output_cents_per_token: Price of one completion token in cents.
        model_name: Display name of the model.
        provider: Upstream provider name.
    """

    input_cents_per_token: Decimal
    output_cents_per_token: Decimal
    model_name: str
    provider: str


@dataclass(frozen=True)
class DiscountTier:
    """One row of a volume-discount table.

    Attributes:
        label: Tier name shown to tenants.
        min_quantity: Inclusive lower bound.
        max_quantity: Exclusive upper bound; None for the top tier.
        discount_percent: Discount applied to the whole charge.
    """

    label: str
    min_quantity: int
    max_quantity: int | None
    discount_percent: int

    def contains(self, quantity: int) -> bool:
        """True if ``quantity`` falls in [min_quantity, max_quantity)."""
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity < self.max_quantity


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MODEL_KEY = "default"

MODEL_PRICING: MappingProxyType[str, ModelPricing] = MappingProxyType(
    {
        "deepseek/kimi-k2-thinking": ModelPricing(
            input_cents_per_token=Decimal("0.0003"),
            output_cents_per_token=Decimal("0.0003"),
            model_name="Kimi K2 Thinking",
            provider="DeepSeek",
        ),
        "qwen/qwen-max-3": ModelPricing(
            input_cents_per_token=Decimal("0.0002"),
            output_cents_per_token=Decimal("0.0002"),
            model_name="Qwen Max 3",
            provider="Alibaba",
        ),
        "openai/gpt-4o": ModelPricing(
            input_cents_per_token=Decimal("0.0025"),
            output_cents_per_token=Decimal("0.01"),
            model_name="GPT-4o",
            provider="OpenAI",
        ),
        "openai/gpt-4o-mini": ModelPricing(
            input_cents_per_token=Decimal("0.000015"),
            output_cents_per_token=Decimal("0.0006"),
            model_name="GPT-4o Mini",
            provider="OpenAI",
        ),
        "anthropic/claude-3-5-sonnet": ModelPricing(
            input_cents_per_token=Decimal("0.0003"),
            output_cents_per_token=Decimal("0.0015"),
            model_name="Claude 3.5 Sonnet",
            provider="Anthropic",
        ),
        DEFAULT_MODEL_KEY: ModelPricing(
            input_cents_per_token=Decimal("0.0003"),
            output_cents_per_token=Decimal("0.0003"),
            model_name="Default",
            provider="Unknown",
        ),
    }
)

TOKEN_DISCOUNT_TIERS: tuple[DiscountTier, ...] = (
    DiscountTier("Bronze", 0, 100_001, 0),
    DiscountTier("Silver", 100_001, 500_001, 5),
    DiscountTier("Gold", 500_001, 2_000_001, 10),
    DiscountTier("Platinum", 2_000_001, None, 15),
)

VOICE_DISCOUNT_TIERS: tuple[DiscountTier, ...] = (
    DiscountTier("Bronze", 0, 60, 0),
    DiscountTier("Silver", 60, 300, 5),
    DiscountTier("Gold", 300, 1000, 10),
    DiscountTier("Platinum", 1000, 5000, 15),
    DiscountTier("Diamond", 5000, None, 20),
)

# Voice is priced per minute and billed per second
VOICE_CENTS_PER_MINUTE = Decimal(150)
_SECONDS_PER_MINUTE = 60
VOICE_CENTS_PER_SECOND = VOICE_CENTS_PER_MINUTE / _SECONDS_PER_MINUTE

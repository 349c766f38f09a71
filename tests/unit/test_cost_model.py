"""Tests for the cost model.

Token estimation heuristics, model pricing lookup, volume-discount tiers,
exact post-flight cost with a single round-up, and voice pricing.
"""

import logging
from decimal import Decimal

import pytest

from tollbooth.core.errors import InvalidInputError
from tollbooth.services.cost_model import (
    CostModel,
    TokenCount,
    apply_discount,
    ceil_cents,
)
from tollbooth.services.pricing import (
    MODEL_PRICING,
    TOKEN_DISCOUNT_TIERS,
    VOICE_DISCOUNT_TIERS,
    ModelPricing,
)

_KIMI = "deepseek/kimi-k2-thinking"
_GPT4O = "openai/gpt-4o"


@pytest.fixture
def model() -> CostModel:
    return CostModel()


# =============================================================================
# Token estimation
# =============================================================================


class TestEstimateTokens:
    """estimate_tokens() uses ~4 characters per token with a confidence score."""

    def test_four_characters_is_one_token(self, model: CostModel) -> None:
        assert model.estimate_tokens("test").tokens == 1

    def test_empty_text_is_zero_tokens_full_confidence(self, model: CostModel) -> None:
        assert model.estimate_tokens("") == TokenCount(tokens=0, confidence=1.0)

    def test_partial_tokens_round_up(self, model: CostModel) -> None:
        assert model.estimate_tokens("hello").tokens == 2

    def test_base_confidence_without_spaces(self, model: CostModel) -> None:
        assert model.estimate_tokens("test").confidence == pytest.approx(0.85)

    def test_prose_spacing_raises_confidence(self, model: CostModel) -> None:
        """Space ratio of 4/25 falls in (0.1, 0.2)."""
        result = model.estimate_tokens("the quick brown fox jumps")
        assert result.confidence == pytest.approx(0.90)

    def test_mostly_non_ascii_lowers_confidence(self, model: CostModel) -> None:
        result = model.estimate_tokens("日本語のテキスト")
        assert result.confidence == pytest.approx(0.75)

    def test_confidence_stays_within_bounds(self, model: CostModel) -> None:
        for text in ("a", "x" * 1000, "é " * 50, "word " * 40):
            confidence = model.estimate_tokens(text).confidence
            assert 0.70 <= confidence <= 0.95


class TestEstimateCost:
    """estimate_cost() prices the prompt plus expected output, undiscounted."""

    def test_estimate_rounds_up_to_whole_cents(self, model: CostModel) -> None:
        estimate = model.estimate_cost("test", 500, _KIMI)

        # 501 tokens * 0.0003 = 0.1503 cents -> 1
        assert estimate.input_tokens == 1
        assert estimate.output_tokens == 500
        assert estimate.total_tokens == 501
        assert estimate.estimated_cost_cents == 1

    def test_estimate_uses_model_prices(self, model: CostModel) -> None:
        # 100 input * 0.0025 + 500 output * 0.01 = 5.25 -> 6
        estimate = model.estimate_cost("a" * 400, 500, _GPT4O)
        assert estimate.estimated_cost_cents == 6

    def test_negative_expected_output_rejected(self, model: CostModel) -> None:
        with pytest.raises(InvalidInputError):
            model.estimate_cost("test", -1, _KIMI)

    def test_conversation_uses_average_reply_as_output(self, model: CostModel) -> None:
        messages = [
            {"role": "user", "content": "hello there"},
            {"role": "assistant", "content": "x" * 40},
            {"role": "user", "content": "y" * 8},
        ]

        estimate = model.estimate_conversation_cost(messages, _KIMI)

        # 11 + 1 + 40 + 1 + 8 = 61 chars -> 16 tokens; reply 40 chars -> 10
        assert estimate.input_tokens == 16
        assert estimate.output_tokens == 10

    def test_conversation_without_replies_expects_no_output(
        self, model: CostModel
    ) -> None:
        estimate = model.estimate_conversation_cost([{"role": "user", "content": "hi"}])
        assert estimate.output_tokens == 0


# =============================================================================
# Pricing lookup
# =============================================================================


class TestPriceFor:
    """price_for() matches exact ids, then substrings, then falls back."""

    def test_exact_match_is_case_insensitive(self, model: CostModel) -> None:
        assert model.price_for("OpenAI/GPT-4o") == MODEL_PRICING[_GPT4O]

    def test_versioned_id_matches_most_specific_key(self, model: CostModel) -> None:
        pricing = model.price_for("openai/gpt-4o-mini-2024-07-18")
        assert pricing == MODEL_PRICING["openai/gpt-4o-mini"]

    def test_short_id_matches_known_model(self, model: CostModel) -> None:
        assert model.price_for("gpt-4o") == MODEL_PRICING[_GPT4O]

    def test_unknown_model_uses_default_and_warns(
        self, model: CostModel, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING):
            pricing = model.price_for("mystery/model-9000")

        assert pricing == MODEL_PRICING["default"]
        assert "mystery/model-9000" in caplog.text

    def test_custom_table_without_default_uses_builtin_default(self) -> None:
        custom = CostModel(
            pricing={
                "premium/model": ModelPricing(
                    Decimal("0.05"), Decimal("0.05"), "Premium", "Test"
                )
            }
        )
        assert custom.price_for("unknown") == MODEL_PRICING["default"]

    def test_pricing_table_is_a_copy(self, model: CostModel) -> None:
        table = model.pricing_table()
        table.clear()
        assert _KIMI in model.pricing_table()


# =============================================================================
# Discount tiers
# =============================================================================


class TestDiscountFor:
    """discount_for() uses inclusive lower and exclusive upper bounds."""

    @pytest.mark.parametrize(
        ("quantity", "label", "percent"),
        [
            (0, "Bronze", 0),
            (100_000, "Bronze", 0),
            (100_001, "Silver", 5),
            (500_000, "Silver", 5),
            (500_001, "Gold", 10),
            (2_000_000, "Gold", 10),
            (2_000_001, "Platinum", 15),
            (50_000_000, "Platinum", 15),
        ],
    )
    def test_tier_boundaries(
        self, model: CostModel, quantity: int, label: str, percent: int
    ) -> None:
        tier = model.discount_for(quantity)
        assert tier.label == label
        assert tier.discount_percent == percent

    def test_negative_quantity_treated_as_zero(self, model: CostModel) -> None:
        tier = model.discount_for(-50)
        assert tier.label == "Bronze"
        assert tier.next_tier_gap == 100_001

    def test_next_tier_gap(self, model: CostModel) -> None:
        tier = model.discount_for(100_000)
        assert tier.next_tier_label == "Silver"
        assert tier.next_tier_gap == 1

    def test_top_tier_has_no_next(self, model: CostModel) -> None:
        tier = model.discount_for(3_000_000)
        assert tier.next_tier_gap is None
        assert tier.next_tier_label is None

    def test_voice_table(self, model: CostModel) -> None:
        assert model.discount_for(59, VOICE_DISCOUNT_TIERS).label == "Bronze"
        assert model.discount_for(60, VOICE_DISCOUNT_TIERS).label == "Silver"
        platinum = model.discount_for(1000, VOICE_DISCOUNT_TIERS)
        assert platinum.label == "Platinum"
        assert platinum.next_tier_gap == 4000
        assert platinum.next_tier_label == "Diamond"

    def test_voice_top_band(self, model: CostModel) -> None:
        """Should give 20% from 5000 monthly minutes."""
        tier = model.discount_for(5000, VOICE_DISCOUNT_TIERS)
        assert tier.label == "Diamond"
        assert tier.discount_percent == 20
        assert tier.next_tier_gap is None
        assert model.voice_cost(60, monthly_minutes=4999).cost_cents == 120

    def test_tables_are_contiguous(self) -> None:
        for table in (TOKEN_DISCOUNT_TIERS, VOICE_DISCOUNT_TIERS):
            assert table[0].min_quantity == 0
            for lower, upper in zip(table, table[1:], strict=False):
                assert lower.max_quantity == upper.min_quantity
            assert table[-1].max_quantity is None


# =============================================================================
# Exact cost
# =============================================================================


class TestExactCost:
    """exact_cost() sums raw cost exactly, rounds up once, then discounts."""

    def test_bronze_cost_is_positive_integer(self, model: CostModel) -> None:
        cost = model.exact_cost(1000, 2000, _KIMI, monthly_quantity=0)

        # 3000 * 0.0003 = 0.9 cents -> 1
        assert isinstance(cost.cost_cents, int)
        assert cost.cost_cents == 1
        assert cost.discount_tier == "Bronze"
        assert cost.discount_percent == 0
        assert cost.savings_cents == 0

    def test_tiny_usage_still_rounds_up(self, model: CostModel) -> None:
        assert model.exact_cost(3, 0, _KIMI).cost_cents == 1

    def test_zero_usage_costs_nothing(self, model: CostModel) -> None:
        assert model.exact_cost(0, 0, _KIMI).cost_cents == 0

    @pytest.mark.parametrize(
        ("monthly", "tier", "expected_cost", "expected_savings"),
        [
            (0, "Bronze", 35, 0),
            (200_000, "Silver", 34, 1),  # ceil(33.25)
            (600_000, "Gold", 32, 3),  # ceil(31.5)
            (2_000_000, "Platinum", 30, 5),  # ceil(29.75)
        ],
    )
    def test_discount_applied_to_original(
        self,
        model: CostModel,
        monthly: int,
        tier: str,
        expected_cost: int,
        expected_savings: int,
    ) -> None:
        # 10,000 * 0.0025 + 1,000 * 0.01 = 35 cents
        cost = model.exact_cost(10_000, 1_000, _GPT4O, monthly_quantity=monthly)

        assert cost.original_cost_cents == 35
        assert cost.discount_tier == tier
        assert cost.cost_cents == expected_cost
        assert cost.savings_cents == expected_savings
        assert cost.original_cost_cents - cost.cost_cents == cost.savings_cents

    def test_call_crossing_boundary_gets_new_tier(self, model: CostModel) -> None:
        cost = model.exact_cost(1, 0, _GPT4O, monthly_quantity=100_000)
        assert cost.discount_tier == "Silver"

    @pytest.mark.parametrize("bad", [-1, 1.5, True, "10"])
    def test_invalid_token_counts_rejected(self, model: CostModel, bad: object) -> None:
        with pytest.raises(InvalidInputError):
            model.exact_cost(bad, 0, _KIMI)  # type: ignore[arg-type]


class TestDiscountHelpers:
    def test_apply_discount_rounds_up(self) -> None:
        assert apply_discount(24, 5) == (23, 1)

    def test_ceil_cents(self) -> None:
        assert ceil_cents(Decimal("0.0001")) == 1
        assert ceil_cents(Decimal("2")) == 2


# =============================================================================
# Voice and projections
# =============================================================================


class TestVoiceCost:
    """voice_cost() bills 150 cents per minute, per second, rounded up."""

    def test_one_minute(self, model: CostModel) -> None:
        assert model.voice_cost(60).cost_cents == 150

    def test_partial_cent_rounds_up(self, model: CostModel) -> None:
        assert model.voice_cost(61).cost_cents == 153  # 152.5

    def test_voice_discount_by_monthly_minutes(self, model: CostModel) -> None:
        cost = model.voice_cost(60, monthly_minutes=100)
        assert cost.discount_tier == "Silver"
        assert cost.cost_cents == 143  # ceil(142.5)
        assert cost.savings_cents == 7

    def test_negative_seconds_rejected(self, model: CostModel) -> None:
        with pytest.raises(InvalidInputError):
            model.voice_cost(-5)


class TestPotentialSavings:
    def test_projection_to_higher_tier(self, model: CostModel) -> None:
        projection = model.potential_savings(50_000, 600_000, Decimal("0.0003"))

        # 600,000 * 0.0003 = 180 cents; Gold saves 10%
        assert projection.current_tier == "Bronze"
        assert projection.projected_tier == "Gold"
        assert projection.current_monthly_cost_cents == 180
        assert projection.projected_monthly_cost_cents == 162
        assert projection.monthly_savings_cents == 18
        assert projection.annual_savings_cents == 216

    def test_same_tier_saves_nothing(self, model: CostModel) -> None:
        projection = model.potential_savings(10, 20)
        assert projection.monthly_savings_cents == 0

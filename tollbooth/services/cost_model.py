"""Cost model: token estimation, pricing lookup and volume discounts.

Pure functions over immutable tables: nothing here touches the ledger or
the network. All charges come out as whole cents; raw per-token costs are
summed exactly and rounded up once.
"""

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from tollbooth.core.errors import InvalidInputError
from tollbooth.services.pricing import (
    DEFAULT_MODEL_KEY,
    MODEL_PRICING,
    TOKEN_DISCOUNT_TIERS,
    VOICE_CENTS_PER_SECOND,
    VOICE_DISCOUNT_TIERS,
    DiscountTier,
    ModelPricing,
)

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4
_BASE_CONFIDENCE = 0.85
_MIN_CONFIDENCE = 0.70
_MAX_CONFIDENCE = 0.95
_NON_ASCII_THRESHOLD = 0.3
_NON_ASCII_PENALTY = 0.1
_SPACE_RATIO_LOW = 0.1
_SPACE_RATIO_HIGH = 0.2
_TYPICAL_SPACING_BONUS = 0.05
_HUNDRED = Decimal(100)
_MONTHS_PER_YEAR = 12
_SECONDS_PER_MINUTE = 60


def ceil_cents(amount: Decimal) -> int:
    """Round a Decimal amount of cents up (towards +infinity) to an int."""
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def apply_discount(original_cents: int, discount_percent: int) -> tuple[int, int]:
    """Apply a percentage discount to a whole-cent charge.

    Returns:
        Tuple of (discounted_cents, savings_cents) where
        discounted = ceil(original * (1 - pct/100)) and
        savings = original - discounted.
    """
    discounted = ceil_cents(
        Decimal(original_cents) * (_HUNDRED - discount_percent) / _HUNDRED
    )
    return discounted, original_cents - discounted


def _require_count(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInputError(f"{name} must be a non-negative integer, got {value!r}")
    return value


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class TokenCount:
    """Heuristic token count of a text.

    Attributes:
        tokens: Estimated token count.
        confidence: Estimate confidence in [0.70, 0.95], or 1.0 for empty text.
    """

    tokens: int
    confidence: float


@dataclass(frozen=True)
class TierInfo:
    """Discount tier for a monthly quantity.

    Attributes:
        discount_percent: Discount applied at this tier.
        label: Tier name.
        next_tier_gap: Quantity still needed to reach the next tier;
            None at the top tier.
        next_tier_label: Name of the next tier; None at the top tier.
    """

    discount_percent: int
    label: str
    next_tier_gap: int | None = None
    next_tier_label: str | None = None


@dataclass(frozen=True)
class CostBreakdown:
    """Exact charge with discount applied.

    Attributes:
        original_cost_cents: Undiscounted charge (rounded up once).
        cost_cents: Charge after discount.
        discount_percent: Applied discount.
        discount_tier: Label of the applied tier.
        savings_cents: original_cost_cents - cost_cents.
    """

    original_cost_cents: int
    cost_cents: int
    discount_percent: int
    discount_tier: str
    savings_cents: int


@dataclass(frozen=True)
class TokenEstimate:
    """Pre-flight cost estimate for a prompt.

    Attributes:
        input_tokens: Estimated prompt tokens.
        output_tokens: Expected completion tokens.
        total_tokens: Sum of both.
        estimated_cost_cents: Undiscounted charge, rounded up.
        confidence: Confidence of the input token estimate.
        model: Model the estimate was priced for.
    """

    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost_cents: int
    confidence: float
    model: str


@dataclass(frozen=True)
class SavingsProjection:
    """Tier comparison between current and projected monthly usage.

    Attributes:
        current_tier: Tier label at current usage.
        projected_tier: Tier label at projected usage.
        current_monthly_cost_cents: Projected volume priced at the current tier.
        projected_monthly_cost_cents: Projected volume priced at its own tier.
        monthly_savings_cents: Difference per month.
        annual_savings_cents: Difference per year.
    """

    current_tier: str
    projected_tier: str
    current_monthly_cost_cents: int
    projected_monthly_cost_cents: int
    monthly_savings_cents: int
    annual_savings_cents: int


# =============================================================================
# Cost Model
# =============================================================================


class CostModel:
    """Prices LLM and voice usage against immutable tables.

    Args:
        pricing: Model pricing keyed by lowercase model id. Should contain a
            ``default`` entry; the built-in default is used otherwise.
        token_tiers: Token discount table, ordered by min_quantity.
        voice_tiers: Voice discount table (minutes), ordered by min_quantity.
    """

    def __init__(
        self,
        pricing: Mapping[str, ModelPricing] | None = None,
        token_tiers: Sequence[DiscountTier] = TOKEN_DISCOUNT_TIERS,
        voice_tiers: Sequence[DiscountTier] = VOICE_DISCOUNT_TIERS,
    ) -> None:
        table = dict(MODEL_PRICING if pricing is None else pricing)
        self._pricing = {key.lower(): value for key, value in table.items()}
        self._default = self._pricing.get(
            DEFAULT_MODEL_KEY, MODEL_PRICING[DEFAULT_MODEL_KEY]
        )
        self._token_tiers = tuple(token_tiers)
        self._voice_tiers = tuple(voice_tiers)

    @property
    def token_tiers(self) -> tuple[DiscountTier, ...]:
        return self._token_tiers

    @property
    def voice_tiers(self) -> tuple[DiscountTier, ...]:
        return self._voice_tiers

    # -------------------------------------------------------------------------
    # Estimation
    # -------------------------------------------------------------------------

    @staticmethod
    def estimate_tokens(text: str) -> TokenCount:
        """Estimate tokens at roughly four characters per token.

        Confidence starts at 0.85, drops by 0.1 for mostly non-ASCII text,
        rises by 0.05 for prose-like spacing, and is clamped to [0.70, 0.95].
        """
        if not text:
            return TokenCount(tokens=0, confidence=1.0)

        length = len(text)
        tokens = math.ceil(length / _CHARS_PER_TOKEN)

        confidence = _BASE_CONFIDENCE
        non_ascii = sum(1 for ch in text if ord(ch) > 127)
        if non_ascii / length > _NON_ASCII_THRESHOLD:
            confidence -= _NON_ASCII_PENALTY
        space_ratio = text.count(" ") / length
        if _SPACE_RATIO_LOW < space_ratio < _SPACE_RATIO_HIGH:
            confidence += _TYPICAL_SPACING_BONUS

        confidence = round(min(_MAX_CONFIDENCE, max(_MIN_CONFIDENCE, confidence)), 2)
        return TokenCount(tokens=tokens, confidence=confidence)

    def estimate_cost(
        self,
        text: str,
        expected_output_tokens: int,
        model: str = DEFAULT_MODEL_KEY,
    ) -> TokenEstimate:
        """Estimate the undiscounted charge for a prompt plus expected reply."""
        _require_count("expected_output_tokens", expected_output_tokens)
        count = self.estimate_tokens(text)
        pricing = self.price_for(model)
        raw = (
            Decimal(count.tokens) * pricing.input_cents_per_token
            + Decimal(expected_output_tokens) * pricing.output_cents_per_token
        )
        return TokenEstimate(
            input_tokens=count.tokens,
            output_tokens=expected_output_tokens,
            total_tokens=count.tokens + expected_output_tokens,
            estimated_cost_cents=ceil_cents(raw),
            confidence=count.confidence,
            model=model,
        )

    def estimate_conversation_cost(
        self,
        messages: Sequence[Mapping[str, str]],
        model: str = DEFAULT_MODEL_KEY,
    ) -> TokenEstimate:
        """Estimate a chat turn from its history.

        The whole history is the input; the expected output is the average
        assistant message length so far.
        """
        full_text = "\n".join(m.get("content", "") for m in messages)
        replies = [m.get("content", "") for m in messages if m.get("role") == "assistant"]
        avg_reply_chars = sum(len(r) for r in replies) / max(1, len(replies))
        expected_output = math.ceil(avg_reply_chars / _CHARS_PER_TOKEN)
        return self.estimate_cost(full_text, expected_output, model)

    # -------------------------------------------------------------------------
    # Pricing and discounts
    # -------------------------------------------------------------------------

    def price_for(self, model: str) -> ModelPricing:
        """Look up pricing: exact id, then substring either way, then default.

        A known id inside the requested one (``openai/gpt-4o-mini-2024``)
        matches the longest such id; otherwise the requested id inside a
        known one (``gpt-4o``) matches the shortest.
        """
        normalized = (model or "").strip().lower()
        if normalized in self._pricing:
            return self._pricing[normalized]
        if normalized:
            keys = [k for k in self._pricing if k != DEFAULT_MODEL_KEY]
            contained = [k for k in keys if k in normalized]
            if contained:
                return self._pricing[max(contained, key=len)]
            containing = [k for k in keys if normalized in k]
            if containing:
                return self._pricing[min(containing, key=len)]
        logger.warning("Unknown model id %r, using default pricing", model)
        return self._default

    def pricing_table(self) -> dict[str, ModelPricing]:
        """Copy of the model pricing table."""
        return dict(self._pricing)

    def discount_for(
        self,
        quantity: int,
        tiers: Sequence[DiscountTier] | None = None,
    ) -> TierInfo:
        """Find the tier containing ``quantity`` (negative counts as zero)."""
        table = tuple(tiers) if tiers is not None else self._token_tiers
        quantity = max(0, quantity)
        for index, tier in enumerate(table):
            if not tier.contains(quantity):
                continue
            if index + 1 < len(table):
                upcoming = table[index + 1]
                return TierInfo(
                    discount_percent=tier.discount_percent,
                    label=tier.label,
                    next_tier_gap=upcoming.min_quantity - quantity,
                    next_tier_label=upcoming.label,
                )
            return TierInfo(discount_percent=tier.discount_percent, label=tier.label)
        # Tables start at zero, so this only triggers for a malformed table
        lowest = table[0]
        return TierInfo(discount_percent=lowest.discount_percent, label=lowest.label)

    def exact_cost(
        self,
        input_tokens: int,
        output_tokens: int,
        model: str = DEFAULT_MODEL_KEY,
        monthly_quantity: int = 0,
    ) -> CostBreakdown:
        """Post-flight charge for actual token usage.

        The tier is chosen on ``monthly_quantity + input + output``, so the
        call that crosses a boundary already gets the higher discount.

        Raises:
            InvalidInputError: If a token count is negative or not an int.
        """
        _require_count("input_tokens", input_tokens)
        _require_count("output_tokens", output_tokens)
        pricing = self.price_for(model)
        raw = (
            Decimal(input_tokens) * pricing.input_cents_per_token
            + Decimal(output_tokens) * pricing.output_cents_per_token
        )
        tier = self.discount_for(
            max(0, monthly_quantity) + input_tokens + output_tokens
        )
        return self._breakdown(ceil_cents(raw), tier)

    def voice_cost(self, seconds: int, monthly_minutes: int = 0) -> CostBreakdown:
        """Charge for a voice call billed per second.

        The voice tier is chosen on ``monthly_minutes`` plus the call's
        whole minutes.
        """
        _require_count("seconds", seconds)
        raw = Decimal(seconds) * VOICE_CENTS_PER_SECOND
        tier = self.discount_for(
            max(0, monthly_minutes) + seconds // _SECONDS_PER_MINUTE,
            self._voice_tiers,
        )
        return self._breakdown(ceil_cents(raw), tier)

    def potential_savings(
        self,
        current_monthly_tokens: int,
        projected_monthly_tokens: int,
        avg_cents_per_token: Decimal = Decimal("0.0003"),
    ) -> SavingsProjection:
        """Compare the projected volume priced at the current and projected tiers."""
        current = self.discount_for(current_monthly_tokens)
        projected = self.discount_for(projected_monthly_tokens)
        base = Decimal(max(0, projected_monthly_tokens)) * Decimal(avg_cents_per_token)
        current_cost = base * (_HUNDRED - current.discount_percent) / _HUNDRED
        projected_cost = base * (_HUNDRED - projected.discount_percent) / _HUNDRED
        monthly = current_cost - projected_cost
        return SavingsProjection(
            current_tier=current.label,
            projected_tier=projected.label,
            current_monthly_cost_cents=ceil_cents(current_cost),
            projected_monthly_cost_cents=ceil_cents(projected_cost),
            monthly_savings_cents=ceil_cents(monthly),
            annual_savings_cents=ceil_cents(monthly * _MONTHS_PER_YEAR),
        )

    @staticmethod
    def _breakdown(original_cents: int, tier: TierInfo) -> CostBreakdown:
        if tier.discount_percent <= 0:
            return CostBreakdown(
                original_cost_cents=original_cents,
                cost_cents=original_cents,
                discount_percent=0,
                discount_tier=tier.label,
                savings_cents=0,
            )
        discounted, savings = apply_discount(original_cents, tier.discount_percent)
        return CostBreakdown(
            original_cost_cents=original_cents,
            cost_cents=discounted,
            discount_percent=tier.discount_percent,
            discount_tier=tier.label,
            savings_cents=savings,
        )

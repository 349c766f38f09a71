"""Pre-flight admission control for managed requests.

Estimates the cost of a request before any provider call and admits it
only if the tenant's balance covers the estimate plus a safety margin.
This is a read-only soft gate: the hard guarantee is the atomic debit at
settlement, which can still reject if concurrent requests drained the
balance in between.
"""

from dataclasses import dataclass
from decimal import Decimal

import structlog

from tollbooth.core.config import settings
from tollbooth.core.errors import format_money
from tollbooth.services.cost_model import CostModel, ceil_cents

logger = structlog.get_logger()


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of a pre-flight check.

    Attributes:
        allowed: Whether the request may proceed.
        reason: Human-readable denial reason; None when allowed.
        balance_cents: Balance the decision was made against.
        estimated_cost_cents: Estimated charge for the request.
        safety_margin_cents: Reserve added on top of the estimate.
        required_balance_cents: estimated + margin.
        using_byok: True when the request bypasses metering.
    """

    allowed: bool
    reason: str | None
    balance_cents: int
    estimated_cost_cents: int
    safety_margin_cents: int
    required_balance_cents: int
    using_byok: bool = False

    @property
    def shortfall_cents(self) -> int:
        return max(0, self.required_balance_cents - self.balance_cents)


class AdmissionController:
    """Decides whether a managed request may run against a balance.

    Args:
        cost_model: Prices the estimated tokens.
        safety_margin_percent: Reserve on top of the estimate, in percent.
        currency_symbol: Symbol used in denial messages.
        default_expected_output_tokens: Used when the caller gives none.
    """

    def __init__(
        self,
        cost_model: CostModel,
        safety_margin_percent: int | None = None,
        currency_symbol: str | None = None,
        default_expected_output_tokens: int | None = None,
    ) -> None:
        self._cost_model = cost_model
        self._margin_percent = (
            settings.safety_margin_percent
            if safety_margin_percent is None
            else safety_margin_percent
        )
        self._currency_symbol = currency_symbol or settings.currency_symbol
        self._default_output_tokens = (
            settings.default_expected_output_tokens
            if default_expected_output_tokens is None
            else default_expected_output_tokens
        )

    def preflight(
        self,
        balance_cents: int,
        text: str,
        model: str,
        expected_output_tokens: int | None = None,
        is_byok: bool = False,
        tenant_id: object | None = None,
    ) -> AdmissionDecision:
        """Check whether ``balance_cents`` covers the request.

        Args:
            balance_cents: Tenant's current balance.
            text: Prompt text to estimate.
            model: Model the request will run on.
            expected_output_tokens: Expected completion length.
            is_byok: BYOK requests are always admitted at zero cost.
            tenant_id: Only used to tag the decision event.

        Returns:
            The admission decision. Never raises for low balances.
        """
        if is_byok:
            decision = AdmissionDecision(
                allowed=True,
                reason=None,
                balance_cents=balance_cents,
                estimated_cost_cents=0,
                safety_margin_cents=0,
                required_balance_cents=0,
                using_byok=True,
            )
            self._log(decision, tenant_id, model)
            return decision

        output_tokens = (
            self._default_output_tokens
            if expected_output_tokens is None
            else expected_output_tokens
        )
        estimate = self._cost_model.estimate_cost(text, output_tokens, model)
        estimated = estimate.estimated_cost_cents
        margin = ceil_cents_percent(estimated, self._margin_percent)
        required = estimated + margin

        if balance_cents >= required:
            decision = AdmissionDecision(
                allowed=True,
                reason=None,
                balance_cents=balance_cents,
                estimated_cost_cents=estimated,
                safety_margin_cents=margin,
                required_balance_cents=required,
            )
        else:
            symbol = self._currency_symbol
            decision = AdmissionDecision(
                allowed=False,
                reason=(
                    f"Insufficient balance. Required: {format_money(required, symbol)}, "
                    f"Available: {format_money(balance_cents, symbol)}, "
                    f"Shortfall: {format_money(required - balance_cents, symbol)}"
                ),
                balance_cents=balance_cents,
                estimated_cost_cents=estimated,
                safety_margin_cents=margin,
                required_balance_cents=required,
            )
        self._log(decision, tenant_id, model)
        return decision

    @staticmethod
    def _log(decision: AdmissionDecision, tenant_id: object | None, model: str) -> None:
        logger.info(
            "admission_decision",
            tenant_id=str(tenant_id) if tenant_id is not None else None,
            model=model,
            allowed=decision.allowed,
            using_byok=decision.using_byok,
            balance_cents=decision.balance_cents,
            estimated_cost_cents=decision.estimated_cost_cents,
            required_balance_cents=decision.required_balance_cents,
        )


def ceil_cents_percent(amount_cents: int, percent: int) -> int:
    """ceil(amount * percent / 100) in whole cents."""
    return ceil_cents(Decimal(amount_cents) * percent / 100)

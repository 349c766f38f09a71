"""Post-flight settlement of metered usage.

Prices the actual usage reported by the provider with volume discounts,
debits the ledger once, and schedules an automatic top-up when the new
balance falls to the tenant's threshold.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog

from tollbooth.models.ledger import EntryKind, UsageType
from tollbooth.schemas.ledger import AccountSnapshot, EntryMeta, LedgerEntryData
from tollbooth.services.cost_model import CostBreakdown, CostModel
from tollbooth.services.ledger_store import (
    LedgerStore,
    coerce_tenant_id,
    validate_reference,
)

logger = structlog.get_logger()

_SECONDS_PER_MINUTE = 60


class AutoTopUpGateway(ABC):
    """Charges a tenant's stored payment method for an automatic top-up."""

    @abstractmethod
    async def charge(self, account: AccountSnapshot, amount_cents: int) -> str:
        """Charge ``amount_cents`` to the account's payment method.

        Returns:
            External payment reference recorded on the credit entry.
        """


@dataclass(frozen=True)
class Settlement:
    """Result of settling one usage event.

    Attributes:
        tenant_id: Tenant that was charged.
        usage_type: LLM or voice.
        quantity: Tokens (LLM) or seconds (voice).
        model: Model name for LLM usage.
        breakdown: Exact charge with discount.
        entry: The debit entry; None when the charge was zero.
        balance_after_cents: Balance after settlement.
        auto_top_up_scheduled: Whether a background refill was started.
    """

    tenant_id: uuid.UUID
    usage_type: UsageType
    quantity: int
    model: str | None
    breakdown: CostBreakdown
    entry: LedgerEntryData | None
    balance_after_cents: int
    auto_top_up_scheduled: bool = False

    @property
    def charged_cents(self) -> int:
        return self.breakdown.cost_cents


def _discount_suffix(breakdown: CostBreakdown) -> str:
    if breakdown.discount_percent <= 0:
        return ""
    return (
        f" - {breakdown.discount_tier} tier: "
        f"{breakdown.discount_percent}% discount applied"
    )


class SettlementEngine:
    """Debits exact usage costs from the ledger.

    Args:
        ledger: Ledger store to debit.
        cost_model: Prices the usage.
        auto_top_up_gateway: Payment gateway for automatic refills. When
            None, low balances are logged and no refill is attempted.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        cost_model: CostModel,
        auto_top_up_gateway: AutoTopUpGateway | None = None,
    ) -> None:
        self._ledger = ledger
        self._cost_model = cost_model
        self._gateway = auto_top_up_gateway
        self._background: set[asyncio.Task[None]] = set()
        self._top_ups_in_flight: set[uuid.UUID] = set()

    def quote(
        self,
        input_tokens: int,
        output_tokens: int,
        model: str,
        monthly_quantity_before: int = 0,
    ) -> CostBreakdown:
        """Price LLM usage without touching the ledger."""
        return self._cost_model.exact_cost(
            input_tokens, output_tokens, model, monthly_quantity_before
        )

    async def settle(
        self,
        tenant_id: uuid.UUID | str,
        input_tokens: int,
        output_tokens: int,
        model: str,
        monthly_quantity_before: int = 0,
        flow_id: str | None = None,
    ) -> Settlement:
        """Charge a completed LLM call.

        Args:
            tenant_id: Tenant to charge.
            input_tokens: Prompt tokens reported by the provider.
            output_tokens: Completion tokens reported by the provider.
            model: Model that served the call (prices are looked up on it).
            monthly_quantity_before: Tokens already used this month.
            flow_id: Optional workflow identifier for the entry.

        Returns:
            The settlement.

        Raises:
            InsufficientFundsError: The balance no longer covers the charge.
                Nothing was debited.
        """
        tid = coerce_tenant_id(tenant_id)
        flow_id = validate_reference("flow_id", flow_id)
        breakdown = self.quote(
            input_tokens, output_tokens, model, monthly_quantity_before
        )
        total_tokens = input_tokens + output_tokens
        meta = EntryMeta(
            usage_type=UsageType.LLM,
            quantity=total_tokens,
            model_name=model[:100],
            flow_id=flow_id,
            description=(
                f"LLM usage: {total_tokens} tokens ({model}){_discount_suffix(breakdown)}"
            )[:255],
        )
        return await self._charge(tid, UsageType.LLM, total_tokens, model, breakdown, meta)

    async def settle_voice(
        self,
        tenant_id: uuid.UUID | str,
        seconds: int,
        monthly_seconds_before: int = 0,
        call_id: str | None = None,
        flow_id: str | None = None,
    ) -> Settlement:
        """Charge a completed voice call billed per second.

        Args:
            tenant_id: Tenant to charge.
            seconds: Call duration reported by the voice provider.
            monthly_seconds_before: Voice seconds already used this month,
                as returned by ``LedgerStore.monthly_usage(..., UsageType.VOICE)``.
            call_id: External call identifier for the entry.
            flow_id: Optional workflow identifier for the entry.

        Raises:
            InvalidInputError: An identifier does not fit the ledger entry.
            InsufficientFundsError: The balance no longer covers the charge.
        """
        tid = coerce_tenant_id(tenant_id)
        call_id = validate_reference("call_id", call_id)
        flow_id = validate_reference("flow_id", flow_id)
        breakdown = self._cost_model.voice_cost(
            seconds, max(0, monthly_seconds_before) // _SECONDS_PER_MINUTE
        )
        meta = EntryMeta(
            usage_type=UsageType.VOICE,
            quantity=seconds,
            call_id=call_id,
            flow_id=flow_id,
            description=f"Voice usage: {seconds} seconds{_discount_suffix(breakdown)}",
        )
        return await self._charge(tid, UsageType.VOICE, seconds, None, breakdown, meta)

    async def _charge(
        self,
        tenant_id: uuid.UUID,
        usage_type: UsageType,
        quantity: int,
        model: str | None,
        breakdown: CostBreakdown,
        meta: EntryMeta,
    ) -> Settlement:
        if breakdown.cost_cents == 0:
            balance = await self._ledger.get_balance(tenant_id)
            return Settlement(
                tenant_id=tenant_id,
                usage_type=usage_type,
                quantity=quantity,
                model=model,
                breakdown=breakdown,
                entry=None,
                balance_after_cents=balance,
            )

        entry = await self._ledger.debit(
            tenant_id, breakdown.cost_cents, EntryKind.USAGE, meta
        )
        logger.info(
            "settlement_completed",
            tenant_id=str(tenant_id),
            usage_type=usage_type.value,
            quantity=quantity,
            model=model,
            original_cost_cents=breakdown.original_cost_cents,
            cost_cents=breakdown.cost_cents,
            discount_tier=breakdown.discount_tier,
            discount_percent=breakdown.discount_percent,
            savings_cents=breakdown.savings_cents,
            balance_after_cents=entry.balance_after_cents,
        )
        try:
            scheduled = await self._maybe_schedule_top_up(tenant_id)
        except Exception as e:
            # The debit is already committed; only the refill is lost
            logger.error(
                "auto_top_up_failed",
                tenant_id=str(tenant_id),
                stage="schedule",
                error=str(e),
                error_type=type(e).__name__,
            )
            scheduled = False
        return Settlement(
            tenant_id=tenant_id,
            usage_type=usage_type,
            quantity=quantity,
            model=model,
            breakdown=breakdown,
            entry=entry,
            balance_after_cents=entry.balance_after_cents,
            auto_top_up_scheduled=scheduled,
        )

    # -------------------------------------------------------------------------
    # Auto top-up
    # -------------------------------------------------------------------------

    async def _maybe_schedule_top_up(self, tenant_id: uuid.UUID) -> bool:
        account = await self._ledger.get_account(tenant_id)
        if not account.needs_auto_top_up or tenant_id in self._top_ups_in_flight:
            return False
        self._top_ups_in_flight.add(tenant_id)
        task = asyncio.create_task(self._auto_top_up(account))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.info(
            "auto_top_up_scheduled",
            tenant_id=str(tenant_id),
            balance_cents=account.balance_cents,
            threshold_cents=account.auto_top_up_threshold_cents,
            amount_cents=account.auto_top_up_amount_cents,
        )
        return True

    async def _auto_top_up(self, account: AccountSnapshot) -> None:
        tenant_id = account.tenant_id
        try:
            if self._gateway is None or not account.payment_method_ref:
                logger.warning(
                    "auto_top_up_skipped",
                    tenant_id=str(tenant_id),
                    reason=(
                        "no payment gateway configured"
                        if self._gateway is None
                        else "no payment method on file"
                    ),
                )
                return
            amount = account.auto_top_up_amount_cents
            payment_ref = await self._gateway.charge(account, amount)
            entry = await self._ledger.credit(
                tenant_id,
                amount,
                EntryKind.AUTO_TOP_UP,
                EntryMeta(payment_ref=payment_ref, description="Automatic top-up"),
            )
            logger.info(
                "auto_top_up_completed",
                tenant_id=str(tenant_id),
                amount_cents=amount,
                payment_ref=payment_ref,
                balance_after_cents=entry.balance_after_cents,
            )
        except Exception as e:
            # Background refill: the settlement already succeeded, so a
            # failed charge is only reported.
            logger.error(
                "auto_top_up_failed",
                tenant_id=str(tenant_id),
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            self._top_ups_in_flight.discard(tenant_id)

    async def drain(self) -> None:
        """Wait for all scheduled background top-ups to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

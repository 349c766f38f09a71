"""Tests for post-flight settlement.

Settlement prices actual usage with the volume discount, debits the ledger
exactly once with a descriptive entry, and schedules a background auto
top-up when the balance falls to the tenant's threshold.
"""

import asyncio
import uuid

import pytest
from structlog.testing import capture_logs

from tollbooth.core.errors import (
    InsufficientFundsError,
    InvalidInputError,
    LedgerUnavailableError,
)
from tollbooth.models.ledger import EntryKind, UsageType
from tollbooth.schemas.ledger import AccountSnapshot, EntryMeta
from tollbooth.services.cost_model import CostModel
from tollbooth.services.ledger_store import LedgerPolicy
from tollbooth.services.memory_ledger_store import InMemoryLedgerStore
from tollbooth.services.settlement import AutoTopUpGateway, SettlementEngine

_GPT4O = "openai/gpt-4o"
_KIMI = "deepseek/kimi-k2-thinking"


class _RecordingGateway(AutoTopUpGateway):
    """Gateway that records charges and can be held or made to fail."""

    def __init__(
        self,
        release: asyncio.Event | None = None,
        error: Exception | None = None,
    ) -> None:
        self.charges: list[tuple[uuid.UUID, int]] = []
        self._release = release
        self._error = error

    async def charge(self, account: AccountSnapshot, amount_cents: int) -> str:
        if self._release is not None:
            await self._release.wait()
        if self._error is not None:
            raise self._error
        self.charges.append((account.tenant_id, amount_cents))
        return f"pay_{len(self.charges)}"


class _FailingAccountReadLedger(InMemoryLedgerStore):
    """Ledger whose account reads fail while balance mutations still commit."""

    async def get_account(self, tenant_id: uuid.UUID | str) -> AccountSnapshot:
        raise LedgerUnavailableError("Ledger storage failed: connection reset")


@pytest.fixture
def engine(ledger: InMemoryLedgerStore, cost_model: CostModel) -> SettlementEngine:
    return SettlementEngine(ledger, cost_model)


async def _enable_auto_top_up(ledger: InMemoryLedgerStore, tenant_id: uuid.UUID) -> None:
    await ledger.update_auto_top_up(
        tenant_id,
        enabled=True,
        threshold_cents=500,
        amount_cents=2500,
        payment_method_ref="pm_test",
    )


# =============================================================================
# LLM settlement
# =============================================================================


class TestSettleLlm:
    """settle() debits the discounted exact cost once."""

    async def test_debits_exact_cost(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        await ledger.credit(tenant_id, 10_000)

        settlement = await engine.settle(tenant_id, 10_000, 1_000, _GPT4O)

        assert settlement.charged_cents == 35
        assert settlement.balance_after_cents == 9_965
        assert settlement.usage_type is UsageType.LLM
        assert settlement.quantity == 11_000
        assert settlement.auto_top_up_scheduled is False
        assert await ledger.get_balance(tenant_id) == 9_965

    async def test_entry_carries_usage_metadata(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        await ledger.credit(tenant_id, 10_000)

        settlement = await engine.settle(
            tenant_id,
            10_000,
            1_000,
            _GPT4O,
            monthly_quantity_before=200_000,
            flow_id="flow-1",
        )

        entry = settlement.entry
        assert entry is not None
        assert entry.kind is EntryKind.USAGE
        assert entry.amount_cents == -34
        assert entry.meta.usage_type is UsageType.LLM
        assert entry.meta.quantity == 11_000
        assert entry.meta.model_name == _GPT4O
        assert entry.meta.flow_id == "flow-1"
        assert entry.meta.description == (
            "LLM usage: 11000 tokens (openai/gpt-4o) - Silver tier: 5% discount applied"
        )

    async def test_bronze_description_has_no_discount_suffix(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        await ledger.credit(tenant_id, 10_000)

        settlement = await engine.settle(tenant_id, 1000, 2000, _KIMI)

        assert settlement.entry is not None
        assert settlement.entry.meta.description == (
            "LLM usage: 3000 tokens (deepseek/kimi-k2-thinking)"
        )

    async def test_zero_cost_skips_debit(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        settlement = await engine.settle(tenant_id, 0, 0, _KIMI)

        assert settlement.entry is None
        assert settlement.charged_cents == 0
        _, total = await ledger.list_entries(tenant_id)
        assert total == 0

    async def test_insufficient_funds_writes_nothing(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        with pytest.raises(InsufficientFundsError) as exc_info:
            await engine.settle(tenant_id, 10_000, 1_000, _GPT4O)

        assert exc_info.value.required == 35
        assert exc_info.value.available == 0
        assert await ledger.get_balance(tenant_id) == 0

    async def test_settlement_is_logged(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        await ledger.credit(tenant_id, 10_000)

        with capture_logs() as logs:
            await engine.settle(tenant_id, 10_000, 1_000, _GPT4O, 600_000)

        events = [e for e in logs if e["event"] == "settlement_completed"]
        assert len(events) == 1
        assert events[0]["cost_cents"] == 32
        assert events[0]["original_cost_cents"] == 35
        assert events[0]["savings_cents"] == 3
        assert events[0]["discount_tier"] == "Gold"

    def test_quote_does_not_touch_ledger(self, engine: SettlementEngine) -> None:
        breakdown = engine.quote(10_000, 1_000, _GPT4O, 2_000_000)
        assert breakdown.cost_cents == 30


class TestSettleVoice:
    async def test_voice_billed_per_second_with_tier(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        await ledger.credit(tenant_id, 10_000)

        settlement = await engine.settle_voice(
            tenant_id, 60, monthly_seconds_before=6_000, call_id="call-1"
        )

        assert settlement.charged_cents == 143
        assert settlement.usage_type is UsageType.VOICE
        assert settlement.model is None
        entry = settlement.entry
        assert entry is not None
        assert entry.meta.usage_type is UsageType.VOICE
        assert entry.meta.quantity == 60
        assert entry.meta.call_id == "call-1"
        assert entry.meta.description == (
            "Voice usage: 60 seconds - Silver tier: 5% discount applied"
        )
        assert await ledger.monthly_usage(tenant_id, UsageType.VOICE) == 60

    async def test_monthly_voice_usage_feeds_tier_in_seconds(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        """Should read the ledger's voice seconds as 99 minutes, not 5940."""
        await ledger.credit(tenant_id, 10_000)
        await ledger.debit(
            tenant_id,
            100,
            meta=EntryMeta(usage_type=UsageType.VOICE, quantity=5_940),
        )

        used = await ledger.monthly_usage(tenant_id, UsageType.VOICE)
        settlement = await engine.settle_voice(
            tenant_id, 60, monthly_seconds_before=used
        )

        # 99 + 1 minutes -> Silver
        assert settlement.breakdown.discount_tier == "Silver"
        assert settlement.charged_cents == 143

    async def test_oversized_call_id_rejected_before_debit(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        """Should raise InvalidInputError and leave the balance alone."""
        await ledger.credit(tenant_id, 10_000)

        with pytest.raises(InvalidInputError, match="call_id"):
            await engine.settle_voice(tenant_id, 60, call_id="c" * 256)

        assert await ledger.get_balance(tenant_id) == 10_000

    async def test_oversized_flow_id_rejected(
        self, engine: SettlementEngine, tenant_id: uuid.UUID
    ) -> None:
        """Should validate flow ids on LLM settlement too."""
        with pytest.raises(InvalidInputError, match="flow_id"):
            await engine.settle(tenant_id, 10, 10, _GPT4O, flow_id="f" * 256)


# =============================================================================
# Auto top-up
# =============================================================================


class TestAutoTopUp:
    """A settlement leaving balance <= threshold schedules one refill."""

    async def test_refill_credited_in_background(
        self,
        ledger: InMemoryLedgerStore,
        cost_model: CostModel,
        tenant_id: uuid.UUID,
    ) -> None:
        gateway = _RecordingGateway()
        engine = SettlementEngine(ledger, cost_model, gateway)
        await ledger.credit(tenant_id, 1000)
        await _enable_auto_top_up(ledger, tenant_id)

        # 60,000 output tokens on gpt-4o = 600 cents -> balance 400
        settlement = await engine.settle(tenant_id, 0, 60_000, _GPT4O)
        await engine.drain()

        assert settlement.balance_after_cents == 400
        assert settlement.auto_top_up_scheduled is True
        assert gateway.charges == [(tenant_id, 2500)]
        assert await ledger.get_balance(tenant_id) == 2900
        entries, _ = await ledger.list_entries(tenant_id, limit=1)
        assert entries[0].kind is EntryKind.AUTO_TOP_UP
        assert entries[0].meta.payment_ref == "pay_1"
        assert await ledger.verify_chain(tenant_id) is True

    async def test_disabled_auto_top_up_not_scheduled(
        self,
        ledger: InMemoryLedgerStore,
        cost_model: CostModel,
        tenant_id: uuid.UUID,
    ) -> None:
        gateway = _RecordingGateway()
        engine = SettlementEngine(ledger, cost_model, gateway)
        await ledger.credit(tenant_id, 1000)

        settlement = await engine.settle(tenant_id, 0, 60_000, _GPT4O)
        await engine.drain()

        assert settlement.auto_top_up_scheduled is False
        assert gateway.charges == []

    async def test_only_one_refill_in_flight_per_tenant(
        self,
        ledger: InMemoryLedgerStore,
        cost_model: CostModel,
        tenant_id: uuid.UUID,
    ) -> None:
        release = asyncio.Event()
        gateway = _RecordingGateway(release=release)
        engine = SettlementEngine(ledger, cost_model, gateway)
        await ledger.credit(tenant_id, 1000)
        await _enable_auto_top_up(ledger, tenant_id)

        first = await engine.settle(tenant_id, 0, 60_000, _GPT4O)
        second = await engine.settle(tenant_id, 0, 10_000, _GPT4O)
        release.set()
        await engine.drain()

        assert first.auto_top_up_scheduled is True
        assert second.auto_top_up_scheduled is False
        assert len(gateway.charges) == 1
        assert await ledger.get_balance(tenant_id) == 300 + 2500

    async def test_missing_gateway_logs_skip(
        self,
        engine: SettlementEngine,
        ledger: InMemoryLedgerStore,
        tenant_id: uuid.UUID,
    ) -> None:
        await ledger.credit(tenant_id, 1000)
        await _enable_auto_top_up(ledger, tenant_id)

        with capture_logs() as logs:
            await engine.settle(tenant_id, 0, 60_000, _GPT4O)
            await engine.drain()

        skipped = [e for e in logs if e["event"] == "auto_top_up_skipped"]
        assert len(skipped) == 1
        assert skipped[0]["reason"] == "no payment gateway configured"
        assert await ledger.get_balance(tenant_id) == 400

    async def test_gateway_failure_does_not_undo_settlement(
        self,
        ledger: InMemoryLedgerStore,
        cost_model: CostModel,
        tenant_id: uuid.UUID,
    ) -> None:
        gateway = _RecordingGateway(error=RuntimeError("card declined"))
        engine = SettlementEngine(ledger, cost_model, gateway)
        await ledger.credit(tenant_id, 1000)
        await _enable_auto_top_up(ledger, tenant_id)

        with capture_logs() as logs:
            settlement = await engine.settle(tenant_id, 0, 60_000, _GPT4O)
            await engine.drain()

        failed = [e for e in logs if e["event"] == "auto_top_up_failed"]
        assert len(failed) == 1
        assert failed[0]["error"] == "card declined"
        assert settlement.balance_after_cents == 400
        assert await ledger.get_balance(tenant_id) == 400

        # The in-flight marker is cleared, so the next low balance retries
        again = await engine.settle(tenant_id, 0, 1_000, _GPT4O)
        await engine.drain()
        assert again.auto_top_up_scheduled is True

    async def test_failed_account_read_keeps_committed_debit(
        self,
        policy: LedgerPolicy,
        cost_model: CostModel,
        tenant_id: uuid.UUID,
    ) -> None:
        """Should return the settlement when the refill check cannot read the account."""
        ledger = _FailingAccountReadLedger(policy)
        engine = SettlementEngine(ledger, cost_model, _RecordingGateway())
        await ledger.credit(tenant_id, 10_000)

        with capture_logs() as logs:
            settlement = await engine.settle(tenant_id, 10_000, 1_000, _GPT4O)

        assert settlement.charged_cents == 35
        assert settlement.entry is not None
        assert settlement.balance_after_cents == 9_965
        assert settlement.auto_top_up_scheduled is False
        assert await ledger.get_balance(tenant_id) == 9_965

        failed = [e for e in logs if e["event"] == "auto_top_up_failed"]
        assert len(failed) == 1
        assert failed[0]["stage"] == "schedule"
        assert failed[0]["error_type"] == "LedgerUnavailableError"

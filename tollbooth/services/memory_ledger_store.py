"""In-process ledger backend.

Holds accounts and entries in memory with one asyncio.Lock per account.
Behaves like the PostgreSQL backend for a single event loop; used by the
test suite and for local development without a database.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tollbooth.core.errors import InsufficientFundsError
from tollbooth.models.ledger import EntryKind, UsageType
from tollbooth.schemas.ledger import (
    AccountSnapshot,
    EntryMeta,
    LedgerEntryData,
    UsageSummary,
)
from tollbooth.services.ledger_store import (
    LedgerPolicy,
    LedgerStore,
    describe_signup_bonus,
)


@dataclass
class _Account:
    tenant_id: uuid.UUID
    auto_top_up_threshold_cents: int
    auto_top_up_amount_cents: int
    balance_cents: int = 0
    auto_top_up_enabled: bool = False
    payment_method_ref: str | None = None
    entries: list[LedgerEntryData] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            tenant_id=self.tenant_id,
            balance_cents=self.balance_cents,
            auto_top_up_enabled=self.auto_top_up_enabled,
            auto_top_up_threshold_cents=self.auto_top_up_threshold_cents,
            auto_top_up_amount_cents=self.auto_top_up_amount_cents,
            payment_method_ref=self.payment_method_ref,
        )


class InMemoryLedgerStore(LedgerStore):
    """Ledger store kept in process memory.

    Args:
        policy: Business rules; defaults to the application settings.
    """

    def __init__(self, policy: LedgerPolicy | None = None) -> None:
        super().__init__(policy)
        self._accounts: dict[uuid.UUID, _Account] = {}
        self._registry_lock = asyncio.Lock()

    async def _account(self, tenant_id: uuid.UUID) -> _Account:
        account = self._accounts.get(tenant_id)
        if account is not None:
            return account
        async with self._registry_lock:
            account = self._accounts.get(tenant_id)
            if account is None:
                account = _Account(
                    tenant_id=tenant_id,
                    auto_top_up_threshold_cents=self._policy.default_auto_top_up_threshold_cents,
                    auto_top_up_amount_cents=self._policy.default_auto_top_up_amount_cents,
                )
                bonus = self._policy.signup_bonus_cents
                if bonus > 0:
                    self._append(
                        account,
                        bonus,
                        EntryKind.SIGNUP_BONUS,
                        EntryMeta(description=describe_signup_bonus(bonus)),
                    )
                self._accounts[tenant_id] = account
            return account

    @staticmethod
    def _append(
        account: _Account,
        signed_amount_cents: int,
        kind: EntryKind,
        meta: EntryMeta,
    ) -> LedgerEntryData:
        account.balance_cents += signed_amount_cents
        entry = LedgerEntryData(
            id=uuid.uuid4(),
            tenant_id=account.tenant_id,
            sequence=len(account.entries) + 1,
            kind=kind,
            amount_cents=signed_amount_cents,
            balance_after_cents=account.balance_cents,
            meta=meta,
            created_at=datetime.now(UTC),
        )
        account.entries.append(entry)
        return entry

    async def _load_account(self, tenant_id: uuid.UUID) -> AccountSnapshot:
        account = await self._account(tenant_id)
        async with account.lock:
            return account.snapshot()

    async def _post(
        self,
        tenant_id: uuid.UUID,
        signed_amount_cents: int,
        kind: EntryKind,
        meta: EntryMeta,
    ) -> LedgerEntryData:
        account = await self._account(tenant_id)
        async with account.lock:
            if account.balance_cents + signed_amount_cents < 0:
                raise InsufficientFundsError(
                    required=-signed_amount_cents,
                    available=account.balance_cents,
                )
            return self._append(account, signed_amount_cents, kind, meta)

    async def _update_settings(
        self, tenant_id: uuid.UUID, changes: dict[str, Any]
    ) -> AccountSnapshot:
        account = await self._account(tenant_id)
        async with account.lock:
            for name, value in changes.items():
                setattr(account, name, value)
            return account.snapshot()

    async def _list_entries(
        self,
        tenant_id: uuid.UUID,
        *,
        offset: int,
        limit: int,
        usage_type: UsageType | None,
        since: datetime | None,
        until: datetime | None,
    ) -> tuple[list[LedgerEntryData], int]:
        account = self._accounts.get(tenant_id)
        if account is None:
            return [], 0
        async with account.lock:
            matching = [
                e
                for e in reversed(account.entries)
                if (usage_type is None or e.meta.usage_type is usage_type)
                and (since is None or e.created_at >= since)
                and (until is None or e.created_at <= until)
            ]
        return matching[offset : offset + limit], len(matching)

    async def _usage_summary(
        self, tenant_id: uuid.UUID, since: datetime, until: datetime
    ) -> UsageSummary:
        account = self._accounts.get(tenant_id)
        totals = {UsageType.LLM: [0, 0], UsageType.VOICE: [0, 0]}
        if account is not None:
            async with account.lock:
                for entry in account.entries:
                    if (
                        entry.kind is not EntryKind.USAGE
                        or entry.meta.usage_type is None
                        or not since <= entry.created_at <= until
                    ):
                        continue
                    bucket = totals[entry.meta.usage_type]
                    bucket[0] += entry.meta.quantity or 0
                    bucket[1] += -entry.amount_cents
        return UsageSummary(
            period_start=since,
            period_end=until,
            total_tokens=totals[UsageType.LLM][0],
            total_voice_seconds=totals[UsageType.VOICE][0],
            llm_cost_cents=totals[UsageType.LLM][1],
            voice_cost_cents=totals[UsageType.VOICE][1],
        )

    async def _chain(
        self, tenant_id: uuid.UUID
    ) -> tuple[int, list[LedgerEntryData]]:
        account = self._accounts.get(tenant_id)
        if account is None:
            return 0, []
        async with account.lock:
            return account.balance_cents, list(account.entries)

"""PostgreSQL ledger backend.

Each operation runs in its own transaction. Mutations take a row lock on
the tenant's account (SELECT ... FOR UPDATE), so concurrent debits on one
tenant serialize while different tenants proceed in parallel.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tollbooth.core.errors import InsufficientFundsError, LedgerUnavailableError
from tollbooth.models.ledger import BalanceAccount, EntryKind, LedgerEntry, UsageType
from tollbooth.repositories.ledger_repository import LedgerRepository
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

logger = logging.getLogger(__name__)


def _snapshot(account: BalanceAccount) -> AccountSnapshot:
    return AccountSnapshot(
        tenant_id=account.tenant_id,
        balance_cents=account.balance_cents,
        auto_top_up_enabled=account.auto_top_up_enabled,
        auto_top_up_threshold_cents=account.auto_top_up_threshold_cents,
        auto_top_up_amount_cents=account.auto_top_up_amount_cents,
        payment_method_ref=account.payment_method_ref,
    )


def _entry_data(entry: LedgerEntry, tenant_id: uuid.UUID) -> LedgerEntryData:
    return LedgerEntryData(
        id=entry.id,
        tenant_id=tenant_id,
        sequence=entry.sequence,
        kind=EntryKind(entry.kind),
        amount_cents=entry.amount_cents,
        balance_after_cents=entry.balance_after_cents,
        meta=EntryMeta(
            usage_type=UsageType(entry.usage_type) if entry.usage_type else None,
            quantity=entry.quantity,
            call_id=entry.call_id,
            model_name=entry.model_name,
            flow_id=entry.flow_id,
            payment_ref=entry.payment_ref,
            description=entry.description,
        ),
        created_at=entry.created_at,
    )


class SqlLedgerStore(LedgerStore):
    """Ledger store backed by the ``balance_accounts`` and ``ledger_entries`` tables.

    Args:
        session_factory: Factory producing AsyncSessions bound to PostgreSQL.
        policy: Business rules; defaults to the application settings.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: LedgerPolicy | None = None,
    ) -> None:
        super().__init__(policy)
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one transaction; storage faults become LedgerUnavailableError."""
        try:
            async with self._session_factory() as db, db.begin():
                yield db
        except SQLAlchemyError as exc:
            logger.exception("Ledger transaction failed and was rolled back")
            raise LedgerUnavailableError(f"Ledger storage failed: {exc}") from exc

    async def _locked_account(
        self, db: AsyncSession, tenant_id: uuid.UUID
    ) -> BalanceAccount:
        """Lock the tenant's account, creating it on first access.

        The creating transaction also writes the signup bonus entry, so a
        new account is never visible without it.
        """
        created = await LedgerRepository.insert_account_if_missing(
            db,
            tenant_id=tenant_id,
            auto_top_up_threshold_cents=self._policy.default_auto_top_up_threshold_cents,
            auto_top_up_amount_cents=self._policy.default_auto_top_up_amount_cents,
        )
        account = await LedgerRepository.lock_account(db, tenant_id)
        if account is None:  # pragma: no cover - insert above guarantees a row
            raise LedgerUnavailableError(f"Account for tenant {tenant_id} vanished")
        if created:
            logger.info("Created balance account for tenant %s", tenant_id)
            bonus = self._policy.signup_bonus_cents
            if bonus > 0:
                await LedgerRepository.append_entry(
                    db,
                    account,
                    amount_cents=bonus,
                    kind=EntryKind.SIGNUP_BONUS,
                    meta=EntryMeta(description=describe_signup_bonus(bonus)),
                )
        return account

    async def _load_account(self, tenant_id: uuid.UUID) -> AccountSnapshot:
        async with self._transaction() as db:
            account = await LedgerRepository.get_account(db, tenant_id)
            if account is None:
                account = await self._locked_account(db, tenant_id)
            return _snapshot(account)

    async def _post(
        self,
        tenant_id: uuid.UUID,
        signed_amount_cents: int,
        kind: EntryKind,
        meta: EntryMeta,
    ) -> LedgerEntryData:
        async with self._transaction() as db:
            account = await self._locked_account(db, tenant_id)
            if account.balance_cents + signed_amount_cents < 0:
                raise InsufficientFundsError(
                    required=-signed_amount_cents,
                    available=account.balance_cents,
                )
            entry = await LedgerRepository.append_entry(
                db,
                account,
                amount_cents=signed_amount_cents,
                kind=kind,
                meta=meta,
            )
            logger.debug(
                "Posted %s of %d cents for tenant %s (balance %d)",
                kind.value,
                signed_amount_cents,
                tenant_id,
                entry.balance_after_cents,
            )
            return _entry_data(entry, tenant_id)

    async def _update_settings(
        self, tenant_id: uuid.UUID, changes: dict[str, Any]
    ) -> AccountSnapshot:
        async with self._transaction() as db:
            account = await self._locked_account(db, tenant_id)
            for field, value in changes.items():
                setattr(account, field, value)
            await db.flush()
            return _snapshot(account)

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
        async with self._transaction() as db:
            account = await LedgerRepository.get_account(db, tenant_id)
            if account is None:
                return [], 0
            entries, total = await LedgerRepository.list_entries(
                db,
                account.id,
                offset=offset,
                limit=limit,
                usage_type=usage_type,
                since=since,
                until=until,
            )
            return [_entry_data(e, tenant_id) for e in entries], total

    async def _usage_summary(
        self, tenant_id: uuid.UUID, since: datetime, until: datetime
    ) -> UsageSummary:
        async with self._transaction() as db:
            account = await LedgerRepository.get_account(db, tenant_id)
            if account is None:
                return UsageSummary(period_start=since, period_end=until)
            tokens, seconds, llm_cost, voice_cost = await LedgerRepository.usage_totals(
                db, account.id, since=since, until=until
            )
            return UsageSummary(
                period_start=since,
                period_end=until,
                total_tokens=tokens,
                total_voice_seconds=seconds,
                llm_cost_cents=llm_cost,
                voice_cost_cents=voice_cost,
            )

    async def _chain(
        self, tenant_id: uuid.UUID
    ) -> tuple[int, list[LedgerEntryData]]:
        async with self._transaction() as db:
            account = await LedgerRepository.get_account(db, tenant_id)
            if account is None:
                return 0, []
            entries = await LedgerRepository.all_entries(db, account.id)
            return account.balance_cents, [_entry_data(e, tenant_id) for e in entries]

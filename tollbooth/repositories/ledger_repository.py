"""Repository for balance accounts and ledger entries.

Row-level SQL for the ledger: idempotent account creation, locking reads,
balance-plus-entry appends, and usage aggregates over the entries table.
"""

import uuid
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tollbooth.models.ledger import BalanceAccount, EntryKind, LedgerEntry, UsageType
from tollbooth.schemas.ledger import EntryMeta


class LedgerRepository:
    """Stateless repository for BalanceAccount and LedgerEntry rows.

    All methods are static with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def insert_account_if_missing(
        db: AsyncSession,
        *,
        tenant_id: uuid.UUID,
        auto_top_up_threshold_cents: int,
        auto_top_up_amount_cents: int,
    ) -> bool:
        """Create the tenant's account unless one already exists.

        Uses INSERT ... ON CONFLICT DO NOTHING on tenant_id, so concurrent
        first access creates exactly one row.

        Args:
            db: Async database session.
            tenant_id: Tenant to create the account for.
            auto_top_up_threshold_cents: Default auto top-up threshold.
            auto_top_up_amount_cents: Default auto top-up refill.

        Returns:
            True if this call created the account, False if it existed.
        """
        stmt = (
            pg_insert(BalanceAccount)
            .values(
                tenant_id=tenant_id,
                auto_top_up_threshold_cents=auto_top_up_threshold_cents,
                auto_top_up_amount_cents=auto_top_up_amount_cents,
            )
            .on_conflict_do_nothing(index_elements=[BalanceAccount.tenant_id])
            .returning(BalanceAccount.id)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def get_account(
        db: AsyncSession, tenant_id: uuid.UUID
    ) -> BalanceAccount | None:
        """Read the tenant's account without locking."""
        stmt = select(BalanceAccount).where(BalanceAccount.tenant_id == tenant_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def lock_account(
        db: AsyncSession, tenant_id: uuid.UUID
    ) -> BalanceAccount | None:
        """Read the tenant's account with SELECT ... FOR UPDATE.

        The row lock is held until the surrounding transaction ends, which
        serializes read-modify-write on one account while leaving other
        accounts untouched.
        """
        stmt = (
            select(BalanceAccount)
            .where(BalanceAccount.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def append_entry(
        db: AsyncSession,
        account: BalanceAccount,
        *,
        amount_cents: int,
        kind: EntryKind,
        meta: EntryMeta,
    ) -> LedgerEntry:
        """Apply a signed amount to a locked account and append its entry.

        The caller must hold the row lock (``lock_account``) and must have
        checked that the resulting balance is non-negative.

        Args:
            db: Async database session.
            account: Locked account row.
            amount_cents: Signed amount (+credit, -debit).
            kind: Entry kind.
            meta: Traceability fields.

        Returns:
            The flushed LedgerEntry with database-generated fields.
        """
        new_balance = account.balance_cents + amount_cents
        account.balance_cents = new_balance
        account.last_entry_sequence += 1

        entry = LedgerEntry(
            account_id=account.id,
            sequence=account.last_entry_sequence,
            kind=kind.value,
            amount_cents=amount_cents,
            balance_after_cents=new_balance,
            usage_type=meta.usage_type.value if meta.usage_type else None,
            quantity=meta.quantity,
            call_id=meta.call_id,
            model_name=meta.model_name,
            flow_id=meta.flow_id,
            payment_ref=meta.payment_ref,
            description=meta.description,
        )
        db.add(entry)
        await db.flush()
        await db.refresh(entry)
        return entry

    @staticmethod
    async def list_entries(
        db: AsyncSession,
        account_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 50,
        usage_type: UsageType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[list[LedgerEntry], int]:
        """List an account's entries, newest first, with pagination.

        Args:
            db: Async database session.
            account_id: Account to query.
            offset: Number of records to skip.
            limit: Maximum records to return.
            usage_type: Optional usage sub-type filter.
            since: Optional inclusive lower bound on created_at.
            until: Optional inclusive upper bound on created_at.

        Returns:
            Tuple of (entries list, total count).
        """
        conditions = [LedgerEntry.account_id == account_id]
        if usage_type is not None:
            conditions.append(LedgerEntry.usage_type == usage_type.value)
        if since is not None:
            conditions.append(LedgerEntry.created_at >= since)
        if until is not None:
            conditions.append(LedgerEntry.created_at <= until)

        count_stmt = select(func.count()).select_from(LedgerEntry).where(*conditions)
        total = (await db.execute(count_stmt)).scalar_one()

        data_stmt = (
            select(LedgerEntry)
            .where(*conditions)
            .order_by(LedgerEntry.sequence.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(data_stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def all_entries(
        db: AsyncSession, account_id: uuid.UUID
    ) -> list[LedgerEntry]:
        """Every entry of an account in ledger order (oldest first)."""
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.sequence.asc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def usage_totals(
        db: AsyncSession,
        account_id: uuid.UUID,
        *,
        since: datetime,
        until: datetime,
    ) -> tuple[int, int, int, int]:
        """Aggregate usage entries in a period.

        Returns:
            Tuple of (llm_tokens, voice_seconds, llm_cost_cents,
            voice_cost_cents). Costs are positive.
        """
        is_llm = LedgerEntry.usage_type == UsageType.LLM.value
        is_voice = LedgerEntry.usage_type == UsageType.VOICE.value
        stmt = select(
            func.coalesce(func.sum(case((is_llm, LedgerEntry.quantity), else_=0)), 0),
            func.coalesce(func.sum(case((is_voice, LedgerEntry.quantity), else_=0)), 0),
            func.coalesce(
                func.sum(case((is_llm, -LedgerEntry.amount_cents), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((is_voice, -LedgerEntry.amount_cents), else_=0)), 0
            ),
        ).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.kind == EntryKind.USAGE.value,
            LedgerEntry.created_at >= since,
            LedgerEntry.created_at <= until,
        )
        row = (await db.execute(stmt)).one()
        return int(row[0]), int(row[1]), int(row[2]), int(row[3])

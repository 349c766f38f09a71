"""Balance ledger ORM models.

BalanceAccount holds one tenant's prepaid balance in minor currency units.
LedgerEntry is the append-only record of every balance change: entries are
written in the same transaction as the balance update and are never
updated or deleted.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tollbooth.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")


class EntryKind(Enum):
    """Kind of balance-affecting event recorded in the ledger."""

    TOP_UP = "top_up"
    AUTO_TOP_UP = "auto_top_up"
    USAGE = "usage"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    SIGNUP_BONUS = "signup_bonus"


class UsageType(Enum):
    """Metered usage sub-type for usage entries."""

    LLM = "llm"
    VOICE = "voice"


# Which kinds may move money in each direction.
CREDIT_KINDS = frozenset(
    {
        EntryKind.TOP_UP,
        EntryKind.AUTO_TOP_UP,
        EntryKind.REFUND,
        EntryKind.ADJUSTMENT,
        EntryKind.SIGNUP_BONUS,
    }
)
DEBIT_KINDS = frozenset({EntryKind.USAGE, EntryKind.ADJUSTMENT})


def _in_clause(column: str, enum_cls: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class BalanceAccount(Base, TimestampMixin):
    """Prepaid balance for one tenant.

    Attributes:
        id: UUID primary key.
        tenant_id: Owning tenant (unique; one account per tenant).
        balance_cents: Current balance in minor units. Never negative.
        auto_top_up_enabled: Whether low balances trigger a replenishment.
        auto_top_up_threshold_cents: Balance at or below which to replenish.
        auto_top_up_amount_cents: Amount credited by a replenishment.
        payment_method_ref: External payment-method reference for refills.
        last_entry_sequence: Sequence number of the newest ledger entry.
    """

    __tablename__ = "balance_accounts"
    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_account_balance_nonneg"),
        CheckConstraint(
            "auto_top_up_threshold_cents >= 0",
            name="ck_account_auto_top_up_threshold_nonneg",
        ),
        CheckConstraint(
            "auto_top_up_amount_cents > 0",
            name="ck_account_auto_top_up_amount_positive",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        unique=True,
        nullable=False,
    )
    balance_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )
    auto_top_up_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )
    auto_top_up_threshold_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    auto_top_up_amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    payment_method_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    last_entry_sequence: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )


class LedgerEntry(Base):
    """Append-only record of one balance change.

    Positive amounts are credits (top-ups, refunds, bonuses); negative
    amounts are debits (usage charges).

    Attributes:
        id: UUID primary key.
        account_id: FK to balance_accounts.
        sequence: 1-based position in the account's ledger.
        kind: EntryKind value.
        amount_cents: Signed amount in minor units (never zero).
        balance_after_cents: Account balance after this entry.
        usage_type: UsageType value for usage entries.
        quantity: Metered quantity (tokens or seconds).
        call_id: External call identifier (voice calls).
        model_name: Model that produced the usage.
        flow_id: Workflow/flow identifier.
        payment_ref: Payment reference for top-ups.
        description: Human-readable description.
        created_at: Entry timestamp.
    """

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_ledger_account_sequence"),
        CheckConstraint(_in_clause("kind", EntryKind), name="ck_ledger_kind_valid"),
        CheckConstraint(
            "usage_type IS NULL OR " + _in_clause("usage_type", UsageType),
            name="ck_ledger_usage_type_valid",
        ),
        CheckConstraint("amount_cents <> 0", name="ck_ledger_amount_nonzero"),
        CheckConstraint(
            "balance_after_cents >= 0", name="ck_ledger_balance_after_nonneg"
        ),
        CheckConstraint(
            "quantity IS NULL OR quantity >= 0", name="ck_ledger_quantity_nonneg"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("balance_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    balance_after_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    usage_type: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    quantity: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )
    call_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    model_name: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    flow_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    payment_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

"""Ledger value objects passed between stores, services and collaborators.

All monetary values are integers in minor currency units.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from tollbooth.models.ledger import EntryKind, UsageType


class EntryMeta(BaseModel):
    """Traceability fields attached to a ledger entry.

    Attributes:
        usage_type: LLM or voice, for usage entries.
        quantity: Metered quantity (tokens for LLM, seconds for voice).
        call_id: External call identifier.
        model_name: Model that produced the usage.
        flow_id: Workflow/flow identifier.
        payment_ref: Payment reference for top-ups.
        description: Human-readable description.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    usage_type: UsageType | None = None
    quantity: int | None = Field(default=None, ge=0)
    call_id: str | None = Field(default=None, max_length=255)
    model_name: str | None = Field(default=None, max_length=100)
    flow_id: str | None = Field(default=None, max_length=255)
    payment_ref: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=255)


class LedgerEntryData(BaseModel):
    """Immutable snapshot of a committed ledger entry.

    Attributes:
        id: Entry identifier.
        tenant_id: Owning tenant.
        sequence: 1-based position in the tenant's ledger.
        kind: Entry kind.
        amount_cents: Signed amount (+credit, -debit).
        balance_after_cents: Account balance after this entry.
        meta: Traceability fields.
        created_at: When the entry was committed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: uuid.UUID
    tenant_id: uuid.UUID
    sequence: int
    kind: EntryKind
    amount_cents: int
    balance_after_cents: int
    meta: EntryMeta
    created_at: datetime


class AccountSnapshot(BaseModel):
    """Point-in-time view of a tenant's balance account."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tenant_id: uuid.UUID
    balance_cents: int
    auto_top_up_enabled: bool
    auto_top_up_threshold_cents: int
    auto_top_up_amount_cents: int
    payment_method_ref: str | None = None

    @property
    def needs_auto_top_up(self) -> bool:
        """True when auto top-up is on and the balance is at or below threshold."""
        return (
            self.auto_top_up_enabled
            and self.balance_cents <= self.auto_top_up_threshold_cents
        )


class UsageSummary(BaseModel):
    """Usage totals for a period, split by usage type.

    Attributes:
        period_start: Inclusive start of the period.
        period_end: Inclusive end of the period.
        total_tokens: Metered LLM tokens.
        total_voice_seconds: Metered voice seconds.
        llm_cost_cents: Charged for LLM usage.
        voice_cost_cents: Charged for voice usage.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    period_start: datetime
    period_end: datetime
    total_tokens: int = 0
    total_voice_seconds: int = 0
    llm_cost_cents: int = 0
    voice_cost_cents: int = 0

    @property
    def total_cost_cents(self) -> int:
        """Combined LLM and voice charges."""
        return self.llm_cost_cents + self.voice_cost_cents

"""Ledger store contract.

The ledger store is the single source of truth for tenant balances. Every
mutation is one atomic unit under an exclusive per-account lock: read the
balance, compute the new balance, reject if it would go negative, write it,
append one immutable entry carrying the post-mutation balance, commit.

``LedgerStore`` validates inputs and enforces business rules once;
backends implement the storage primitives (``SqlLedgerStore`` for
PostgreSQL, ``InMemoryLedgerStore`` for tests and local runs).
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from tollbooth.core.config import Settings, settings
from tollbooth.core.errors import InvalidInputError
from tollbooth.models.ledger import CREDIT_KINDS, DEBIT_KINDS, EntryKind, UsageType
from tollbooth.schemas.ledger import (
    AccountSnapshot,
    EntryMeta,
    LedgerEntryData,
    UsageSummary,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class LedgerPolicy:
    """Business rules applied by every ledger backend.

    Attributes:
        minimum_top_up_cents: Smallest accepted ``top_up`` credit.
        signup_bonus_cents: Credited when an account is first created.
        default_auto_top_up_threshold_cents: Threshold for new accounts.
        default_auto_top_up_amount_cents: Refill amount for new accounts.
    """

    minimum_top_up_cents: int = 1000
    signup_bonus_cents: int = 0
    default_auto_top_up_threshold_cents: int = 500
    default_auto_top_up_amount_cents: int = 2500

    @classmethod
    def from_settings(cls, s: Settings) -> "LedgerPolicy":
        """Build the policy from application settings."""
        return cls(
            minimum_top_up_cents=s.minimum_top_up_cents,
            signup_bonus_cents=s.signup_bonus_cents,
            default_auto_top_up_threshold_cents=s.default_auto_top_up_threshold_cents,
            default_auto_top_up_amount_cents=s.default_auto_top_up_amount_cents,
        )


def coerce_tenant_id(tenant_id: uuid.UUID | str) -> uuid.UUID:
    """Normalize a tenant id to UUID.

    Raises:
        InvalidInputError: If the value is not a UUID or UUID string.
    """
    if isinstance(tenant_id, uuid.UUID):
        return tenant_id
    if isinstance(tenant_id, str):
        try:
            return uuid.UUID(tenant_id)
        except ValueError:
            pass
    raise InvalidInputError(f"Invalid tenant id: {tenant_id!r}")


def validate_amount(amount_cents: Any) -> int:
    """Require a positive integer amount in minor units.

    Raises:
        InvalidInputError: For floats, bools, non-integers, zero or negatives.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidInputError(
            f"Amount must be an integer number of cents, got {amount_cents!r}"
        )
    if amount_cents <= 0:
        raise InvalidInputError(f"Amount must be positive, got {amount_cents}")
    return amount_cents


def validate_reference(
    name: str, value: str | None, max_length: int = 255
) -> str | None:
    """Require an optional external identifier to fit its entry column.

    Raises:
        InvalidInputError: When the value is not a string or is too long.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidInputError(f"{name} must be a string, got {value!r}")
    if len(value) > max_length:
        raise InvalidInputError(
            f"{name} must be at most {max_length} characters, got {len(value)}"
        )
    return value


def month_start(now: datetime | None = None) -> datetime:
    """Start of the UTC calendar month containing ``now``."""
    now = now or datetime.now(UTC)
    return now.astimezone(UTC).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def describe_signup_bonus(amount_cents: int) -> str:
    whole, cents = divmod(amount_cents, 100)
    return f"Signup bonus: {whole}.{cents:02d} free credits"


class LedgerStore(ABC):
    """Atomic balance ledger for tenants.

    Args:
        policy: Business rules; defaults to the application settings.
    """

    def __init__(self, policy: LedgerPolicy | None = None) -> None:
        self._policy = policy or LedgerPolicy.from_settings(settings)

    @property
    def policy(self) -> LedgerPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def get_balance(self, tenant_id: uuid.UUID | str) -> int:
        """Current balance in minor units (creates the account lazily)."""
        account = await self._load_account(coerce_tenant_id(tenant_id))
        return account.balance_cents

    async def get_account(self, tenant_id: uuid.UUID | str) -> AccountSnapshot:
        """Current account view (creates the account lazily)."""
        return await self._load_account(coerce_tenant_id(tenant_id))

    async def credit(
        self,
        tenant_id: uuid.UUID | str,
        amount_cents: int,
        kind: EntryKind = EntryKind.TOP_UP,
        meta: EntryMeta | None = None,
    ) -> LedgerEntryData:
        """Add funds to a tenant's balance.

        Args:
            tenant_id: Tenant to credit.
            amount_cents: Positive amount in minor units.
            kind: Any kind except ``usage``.
            meta: Optional traceability fields.

        Returns:
            The committed entry; ``balance_after_cents`` is the new balance.

        Raises:
            InvalidInputError: Bad tenant id, amount or kind, or a
                ``top_up`` below the minimum top-up amount.
        """
        tid = coerce_tenant_id(tenant_id)
        amount = validate_amount(amount_cents)
        if kind not in CREDIT_KINDS:
            raise InvalidInputError(f"Entry kind {kind.value!r} cannot credit")
        if kind is EntryKind.TOP_UP and amount < self._policy.minimum_top_up_cents:
            raise InvalidInputError(
                f"Minimum top-up amount is {self._policy.minimum_top_up_cents} cents",
                details={"minimum_top_up_cents": self._policy.minimum_top_up_cents},
            )
        return await self._post(tid, amount, kind, meta or EntryMeta())

    async def debit(
        self,
        tenant_id: uuid.UUID | str,
        amount_cents: int,
        kind: EntryKind = EntryKind.USAGE,
        meta: EntryMeta | None = None,
    ) -> LedgerEntryData:
        """Remove funds from a tenant's balance.

        Args:
            tenant_id: Tenant to debit.
            amount_cents: Positive amount in minor units.
            kind: ``usage`` or ``adjustment``.
            meta: Optional traceability fields.

        Returns:
            The committed entry; ``balance_after_cents`` is the new balance.

        Raises:
            InvalidInputError: Bad tenant id, amount or kind.
            InsufficientFundsError: The balance would go negative. Nothing
                was written.
        """
        tid = coerce_tenant_id(tenant_id)
        amount = validate_amount(amount_cents)
        if kind not in DEBIT_KINDS:
            raise InvalidInputError(f"Entry kind {kind.value!r} cannot debit")
        return await self._post(tid, -amount, kind, meta or EntryMeta())

    async def update_auto_top_up(
        self,
        tenant_id: uuid.UUID | str,
        *,
        enabled: bool | None = None,
        threshold_cents: int | None = None,
        amount_cents: int | None = None,
        payment_method_ref: str | None = None,
    ) -> AccountSnapshot:
        """Change a tenant's auto top-up settings.

        Raises:
            InvalidInputError: Negative threshold, or a refill amount below
                the minimum top-up.
        """
        tid = coerce_tenant_id(tenant_id)
        changes: dict[str, Any] = {}
        if enabled is not None:
            changes["auto_top_up_enabled"] = bool(enabled)
        if threshold_cents is not None:
            if isinstance(threshold_cents, bool) or not isinstance(threshold_cents, int):
                raise InvalidInputError("Auto top-up threshold must be an integer")
            if threshold_cents < 0:
                raise InvalidInputError("Auto top-up threshold cannot be negative")
            changes["auto_top_up_threshold_cents"] = threshold_cents
        if amount_cents is not None:
            validate_amount(amount_cents)
            if amount_cents < self._policy.minimum_top_up_cents:
                raise InvalidInputError(
                    f"Minimum top-up amount is {self._policy.minimum_top_up_cents} cents"
                )
            changes["auto_top_up_amount_cents"] = amount_cents
        if payment_method_ref is not None:
            changes["payment_method_ref"] = payment_method_ref
        return await self._update_settings(tid, changes)

    async def list_entries(
        self,
        tenant_id: uuid.UUID | str,
        *,
        offset: int = 0,
        limit: int = 50,
        usage_type: UsageType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[list[LedgerEntryData], int]:
        """Transaction history, newest first.

        Returns:
            Tuple of (entries page, total matching count).
        """
        tid = coerce_tenant_id(tenant_id)
        if offset < 0:
            raise InvalidInputError("offset cannot be negative")
        if not 1 <= limit <= _MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {_MAX_PAGE_SIZE}")
        return await self._list_entries(
            tid,
            offset=offset,
            limit=limit,
            usage_type=usage_type,
            since=since,
            until=until,
        )

    async def usage_summary(
        self,
        tenant_id: uuid.UUID | str,
        since: datetime,
        until: datetime,
    ) -> UsageSummary:
        """Usage totals between ``since`` and ``until`` (inclusive)."""
        tid = coerce_tenant_id(tenant_id)
        if since > until:
            raise InvalidInputError("Period start must not be after period end")
        return await self._usage_summary(tid, since, until)

    async def monthly_usage(
        self,
        tenant_id: uuid.UUID | str,
        usage_type: UsageType = UsageType.LLM,
        now: datetime | None = None,
    ) -> int:
        """Metered quantity for the current calendar month.

        Tokens for LLM usage, seconds for voice usage.
        """
        now = now or datetime.now(UTC)
        summary = await self.usage_summary(tenant_id, month_start(now), now)
        if usage_type is UsageType.VOICE:
            return summary.total_voice_seconds
        return summary.total_tokens

    async def verify_chain(self, tenant_id: uuid.UUID | str) -> bool:
        """Check that the entry chain reconstructs the stored balance.

        Walks the entries in ledger order and requires each
        ``balance_after`` to equal the previous one plus the entry amount,
        starting from zero, ending at the account balance.
        """
        tid = coerce_tenant_id(tenant_id)
        balance, entries = await self._chain(tid)
        running = 0
        for expected_sequence, entry in enumerate(entries, start=1):
            running += entry.amount_cents
            if entry.sequence != expected_sequence or entry.balance_after_cents != running:
                logger.warning(
                    "Ledger chain broken for tenant %s at sequence %d",
                    tid,
                    entry.sequence,
                )
                return False
        if running != balance:
            logger.warning(
                "Ledger sum %d does not match balance %d for tenant %s",
                running,
                balance,
                tid,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _load_account(self, tenant_id: uuid.UUID) -> AccountSnapshot:
        """Return the account, creating it (with signup bonus) if missing."""

    @abstractmethod
    async def _post(
        self,
        tenant_id: uuid.UUID,
        signed_amount_cents: int,
        kind: EntryKind,
        meta: EntryMeta,
    ) -> LedgerEntryData:
        """Atomically apply a signed amount and append its entry.

        Must raise ``InsufficientFundsError`` without writing anything when
        the resulting balance would be negative.
        """

    @abstractmethod
    async def _update_settings(
        self, tenant_id: uuid.UUID, changes: dict[str, Any]
    ) -> AccountSnapshot:
        """Apply validated auto top-up setting changes under the account lock."""

    @abstractmethod
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
        """Page of entries newest first plus the total count."""

    @abstractmethod
    async def _usage_summary(
        self, tenant_id: uuid.UUID, since: datetime, until: datetime
    ) -> UsageSummary:
        """Aggregate usage entries in the period."""

    @abstractmethod
    async def _chain(
        self, tenant_id: uuid.UUID
    ) -> tuple[int, list[LedgerEntryData]]:
        """Stored balance plus every entry oldest first."""

"""Value objects shared across stores and services."""

from tollbooth.schemas.ledger import (
    AccountSnapshot,
    EntryMeta,
    LedgerEntryData,
    UsageSummary,
)

__all__ = [
    "AccountSnapshot",
    "EntryMeta",
    "LedgerEntryData",
    "UsageSummary",
]

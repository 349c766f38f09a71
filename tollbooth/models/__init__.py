"""ORM models.

Importing this package registers every table on ``Base.metadata``.
"""

from tollbooth.models.base import Base, TimestampMixin
from tollbooth.models.credential import CredentialStatus, TenantCredential
from tollbooth.models.ledger import (
    CREDIT_KINDS,
    DEBIT_KINDS,
    BalanceAccount,
    EntryKind,
    LedgerEntry,
    UsageType,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "BalanceAccount",
    "LedgerEntry",
    "EntryKind",
    "UsageType",
    "CREDIT_KINDS",
    "DEBIT_KINDS",
    "TenantCredential",
    "CredentialStatus",
]

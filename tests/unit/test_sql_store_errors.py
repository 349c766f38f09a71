"""Tests for storage fault handling in the SQL stores.

Database failures surface as LedgerUnavailableError; nothing is retried
and no partial state is reported as committed.
"""

import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from tollbooth.core.crypto import CredentialCipher
from tollbooth.core.errors import LedgerUnavailableError
from tollbooth.services.credential_store import SqlCredentialStore
from tollbooth.services.ledger_store import LedgerPolicy
from tollbooth.services.sql_ledger_store import SqlLedgerStore


@pytest.fixture
def failing_factory() -> MagicMock:
    """Session factory whose connections always fail."""
    return MagicMock(
        side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
    )


class TestSqlLedgerStoreFaults:
    async def test_debit_wraps_storage_error(
        self, failing_factory: MagicMock, policy: LedgerPolicy, tenant_id: uuid.UUID
    ) -> None:
        """Should raise LedgerUnavailableError from the driver error."""
        store = SqlLedgerStore(failing_factory, policy)

        with pytest.raises(LedgerUnavailableError) as exc_info:
            await store.debit(tenant_id, 100)

        assert exc_info.value.code == "LEDGER_UNAVAILABLE"
        assert isinstance(exc_info.value.__cause__, OperationalError)

    async def test_balance_read_wraps_storage_error(
        self, failing_factory: MagicMock, policy: LedgerPolicy, tenant_id: uuid.UUID
    ) -> None:
        """Should fail reads the same way as writes."""
        store = SqlLedgerStore(failing_factory, policy)

        with pytest.raises(LedgerUnavailableError):
            await store.get_balance(tenant_id)


class TestSqlCredentialStoreFaults:
    async def test_lookup_wraps_storage_error(
        self,
        failing_factory: MagicMock,
        cipher: CredentialCipher,
        tenant_id: uuid.UUID,
    ) -> None:
        """Should raise LedgerUnavailableError when the lookup fails."""
        store = SqlCredentialStore(failing_factory, cipher)

        with pytest.raises(LedgerUnavailableError):
            await store.find_active_credential(tenant_id)

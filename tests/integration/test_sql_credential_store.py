"""Integration tests for the PostgreSQL credential store.

Skipped when PostgreSQL is not reachable.
"""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tollbooth.core.crypto import CredentialCipher
from tollbooth.models.credential import CredentialStatus, TenantCredential
from tollbooth.services.credential_store import SqlCredentialStore

_KEY = "sk-or-v1-tenant"  # nosec B105  # gitleaks:allow


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession], cipher: CredentialCipher
) -> SqlCredentialStore:
    """SQL credential store for the openrouter provider."""
    return SqlCredentialStore(session_factory, cipher)


class TestSqlCredentialStore:
    """Save, lookup and revoke against the tenant_credentials table."""

    async def test_saved_key_is_encrypted_at_rest(
        self,
        store: SqlCredentialStore,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: uuid.UUID,
    ) -> None:
        """Should never write the plaintext key."""
        await store.save_credential(tenant_id, _KEY)

        async with session_factory() as db:
            row = (
                await db.execute(
                    select(TenantCredential).where(
                        TenantCredential.tenant_id == tenant_id
                    )
                )
            ).scalar_one()
        assert row.encrypted_key.startswith("ENC:")
        assert _KEY not in row.encrypted_key

    async def test_find_and_decrypt(
        self, store: SqlCredentialStore, tenant_id: uuid.UUID
    ) -> None:
        """Should return the active key and decrypt it."""
        saved = await store.save_credential(tenant_id, _KEY)

        found = await store.find_active_credential(tenant_id)

        assert found is not None
        assert found.id == saved.id
        assert found.status is CredentialStatus.ACTIVE
        assert await store.decrypt(found) == _KEY

    async def test_new_key_revokes_previous(
        self,
        store: SqlCredentialStore,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: uuid.UUID,
    ) -> None:
        """Should keep only one live key per tenant and provider."""
        first = await store.save_credential(tenant_id, "sk-old")
        second = await store.save_credential(tenant_id, "sk-new")

        found = await store.find_active_credential(tenant_id)
        assert found is not None
        assert found.id == second.id

        async with session_factory() as db:
            old = await db.get(TenantCredential, first.id)
        assert old is not None
        assert old.status == CredentialStatus.REVOKED.value
        assert old.revoked_at is not None

    async def test_expired_key_not_found(
        self, store: SqlCredentialStore, tenant_id: uuid.UUID
    ) -> None:
        """Should skip keys past their expiry."""
        await store.save_credential(
            tenant_id, _KEY, expires_at=datetime.now(UTC) - timedelta(minutes=5)
        )

        assert await store.find_active_credential(tenant_id) is None

    async def test_revoke(self, store: SqlCredentialStore, tenant_id: uuid.UUID) -> None:
        """Should revoke live keys and report the count."""
        await store.save_credential(tenant_id, _KEY)

        assert await store.revoke_credential(tenant_id) == 1
        assert await store.find_active_credential(tenant_id) is None
        assert await store.revoke_credential(tenant_id) == 0

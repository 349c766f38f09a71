"""Tenant credential lookup for BYOK routing.

A tenant may store its own upstream API key. The routing engine asks the
credential store for a usable key (active, not revoked, not expired) and
decrypts it only for the duration of the provider call.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tollbooth.core.crypto import CredentialCipher
from tollbooth.core.errors import LedgerUnavailableError
from tollbooth.models.credential import CredentialStatus, TenantCredential
from tollbooth.repositories.credential_repository import CredentialRepository
from tollbooth.services.ledger_store import coerce_tenant_id

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openrouter"


@dataclass(frozen=True)
class StoredCredential:
    """Encrypted tenant credential as read from storage.

    Attributes:
        id: Credential identifier.
        tenant_id: Owning tenant.
        provider: Upstream provider name.
        encrypted_key: ENC:-prefixed ciphertext; never logged.
        status: Lifecycle status.
        expires_at: Optional expiry.
        revoked_at: Set once revoked.
    """

    id: uuid.UUID
    tenant_id: uuid.UUID
    provider: str
    encrypted_key: str
    status: CredentialStatus
    expires_at: datetime | None = None
    revoked_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"StoredCredential(id={self.id}, tenant_id={self.tenant_id}, "
            f"provider={self.provider!r}, status={self.status.value})"
        )

    def is_usable(self, now: datetime | None = None) -> bool:
        """Active, not revoked and not expired at ``now``."""
        now = now or datetime.now(UTC)
        if self.status is not CredentialStatus.ACTIVE or self.revoked_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now


def _stored(row: TenantCredential) -> StoredCredential:
    return StoredCredential(
        id=row.id,
        tenant_id=row.tenant_id,
        provider=row.provider,
        encrypted_key=row.encrypted_key,
        status=CredentialStatus(row.status),
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
    )


class CredentialStore(ABC):
    """Source of tenant-owned provider credentials.

    Args:
        cipher: Decrypts stored keys.
        provider: Provider whose keys this store serves.
    """

    def __init__(self, cipher: CredentialCipher, provider: str = DEFAULT_PROVIDER) -> None:
        self._cipher = cipher
        self._provider = provider

    @abstractmethod
    async def find_active_credential(
        self, tenant_id: uuid.UUID | str
    ) -> StoredCredential | None:
        """Return the tenant's usable credential, or None."""

    @abstractmethod
    async def save_credential(
        self,
        tenant_id: uuid.UUID | str,
        api_key: str,
        expires_at: datetime | None = None,
    ) -> StoredCredential:
        """Encrypt and store a new key, revoking any previous one."""

    @abstractmethod
    async def revoke_credential(self, tenant_id: uuid.UUID | str) -> int:
        """Revoke the tenant's keys. Returns how many were revoked."""

    async def decrypt(self, credential: StoredCredential) -> str:
        """Plaintext key for a provider call.

        Raises:
            CredentialDecryptionError: The ciphertext does not verify.
        """
        return self._cipher.decrypt(credential.encrypted_key)


class SqlCredentialStore(CredentialStore):
    """Credential store over the ``tenant_credentials`` table.

    Args:
        session_factory: Factory producing AsyncSessions bound to PostgreSQL.
        cipher: Encrypts and decrypts keys.
        provider: Provider whose keys this store serves.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher,
        provider: str = DEFAULT_PROVIDER,
    ) -> None:
        super().__init__(cipher, provider)
        self._session_factory = session_factory

    async def find_active_credential(
        self, tenant_id: uuid.UUID | str
    ) -> StoredCredential | None:
        tid = coerce_tenant_id(tenant_id)
        try:
            async with self._session_factory() as db:
                row = await CredentialRepository.find_active(
                    db, tid, self._provider, datetime.now(UTC)
                )
                return _stored(row) if row is not None else None
        except SQLAlchemyError as e:
            logger.exception("Credential lookup failed for tenant %s", tid)
            raise LedgerUnavailableError(f"Credential storage failed: {e}") from e

    async def save_credential(
        self,
        tenant_id: uuid.UUID | str,
        api_key: str,
        expires_at: datetime | None = None,
    ) -> StoredCredential:
        tid = coerce_tenant_id(tenant_id)
        encrypted = self._cipher.encrypt(api_key)
        try:
            async with self._session_factory() as db, db.begin():
                await CredentialRepository.revoke_all(
                    db, tid, self._provider, datetime.now(UTC)
                )
                row = await CredentialRepository.create(
                    db,
                    tenant_id=tid,
                    provider=self._provider,
                    encrypted_key=encrypted,
                    expires_at=expires_at,
                )
                return _stored(row)
        except SQLAlchemyError as e:
            logger.exception("Saving credential failed for tenant %s", tid)
            raise LedgerUnavailableError(f"Credential storage failed: {e}") from e

    async def revoke_credential(self, tenant_id: uuid.UUID | str) -> int:
        tid = coerce_tenant_id(tenant_id)
        try:
            async with self._session_factory() as db, db.begin():
                return await CredentialRepository.revoke_all(
                    db, tid, self._provider, datetime.now(UTC)
                )
        except SQLAlchemyError as e:
            logger.exception("Revoking credentials failed for tenant %s", tid)
            raise LedgerUnavailableError(f"Credential storage failed: {e}") from e


class InMemoryCredentialStore(CredentialStore):
    """Credential store kept in process memory, for tests and local runs."""

    def __init__(self, cipher: CredentialCipher, provider: str = DEFAULT_PROVIDER) -> None:
        super().__init__(cipher, provider)
        self._credentials: dict[uuid.UUID, list[StoredCredential]] = {}

    def put(self, credential: StoredCredential) -> None:
        """Store a prepared credential as-is (expired or revoked ones included)."""
        self._credentials.setdefault(credential.tenant_id, []).append(credential)

    async def find_active_credential(
        self, tenant_id: uuid.UUID | str
    ) -> StoredCredential | None:
        tid = coerce_tenant_id(tenant_id)
        now = datetime.now(UTC)
        for credential in reversed(self._credentials.get(tid, [])):
            if credential.provider == self._provider and credential.is_usable(now):
                return credential
        return None

    async def save_credential(
        self,
        tenant_id: uuid.UUID | str,
        api_key: str,
        expires_at: datetime | None = None,
    ) -> StoredCredential:
        tid = coerce_tenant_id(tenant_id)
        await self.revoke_credential(tid)
        credential = StoredCredential(
            id=uuid.uuid4(),
            tenant_id=tid,
            provider=self._provider,
            encrypted_key=self._cipher.encrypt(api_key),
            status=CredentialStatus.ACTIVE,
            expires_at=expires_at,
        )
        self.put(credential)
        return credential

    async def revoke_credential(self, tenant_id: uuid.UUID | str) -> int:
        tid = coerce_tenant_id(tenant_id)
        now = datetime.now(UTC)
        revoked = 0
        updated = []
        for credential in self._credentials.get(tid, []):
            if credential.provider == self._provider and credential.revoked_at is None:
                credential = replace(
                    credential, status=CredentialStatus.REVOKED, revoked_at=now
                )
                revoked += 1
            updated.append(credential)
        self._credentials[tid] = updated
        return revoked

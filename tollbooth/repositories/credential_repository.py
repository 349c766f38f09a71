"""Repository for tenant provider credentials."""

import uuid
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tollbooth.models.credential import CredentialStatus, TenantCredential


class CredentialRepository:
    """Stateless repository for TenantCredential rows.

    All methods are static. Pass an AsyncSession for every call so the
    caller controls transaction boundaries.
    """

    @staticmethod
    async def find_active(
        db: AsyncSession,
        tenant_id: uuid.UUID,
        provider: str,
        now: datetime,
    ) -> TenantCredential | None:
        """Newest active, unrevoked, unexpired credential for a tenant."""
        stmt = (
            select(TenantCredential)
            .where(
                TenantCredential.tenant_id == tenant_id,
                TenantCredential.provider == provider,
                TenantCredential.status == CredentialStatus.ACTIVE.value,
                TenantCredential.revoked_at.is_(None),
                or_(
                    TenantCredential.expires_at.is_(None),
                    TenantCredential.expires_at > now,
                ),
            )
            .order_by(TenantCredential.created_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        tenant_id: uuid.UUID,
        provider: str,
        encrypted_key: str,
        expires_at: datetime | None = None,
    ) -> TenantCredential:
        """Insert a new active credential."""
        credential = TenantCredential(
            tenant_id=tenant_id,
            provider=provider,
            encrypted_key=encrypted_key,
            status=CredentialStatus.ACTIVE.value,
            expires_at=expires_at,
        )
        db.add(credential)
        await db.flush()
        await db.refresh(credential)
        return credential

    @staticmethod
    async def revoke_all(
        db: AsyncSession,
        tenant_id: uuid.UUID,
        provider: str,
        now: datetime,
    ) -> int:
        """Revoke every live credential of a tenant for a provider.

        Returns:
            Number of credentials revoked.
        """
        stmt = (
            update(TenantCredential)
            .where(
                TenantCredential.tenant_id == tenant_id,
                TenantCredential.provider == provider,
                TenantCredential.revoked_at.is_(None),
            )
            .values(status=CredentialStatus.REVOKED.value, revoked_at=now)
        )
        result = await db.execute(stmt)
        return result.rowcount or 0

"""Tenant-owned provider credential (BYOK key) model."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tollbooth.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")


class CredentialStatus(Enum):
    """Lifecycle status of a tenant credential."""

    ACTIVE = "active"
    INVALID = "invalid"
    REVOKED = "revoked"


class TenantCredential(Base, TimestampMixin):
    """Encrypted upstream API key supplied by a tenant.

    A credential is usable for routing when its status is active, it has
    not been revoked, and it has not expired.

    Attributes:
        id: UUID primary key.
        tenant_id: Owning tenant.
        provider: Upstream provider name (e.g. "openrouter").
        encrypted_key: ENC:-prefixed Fernet token.
        status: CredentialStatus value.
        expires_at: Optional expiry; NULL never expires.
        revoked_at: Set when the tenant revokes the key.
        last_validated_at: When the key last passed a validation call.
    """

    __tablename__ = "tenant_credentials"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'invalid', 'revoked')",
            name="ck_credential_status_valid",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    encrypted_key: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'active'"),
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_validated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

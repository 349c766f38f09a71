"""Async database engine and session management.

Configures the SQLAlchemy async engine with connection pooling and the
session factory the SQL ledger and credential stores open their
transactions from. Each store owns its transaction boundaries, so no
request-scoped session dependency lives here.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tollbooth.core.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.environment == "development",
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

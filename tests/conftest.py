import socket
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tollbooth.core.config import settings
from tollbooth.core.crypto import CredentialCipher
from tollbooth.models import Base
from tollbooth.providers.config import ProviderConfig
from tollbooth.providers.mock_adapter import MockChatProvider
from tollbooth.services.cost_model import CostModel
from tollbooth.services.ledger_store import LedgerPolicy
from tollbooth.services.memory_ledger_store import InMemoryLedgerStore

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

TEST_TENANT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")

# Platform key used by managed-path tests; never sent anywhere
TEST_PLATFORM_KEY = "sk-platform-test"  # nosec B105  # gitleaks:allow


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on port 5432, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", 5432))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available."""
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            "PostgreSQL not available on port 5432. "
            "Start database with: docker compose up -d"
        )


# =============================================================================
# Database fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine with a fresh schema.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# =============================================================================
# In-process fixtures
# =============================================================================


@pytest.fixture
def tenant_id() -> uuid.UUID:
    """A fresh tenant id per test."""
    return uuid.uuid4()


@pytest.fixture
def policy() -> LedgerPolicy:
    """Ledger rules without a signup bonus, so balances start at zero."""
    return LedgerPolicy(
        minimum_top_up_cents=1000,
        signup_bonus_cents=0,
        default_auto_top_up_threshold_cents=500,
        default_auto_top_up_amount_cents=2500,
    )


@pytest.fixture
def ledger(policy: LedgerPolicy) -> InMemoryLedgerStore:
    """In-memory ledger store."""
    return InMemoryLedgerStore(policy)


@pytest.fixture
def cost_model() -> CostModel:
    """Cost model over the built-in pricing tables."""
    return CostModel()


@pytest.fixture
def cipher() -> CredentialCipher:
    """Credential cipher with a throwaway Fernet key."""
    return CredentialCipher(Fernet.generate_key())


@pytest.fixture
def provider_config() -> ProviderConfig:
    """Provider config with one instant retry."""
    return ProviderConfig(
        platform_api_key=TEST_PLATFORM_KEY,
        primary_model="deepseek/kimi-k2-thinking",
        fallback_model="qwen/qwen-max-3",
        timeout_seconds=5.0,
        max_retries=1,
        retry_base_delay_ms=0,
        retry_max_delay_ms=0,
    )


@pytest.fixture
def mock_provider() -> MockChatProvider:
    """Mock chat provider returning canned completions."""
    return MockChatProvider()

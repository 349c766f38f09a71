"""Component wiring.

Builds the ledger, credential store, cost model, admission, settlement and
routing components from application settings, backed by PostgreSQL and the
configured provider. Hosts (HTTP apps, workers) call ``build_services`` once
at startup.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tollbooth.core.config import Settings, settings
from tollbooth.core.crypto import CredentialCipher
from tollbooth.core.logging_config import configure_logging
from tollbooth.providers.base import ChatProvider
from tollbooth.providers.config import ProviderConfig
from tollbooth.providers.openrouter_adapter import OpenRouterAdapter
from tollbooth.services.admission import AdmissionController
from tollbooth.services.cost_model import CostModel
from tollbooth.services.credential_store import CredentialStore, SqlCredentialStore
from tollbooth.services.ledger_store import LedgerPolicy, LedgerStore
from tollbooth.services.routing import RoutingEngine
from tollbooth.services.settlement import AutoTopUpGateway, SettlementEngine
from tollbooth.services.sql_ledger_store import SqlLedgerStore


@dataclass
class Services:
    """Wired components sharing one ledger and one cost model."""

    ledger: LedgerStore
    cost_model: CostModel
    admission: AdmissionController
    settlement: SettlementEngine
    credentials: CredentialStore
    routing: RoutingEngine


def build_services(
    s: Settings = settings,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    ledger: LedgerStore | None = None,
    credentials: CredentialStore | None = None,
    provider: ChatProvider | None = None,
    cost_model: CostModel | None = None,
    auto_top_up_gateway: AutoTopUpGateway | None = None,
    configure_logs: bool = True,
) -> Services:
    """Wire every component from settings.

    Any component can be passed in to replace the default (tests use the
    in-memory ledger and the mock provider this way).

    Args:
        s: Application settings.
        session_factory: Session factory for the SQL stores; defaults to
            the application engine.
        ledger: Ledger store override.
        credentials: Credential store override.
        provider: Chat provider override; an OpenRouterAdapter built from
            these settings otherwise.
        cost_model: Cost model override (e.g. a custom pricing table).
        auto_top_up_gateway: Payment gateway for automatic refills.
        configure_logs: Whether to configure logging.

    Returns:
        The wired services.
    """
    if configure_logs:
        configure_logging(s)

    if session_factory is None and (ledger is None or credentials is None):
        from tollbooth.core.database import async_session_factory

        session_factory = async_session_factory

    provider_config = ProviderConfig.from_settings(s)
    cost_model = cost_model or CostModel()
    ledger = ledger or SqlLedgerStore(session_factory, LedgerPolicy.from_settings(s))
    if credentials is None:
        cipher = CredentialCipher(s.credential_encryption_key.get_secret_value())
        credentials = SqlCredentialStore(session_factory, cipher)

    admission = AdmissionController(
        cost_model,
        safety_margin_percent=s.safety_margin_percent,
        currency_symbol=s.currency_symbol,
        default_expected_output_tokens=s.default_expected_output_tokens,
    )
    settlement = SettlementEngine(ledger, cost_model, auto_top_up_gateway)
    routing = RoutingEngine(
        credentials=credentials,
        provider=provider or OpenRouterAdapter(provider_config),
        ledger=ledger,
        admission=admission,
        settlement=settlement,
        config=provider_config,
    )
    return Services(
        ledger=ledger,
        cost_model=cost_model,
        admission=admission,
        settlement=settlement,
        credentials=credentials,
        routing=routing,
    )

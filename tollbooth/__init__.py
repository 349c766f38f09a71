"""tollbooth: prepaid usage metering for pay-per-use AI services.

Packages:
    core: Settings, database session factory, error taxonomy, logging.
    models: ORM models for balance accounts, ledger entries and credentials.
    repositories: Row-level SQL helpers (locking reads, appends, aggregates).
    providers: Chat-completion provider abstraction, retry and adapters.
    services: Ledger stores, cost model, admission, settlement and routing.
"""

__version__ = "0.1.0"

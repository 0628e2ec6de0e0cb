"""Credit-metered generation backend.

Modules:
    - core: Configuration, database, logging, metrics, circuit breakers, Celery
    - modules.ledger: Credit balances and the append-only billing log
    - modules.job: Generation job lifecycle and worker leases
    - modules.webhook: Payment provider webhook ingestion
    - modules.identity: Identity provider lookups and account sync
"""

__version__ = "0.1.0"

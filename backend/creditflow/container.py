"""Explicit service wiring.

Everything stateful (session factory, lock registries, circuit breakers,
services) is built here once per process and handed to callers: FastAPI
keeps the container on ``app.state``, Celery tasks and scripts build their
own with ``build_container()``.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from creditflow.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from creditflow.core.config import Settings, settings as default_settings
from creditflow.core.database import async_session_maker, create_engine, create_session_maker
from creditflow.core.locks import KeyedLocks
from creditflow.core.retry import RetryConfig
from creditflow.modules.identity.client import IdentityProviderClient
from creditflow.modules.identity.service import AccountSyncService
from creditflow.modules.job.service import JobStateMachine
from creditflow.modules.ledger.service import CreditLedger
from creditflow.modules.webhook.service import WebhookIngestor

IDENTITY_DEPENDENCY = "identity"
SUBSCRIPTIONS_DEPENDENCY = "subscriptions"
DATASTORE_DEPENDENCY = "datastore"


@dataclass
class ServiceContainer:
    settings: Settings
    session_maker: async_sessionmaker[AsyncSession]
    breakers: CircuitBreakerRegistry
    ledger: CreditLedger
    jobs: JobStateMachine
    webhooks: WebhookIngestor
    identity_client: IdentityProviderClient
    account_sync: AccountSyncService
    engine: Optional[AsyncEngine] = None

    async def aclose(self) -> None:
        await self.identity_client.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_breakers(config: Settings) -> CircuitBreakerRegistry:
    registry = CircuitBreakerRegistry()
    registry.register(CircuitBreaker(
        IDENTITY_DEPENDENCY,
        failure_threshold=config.IDENTITY_BREAKER_THRESHOLD,
        cooldown_seconds=config.IDENTITY_BREAKER_COOLDOWN_SECONDS,
        call_timeout=config.IDENTITY_BREAKER_TIMEOUT_SECONDS,
    ))
    registry.register(CircuitBreaker(
        SUBSCRIPTIONS_DEPENDENCY,
        failure_threshold=config.SUBSCRIPTION_BREAKER_THRESHOLD,
        cooldown_seconds=config.SUBSCRIPTION_BREAKER_COOLDOWN_SECONDS,
        call_timeout=config.SUBSCRIPTION_BREAKER_TIMEOUT_SECONDS,
    ))
    registry.register(CircuitBreaker(
        DATASTORE_DEPENDENCY,
        failure_threshold=config.DATASTORE_BREAKER_THRESHOLD,
        cooldown_seconds=config.DATASTORE_BREAKER_COOLDOWN_SECONDS,
        call_timeout=config.DATASTORE_BREAKER_TIMEOUT_SECONDS,
    ))
    return registry


def build_container(
    config: Optional[Settings] = None,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    identity_client: Optional[IdentityProviderClient] = None,
) -> ServiceContainer:
    config = config or default_settings
    session_maker = session_maker or async_session_maker
    breakers = build_breakers(config)

    ledger = CreditLedger(
        session_maker,
        locks=KeyedLocks("accounts"),
        signup_credits=config.SIGNUP_CREDITS,
        default_signup_credits=config.DEFAULT_SIGNUP_CREDITS,
        monthly_grants=config.MONTHLY_CREDIT_GRANTS,
    )
    jobs = JobStateMachine(
        session_maker,
        ledger,
        locks=KeyedLocks("jobs"),
        max_attempts=config.JOB_MAX_ATTEMPTS,
        lease_seconds=config.JOB_LEASE_SECONDS,
        auto_requeue=config.JOB_AUTO_REQUEUE,
        poll_interval_seconds=config.JOB_POLL_INTERVAL_SECONDS,
        sweep_batch_size=config.JOB_SWEEP_BATCH_SIZE,
        retry_backoff=RetryConfig(
            max_attempts=config.JOB_MAX_ATTEMPTS,
            initial_delay=config.JOB_RETRY_INITIAL_DELAY_SECONDS,
            max_delay=config.JOB_RETRY_MAX_DELAY_SECONDS,
            backoff_multiplier=config.JOB_RETRY_BACKOFF_MULTIPLIER,
        ),
    )
    identity_client = identity_client or IdentityProviderClient(
        base_url=config.IDENTITY_API_BASE_URL,
        api_key=config.IDENTITY_API_KEY,
        product_tiers=config.IDENTITY_PRODUCT_TIERS,
    )
    account_sync = AccountSyncService(
        ledger,
        identity_client,
        identity_breaker=breakers.get(IDENTITY_DEPENDENCY),
        subscription_breaker=breakers.get(SUBSCRIPTIONS_DEPENDENCY),
        cache_ttl_seconds=config.IDENTITY_CACHE_TTL_SECONDS,
        cache_max_entries=config.IDENTITY_CACHE_MAX_ENTRIES,
    )

    return ServiceContainer(
        settings=config,
        session_maker=session_maker,
        breakers=breakers,
        ledger=ledger,
        jobs=jobs,
        webhooks=WebhookIngestor(ledger),
        identity_client=identity_client,
        account_sync=account_sync,
    )


def get_container(request: Request) -> ServiceContainer:
    """Dependency returning the container attached to the running app."""
    return request.app.state.container


def build_standalone_container(config: Optional[Settings] = None) -> ServiceContainer:
    """Container with its own engine, for Celery tasks and scripts.

    Each ``asyncio.run`` gets a fresh event loop, so pooled connections from
    the process-wide engine cannot be reused; this engine does not pool.
    """
    config = config or default_settings
    engine = create_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO, poolclass=NullPool)
    container = build_container(config, session_maker=create_session_maker(engine))
    container.engine = engine
    return container

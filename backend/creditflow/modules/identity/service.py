"""Account synchronisation with the identity provider.

Every call to the provider goes through a circuit breaker. When the breaker
is open, or a call fails at the dependency level, the sync degrades to a
recently cached profile and then to the account already stored in the
ledger, so a provider outage never blocks users who already exist.
"""

import logging
import time
from typing import Callable, Optional

from cachetools import TTLCache

from creditflow.core.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    is_dependency_failure,
)
from creditflow.modules.identity.client import IdentityProviderClient
from creditflow.modules.identity.schemas import (
    AccountSyncResult,
    IdentityProfile,
    SyncSource,
)
from creditflow.modules.ledger.models import SubscriptionTier
from creditflow.modules.ledger.service import AccountNotFoundError, CreditLedger

logger = logging.getLogger(__name__)


class IdentityUnavailableError(Exception):
    """The provider is down and nothing is cached or stored for the account."""

    def __init__(self, account_id: str, reason: str = ""):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Identity unavailable for {account_id}: {reason}")


class AccountSyncService:
    """Creates and refreshes ledger accounts from identity provider data."""

    def __init__(
        self,
        ledger: CreditLedger,
        client: IdentityProviderClient,
        identity_breaker: CircuitBreaker,
        subscription_breaker: CircuitBreaker,
        cache_ttl_seconds: float = 300,
        cache_max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.client = client
        self.identity_breaker = identity_breaker
        self.subscription_breaker = subscription_breaker
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock
        # Oldest profiles are evicted once the cache is full
        self._profiles: TTLCache = TTLCache(maxsize=cache_max_entries, ttl=cache_ttl_seconds, timer=clock)

    async def sync_account(self, account_id: str) -> AccountSyncResult:
        """Fetch the profile and tier, then create or refresh the account.

        Raises:
            IdentityUnavailableError: provider unreachable, nothing cached and
                no stored account to fall back to
        """
        profile, source = await self._fetch_profile(account_id)
        if profile is None:
            return await self._stored_result(account_id)

        tier = await self.get_subscription_tier(account_id)
        ensured = await self.ledger.ensure_account(account_id, email=profile.email, tier=tier)
        return AccountSyncResult(
            account_id=account_id,
            balance=ensured.balance,
            tier=ensured.tier,
            created=ensured.created,
            source=source,
            degraded=source != SyncSource.LIVE,
        )

    async def get_subscription_tier(self, account_id: str) -> str:
        """Current tier from the provider, or the stored tier when it is unreachable."""
        if self.subscription_breaker.is_available():
            try:
                subscription = await self.subscription_breaker.execute(
                    self.client.fetch_subscription, account_id
                )
                return subscription.tier
            except CircuitOpenError:
                pass
            except Exception as exc:
                if not is_dependency_failure(exc):
                    raise
                logger.warning(f"Subscription lookup failed for {account_id}: {exc}")

        stored = await self._stored_tier(account_id)
        logger.warning(
            f"Subscription provider unavailable, using stored tier {stored} for {account_id}",
            extra={"account_id": account_id, "dependency": self.subscription_breaker.name},
        )
        return stored

    def invalidate(self, account_id: str) -> None:
        self._profiles.pop(account_id, None)

    async def _fetch_profile(self, account_id: str) -> tuple[Optional[IdentityProfile], SyncSource]:
        if self.identity_breaker.is_available():
            try:
                profile = await self.identity_breaker.execute(self.client.fetch_user, account_id)
                self._profiles[account_id] = profile
                return profile, SyncSource.LIVE
            except CircuitOpenError:
                pass
            except Exception as exc:
                if not is_dependency_failure(exc):
                    raise
                logger.warning(f"Identity lookup failed for {account_id}: {exc}")

        cached = self._cached_profile(account_id)
        if cached is not None:
            logger.warning(
                f"Identity provider unavailable, using cached profile for {account_id}",
                extra={"account_id": account_id, "dependency": self.identity_breaker.name},
            )
            return cached, SyncSource.CACHE
        return None, SyncSource.STORED

    def _cached_profile(self, account_id: str) -> Optional[IdentityProfile]:
        return self._profiles.get(account_id)

    async def _stored_result(self, account_id: str) -> AccountSyncResult:
        try:
            balance = await self.ledger.get_balance(account_id)
        except AccountNotFoundError:
            raise IdentityUnavailableError(account_id, "provider unreachable and account unknown")
        logger.warning(
            f"Identity provider unavailable, serving stored account {account_id}",
            extra={"account_id": account_id, "dependency": self.identity_breaker.name},
        )
        return AccountSyncResult(
            account_id=account_id,
            balance=balance,
            tier=balance.subscription_tier,
            created=False,
            source=SyncSource.STORED,
            degraded=True,
        )

    async def _stored_tier(self, account_id: str) -> str:
        try:
            balance = await self.ledger.get_balance(account_id)
        except AccountNotFoundError:
            return SubscriptionTier.STARTER.value
        return balance.subscription_tier

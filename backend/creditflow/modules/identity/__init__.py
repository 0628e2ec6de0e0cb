"""Identity provider integration and account synchronisation."""

from creditflow.modules.identity.client import IdentityProviderClient
from creditflow.modules.identity.schemas import (
    AccountSyncResult,
    IdentityProfile,
    SubscriptionInfo,
    SyncSource,
)
from creditflow.modules.identity.service import AccountSyncService, IdentityUnavailableError

__all__ = [
    "AccountSyncResult",
    "AccountSyncService",
    "IdentityProfile",
    "IdentityProviderClient",
    "IdentityUnavailableError",
    "SubscriptionInfo",
    "SyncSource",
]

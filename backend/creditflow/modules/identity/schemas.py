"""Pydantic schemas for identity and subscription lookups."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from creditflow.modules.ledger.models import SubscriptionTier
from creditflow.modules.ledger.schemas import Balance


class IdentityProfile(BaseModel):
    """User profile as reported by the identity provider."""
    account_id: str
    email: Optional[str] = None
    username: Optional[str] = None
    name: Optional[str] = None


class SubscriptionInfo(BaseModel):
    """Active membership of a user, reduced to what billing needs."""
    tier: str = SubscriptionTier.STARTER.value
    subscription_id: Optional[str] = None
    product_id: Optional[str] = None
    is_active: bool = False


class SyncSource(str, Enum):
    """Where the profile used for a sync came from."""
    LIVE = "live"
    CACHE = "cache"
    STORED = "stored"


class AccountSyncResult(BaseModel):
    account_id: str
    balance: Balance
    tier: str
    created: bool = False
    source: SyncSource = SyncSource.LIVE
    degraded: bool = Field(False, description="Identity provider was not consulted live")

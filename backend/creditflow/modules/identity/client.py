"""Identity provider API client.

Fetches user profiles and memberships. Server errors and transport failures
raise so the calling circuit breaker counts them; 4xx responses raise
``httpx.HTTPStatusError`` too, which the breaker does not count.
"""

from typing import Optional

import httpx

from creditflow.modules.identity.schemas import IdentityProfile, SubscriptionInfo
from creditflow.modules.ledger.models import SubscriptionTier


class IdentityProviderClient:
    """Thin async client for the identity provider's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        product_tiers: Optional[dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root, e.g. ``https://api.whop.com/api/v5``
            api_key: Bearer token for server-to-server calls
            product_tiers: Product id to subscription tier mapping
            http_client: Preconfigured client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.product_tiers = product_tiers or {}
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = http_client or httpx.AsyncClient(base_url=self.base_url, headers=headers)

    async def fetch_user(self, account_id: str) -> IdentityProfile:
        """Fetch a user's profile.

        Raises:
            httpx.HTTPStatusError: non-2xx response
            httpx.TransportError: connection failure
        """
        data = await self._get(f"/users/{account_id}")
        return IdentityProfile(
            account_id=account_id,
            email=data.get("email"),
            username=data.get("username"),
            name=data.get("name"),
        )

    async def fetch_subscription(self, account_id: str) -> SubscriptionInfo:
        """Resolve the user's tier from their first valid, active membership."""
        data = await self._get(f"/users/{account_id}/memberships")
        memberships = data.get("data", []) if isinstance(data, dict) else data
        for membership in memberships or []:
            if membership.get("valid") and membership.get("status") == "active":
                product_id = membership.get("product_id")
                return SubscriptionInfo(
                    tier=self.product_tiers.get(product_id, SubscriptionTier.STARTER.value),
                    subscription_id=membership.get("id"),
                    product_id=product_id,
                    is_active=True,
                )
        return SubscriptionInfo()

    async def _get(self, path: str):
        response = await self._client.get(path)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()

"""API Router for account synchronisation."""

import math

from fastapi import APIRouter, Depends, HTTPException

from creditflow.container import IDENTITY_DEPENDENCY, ServiceContainer, get_container
from creditflow.modules.identity.schemas import AccountSyncResult
from creditflow.modules.identity.service import IdentityUnavailableError

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("/{account_id}/sync", response_model=AccountSyncResult)
async def sync_account(
    account_id: str,
    container: ServiceContainer = Depends(get_container),
) -> AccountSyncResult:
    """Create or refresh the account from the identity provider.

    While the provider is unreachable a known account is served from storage
    with ``degraded=true``; an unknown one gets 503.
    """
    try:
        return await container.account_sync.sync_account(account_id)
    except IdentityUnavailableError:
        retry_after = container.breakers.get(IDENTITY_DEPENDENCY).get_state().retry_after
        raise HTTPException(
            status_code=503,
            detail="Identity provider temporarily unavailable",
            headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
        )

"""API Router for account balances and billing history."""

import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from creditflow.container import DATASTORE_DEPENDENCY, ServiceContainer, get_container
from creditflow.core.circuit_breaker import CircuitOpenError
from creditflow.modules.ledger.schemas import (
    Balance,
    BillingEventInfo,
    PurchaseStats,
    ReconciliationReport,
)
from creditflow.modules.ledger.service import AccountNotFoundError, CreditLedger

router = APIRouter(prefix="/credits", tags=["credits"])


def get_ledger(container: ServiceContainer = Depends(get_container)) -> CreditLedger:
    """Dependency to get the CreditLedger instance."""
    return container.ledger


@router.get("/stats", response_model=PurchaseStats)
async def get_purchase_stats(
    account_id: Optional[str] = Query(None, description="Limit to one account"),
    ledger: CreditLedger = Depends(get_ledger),
) -> PurchaseStats:
    """Completed, refunded and failed credit purchase totals."""
    return await ledger.get_purchase_stats(account_id)


@router.get("/{account_id}", response_model=Balance)
async def get_balance(
    account_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Balance:
    """Current balance. Fails fast with 503 while the datastore breaker is open."""
    try:
        return await container.breakers.get(DATASTORE_DEPENDENCY).execute(
            container.ledger.get_balance, account_id
        )
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")
    except CircuitOpenError as exc:
        raise HTTPException(
            status_code=503,
            detail=f"{exc.dependency} temporarily unavailable",
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
        )


@router.get("/{account_id}/history", response_model=list[BillingEventInfo])
async def get_billing_history(
    account_id: str,
    limit: int = Query(20, ge=1, le=100, description="Maximum events to return"),
    ledger: CreditLedger = Depends(get_ledger),
) -> list[BillingEventInfo]:
    """Most recent billing events first."""
    return await ledger.get_billing_history(account_id, limit)


@router.get("/{account_id}/reconcile", response_model=ReconciliationReport)
async def reconcile_account(
    account_id: str,
    ledger: CreditLedger = Depends(get_ledger),
) -> ReconciliationReport:
    """Compare the stored balance with the net of the account's billing events."""
    try:
        return await ledger.reconcile(account_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")

"""Repository for credit ledger database operations.

Balance changes are single conditional UPDATE statements so that the database
itself rejects an overdraft, even across processes.
"""

import uuid
from decimal import Decimal
from typing import Optional, Sequence, Union

from sqlalchemy import case, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.clock import utcnow
from creditflow.modules.ledger.models import (
    BALANCE_BEARING_STATUSES,
    CREDITS_CURRENCY,
    Account,
    BillingEvent,
    BillingEventStatus,
    BillingEventType,
)


class LedgerRepository:
    """Repository for Account and BillingEvent rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Accounts ====================

    async def get_account(
        self,
        account_id: str,
        for_update: bool = False,
        refresh: bool = False,
    ) -> Optional[Account]:
        query = select(Account).where(Account.id == account_id)
        if for_update:
            query = query.with_for_update()
        if refresh or for_update:
            query = query.execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def create_account(
        self,
        account_id: str,
        email: Optional[str],
        subscription_tier: str,
    ) -> Account:
        account = Account(
            id=account_id,
            email=email,
            subscription_tier=subscription_tier,
            credits_remaining=0,
            credits_used_this_month=0,
            lifetime_credits_used=0,
        )
        self.session.add(account)
        await self.session.flush()
        return account

    async def list_account_ids(self, after: Optional[str] = None, limit: int = 100) -> list[str]:
        query = select(Account.id).order_by(Account.id).limit(limit)
        if after is not None:
            query = query.where(Account.id > after)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    # ==================== Balance Mutations ====================

    async def apply_debit(self, account_id: str, amount: int, count_usage: bool = True) -> bool:
        """Subtract ``amount`` only if the balance covers it.

        Returns:
            False if the account is missing or the balance is too low
        """
        values = {
            "credits_remaining": Account.credits_remaining - amount,
            "updated_at": utcnow(),
        }
        if count_usage:
            values["credits_used_this_month"] = Account.credits_used_this_month + amount
            values["lifetime_credits_used"] = Account.lifetime_credits_used + amount

        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.credits_remaining >= amount)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def apply_credit(self, account_id: str, amount: int, release_usage: int = 0) -> bool:
        """Add ``amount``; optionally hand back usage that was never consumed.

        Usage counters are floored at zero.

        Returns:
            False if the account is missing
        """
        values = {
            "credits_remaining": Account.credits_remaining + amount,
            "updated_at": utcnow(),
        }
        if release_usage > 0:
            values["credits_used_this_month"] = case(
                (
                    Account.credits_used_this_month > release_usage,
                    Account.credits_used_this_month - release_usage,
                ),
                else_=0,
            )
            values["lifetime_credits_used"] = case(
                (
                    Account.lifetime_credits_used > release_usage,
                    Account.lifetime_credits_used - release_usage,
                ),
                else_=0,
            )

        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reset_monthly_usage(self, account_id: str) -> None:
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(credits_used_this_month=0, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # ==================== Billing Events ====================

    async def add_event(
        self,
        account_id: str,
        event_type: BillingEventType,
        credit_delta: int,
        amount: Union[Decimal, int] = 0,
        currency: str = CREDITS_CURRENCY,
        external_payment_id: Optional[str] = None,
        status: BillingEventStatus = BillingEventStatus.COMPLETED,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> BillingEvent:
        event = BillingEvent(
            account_id=account_id,
            type=event_type.value,
            credit_delta=credit_delta,
            amount=Decimal(amount),
            currency=currency,
            external_payment_id=external_payment_id,
            status=status.value,
            description=description,
            event_metadata=metadata or {},
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def get_event_by_payment(
        self,
        payment_id: str,
        event_type: BillingEventType,
        statuses: Sequence[str] = BALANCE_BEARING_STATUSES,
    ) -> Optional[BillingEvent]:
        query = (
            select(BillingEvent)
            .where(
                BillingEvent.external_payment_id == payment_id,
                BillingEvent.type == event_type.value,
                BillingEvent.status.in_(statuses),
            )
            .order_by(BillingEvent.created_at)
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_event(self, event_id: uuid.UUID) -> Optional[BillingEvent]:
        result = await self.session.execute(select(BillingEvent).where(BillingEvent.id == event_id))
        return result.scalar_one_or_none()

    async def update_event_status(
        self,
        event: BillingEvent,
        status: BillingEventStatus,
        metadata_updates: Optional[dict] = None,
    ) -> BillingEvent:
        """Move an event to a new status, appending provenance to its metadata."""
        event.status = status.value
        if metadata_updates:
            # Reassign so the JSON column is marked dirty
            event.event_metadata = {**(event.event_metadata or {}), **metadata_updates}
        event.updated_at = utcnow()
        await self.session.flush()
        return event

    async def list_events(self, account_id: str, limit: int = 20) -> list[BillingEvent]:
        query = (
            select(BillingEvent)
            .where(BillingEvent.account_id == account_id)
            .order_by(desc(BillingEvent.created_at))
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def sum_balance_events(self, account_id: str) -> int:
        query = select(func.coalesce(func.sum(BillingEvent.credit_delta), 0)).where(
            BillingEvent.account_id == account_id,
            BillingEvent.status.in_(BALANCE_BEARING_STATUSES),
        )
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def purchase_totals(self, account_id: Optional[str] = None) -> list[tuple]:
        """Count, credits and money per (status, currency) for purchase events."""
        query = select(
            BillingEvent.status,
            BillingEvent.currency,
            func.count(BillingEvent.id),
            func.coalesce(func.sum(BillingEvent.credit_delta), 0),
            func.coalesce(func.sum(BillingEvent.amount), 0),
        ).where(BillingEvent.type == BillingEventType.CREDIT_PURCHASE.value)
        if account_id is not None:
            query = query.where(BillingEvent.account_id == account_id)
        query = query.group_by(BillingEvent.status, BillingEvent.currency)
        result = await self.session.execute(query)
        return [tuple(row) for row in result.all()]

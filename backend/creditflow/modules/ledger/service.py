"""Credit Ledger service.

Owns every balance mutation. Each operation runs under a per-account lock and
inside one database transaction that both changes the balance and appends the
BillingEvent explaining it, so the balance always equals the net of the
account's balance-bearing events.

Operations open their own transaction by default. A caller that must combine
a ledger mutation with its own writes (the job state machine does this when it
settles a job) passes its session and holds ``account_lock(account_id)`` for
the duration of its transaction.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.core.clock import Clock, utcnow
from creditflow.core.locks import KeyedLocks
from creditflow.core.metrics import (
    LEDGER_DUPLICATE_PAYMENTS_TOTAL,
    LEDGER_MUTATIONS_TOTAL,
    LEDGER_REFUND_CLAMPED_TOTAL,
)
from creditflow.modules.ledger.models import (
    CREDITS_CURRENCY,
    BillingEventStatus,
    BillingEventType,
    SubscriptionTier,
)
from creditflow.modules.ledger.repository import LedgerRepository
from creditflow.modules.ledger.schemas import (
    EVENT_METADATA_MODELS,
    Balance,
    BillingEventInfo,
    EnsureAccountResult,
    MonthlyGrantSummary,
    PaymentCreditResult,
    PurchaseStats,
    ReconciliationReport,
    RefundDebitResult,
)

logger = logging.getLogger(__name__)

# Reasons that consume credits; crediting them back releases usage counters
USAGE_RELEASING_REASONS = frozenset(
    (BillingEventType.SETTLEMENT, BillingEventType.JOB_REFUND)
)

TIER_RANK = {
    SubscriptionTier.STARTER.value: 0,
    SubscriptionTier.GROWTH.value: 1,
    SubscriptionTier.PRO.value: 2,
}

DEFAULT_UPGRADE_BONUS = {
    SubscriptionTier.GROWTH.value: 25,
    SubscriptionTier.PRO.value: 100,
}


# ==================== Errors ====================

class LedgerError(Exception):
    """Base exception for ledger errors."""


class AccountNotFoundError(LedgerError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class InsufficientCreditsError(LedgerError):
    """Business outcome: the account cannot cover the debit. Never retried."""

    def __init__(self, account_id: str, available: int, requested: int):
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Account {account_id} has {available} credits, {requested} requested"
        )


class InvalidAmountError(LedgerError):
    def __init__(self, amount: object):
        self.amount = amount
        super().__init__(f"Credit amount must be a positive integer, got {amount!r}")


class InvalidEventMetadataError(LedgerError):
    def __init__(self, event_type: str, errors: object):
        self.event_type = event_type
        self.errors = errors
        super().__init__(f"Invalid metadata for {event_type} event: {errors}")


# ==================== Helpers ====================

def validate_amount(amount: object) -> int:
    """Accept only positive integers (bools excluded)."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)
    return amount


def validate_event_metadata(event_type: BillingEventType, metadata: Optional[dict]) -> dict:
    """Validate metadata against the closed schema for ``event_type``.

    Returns:
        JSON-ready dict with unset optional keys dropped
    """
    model = EVENT_METADATA_MODELS[event_type.value]
    try:
        return model.model_validate(metadata or {}).model_dump(mode="json", exclude_none=True)
    except ValidationError as exc:
        raise InvalidEventMetadataError(event_type.value, exc.errors()) from exc


def grant_key(account_id: str, period: str) -> str:
    return f"grant:{account_id}:{period}"


class CreditLedger:
    """Per-account credit balances and their append-only billing log."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        locks: Optional[KeyedLocks] = None,
        signup_credits: Optional[dict[str, int]] = None,
        default_signup_credits: int = 5,
        monthly_grants: Optional[dict[str, int]] = None,
        upgrade_bonus: Optional[dict[str, int]] = None,
        clock: Clock = utcnow,
    ):
        self.session_maker = session_maker
        self.locks = locks or KeyedLocks("accounts")
        self.signup_credits = signup_credits if signup_credits is not None else {}
        self.default_signup_credits = default_signup_credits
        self.monthly_grants = monthly_grants if monthly_grants is not None else {}
        self.upgrade_bonus = upgrade_bonus if upgrade_bonus is not None else DEFAULT_UPGRADE_BONUS
        self.clock = clock

    # ==================== Transactions ====================

    def account_lock(self, account_id: str):
        """Lock linearizing all ledger mutations for one account."""
        return self.locks.hold(account_id)

    @asynccontextmanager
    async def _transaction(
        self,
        account_id: str,
        session: Optional[AsyncSession] = None,
    ) -> AsyncIterator[AsyncSession]:
        if session is not None:
            # Caller owns both the transaction and the account lock
            yield session
            return
        async with self.locks.hold(account_id):
            async with self.session_maker() as own_session:
                async with own_session.begin():
                    yield own_session

    # ==================== Accounts ====================

    async def ensure_account(
        self,
        account_id: str,
        email: Optional[str] = None,
        tier: str = SubscriptionTier.STARTER.value,
    ) -> EnsureAccountResult:
        """Create the account on first identity sync, or refresh its profile.

        A new account receives its tier's signup credits as a ``signup_grant``
        event. Moving to a higher tier grants that tier's upgrade bonus once.
        """
        try:
            async with self._transaction(account_id) as session:
                repo = LedgerRepository(session)
                account = await repo.get_account(account_id)
                if account is None:
                    return await self._create_account(repo, account_id, email, tier)

                previous_tier = account.subscription_tier
                if email is not None:
                    account.email = email
                account.subscription_tier = tier
                await session.flush()

                if TIER_RANK.get(tier, 0) > TIER_RANK.get(previous_tier, 0):
                    await self._grant_upgrade_bonus(repo, account_id, previous_tier, tier)

                account = await repo.get_account(account_id, refresh=True)
                return EnsureAccountResult(
                    balance=Balance.from_account(account), created=False, tier=tier
                )
        except IntegrityError:
            # Another process created the account first
            logger.info(f"Account {account_id} created concurrently, using existing row")
            balance = await self.get_balance(account_id)
            return EnsureAccountResult(balance=balance, created=False, tier=tier)

    async def _create_account(
        self,
        repo: LedgerRepository,
        account_id: str,
        email: Optional[str],
        tier: str,
    ) -> EnsureAccountResult:
        await repo.create_account(account_id, email, tier)
        credits = self.signup_credits.get(tier, self.default_signup_credits)
        if credits > 0:
            await repo.apply_credit(account_id, credits)
            await repo.add_event(
                account_id,
                BillingEventType.SIGNUP_GRANT,
                credit_delta=credits,
                amount=credits,
                external_payment_id=f"signup:{account_id}",
                description=f"Welcome credits for {tier} tier",
                metadata=validate_event_metadata(BillingEventType.SIGNUP_GRANT, {"tier": tier}),
            )
        account = await repo.get_account(account_id, refresh=True)
        LEDGER_MUTATIONS_TOTAL.labels(operation="credit", reason="signup_grant").inc()
        logger.info(
            f"Created account {account_id} with {credits} signup credits",
            extra={"account_id": account_id, "tier": tier, "credits": credits},
        )
        return EnsureAccountResult(balance=Balance.from_account(account), created=True, tier=tier)

    async def _grant_upgrade_bonus(
        self,
        repo: LedgerRepository,
        account_id: str,
        previous_tier: str,
        tier: str,
    ) -> None:
        bonus = self.upgrade_bonus.get(tier, 0)
        key = f"upgrade:{account_id}:{tier}"
        if bonus <= 0 or await repo.get_event_by_payment(key, BillingEventType.UPGRADE_BONUS):
            return
        await repo.apply_credit(account_id, bonus)
        await repo.add_event(
            account_id,
            BillingEventType.UPGRADE_BONUS,
            credit_delta=bonus,
            amount=bonus,
            external_payment_id=key,
            description=f"Upgrade bonus for {tier} tier",
            metadata=validate_event_metadata(
                BillingEventType.UPGRADE_BONUS, {"previous_tier": previous_tier, "tier": tier}
            ),
        )
        LEDGER_MUTATIONS_TOTAL.labels(operation="credit", reason="upgrade_bonus").inc()
        logger.info(
            f"Granted {bonus} upgrade bonus credits to {account_id} ({previous_tier} -> {tier})",
            extra={"account_id": account_id, "credits": bonus},
        )

    async def get_balance(self, account_id: str) -> Balance:
        async with self.session_maker() as session:
            account = await LedgerRepository(session).get_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return Balance.from_account(account)

    # ==================== Debit / Credit ====================

    async def debit(
        self,
        account_id: str,
        amount: int,
        reason: BillingEventType = BillingEventType.RESERVATION,
        metadata: Optional[dict] = None,
        description: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Balance:
        """Remove credits if the balance covers them; otherwise change nothing.

        Raises:
            InvalidAmountError: amount is not a positive integer
            AccountNotFoundError: no such account
            InsufficientCreditsError: balance below ``amount``
        """
        validate_amount(amount)
        event_metadata = validate_event_metadata(reason, metadata)

        async with self._transaction(account_id, session) as tx:
            repo = LedgerRepository(tx)
            if not await repo.apply_debit(account_id, amount):
                account = await repo.get_account(account_id, refresh=True)
                if account is None:
                    raise AccountNotFoundError(account_id)
                raise InsufficientCreditsError(account_id, account.credits_remaining, amount)

            await repo.add_event(
                account_id,
                reason,
                credit_delta=-amount,
                amount=amount,
                description=description,
                metadata=event_metadata,
            )
            account = await repo.get_account(account_id, refresh=True)
            balance = Balance.from_account(account)

        LEDGER_MUTATIONS_TOTAL.labels(operation="debit", reason=reason.value).inc()
        logger.info(
            f"Debited {amount} credits from {account_id} ({reason.value}), "
            f"balance {balance.credits_remaining}",
            extra={"account_id": account_id, "delta": -amount, "reason": reason.value},
        )
        return balance

    async def credit(
        self,
        account_id: str,
        amount: int,
        reason: BillingEventType,
        metadata: Optional[dict] = None,
        description: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> Balance:
        """Add credits unconditionally.

        Crediting back a settlement or job refund also releases the matching
        usage counters, since those credits were never consumed.
        """
        validate_amount(amount)
        event_metadata = validate_event_metadata(reason, metadata)
        release_usage = amount if reason in USAGE_RELEASING_REASONS else 0

        async with self._transaction(account_id, session) as tx:
            repo = LedgerRepository(tx)
            if not await repo.apply_credit(account_id, amount, release_usage=release_usage):
                raise AccountNotFoundError(account_id)
            await repo.add_event(
                account_id,
                reason,
                credit_delta=amount,
                amount=amount,
                description=description,
                metadata=event_metadata,
            )
            account = await repo.get_account(account_id, refresh=True)
            balance = Balance.from_account(account)

        LEDGER_MUTATIONS_TOTAL.labels(operation="credit", reason=reason.value).inc()
        logger.info(
            f"Credited {amount} credits to {account_id} ({reason.value}), "
            f"balance {balance.credits_remaining}",
            extra={"account_id": account_id, "delta": amount, "reason": reason.value},
        )
        return balance

    # ==================== Payments ====================

    async def credit_from_payment(
        self,
        account_id: str,
        payment_id: str,
        credit_amount: int,
        amount: Union[Decimal, int, str] = 0,
        currency: str = "usd",
        metadata: Optional[dict] = None,
    ) -> PaymentCreditResult:
        """Apply a purchase exactly once per ``payment_id``.

        A repeated delivery returns ``already_processed=True`` with the current
        balance and changes nothing.

        When the refund for this payment was delivered first, the purchase is
        stored as ``refunded`` and the part of the refund that could not be
        deducted back then is taken back in the same transaction.
        """
        validate_amount(credit_amount)
        purchase_metadata = {**(metadata or {}), "credit_amount": credit_amount}
        validate_event_metadata(BillingEventType.CREDIT_PURCHASE, purchase_metadata)
        refund_offset = 0

        try:
            async with self._transaction(account_id) as tx:
                repo = LedgerRepository(tx)
                existing = await repo.get_event_by_payment(payment_id, BillingEventType.CREDIT_PURCHASE)
                if existing is not None:
                    account = await repo.get_account(account_id)
                    if account is None:
                        raise AccountNotFoundError(account_id)
                    return self._duplicate_payment(account_id, payment_id, Balance.from_account(account), existing.id)

                prior_refund = await repo.get_event_by_payment(payment_id, BillingEventType.REFUND)
                if not await repo.apply_credit(account_id, credit_amount):
                    raise AccountNotFoundError(account_id)
                event = await repo.add_event(
                    account_id,
                    BillingEventType.CREDIT_PURCHASE,
                    credit_delta=credit_amount,
                    amount=Decimal(str(amount)),
                    currency=currency,
                    external_payment_id=payment_id,
                    description=f"Purchased {credit_amount} credits",
                    metadata=validate_event_metadata(BillingEventType.CREDIT_PURCHASE, purchase_metadata),
                )
                if prior_refund is not None:
                    refund_offset = await self._apply_early_refund(repo, account_id, payment_id, prior_refund, event)

                account = await repo.get_account(account_id, refresh=True)
                balance = Balance.from_account(account)
        except IntegrityError:
            # A concurrent delivery in another process won the unique index
            return self._duplicate_payment(account_id, payment_id, await self.get_balance(account_id))

        LEDGER_MUTATIONS_TOTAL.labels(operation="credit", reason="credit_purchase").inc()
        logger.info(
            f"Applied payment {payment_id}: +{credit_amount} credits to {account_id}, "
            f"balance {balance.credits_remaining}",
            extra={"account_id": account_id, "payment_id": payment_id, "delta": credit_amount},
        )
        return PaymentCreditResult(
            balance=balance,
            already_processed=False,
            event_id=event.id,
            refund_offset=refund_offset,
        )

    async def _apply_early_refund(
        self,
        repo: LedgerRepository,
        account_id: str,
        payment_id: str,
        prior_refund,
        purchase,
    ) -> int:
        """Deduct what a refund delivered before its purchase could not take.

        Returns the credits deducted now.
        """
        recorded = prior_refund.event_metadata or {}
        already_deducted = recorded.get("credits_deducted", -prior_refund.credit_delta)
        outstanding = max(recorded.get("requested_credits", already_deducted) - already_deducted, 0)

        account = await repo.get_account(account_id, for_update=True)
        actual = min(outstanding, account.credits_remaining)
        if actual > 0:
            if not await repo.apply_debit(account_id, actual, count_usage=False):
                raise InsufficientCreditsError(account_id, account.credits_remaining, actual)
            # No external id: the unique slot for this payment's refund is taken
            await repo.add_event(
                account_id,
                BillingEventType.REFUND,
                credit_delta=-actual,
                description=f"Refund of {outstanding} credits applied on late purchase ({actual} deducted)",
                metadata=validate_event_metadata(
                    BillingEventType.REFUND,
                    {
                        "requested_credits": outstanding,
                        "credits_deducted": actual,
                        "original_payment_id": payment_id,
                        "refund_id": recorded.get("refund_id"),
                        "reason": "refund_before_purchase",
                        "clamped": actual < outstanding,
                    },
                ),
            )

        provenance = validate_event_metadata(
            BillingEventType.CREDIT_PURCHASE,
            {
                **purchase.event_metadata,
                "refund_id": recorded.get("refund_id"),
                "refunded_at": prior_refund.created_at,
                "refunded_credits": already_deducted + actual,
            },
        )
        await repo.update_event_status(purchase, BillingEventStatus.REFUNDED, provenance)

        logger.warning(
            f"Payment {payment_id} arrived after its refund: {actual} of {outstanding} "
            f"outstanding refund credits deducted from {account_id}",
            extra={
                "event": "refund_before_purchase",
                "account_id": account_id,
                "payment_id": payment_id,
                "requested": outstanding,
                "deducted": actual,
            },
        )
        if actual < outstanding:
            LEDGER_REFUND_CLAMPED_TOTAL.inc()
        return actual

    def _duplicate_payment(
        self,
        account_id: str,
        payment_id: str,
        balance: Balance,
        event_id=None,
    ) -> PaymentCreditResult:
        LEDGER_DUPLICATE_PAYMENTS_TOTAL.inc()
        logger.info(
            f"Payment {payment_id} already processed for {account_id}",
            extra={"account_id": account_id, "payment_id": payment_id},
        )
        return PaymentCreditResult(balance=balance, already_processed=True, event_id=event_id)

    async def debit_for_refund(
        self,
        account_id: str,
        credit_amount: int,
        payment_id: Optional[str] = None,
        refund_id: Optional[str] = None,
        reason: Optional[str] = None,
        amount: Union[Decimal, int, str] = 0,
        currency: str = CREDITS_CURRENCY,
    ) -> RefundDebitResult:
        """Take refunded credits back, never driving the balance negative.

        Deducts ``min(credit_amount, credits_remaining)`` and records both the
        requested and the deducted amount on a ``refund`` event. When
        ``payment_id`` is given the refund is idempotent per payment and the
        original purchase event moves to ``refunded``.
        """
        validate_amount(credit_amount)

        try:
            async with self._transaction(account_id) as tx:
                repo = LedgerRepository(tx)
                if payment_id is not None:
                    existing = await repo.get_event_by_payment(payment_id, BillingEventType.REFUND)
                    if existing is not None:
                        account = await repo.get_account(account_id)
                        if account is None:
                            raise AccountNotFoundError(account_id)
                        return self._duplicate_refund(account_id, payment_id, Balance.from_account(account), existing)

                account = await repo.get_account(account_id, for_update=True)
                if account is None:
                    raise AccountNotFoundError(account_id)

                actual = min(credit_amount, account.credits_remaining)
                if actual > 0 and not await repo.apply_debit(account_id, actual, count_usage=False):
                    # Row is locked and the clamp was computed under that lock
                    raise InsufficientCreditsError(account_id, account.credits_remaining, actual)

                event = await repo.add_event(
                    account_id,
                    BillingEventType.REFUND,
                    credit_delta=-actual,
                    amount=Decimal(str(amount)),
                    currency=currency,
                    external_payment_id=payment_id,
                    description=f"Refund of {credit_amount} credits ({actual} deducted)",
                    metadata=validate_event_metadata(
                        BillingEventType.REFUND,
                        {
                            "requested_credits": credit_amount,
                            "credits_deducted": actual,
                            "original_payment_id": payment_id,
                            "refund_id": refund_id,
                            "reason": reason,
                            "clamped": actual < credit_amount,
                        },
                    ),
                )

                if payment_id is not None:
                    await self._mark_purchase_refunded(repo, payment_id, refund_id, actual)

                account = await repo.get_account(account_id, refresh=True)
                balance = Balance.from_account(account)
        except IntegrityError:
            if payment_id is None:
                raise
            async with self.session_maker() as session:
                repo = LedgerRepository(session)
                existing = await repo.get_event_by_payment(payment_id, BillingEventType.REFUND)
                account = await repo.get_account(account_id)
                if existing is None or account is None:
                    raise
                return self._duplicate_refund(account_id, payment_id, Balance.from_account(account), existing)

        LEDGER_MUTATIONS_TOTAL.labels(operation="debit", reason="refund").inc()
        if actual < credit_amount:
            LEDGER_REFUND_CLAMPED_TOTAL.inc()
            # Needs product follow-up: whether a clamped refund should hold the account
            logger.warning(
                f"Refund clamped for {account_id}: requested {credit_amount}, deducted {actual}",
                extra={
                    "event": "refund_clamped",
                    "account_id": account_id,
                    "payment_id": payment_id,
                    "requested": credit_amount,
                    "deducted": actual,
                },
            )
        else:
            logger.info(
                f"Refunded {actual} credits from {account_id}, balance {balance.credits_remaining}",
                extra={"account_id": account_id, "payment_id": payment_id, "delta": -actual},
            )
        return RefundDebitResult(
            balance=balance,
            requested=credit_amount,
            actual_deducted=actual,
            already_processed=False,
            event_id=event.id,
        )

    async def _mark_purchase_refunded(
        self,
        repo: LedgerRepository,
        payment_id: str,
        refund_id: Optional[str],
        refunded_credits: int,
    ) -> None:
        purchase = await repo.get_event_by_payment(
            payment_id,
            BillingEventType.CREDIT_PURCHASE,
            statuses=(BillingEventStatus.COMPLETED.value,),
        )
        if purchase is None:
            logger.warning(
                f"Refund for payment {payment_id} recorded before its purchase; "
                f"the purchase is reconciled against it on delivery"
            )
            return
        provenance = validate_event_metadata(
            BillingEventType.CREDIT_PURCHASE,
            {
                **purchase.event_metadata,
                "refund_id": refund_id,
                "refunded_at": self.clock(),
                "refunded_credits": refunded_credits,
            },
        )
        await repo.update_event_status(purchase, BillingEventStatus.REFUNDED, provenance)

    def _duplicate_refund(self, account_id: str, payment_id: str, balance: Balance, existing) -> RefundDebitResult:
        LEDGER_DUPLICATE_PAYMENTS_TOTAL.inc()
        logger.info(
            f"Refund for payment {payment_id} already processed for {account_id}",
            extra={"account_id": account_id, "payment_id": payment_id},
        )
        recorded = existing.event_metadata or {}
        return RefundDebitResult(
            balance=balance,
            requested=recorded.get("requested_credits", -existing.credit_delta),
            actual_deducted=-existing.credit_delta,
            already_processed=True,
            event_id=existing.id,
        )

    async def record_failed_payment(
        self,
        account_id: str,
        payment_id: str,
        credit_amount: int = 0,
        amount: Union[Decimal, int, str] = 0,
        currency: str = "usd",
        failure_reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> BillingEventInfo:
        """Keep a failed purchase for audit. Never touches the balance."""
        event_metadata = validate_event_metadata(
            BillingEventType.CREDIT_PURCHASE,
            {**(metadata or {}), "credit_amount": max(credit_amount, 0), "failure_reason": failure_reason},
        )
        async with self._transaction(account_id) as tx:
            repo = LedgerRepository(tx)
            if await repo.get_account(account_id) is None:
                raise AccountNotFoundError(account_id)
            event = await repo.get_event_by_payment(
                payment_id,
                BillingEventType.CREDIT_PURCHASE,
                statuses=(BillingEventStatus.FAILED.value,),
            )
            if event is None:
                event = await repo.add_event(
                    account_id,
                    BillingEventType.CREDIT_PURCHASE,
                    credit_delta=0,
                    amount=Decimal(str(amount)),
                    currency=currency,
                    external_payment_id=payment_id,
                    status=BillingEventStatus.FAILED,
                    description=f"Payment failed: {failure_reason or 'unknown reason'}",
                    metadata=event_metadata,
                )
                logger.info(
                    f"Recorded failed payment {payment_id} for {account_id}",
                    extra={"account_id": account_id, "payment_id": payment_id},
                )
            return BillingEventInfo.model_validate(event)

    # ==================== Monthly Grants ====================

    async def grant_monthly_credits(
        self,
        period: Optional[str] = None,
        batch_size: int = 100,
    ) -> MonthlyGrantSummary:
        """Reset monthly usage and grant each account its tier allowance once per period.

        Args:
            period: Calendar month as ``YYYY-MM``; defaults to the current month
            batch_size: Accounts fetched per page
        """
        period = period or self.clock().strftime("%Y-%m")
        summary = MonthlyGrantSummary(period=period)

        after: Optional[str] = None
        while True:
            async with self.session_maker() as session:
                account_ids = await LedgerRepository(session).list_account_ids(after, batch_size)
            if not account_ids:
                break
            for account_id in account_ids:
                granted = await self._grant_account(account_id, period)
                if granted is None:
                    summary.accounts_skipped += 1
                else:
                    summary.accounts_granted += 1
                    summary.credits_granted += granted
            after = account_ids[-1]

        logger.info(
            f"Monthly grant {period}: {summary.accounts_granted} accounts, "
            f"{summary.credits_granted} credits, {summary.accounts_skipped} skipped"
        )
        return summary

    async def _grant_account(self, account_id: str, period: str) -> Optional[int]:
        key = grant_key(account_id, period)
        async with self._transaction(account_id) as tx:
            repo = LedgerRepository(tx)
            if await repo.get_event_by_payment(key, BillingEventType.MONTHLY_GRANT):
                return None
            account = await repo.get_account(account_id)
            if account is None:
                return None
            credits = self.monthly_grants.get(account.subscription_tier, 0)
            await repo.reset_monthly_usage(account_id)
            if credits > 0:
                await repo.apply_credit(account_id, credits)
            # Recorded even when zero so the period is marked as done
            await repo.add_event(
                account_id,
                BillingEventType.MONTHLY_GRANT,
                credit_delta=credits,
                amount=credits,
                external_payment_id=key,
                description=f"Monthly credits for {period}",
                metadata=validate_event_metadata(
                    BillingEventType.MONTHLY_GRANT,
                    {"period": period, "tier": account.subscription_tier},
                ),
            )
        if credits > 0:
            LEDGER_MUTATIONS_TOTAL.labels(operation="credit", reason="monthly_grant").inc()
        return credits

    # ==================== Reporting ====================

    async def get_billing_history(self, account_id: str, limit: int = 20) -> list[BillingEventInfo]:
        async with self.session_maker() as session:
            events = await LedgerRepository(session).list_events(account_id, limit)
            return [BillingEventInfo.model_validate(event) for event in events]

    async def get_purchase_stats(self, account_id: Optional[str] = None) -> PurchaseStats:
        async with self.session_maker() as session:
            rows = await LedgerRepository(session).purchase_totals(account_id)

        stats = PurchaseStats()
        for status, currency, count, credits, money in rows:
            if status == BillingEventStatus.FAILED.value:
                stats.failed_purchases += count
                continue
            if status == BillingEventStatus.REFUNDED.value:
                stats.refunded_purchases += count
            stats.total_purchases += count
            stats.total_credits += int(credits)
            stats.amount_by_currency[currency] = (
                stats.amount_by_currency.get(currency, Decimal(0)) + Decimal(str(money))
            )
        return stats

    async def reconcile(self, account_id: str) -> ReconciliationReport:
        """Compare the stored balance with the net of its billing events."""
        async with self.session_maker() as session:
            repo = LedgerRepository(session)
            account = await repo.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            event_net = await repo.sum_balance_events(account_id)

        report = ReconciliationReport(
            account_id=account_id,
            credits_remaining=account.credits_remaining,
            event_net=event_net,
            difference=account.credits_remaining - event_net,
        )
        if not report.consistent:
            logger.error(
                f"Ledger mismatch for {account_id}: balance {report.credits_remaining}, "
                f"events {report.event_net}",
                extra={"account_id": account_id, "difference": report.difference},
            )
        return report

"""Property-based tests for payment and refund idempotency.

A payment id credits an account exactly once no matter how often (or how
concurrently) it is delivered; a refund is applied at most once per payment
and never drives the balance negative.
"""

import asyncio
from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from creditflow.modules.ledger.models import BillingEventStatus, BillingEventType
from creditflow.modules.ledger.service import (
    AccountNotFoundError,
    CreditLedger,
)


class TestCreditFromPayment:
    """creditFromPayment is idempotent per payment id."""

    @given(
        credit_amount=st.integers(min_value=1, max_value=500),
        deliveries=st.integers(min_value=2, max_value=6),
    )
    @settings(max_examples=20, deadline=None)
    @pytest.mark.asyncio
    async def test_redelivery_credits_exactly_once(
        self, scratch_database, credit_amount: int, deliveries: int
    ) -> None:
        async with scratch_database() as session_maker:
            ledger = CreditLedger(session_maker, default_signup_credits=0)
            await ledger.ensure_account("acct")

            results = [
                await ledger.credit_from_payment("acct", "pay_1", credit_amount)
                for _ in range(deliveries)
            ]

            assert results[0].already_processed is False
            assert all(result.already_processed for result in results[1:])
            assert all(result.balance.credits_remaining == credit_amount for result in results)
            assert results[1].event_id == results[0].event_id

    @pytest.mark.asyncio
    async def test_scenario_b_webhook_redelivery(self, ledger) -> None:
        await ledger.ensure_account("acct")

        first = await ledger.credit_from_payment("acct", "pay_123", 100, amount="19.99")
        assert first.already_processed is False
        assert first.balance.credits_remaining == 100

        second = await ledger.credit_from_payment("acct", "pay_123", 100, amount="19.99")
        assert second.already_processed is True
        assert second.balance.credits_remaining == 100

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_deliveries(self, ledger) -> None:
        await ledger.ensure_account("acct")

        results = await asyncio.gather(
            *(ledger.credit_from_payment("acct", "pay_race", 40) for _ in range(5))
        )

        assert sum(not result.already_processed for result in results) == 1
        assert (await ledger.get_balance("acct")).credits_remaining == 40
        assert (await ledger.reconcile("acct")).consistent

    @pytest.mark.asyncio
    async def test_distinct_payments_accumulate(self, ledger) -> None:
        await ledger.ensure_account("acct")
        await ledger.credit_from_payment("acct", "pay_a", 10)
        await ledger.credit_from_payment("acct", "pay_b", 15)
        assert (await ledger.get_balance("acct")).credits_remaining == 25

    @pytest.mark.asyncio
    async def test_unknown_account_is_not_recorded(self, ledger) -> None:
        with pytest.raises(AccountNotFoundError):
            await ledger.credit_from_payment("ghost", "pay_ghost", 10)

        await ledger.ensure_account("ghost")
        result = await ledger.credit_from_payment("ghost", "pay_ghost", 10)
        assert result.already_processed is False

    @pytest.mark.asyncio
    async def test_purchase_event_records_money_and_metadata(self, ledger) -> None:
        await ledger.ensure_account("acct")
        await ledger.credit_from_payment(
            "acct",
            "pay_meta",
            50,
            amount=Decimal("9.99"),
            currency="usd",
            metadata={"pack_size": "medium", "receipt_id": "rcpt_1"},
        )

        [event] = await ledger.get_billing_history("acct")
        assert event.type == BillingEventType.CREDIT_PURCHASE.value
        assert event.external_payment_id == "pay_meta"
        assert event.credit_delta == 50
        assert event.amount == Decimal("9.99")
        assert event.metadata["credit_amount"] == 50
        assert event.metadata["pack_size"] == "medium"


class TestDebitForRefund:
    """Refunds are clamped to the balance and applied once per payment."""

    @given(
        purchased=st.integers(min_value=1, max_value=200),
        spent=st.integers(min_value=0, max_value=200),
    )
    @settings(max_examples=20, deadline=None)
    @pytest.mark.asyncio
    async def test_refund_never_drives_balance_negative(
        self, scratch_database, purchased: int, spent: int
    ) -> None:
        async with scratch_database() as session_maker:
            ledger = CreditLedger(session_maker, default_signup_credits=0)
            await ledger.ensure_account("acct")
            await ledger.credit_from_payment("acct", "pay_1", purchased)
            spent = min(spent, purchased)
            if spent:
                await ledger.debit("acct", spent)

            result = await ledger.debit_for_refund("acct", purchased, payment_id="pay_1")

            assert result.requested == purchased
            assert result.actual_deducted == purchased - spent
            assert result.clamped == (spent > 0)
            assert result.balance.credits_remaining == 0
            assert (await ledger.reconcile("acct")).consistent

    @pytest.mark.asyncio
    async def test_clamped_refund_records_requested_and_deducted(self, ledger) -> None:
        await ledger.ensure_account("acct")
        await ledger.credit_from_payment("acct", "pay_1", 100)
        await ledger.debit("acct", 70)

        result = await ledger.debit_for_refund("acct", 100, payment_id="pay_1", refund_id="re_1")

        assert result.actual_deducted == 30
        assert result.clamped
        history = await ledger.get_billing_history("acct")
        refund = next(event for event in history if event.type == BillingEventType.REFUND.value)
        assert refund.credit_delta == -30
        assert refund.metadata["requested_credits"] == 100
        assert refund.metadata["credits_deducted"] == 30
        assert refund.metadata["clamped"] is True

    @pytest.mark.asyncio
    async def test_refund_is_idempotent_per_payment(self, ledger) -> None:
        await ledger.ensure_account("acct")
        await ledger.credit_from_payment("acct", "pay_1", 100)
        await ledger.credit_from_payment("acct", "pay_2", 50)

        first = await ledger.debit_for_refund("acct", 100, payment_id="pay_1")
        second = await ledger.debit_for_refund("acct", 100, payment_id="pay_1")

        assert first.already_processed is False
        assert second.already_processed is True
        assert second.actual_deducted == 100
        assert second.event_id == first.event_id
        assert (await ledger.get_balance("acct")).credits_remaining == 50

    @pytest.mark.asyncio
    async def test_refund_marks_purchase_refunded_and_keeps_it_applied(self, ledger) -> None:
        await ledger.ensure_account("acct")
        await ledger.credit_from_payment("acct", "pay_1", 100)
        await ledger.debit_for_refund("acct", 100, payment_id="pay_1", refund_id="re_9")

        history = await ledger.get_billing_history("acct")
        purchase = next(event for event in history if event.type == BillingEventType.CREDIT_PURCHASE.value)
        assert purchase.status == BillingEventStatus.REFUNDED.value
        assert purchase.metadata["refund_id"] == "re_9"
        assert purchase.metadata["refunded_credits"] == 100
        assert "refunded_at" in purchase.metadata

        # The refunded purchase still holds the payment id slot
        again = await ledger.credit_from_payment("acct", "pay_1", 100)
        assert again.already_processed is True
        assert again.balance.credits_remaining == 0

        stats = await ledger.get_purchase_stats("acct")
        assert stats.total_purchases == 1
        assert stats.refunded_purchases == 1

    @pytest.mark.asyncio
    async def test_refund_without_payment_id_is_not_deduplicated(self, ledger, funded) -> None:
        await funded("acct", 10)
        await ledger.debit_for_refund("acct", 3)
        await ledger.debit_for_refund("acct", 3)
        assert (await ledger.get_balance("acct")).credits_remaining == 4

    @pytest.mark.asyncio
    async def test_refund_delivered_before_purchase_takes_it_back(self, ledger) -> None:
        await ledger.ensure_account("acct")
        early = await ledger.debit_for_refund("acct", 100, payment_id="pay_1", refund_id="re_1")
        assert early.actual_deducted == 0

        purchase = await ledger.credit_from_payment("acct", "pay_1", 100)

        assert purchase.already_processed is False
        assert purchase.refund_offset == 100
        assert purchase.balance.credits_remaining == 0

        history = await ledger.get_billing_history("acct")
        recorded = next(event for event in history if event.type == BillingEventType.CREDIT_PURCHASE.value)
        assert recorded.status == BillingEventStatus.REFUNDED.value
        assert recorded.metadata["refund_id"] == "re_1"
        assert recorded.metadata["refunded_credits"] == 100
        late = [
            event for event in history
            if event.type == BillingEventType.REFUND.value and event.external_payment_id is None
        ]
        assert len(late) == 1
        assert late[0].credit_delta == -100
        assert late[0].metadata["original_payment_id"] == "pay_1"
        assert (await ledger.reconcile("acct")).consistent

        # Redeliveries of either event change nothing
        assert (await ledger.credit_from_payment("acct", "pay_1", 100)).already_processed is True
        assert (await ledger.debit_for_refund("acct", 100, payment_id="pay_1")).already_processed is True
        assert (await ledger.get_balance("acct")).credits_remaining == 0

    @pytest.mark.asyncio
    async def test_late_purchase_deducts_only_what_the_refund_missed(self, ledger, funded) -> None:
        await funded("acct", 40)
        early = await ledger.debit_for_refund("acct", 100, payment_id="pay_1")
        assert early.actual_deducted == 40

        purchase = await ledger.credit_from_payment("acct", "pay_1", 100)

        assert purchase.refund_offset == 60
        # 40 own credits, minus 40 taken early, plus 100 bought, minus the remaining 60
        assert purchase.balance.credits_remaining == 40
        assert (await ledger.reconcile("acct")).consistent


class TestFailedPayments:
    """Failed payments are kept for audit and never touch the balance."""

    @pytest.mark.asyncio
    async def test_failed_payment_recorded_once(self, ledger) -> None:
        await ledger.ensure_account("acct")

        first = await ledger.record_failed_payment("acct", "pay_f", 20, failure_reason="card_declined")
        second = await ledger.record_failed_payment("acct", "pay_f", 20, failure_reason="card_declined")

        assert first.id == second.id
        assert first.status == BillingEventStatus.FAILED.value
        assert first.credit_delta == 0
        assert first.metadata["failure_reason"] == "card_declined"
        assert (await ledger.get_balance("acct")).credits_remaining == 0
        assert (await ledger.reconcile("acct")).consistent

    @pytest.mark.asyncio
    async def test_failed_attempt_does_not_block_later_success(self, ledger) -> None:
        await ledger.ensure_account("acct")
        await ledger.record_failed_payment("acct", "pay_retry", 20)

        result = await ledger.credit_from_payment("acct", "pay_retry", 20)

        assert result.already_processed is False
        assert result.balance.credits_remaining == 20
        stats = await ledger.get_purchase_stats("acct")
        assert stats.failed_purchases == 1
        assert stats.total_purchases == 1
        assert stats.total_credits == 20

"""Tests for payment webhook parsing, signatures and ingestion."""

from decimal import Decimal

import pytest
from hypothesis import given, settings, strategies as st

from creditflow.modules.ledger.models import BillingEventStatus, BillingEventType
from creditflow.modules.ledger.service import AccountNotFoundError, CreditLedger
from creditflow.modules.webhook.schemas import WebhookAction, WebhookOutcome
from creditflow.modules.webhook.service import (
    WebhookIngestor,
    WebhookPayloadError,
    compute_signature,
    parse_payment_event,
    verify_signature,
)


def purchase_event(
    payment_id: str = "pay_123",
    account_id: str = "acct",
    credits=100,
    event_type: str = "payment.succeeded",
) -> dict:
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {
            "id": payment_id,
            "amount_paid": "19.99",
            "currency": "USD",
            "receipt_id": "rcpt_9",
            "metadata": {"userId": account_id, "creditAmount": credits, "packSize": "large"},
        },
    }


def refund_event(payment_id: str = "pay_123", account_id: str = "acct", credits: int = 100) -> dict:
    return {
        "id": "evt_2",
        "type": "payment.refunded",
        "data": {
            "object": {
                "id": "re_1",
                "payment_id": payment_id,
                "amount": 19.99,
                "metadata": {"accountId": account_id, "creditsToPurchase": str(credits)},
            }
        },
    }


class TestSignature:

    def test_accepts_prefixed_and_bare_digests(self) -> None:
        body = b'{"type": "payment.succeeded"}'
        digest = compute_signature(body, "whsec")

        assert verify_signature(body, f"sha256={digest}", "whsec")
        assert verify_signature(body, digest.upper(), "whsec")

    def test_rejects_tampering_and_missing_values(self) -> None:
        body = b'{"type": "payment.succeeded"}'
        digest = compute_signature(body, "whsec")

        assert not verify_signature(body + b" ", digest, "whsec")
        assert not verify_signature(body, digest, "other-secret")
        assert not verify_signature(body, None, "whsec")
        assert not verify_signature(body, digest, "")

    @given(body=st.binary(max_size=256), secret=st.text(min_size=1, max_size=32))
    def test_own_signature_always_verifies(self, body, secret) -> None:
        assert verify_signature(body, compute_signature(body, secret), secret)


class TestParsePaymentEvent:

    def test_purchase_from_flat_data(self) -> None:
        payment = parse_payment_event(purchase_event(), WebhookAction.PURCHASE)

        assert payment.payment_id == "pay_123"
        assert payment.account_id == "acct"
        assert payment.credit_amount == 100
        assert payment.amount == Decimal("19.99")
        assert payment.currency == "usd"
        assert payment.receipt_id == "rcpt_9"
        assert payment.pack_size == "large"
        assert payment.event_id == "evt_1"

    def test_refund_from_nested_object(self) -> None:
        payment = parse_payment_event(refund_event(), WebhookAction.REFUND)

        assert payment.payment_id == "pay_123"
        assert payment.refund_id == "re_1"
        assert payment.credit_amount == 100
        assert payment.account_id == "acct"

    def test_metadata_payment_id_wins(self) -> None:
        event = purchase_event()
        event["data"]["metadata"]["paymentId"] = "pay_from_metadata"
        assert parse_payment_event(event, WebhookAction.PURCHASE).payment_id == "pay_from_metadata"

    def test_falls_back_to_event_id(self) -> None:
        event = purchase_event()
        del event["data"]["id"]
        assert parse_payment_event(event, WebhookAction.PURCHASE).payment_id == "evt_1"

    def test_non_string_ids_are_coerced(self) -> None:
        event = purchase_event(payment_id=987, account_id=42)
        payment = parse_payment_event(event, WebhookAction.PURCHASE)
        assert payment.payment_id == "987"
        assert payment.account_id == "42"

    @pytest.mark.parametrize("credits", [None, 0, -5, "ten", 2.5, True])
    def test_purchase_requires_positive_integer_credits(self, credits) -> None:
        with pytest.raises(WebhookPayloadError):
            parse_payment_event(purchase_event(credits=credits), WebhookAction.PURCHASE)

    def test_failure_tolerates_missing_credits(self) -> None:
        event = purchase_event(credits=None, event_type="payment.failed")
        event["data"]["failure_message"] = "card_declined"

        payment = parse_payment_event(event, WebhookAction.FAILURE)

        assert payment.credit_amount == 0
        assert payment.failure_reason == "card_declined"

    def test_missing_account(self) -> None:
        event = purchase_event()
        del event["data"]["metadata"]["userId"]
        with pytest.raises(WebhookPayloadError):
            parse_payment_event(event, WebhookAction.PURCHASE)


class TestIngest:

    @pytest.mark.asyncio
    async def test_scenario_b_duplicate_delivery(self, ledger, ingestor) -> None:
        await ledger.ensure_account("acct")

        first = await ingestor.ingest(purchase_event())
        second = await ingestor.ingest(purchase_event())

        assert first.status == WebhookOutcome.PROCESSED
        assert first.balance.credits_remaining == 100
        assert first.credits_applied == 100
        assert second.status == WebhookOutcome.DUPLICATE
        assert second.already_processed is True
        assert second.credits_applied == 0
        assert second.balance.credits_remaining == 100

        [event] = await ledger.get_billing_history("acct")
        assert event.metadata["purchase_type"] == "credit_pack"
        assert event.metadata["provider_event_id"] == "evt_1"
        assert event.currency == "usd"

    @pytest.mark.asyncio
    async def test_purchase_aliases_share_idempotency(self, ledger, ingestor) -> None:
        await ledger.ensure_account("acct")

        await ingestor.ingest(purchase_event(event_type="checkout.completed"))
        result = await ingestor.ingest(purchase_event(event_type="charge.succeeded"))

        assert result.status == WebhookOutcome.DUPLICATE
        assert (await ledger.get_balance("acct")).credits_remaining == 100

    @pytest.mark.asyncio
    async def test_refund_after_spending_is_clamped(self, ledger, ingestor) -> None:
        await ledger.ensure_account("acct")
        await ingestor.ingest(purchase_event())
        await ledger.debit("acct", 60)

        result = await ingestor.ingest(refund_event())
        again = await ingestor.ingest(refund_event())

        assert result.status == WebhookOutcome.PROCESSED
        assert result.credits_requested == 100
        assert result.credits_applied == 40
        assert result.balance.credits_remaining == 0
        assert again.status == WebhookOutcome.DUPLICATE
        assert again.credits_applied == 40

        history = await ledger.get_billing_history("acct")
        purchase = next(event for event in history if event.type == BillingEventType.CREDIT_PURCHASE.value)
        assert purchase.status == BillingEventStatus.REFUNDED.value
        assert purchase.metadata["refund_id"] == "re_1"

    @pytest.mark.asyncio
    async def test_failed_payment_recorded(self, ledger, ingestor) -> None:
        await ledger.ensure_account("acct")
        event = purchase_event(event_type="payment.failed")
        event["data"]["failure_message"] = "insufficient_funds"

        result = await ingestor.ingest(event)

        assert result.status == WebhookOutcome.PROCESSED
        assert result.credits_applied == 0
        [record] = await ledger.get_billing_history("acct")
        assert record.status == BillingEventStatus.FAILED.value
        assert record.metadata["failure_reason"] == "insufficient_funds"
        assert (await ledger.get_balance("acct")).credits_remaining == 0

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, ledger, ingestor) -> None:
        result = await ingestor.ingest({"id": "evt_x", "type": "membership.went_valid", "data": {}})
        assert result.status == WebhookOutcome.IGNORED

    @pytest.mark.parametrize("event_type", [["payment.succeeded"], {"name": "payment.succeeded"}, 7, None])
    @pytest.mark.asyncio
    async def test_non_string_type_is_ignored(self, ingestor, event_type) -> None:
        result = await ingestor.ingest({"id": "evt_x", "type": event_type, "data": {}})

        assert result.status == WebhookOutcome.IGNORED
        assert result.event_type == ""

    @pytest.mark.asyncio
    async def test_refund_delivered_before_purchase(self, ledger, ingestor) -> None:
        await ledger.ensure_account("acct")

        refund = await ingestor.ingest(refund_event(credits=100))
        purchase = await ingestor.ingest(purchase_event(credits=100))

        assert refund.status == WebhookOutcome.PROCESSED
        assert refund.credits_applied == 0
        assert purchase.status == WebhookOutcome.PROCESSED
        assert purchase.credits_applied == 0
        assert purchase.balance.credits_remaining == 0
        assert (await ledger.reconcile("acct")).consistent

    @pytest.mark.asyncio
    async def test_invalid_payload_is_acknowledged(self, ledger, ingestor) -> None:
        await ledger.ensure_account("acct")

        result = await ingestor.ingest(purchase_event(credits=0))

        assert result.status == WebhookOutcome.INVALID
        assert "creditAmount" in result.detail
        assert await ledger.get_billing_history("acct") == []

    @pytest.mark.asyncio
    async def test_unknown_account_propagates(self, ingestor) -> None:
        with pytest.raises(AccountNotFoundError):
            await ingestor.ingest(purchase_event(account_id="not-synced"))

    @given(deliveries=st.lists(st.sampled_from(["purchase", "refund"]), min_size=1, max_size=8))
    @settings(max_examples=20, deadline=None)
    @pytest.mark.asyncio
    async def test_any_delivery_order_applies_each_once(self, scratch_database, deliveries) -> None:
        async with scratch_database() as session_maker:
            ledger = CreditLedger(session_maker, default_signup_credits=0)
            ingestor = WebhookIngestor(ledger)
            await ledger.ensure_account("acct")

            for delivery in deliveries:
                event = purchase_event(credits=50) if delivery == "purchase" else refund_event(credits=50)
                await ingestor.ingest(event)

            balance = (await ledger.get_balance("acct")).credits_remaining
            # Whichever arrives first, a refunded payment leaves no credits behind
            if "refund" in deliveries:
                assert balance == 0
            else:
                assert balance == 50
            assert (await ledger.reconcile("acct")).consistent

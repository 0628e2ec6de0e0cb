"""Payment webhook ingestion.

Turns verified provider events into ledger operations. Deliveries are
at-least-once, so every path is idempotent per payment id: a redelivered
purchase or refund is acknowledged without touching the balance.
"""

import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from creditflow.core.metrics import WEBHOOK_EVENTS_TOTAL
from creditflow.modules.ledger.service import CreditLedger
from creditflow.modules.webhook.schemas import (
    PaymentEvent,
    WebhookAction,
    WebhookOutcome,
    WebhookResult,
)

logger = logging.getLogger(__name__)

EVENT_ACTIONS: dict[str, WebhookAction] = {
    "payment.succeeded": WebhookAction.PURCHASE,
    "checkout.completed": WebhookAction.PURCHASE,
    "charge.succeeded": WebhookAction.PURCHASE,
    "payment.refunded": WebhookAction.REFUND,
    "refund.created": WebhookAction.REFUND,
    "payment.failed": WebhookAction.FAILURE,
}

SIGNATURE_PREFIX = "sha256="


class WebhookPayloadError(ValueError):
    """The payload lacks a field the ledger needs. Retrying will not help."""


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, header: Optional[str], secret: str) -> bool:
    """Check an HMAC-SHA256 signature of the raw body.

    Accepts ``sha256=<hex>`` as well as a bare hex digest.
    """
    if not header or not secret:
        return False
    provided = header.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(provided.lower(), compute_signature(body, secret))


def _first(*values: Any) -> Optional[Any]:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _parse_credit_amount(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise WebhookPayloadError(f"creditAmount must be a number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise WebhookPayloadError(f"creditAmount must be an integer, got {value!r}")


def _parse_money(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal(0)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise WebhookPayloadError(f"amount must be numeric, got {value!r}")


def parse_payment_event(event: dict, action: WebhookAction) -> PaymentEvent:
    """Extract the ledger-relevant fields from a provider payload.

    The payment object is ``data.object`` when present, else ``data``. Ids and
    credit amounts may sit in the object's metadata or on the object itself.

    Raises:
        WebhookPayloadError: account id, payment id or a positive credit
            amount (for purchases and refunds) is missing
    """
    data = event.get("data") or {}
    if not isinstance(data, dict):
        raise WebhookPayloadError("data must be an object")
    payment = data.get("object") if isinstance(data.get("object"), dict) else data
    metadata = payment.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise WebhookPayloadError("metadata must be an object")

    account_id = _first(
        metadata.get("accountId"),
        metadata.get("userId"),
        payment.get("user_id"),
    )
    if account_id is None:
        raise WebhookPayloadError("no account id in metadata")

    payment_id = _first(
        metadata.get("paymentId"),
        payment.get("payment_id"),
        payment.get("id"),
        event.get("id"),
    )
    if payment_id is None:
        raise WebhookPayloadError("no payment id")

    credit_amount = _parse_credit_amount(
        _first(metadata.get("creditAmount"), metadata.get("creditsToPurchase"))
    )
    if action != WebhookAction.FAILURE and credit_amount <= 0:
        raise WebhookPayloadError(f"creditAmount must be positive, got {credit_amount}")

    refund_id = payment.get("refund_id")
    if action == WebhookAction.REFUND and refund_id is None and payment.get("id") != payment_id:
        refund_id = payment.get("id")

    return PaymentEvent(
        event_type=event.get("type", ""),
        event_id=_str(event.get("id")),
        payment_id=str(payment_id),
        account_id=str(account_id),
        credit_amount=max(credit_amount, 0),
        amount=_parse_money(_first(payment.get("amount_paid"), payment.get("amount"))),
        currency=str(payment.get("currency") or "usd").lower(),
        receipt_id=_str(payment.get("receipt_id")),
        refund_id=_str(refund_id),
        pack_size=_str(metadata.get("packSize")),
        failure_reason=_str(_first(payment.get("failure_message"), payment.get("error_message"))),
    )


class WebhookIngestor:
    """Routes payment events to the CreditLedger."""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    async def ingest(self, event: dict) -> WebhookResult:
        """Apply one provider event.

        Unknown event types and unusable payloads are acknowledged so the
        provider stops redelivering them. AccountNotFoundError propagates: the
        account may not have synced yet and a redelivery can succeed later.
        """
        raw_type = event.get("type")
        event_type = raw_type if isinstance(raw_type, str) else ""
        logger.info(
            f"Received payment webhook {event_type}",
            extra={"event_type": event_type, "provider_event_id": event.get("id")},
        )

        action = EVENT_ACTIONS.get(event_type)
        if action is None:
            logger.warning(f"Ignoring unhandled webhook type: {event_type}")
            return self._result(WebhookResult(status=WebhookOutcome.IGNORED, event_type=event_type))

        try:
            payment = parse_payment_event(event, action)
        except WebhookPayloadError as exc:
            logger.warning(
                f"Invalid {event_type} payload: {exc}",
                extra={"event_type": event_type, "provider_event_id": event.get("id")},
            )
            return self._result(WebhookResult(
                status=WebhookOutcome.INVALID, event_type=event_type, detail=str(exc)
            ))

        if action == WebhookAction.PURCHASE:
            result = await self._handle_purchase(payment)
        elif action == WebhookAction.REFUND:
            result = await self._handle_refund(payment)
        else:
            result = await self._handle_failure(payment)
        return self._result(result)

    async def _handle_purchase(self, payment: PaymentEvent) -> WebhookResult:
        credited = await self.ledger.credit_from_payment(
            payment.account_id,
            payment.payment_id,
            payment.credit_amount,
            amount=payment.amount,
            currency=payment.currency,
            metadata={
                "pack_size": payment.pack_size,
                "receipt_id": payment.receipt_id,
                "purchase_type": "credit_pack",
                "provider_event_id": payment.event_id,
            },
        )
        return WebhookResult(
            status=WebhookOutcome.DUPLICATE if credited.already_processed else WebhookOutcome.PROCESSED,
            event_type=payment.event_type,
            payment_id=payment.payment_id,
            account_id=payment.account_id,
            already_processed=credited.already_processed,
            balance=credited.balance,
            credits_requested=payment.credit_amount,
            credits_applied=0 if credited.already_processed else payment.credit_amount - credited.refund_offset,
        )

    async def _handle_refund(self, payment: PaymentEvent) -> WebhookResult:
        refunded = await self.ledger.debit_for_refund(
            payment.account_id,
            payment.credit_amount,
            payment_id=payment.payment_id,
            refund_id=payment.refund_id,
            reason="payment_refunded",
            amount=payment.amount,
            currency=payment.currency,
        )
        return WebhookResult(
            status=WebhookOutcome.DUPLICATE if refunded.already_processed else WebhookOutcome.PROCESSED,
            event_type=payment.event_type,
            payment_id=payment.payment_id,
            account_id=payment.account_id,
            already_processed=refunded.already_processed,
            balance=refunded.balance,
            credits_requested=refunded.requested,
            credits_applied=refunded.actual_deducted,
        )

    async def _handle_failure(self, payment: PaymentEvent) -> WebhookResult:
        await self.ledger.record_failed_payment(
            payment.account_id,
            payment.payment_id,
            credit_amount=payment.credit_amount,
            amount=payment.amount,
            currency=payment.currency,
            failure_reason=payment.failure_reason,
            metadata={"provider_event_id": payment.event_id, "receipt_id": payment.receipt_id},
        )
        return WebhookResult(
            status=WebhookOutcome.PROCESSED,
            event_type=payment.event_type,
            payment_id=payment.payment_id,
            account_id=payment.account_id,
            credits_requested=payment.credit_amount,
            credits_applied=0,
        )

    @staticmethod
    def _result(result: WebhookResult) -> WebhookResult:
        WEBHOOK_EVENTS_TOTAL.labels(
            event_type=result.event_type or "unknown", outcome=result.status.value
        ).inc()
        return result

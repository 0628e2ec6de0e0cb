"""Pydantic schemas for payment provider webhooks."""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from creditflow.modules.ledger.schemas import Balance


class WebhookAction(str, Enum):
    """What the ledger does with an event type."""
    PURCHASE = "purchase"
    REFUND = "refund"
    FAILURE = "failure"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID = "invalid"


class PaymentEvent(BaseModel):
    """Fields extracted from a provider payload."""
    event_type: str
    event_id: Optional[str] = None
    payment_id: str
    account_id: str
    credit_amount: int = Field(0, ge=0)
    amount: Decimal = Decimal(0)
    currency: str = "usd"
    receipt_id: Optional[str] = None
    refund_id: Optional[str] = None
    pack_size: Optional[str] = None
    failure_reason: Optional[str] = None


class WebhookResult(BaseModel):
    """Acknowledgement returned to the provider."""
    status: WebhookOutcome
    event_type: str
    payment_id: Optional[str] = None
    account_id: Optional[str] = None
    already_processed: bool = False
    balance: Optional[Balance] = None
    credits_requested: Optional[int] = None
    credits_applied: Optional[int] = None
    detail: Optional[str] = None

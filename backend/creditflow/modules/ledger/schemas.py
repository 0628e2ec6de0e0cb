"""Pydantic schemas for the credit ledger.

Billing event metadata is a closed set: each event type has its own model and
unknown keys are rejected, so records cannot silently drift apart.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from creditflow.modules.ledger.models import Account, BillingEventType


# ==================== Event Metadata ====================

class _EventMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreditPurchaseMetadata(_EventMetadata):
    """Metadata on ``credit_purchase`` events (completed, failed or refunded)."""
    credit_amount: int = Field(..., ge=0)
    pack_size: Optional[str] = None
    receipt_id: Optional[str] = None
    purchase_type: Optional[str] = None
    provider_event_id: Optional[str] = None
    failure_reason: Optional[str] = None
    # Provenance appended when the purchase is refunded
    refund_id: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refunded_credits: Optional[int] = None


class RefundMetadata(_EventMetadata):
    requested_credits: int = Field(..., ge=0)
    credits_deducted: int = Field(..., ge=0)
    original_payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    reason: Optional[str] = None
    clamped: bool = False


class ReservationMetadata(_EventMetadata):
    job_id: Optional[str] = None
    job_type: Optional[str] = None


class SettlementMetadata(_EventMetadata):
    job_id: str
    estimated_credits: int
    actual_credits: int


class JobRefundMetadata(_EventMetadata):
    job_id: str
    attempts: Optional[int] = None
    reason: Optional[str] = None


class MonthlyGrantMetadata(_EventMetadata):
    period: str
    tier: str


class SignupGrantMetadata(_EventMetadata):
    tier: str


class UpgradeBonusMetadata(_EventMetadata):
    previous_tier: str
    tier: str


class AdjustmentMetadata(_EventMetadata):
    note: Optional[str] = None
    operator: Optional[str] = None


EVENT_METADATA_MODELS: dict[str, type[_EventMetadata]] = {
    BillingEventType.CREDIT_PURCHASE.value: CreditPurchaseMetadata,
    BillingEventType.REFUND.value: RefundMetadata,
    BillingEventType.RESERVATION.value: ReservationMetadata,
    BillingEventType.SETTLEMENT.value: SettlementMetadata,
    BillingEventType.JOB_REFUND.value: JobRefundMetadata,
    BillingEventType.MONTHLY_GRANT.value: MonthlyGrantMetadata,
    BillingEventType.SIGNUP_GRANT.value: SignupGrantMetadata,
    BillingEventType.UPGRADE_BONUS.value: UpgradeBonusMetadata,
    BillingEventType.ADJUSTMENT.value: AdjustmentMetadata,
}


# ==================== Results ====================

class Balance(BaseModel):
    """Balance and usage counters of an account."""
    account_id: str
    subscription_tier: str
    credits_remaining: int
    credits_used_this_month: int
    lifetime_credits_used: int

    @classmethod
    def from_account(cls, account: Account) -> "Balance":
        return cls(
            account_id=account.id,
            subscription_tier=account.subscription_tier,
            credits_remaining=account.credits_remaining,
            credits_used_this_month=account.credits_used_this_month,
            lifetime_credits_used=account.lifetime_credits_used,
        )


class EnsureAccountResult(BaseModel):
    balance: Balance
    created: bool
    tier: str


class PaymentCreditResult(BaseModel):
    """Outcome of applying a purchase. A duplicate delivery is a success."""
    balance: Balance
    already_processed: bool
    event_id: Optional[uuid.UUID] = None
    # Credits taken straight back because the refund was delivered first
    refund_offset: int = 0


class RefundDebitResult(BaseModel):
    """Outcome of a refund debit.

    ``actual_deducted`` can be lower than ``requested`` when the account has
    already spent some of the refunded credits.
    """
    balance: Balance
    requested: int
    actual_deducted: int
    already_processed: bool = False
    event_id: Optional[uuid.UUID] = None

    @property
    def clamped(self) -> bool:
        return self.actual_deducted < self.requested


class BillingEventInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    account_id: str
    type: str
    credit_delta: int
    amount: Decimal
    currency: str
    external_payment_id: Optional[str] = None
    status: str
    description: Optional[str] = None
    metadata: dict = Field(default_factory=dict, validation_alias="event_metadata")
    created_at: datetime
    updated_at: Optional[datetime] = None


class PurchaseStats(BaseModel):
    total_purchases: int = 0
    total_credits: int = 0
    amount_by_currency: dict[str, Decimal] = Field(default_factory=dict)
    refunded_purchases: int = 0
    failed_purchases: int = 0


class ReconciliationReport(BaseModel):
    account_id: str
    credits_remaining: int
    event_net: int
    difference: int

    @property
    def consistent(self) -> bool:
        return self.difference == 0


class MonthlyGrantSummary(BaseModel):
    period: str
    accounts_granted: int = 0
    accounts_skipped: int = 0
    credits_granted: int = 0

"""Credit ledger models.

An Account holds the running balance; BillingEvent is the append-only log
that explains it. ``Account.credits_remaining`` always equals the sum of
``credit_delta`` over the account's balance-bearing events.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.core.clock import utcnow
from creditflow.core.database import Base


class SubscriptionTier(str, Enum):
    """Subscription tiers known to the identity provider."""
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"


class BillingEventType(str, Enum):
    """Kinds of balance-affecting transactions."""
    CREDIT_PURCHASE = "credit_purchase"
    REFUND = "refund"
    RESERVATION = "reservation"
    SETTLEMENT = "settlement"
    JOB_REFUND = "job_refund"
    MONTHLY_GRANT = "monthly_grant"
    SIGNUP_GRANT = "signup_grant"
    UPGRADE_BONUS = "upgrade_bonus"
    ADJUSTMENT = "adjustment"


class BillingEventStatus(str, Enum):
    """Billing event status.

    ``refunded`` is only reached from ``completed`` and still counts toward
    the balance: the refund itself is recorded as a separate negative event.
    """
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


BALANCE_BEARING_STATUSES = (
    BillingEventStatus.COMPLETED.value,
    BillingEventStatus.REFUNDED.value,
)

# Currency label for events that move credits rather than money
CREDITS_CURRENCY = "credits"


class Account(Base):
    """A billable entity holding a credit balance.

    The primary key is the identity provider's user id.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscription_tier: Mapped[str] = mapped_column(
        String(20), default=SubscriptionTier.STARTER.value, nullable=False
    )

    # Balance and usage counters
    credits_remaining: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_used_this_month: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_credits_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_accounts_credits_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, credits_remaining={self.credits_remaining})>"

    def has_credits(self, amount: int) -> bool:
        return self.credits_remaining >= amount


class BillingEvent(Base):
    """Append-only record of a balance-affecting transaction.

    Rows are never rewritten. The one permitted mutation is a status change
    (completed -> refunded) that appends provenance to ``event_metadata``;
    ``credit_delta`` and ``amount`` never change after insert.
    """

    __tablename__ = "billing_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)

    # Signed credit movement; summed over balance-bearing events gives the balance
    credit_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Money (or credits, for ledger-internal events)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default=CREDITS_CURRENCY)

    # Idempotency key for provider-driven events
    external_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=BillingEventStatus.COMPLETED.value, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # A payment id is applied at most once per event type; failed attempts
        # are kept for audit and do not take the slot
        Index(
            "uq_billing_events_payment_type",
            "external_payment_id",
            "type",
            unique=True,
            postgresql_where=text("status IN ('completed', 'refunded')"),
            sqlite_where=text("status IN ('completed', 'refunded')"),
        ),
        Index("ix_billing_events_account_created", "account_id", "created_at"),
        Index("ix_billing_events_type_status", "type", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingEvent(id={self.id}, type={self.type}, "
            f"credit_delta={self.credit_delta}, status={self.status})>"
        )

    def is_balance_bearing(self) -> bool:
        return self.status in BALANCE_BEARING_STATUSES

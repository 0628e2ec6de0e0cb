"""Credit ledger: per-account balances and the append-only billing log."""

from creditflow.modules.ledger.models import (
    Account,
    BillingEvent,
    BillingEventStatus,
    BillingEventType,
    SubscriptionTier,
)
from creditflow.modules.ledger.schemas import (
    Balance,
    BillingEventInfo,
    EnsureAccountResult,
    MonthlyGrantSummary,
    PaymentCreditResult,
    PurchaseStats,
    ReconciliationReport,
    RefundDebitResult,
)
from creditflow.modules.ledger.repository import LedgerRepository
from creditflow.modules.ledger.service import (
    AccountNotFoundError,
    CreditLedger,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidEventMetadataError,
    LedgerError,
)

__all__ = [
    # Models
    "Account",
    "BillingEvent",
    "BillingEventStatus",
    "BillingEventType",
    "SubscriptionTier",
    # Schemas
    "Balance",
    "BillingEventInfo",
    "EnsureAccountResult",
    "MonthlyGrantSummary",
    "PaymentCreditResult",
    "PurchaseStats",
    "ReconciliationReport",
    "RefundDebitResult",
    # Repository
    "LedgerRepository",
    # Service
    "CreditLedger",
    "LedgerError",
    "AccountNotFoundError",
    "InsufficientCreditsError",
    "InvalidAmountError",
    "InvalidEventMetadataError",
]

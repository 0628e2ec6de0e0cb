"""Payment webhook module."""

from creditflow.modules.webhook.schemas import (
    PaymentEvent,
    WebhookAction,
    WebhookOutcome,
    WebhookResult,
)
from creditflow.modules.webhook.service import (
    EVENT_ACTIONS,
    WebhookIngestor,
    WebhookPayloadError,
    compute_signature,
    parse_payment_event,
    verify_signature,
)

__all__ = [
    "EVENT_ACTIONS",
    "PaymentEvent",
    "WebhookAction",
    "WebhookIngestor",
    "WebhookOutcome",
    "WebhookPayloadError",
    "WebhookResult",
    "compute_signature",
    "parse_payment_event",
    "verify_signature",
]

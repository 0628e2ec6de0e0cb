"""API Router for payment provider webhooks."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from creditflow.container import ServiceContainer, get_container
from creditflow.modules.ledger.service import AccountNotFoundError
from creditflow.modules.webhook.schemas import WebhookResult
from creditflow.modules.webhook.service import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments", response_model=WebhookResult)
async def handle_payment_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> WebhookResult:
    """Handle payment provider events.

    The signature is checked against the raw body before anything is parsed.
    Redelivered events return 200 with ``already_processed=true``.
    """
    config = container.settings
    payload = await request.body()

    if config.WEBHOOK_SIGNATURE_REQUIRED:
        if not config.PAYMENT_WEBHOOK_SECRET:
            logger.error("PAYMENT_WEBHOOK_SECRET not configured, rejecting webhook")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook secret not configured",
            )
        signature = request.headers.get(config.WEBHOOK_SIGNATURE_HEADER)
        if not verify_signature(payload, signature, config.PAYMENT_WEBHOOK_SECRET):
            logger.warning("Rejected payment webhook with invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Event must be an object")

    try:
        return await container.webhooks.ingest(event)
    except AccountNotFoundError:
        # Not acknowledged: the provider retries once the account has synced
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

"""Celery tasks for scheduled ledger work."""

import asyncio
import logging
from typing import Optional

from creditflow.core.celery_app import celery_app
from creditflow.core.logging import correlation_scope
from creditflow.core.retry import BaseTaskWithRetry

logger = logging.getLogger(__name__)


async def run_monthly_grant(period: Optional[str] = None) -> dict:
    from creditflow.container import build_standalone_container

    container = build_standalone_container()
    try:
        summary = await container.ledger.grant_monthly_credits(
            period, batch_size=container.settings.JOB_SWEEP_BATCH_SIZE
        )
    finally:
        await container.aclose()
    return summary.model_dump(mode="json")


@celery_app.task(
    name="ledger.grant_monthly_credits",
    bind=True,
    base=BaseTaskWithRetry,
    retry_config_name="monthly_grant",
)
def grant_monthly_credits(self: BaseTaskWithRetry, period: Optional[str] = None) -> dict:
    """Grant each account its monthly tier allowance once per calendar month.

    Args:
        period: ``YYYY-MM`` to grant for; defaults to the current month

    Returns:
        dict: Grant summary
    """
    with correlation_scope(self.request.id):
        try:
            return asyncio.run(run_monthly_grant(period))
        except Exception as exc:
            logger.error(f"Monthly credit grant failed: {exc}", exc_info=True)
            self.retry_with_backoff(exc, self.request.retries + 1)

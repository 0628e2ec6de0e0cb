"""Celery tasks for generation job maintenance."""

import asyncio
import logging
from typing import Optional

from creditflow.core.celery_app import celery_app
from creditflow.core.logging import correlation_scope
from creditflow.core.retry import BaseTaskWithRetry

logger = logging.getLogger(__name__)


async def run_lease_sweep() -> dict:
    """Reclaim jobs whose worker stopped heartbeating."""
    from creditflow.container import build_standalone_container

    container = build_standalone_container()
    try:
        result = await container.jobs.reclaim_expired_leases()
    finally:
        await container.aclose()
    return result.model_dump(mode="json")


@celery_app.task(
    name="job.reclaim_expired_leases",
    bind=True,
    base=BaseTaskWithRetry,
    retry_config_name="lease_sweep",
)
def reclaim_expired_leases(self: BaseTaskWithRetry, correlation_id: Optional[str] = None) -> dict:
    """Periodic lease sweep, scheduled by Celery beat.

    Returns:
        dict: Sweep summary (reclaimed / requeued / terminated job counts)
    """
    with correlation_scope(correlation_id or self.request.id):
        try:
            return asyncio.run(run_lease_sweep())
        except Exception as exc:
            logger.error(f"Lease sweep failed: {exc}", exc_info=True)
            self.retry_with_backoff(exc, self.request.retries + 1)

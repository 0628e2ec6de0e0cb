"""Celery application configuration."""

from celery import Celery

from creditflow.core.config import settings

celery_app = Celery(
    "creditflow",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "reclaim-expired-job-leases": {
            "task": "job.reclaim_expired_leases",
            "schedule": float(settings.JOB_SWEEP_INTERVAL_SECONDS),
        },
        "grant-monthly-credits": {
            "task": "ledger.grant_monthly_credits",
            # Daily; the grant is idempotent per account and calendar month
            "schedule": 24 * 60 * 60.0,
        },
    },
)

celery_app.autodiscover_tasks(["creditflow.modules.job", "creditflow.modules.ledger"])

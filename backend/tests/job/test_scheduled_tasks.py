"""Tests for the coroutines behind the scheduled Celery tasks."""

import pytest

import creditflow.container
from creditflow.container import build_container
from creditflow.core.config import Settings
from creditflow.modules.job.models import JobStatus
from creditflow.modules.job.tasks import run_lease_sweep
from creditflow.modules.ledger.tasks import run_monthly_grant


@pytest.fixture
async def standalone(session_maker, monkeypatch):
    """Point the tasks' standalone container at the scratch database."""
    config = Settings(
        JOB_LEASE_SECONDS=0,
        SIGNUP_CREDITS={"starter": 0},
        DEFAULT_SIGNUP_CREDITS=0,
        MONTHLY_CREDIT_GRANTS={"starter": 5},
    )
    containers = []

    def build():
        container = build_container(config, session_maker=session_maker)
        containers.append(container)
        return container

    monkeypatch.setattr(creditflow.container, "build_standalone_container", build)
    yield build
    for container in containers:
        await container.aclose()


class TestScheduledTasks:

    @pytest.mark.asyncio
    async def test_lease_sweep_requeues_stalled_job(self, standalone) -> None:
        container = standalone()
        await container.ledger.ensure_account("acct")
        await container.ledger.credit_from_payment("acct", "pay_1", 10)
        job_id = await container.jobs.enqueue("acct", {"prompt": "sticker"}, estimated_credits=4)
        await container.jobs.claim_next_job("worker-gone")

        summary = await run_lease_sweep()

        assert summary["reclaimed"] == 1
        assert summary["requeued"] == 1
        assert summary["job_ids"] == [str(job_id)]
        assert (await container.jobs.get_status(job_id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_monthly_grant(self, standalone) -> None:
        container = standalone()
        await container.ledger.ensure_account("acct")

        first = await run_monthly_grant("2026-05")
        second = await run_monthly_grant("2026-05")

        assert first["accounts_granted"] == 1
        assert first["credits_granted"] == 5
        assert second["accounts_skipped"] == 1
        assert (await container.ledger.get_balance("acct")).credits_remaining == 5

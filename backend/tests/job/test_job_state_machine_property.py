"""Property-based tests for the generation job state machine.

Covers the lifecycle graph, the retry limit and the credit flow that
follows a job: reserve on enqueue, settle unused credits on completion and
return the whole reservation when retries run out.
"""

import asyncio
import uuid

import pytest
from hypothesis import given, settings, strategies as st

from creditflow.modules.job.models import LEGAL_TRANSITIONS, JobStatus, is_legal_transition
from creditflow.modules.job.repository import JobRepository
from creditflow.modules.job.schemas import TransitionDetails
from creditflow.modules.job.service import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStateMachine,
)
from creditflow.modules.ledger.models import BillingEventType, SubscriptionTier
from creditflow.modules.ledger.service import (
    AccountNotFoundError,
    CreditLedger,
    InsufficientCreditsError,
)

GENERATION = {"job_type": "generation", "template_id": "tshirt-front", "prompt": "a red fox"}

status_strategy = st.sampled_from(list(JobStatus))


def processing(worker_id: str = "worker-1") -> TransitionDetails:
    return TransitionDetails(worker_id=worker_id)


class TestLegalTransitions:
    """The lifecycle graph and retry limit as a pure function."""

    @given(
        from_status=status_strategy,
        to_status=status_strategy,
        attempts=st.integers(min_value=0, max_value=10),
        max_attempts=st.integers(min_value=1, max_value=10),
    )
    @settings(max_examples=200)
    def test_only_graph_edges_are_legal(self, from_status, to_status, attempts, max_attempts) -> None:
        legal = is_legal_transition(from_status, to_status, attempts, max_attempts)
        if to_status not in LEGAL_TRANSITIONS[from_status]:
            assert legal is False
        elif from_status == JobStatus.FAILED:
            assert legal == (attempts < max_attempts)
        else:
            assert legal is True

    @given(to_status=status_strategy, attempts=st.integers(min_value=0, max_value=10))
    def test_completed_is_terminal(self, to_status, attempts) -> None:
        assert not is_legal_transition(JobStatus.COMPLETED, to_status, attempts, 10)

    @given(to_status=status_strategy)
    def test_no_self_loops(self, to_status) -> None:
        assert not is_legal_transition(to_status, to_status, 0, 3)


class TestCreditFlow:
    """Reservation, settlement and refund follow the job."""

    @pytest.mark.asyncio
    async def test_scenario_a_fail_retry_complete(self, ledger, jobs, funded) -> None:
        account_id = await funded("acct", 100)

        job_id = await jobs.enqueue(account_id, GENERATION, estimated_credits=10)
        assert (await ledger.get_balance(account_id)).credits_remaining == 90

        await jobs.transition(job_id, JobStatus.PROCESSING, processing())
        failed = await jobs.transition(
            job_id, JobStatus.FAILED, TransitionDetails(worker_id="worker-1", error="model timeout")
        )
        assert failed.requeued is True
        assert failed.to_status == JobStatus.QUEUED
        assert failed.attempts == 1
        assert failed.terminal is False
        assert (await ledger.get_balance(account_id)).credits_remaining == 90

        await jobs.transition(job_id, JobStatus.PROCESSING, processing())
        completed = await jobs.transition(
            job_id,
            JobStatus.COMPLETED,
            TransitionDetails(worker_id="worker-1", actual_credits=8, result={"image_url": "s3://out.png"}),
        )
        assert completed.terminal is True
        assert completed.credits_returned == 2
        assert completed.balance.credits_remaining == 92

        status = await jobs.get_status(job_id)
        assert status.status == JobStatus.COMPLETED
        assert status.terminal is True
        assert status.actual_credits == 8
        assert status.progress == 100
        assert status.result == {"image_url": "s3://out.png"}

        events = await jobs.get_job_events(job_id)
        assert [(event.from_status, event.to_status) for event in events] == [
            (None, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.FAILED),
            (JobStatus.FAILED, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
        ]
        assert [event.sequence for event in events] == [1, 2, 3, 4, 5, 6]
        assert (await ledger.reconcile(account_id)).consistent

    @pytest.mark.asyncio
    async def test_insufficient_credits_creates_no_job(self, ledger, jobs, funded) -> None:
        account_id = await funded("acct", 5)

        with pytest.raises(InsufficientCreditsError):
            await jobs.enqueue(account_id, GENERATION, estimated_credits=10)

        assert await jobs.get_active_jobs(account_id) == []
        assert (await jobs.get_queue_stats()).queued == 0
        assert (await ledger.get_balance(account_id)).credits_remaining == 5

    @pytest.mark.asyncio
    async def test_failed_job_insert_returns_reservation(self, ledger, jobs, funded, monkeypatch) -> None:
        account_id = await funded("acct", 50)

        async def broken_create_job(self, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(JobRepository, "create_job", broken_create_job)

        with pytest.raises(RuntimeError, match="disk full"):
            await jobs.enqueue(account_id, GENERATION, estimated_credits=10)

        balance = await ledger.get_balance(account_id)
        assert balance.credits_remaining == 50
        assert balance.credits_used_this_month == 0
        assert balance.lifetime_credits_used == 0
        history = await ledger.get_billing_history(account_id)
        reservation = next(event for event in history if event.type == BillingEventType.RESERVATION.value)
        refund = next(event for event in history if event.type == BillingEventType.JOB_REFUND.value)
        assert refund.credit_delta == 10
        assert refund.metadata["reason"] == "job_creation_failed"
        assert refund.metadata["job_id"] == reservation.metadata["job_id"]
        assert await jobs.get_active_jobs(account_id) == []
        assert (await ledger.reconcile(account_id)).consistent

    @pytest.mark.asyncio
    async def test_unknown_account_creates_no_job(self, jobs) -> None:
        with pytest.raises(AccountNotFoundError):
            await jobs.enqueue("ghost", GENERATION, estimated_credits=1)
        assert (await jobs.get_queue_stats()).queued == 0

    @pytest.mark.asyncio
    async def test_reservation_event_references_job(self, ledger, jobs, funded) -> None:
        account_id = await funded("acct", 20)
        job_id = await jobs.enqueue(account_id, {"job_type": "upscale"}, estimated_credits=4)

        history = await ledger.get_billing_history(account_id)
        reservation = next(event for event in history if event.type == BillingEventType.RESERVATION.value)
        assert reservation.credit_delta == -4
        assert reservation.metadata == {"job_id": str(job_id), "job_type": "upscale"}

    @pytest.mark.asyncio
    async def test_terminal_failure_refunds_full_reservation(self, ledger, jobs, funded) -> None:
        account_id = await funded("acct", 50)
        job_id = await jobs.enqueue(account_id, GENERATION, estimated_credits=10, max_attempts=1)

        await jobs.transition(job_id, JobStatus.PROCESSING, processing())
        first = await jobs.transition(job_id, JobStatus.FAILED, TransitionDetails(error="boom"))
        assert first.requeued and first.attempts == 1

        await jobs.transition(job_id, JobStatus.PROCESSING, processing())
        final = await jobs.transition(job_id, JobStatus.FAILED, TransitionDetails(error="boom again"))

        assert final.terminal is True
        assert final.requeued is False
        assert final.to_status == JobStatus.FAILED
        assert final.credits_returned == 10
        assert final.balance.credits_remaining == 50
        assert final.balance.credits_used_this_month == 0

        status = await jobs.get_status(job_id)
        assert status.terminal is True
        assert status.error == "boom again"

        with pytest.raises(InvalidTransitionError):
            await jobs.retry_job(job_id)

        history = await ledger.get_billing_history(account_id)
        [refund] = [event for event in history if event.type == BillingEventType.JOB_REFUND.value]
        assert refund.credit_delta == 10
        assert refund.metadata["job_id"] == str(job_id)
        assert refund.metadata["attempts"] == 1
        assert (await ledger.reconcile(account_id)).consistent

    @pytest.mark.asyncio
    async def test_overage_is_never_charged(self, ledger, jobs, funded) -> None:
        account_id = await funded("acct", 30)
        job_id = await jobs.enqueue(account_id, GENERATION, estimated_credits=10)

        await jobs.transition(job_id, JobStatus.PROCESSING, processing())
        result = await jobs.transition(
            job_id, JobStatus.COMPLETED, TransitionDetails(worker_id="worker-1", actual_credits=15)
        )

        assert result.credits_returned == 0
        assert (await ledger.get_balance(account_id)).credits_remaining == 20
        assert (await jobs.get_status(job_id)).actual_credits == 10
        events = await jobs.get_job_events(job_id)
        assert events[-1].details["uncharged_overage"] == 5

    @pytest.mark.asyncio
    async def test_completion_without_actual_consumes_reservation(self, ledger, jobs, funded) -> None:
        account_id = await funded("acct", 30)
        job_id = await jobs.enqueue(account_id, GENERATION, estimated_credits=10)
        await jobs.transition(job_id, JobStatus.PROCESSING, processing())

        result = await jobs.transition(job_id, JobStatus.COMPLETED, processing())

        assert result.credits_returned == 0
        assert (await ledger.get_balance(account_id)).credits_remaining == 20

    @pytest.mark.asyncio
    async def test_manual_retry_when_auto_requeue_disabled(self, session_maker, ledger, funded) -> None:
        machine = JobStateMachine(session_maker, ledger, max_attempts=2, auto_requeue=False)
        account_id = await funded("acct", 10)
        job_id = await machine.enqueue(account_id, GENERATION, estimated_credits=3)

        await machine.transition(job_id, JobStatus.PROCESSING, processing())
        failed = await machine.transition(job_id, JobStatus.FAILED, TransitionDetails(error="oops"))
        assert failed.to_status == JobStatus.FAILED
        assert failed.requeued is False
        assert failed.terminal is False
        assert (await machine.get_status(job_id)).terminal is False

        retried = await machine.retry_job(job_id)
        assert retried.to_status == JobStatus.QUEUED
        assert retried.attempts == 1
        assert (await ledger.get_balance(account_id)).credits_remaining == 7


class TestIllegalTransitions:

    @pytest.mark.asyncio
    async def test_completed_job_rejects_every_transition(self, jobs, funded) -> None:
        account_id = await funded("acct", 10)
        job_id = await jobs.enqueue(account_id, GENERATION, estimated_credits=2)
        await jobs.transition(job_id, JobStatus.PROCESSING, processing())
        await jobs.transition(job_id, JobStatus.COMPLETED, TransitionDetails(actual_credits=2))

        for status in (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.COMPLETED):
            with pytest.raises(InvalidTransitionError) as excinfo:
                await jobs.transition(job_id, status)
            assert excinfo.value.from_status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_queued_cannot_skip_processing(self, ledger, jobs, funded) -> None:
        account_id = await funded("acct", 10)
        job_id = await jobs.enqueue(account_id, GENERATION, estimated_credits=2)

        with pytest.raises(InvalidTransitionError):
            await jobs.transition(job_id, JobStatus.COMPLETED)

        status = await jobs.get_status(job_id)
        assert status.status == JobStatus.QUEUED
        assert (await ledger.get_balance(account_id)).credits_remaining == 8
        assert len(await jobs.get_job_events(job_id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_job(self, jobs) -> None:
        with pytest.raises(JobNotFoundError):
            await jobs.transition(uuid.uuid4(), JobStatus.PROCESSING)
        with pytest.raises(JobNotFoundError):
            await jobs.get_status(uuid.uuid4())


class TestLifecycleProperties:

    @given(
        estimated=st.integers(min_value=1, max_value=20),
        max_attempts=st.integers(min_value=1, max_value=3),
        outcomes=st.lists(
            st.one_of(
                st.just("fail"),
                st.integers(min_value=0, max_value=30).map(lambda actual: ("complete", actual)),
            ),
            min_size=1,
            max_size=6,
        ),
    )
    @settings(max_examples=25, deadline=None)
    @pytest.mark.asyncio
    async def test_balance_follows_job_outcome(
        self, scratch_database, estimated, max_attempts, outcomes
    ) -> None:
        async with scratch_database() as session_maker:
            ledger = CreditLedger(session_maker, default_signup_credits=0)
            machine = JobStateMachine(session_maker, ledger, max_attempts=max_attempts)
            await ledger.ensure_account("acct", tier=SubscriptionTier.STARTER.value)
            await ledger.credit("acct", 100, BillingEventType.ADJUSTMENT)

            job_id = await machine.enqueue("acct", GENERATION, estimated_credits=estimated)
            expected_balance = 100 - estimated

            for outcome in outcomes:
                status = await machine.get_status(job_id)
                if status.terminal:
                    break
                await machine.transition(job_id, JobStatus.PROCESSING, processing())
                if outcome == "fail":
                    result = await machine.transition(job_id, JobStatus.FAILED, TransitionDetails(error="x"))
                    if result.terminal:
                        expected_balance += estimated
                else:
                    _, actual = outcome
                    await machine.transition(
                        job_id, JobStatus.COMPLETED, TransitionDetails(actual_credits=actual)
                    )
                    expected_balance += estimated - min(actual, estimated)

            status = await machine.get_status(job_id)
            assert status.attempts <= status.max_attempts
            assert (await ledger.get_balance("acct")).credits_remaining == expected_balance
            assert (await ledger.reconcile("acct")).consistent

            # Every recorded step is an edge of the lifecycle graph
            events = await machine.get_job_events(job_id)
            assert events[0].from_status is None
            for event in events[1:]:
                assert event.to_status in LEGAL_TRANSITIONS[event.from_status]
            for previous, current in zip(events, events[1:]):
                assert current.from_status == previous.to_status

    @given(count=st.integers(min_value=2, max_value=8))
    @settings(max_examples=10, deadline=None)
    @pytest.mark.asyncio
    async def test_concurrent_enqueues_never_overdraw(self, scratch_database, count) -> None:
        async with scratch_database() as session_maker:
            ledger = CreditLedger(session_maker, default_signup_credits=0)
            machine = JobStateMachine(session_maker, ledger)
            await ledger.ensure_account("acct")
            await ledger.credit("acct", 25, BillingEventType.ADJUSTMENT)

            results = await asyncio.gather(
                *(machine.enqueue("acct", GENERATION, estimated_credits=10) for _ in range(count)),
                return_exceptions=True,
            )

            created = [result for result in results if isinstance(result, uuid.UUID)]
            rejected = [result for result in results if isinstance(result, InsufficientCreditsError)]
            assert len(created) == min(count, 2)
            assert len(created) + len(rejected) == count
            assert len(await machine.get_active_jobs("acct")) == len(created)
            assert (await ledger.get_balance("acct")).credits_remaining == 25 - 10 * len(created)

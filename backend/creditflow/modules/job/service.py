"""Generation Job State Machine.

Drives a job through Queued -> Processing -> {Completed | Failed}. A failed
job re-enters Queued (attempts + 1) while ``attempts < max_attempts``; once
the attempts are spent, Failed is terminal.

Credits follow the job:
- enqueue reserves ``estimated_credits`` before the job row exists
- Completed credits back ``estimated - actual`` as a settlement
- terminal Failed credits back the full reservation

An automatic requeue waits out an exponential backoff before workers can
claim the job again; a manual retry is offered immediately.

Transitions are linearized per job id. Ledger writes that settle a job run in
the same transaction as the job update, under the job lock and then the
account lock (always in that order).
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditflow.core.clock import Clock, utcnow
from creditflow.core.locks import KeyedLocks
from creditflow.core.metrics import JOB_LEASES_RECLAIMED_TOTAL, JOB_TRANSITIONS_TOTAL
from creditflow.core.retry import RetryConfig
from creditflow.modules.job.models import (
    GenerationJob,
    JobStatus,
    is_legal_transition,
)
from creditflow.modules.job.repository import JobRepository
from creditflow.modules.job.schemas import (
    ClaimedJob,
    GenerationSpec,
    JobEventInfo,
    JobStatusInfo,
    QueueStats,
    SweepResult,
    TransitionDetails,
    TransitionResult,
)
from creditflow.modules.ledger.models import BillingEventType
from creditflow.modules.ledger.schemas import Balance
from creditflow.modules.ledger.service import CreditLedger, validate_amount

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "lease_expired"


# ==================== Errors ====================

class JobError(Exception):
    """Base exception for job errors."""


class JobNotFoundError(JobError):
    def __init__(self, job_id: uuid.UUID):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidTransitionError(JobError):
    """An illegal edge was requested. This is a bug in the caller."""

    def __init__(self, job_id: uuid.UUID, from_status: JobStatus, to_status: JobStatus):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Job {job_id}: illegal transition {from_status.value} -> {to_status.value}"
        )


class LeaseExpiredError(JobError):
    """The caller no longer holds the job's lease and must stop working on it."""

    def __init__(self, job_id: uuid.UUID, worker_id: Optional[str], reason: str):
        self.job_id = job_id
        self.worker_id = worker_id
        self.reason = reason
        super().__init__(f"Job {job_id}: lease not held by {worker_id or 'caller'} ({reason})")


class JobStateMachine:
    """Owns every GenerationJob mutation."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        locks: Optional[KeyedLocks] = None,
        max_attempts: int = 3,
        lease_seconds: int = 300,
        auto_requeue: bool = True,
        poll_interval_seconds: int = 2,
        sweep_batch_size: int = 100,
        retry_backoff: Optional[RetryConfig] = None,
        clock: Clock = utcnow,
    ):
        self.session_maker = session_maker
        self.ledger = ledger
        self.locks = locks or KeyedLocks("jobs")
        self.max_attempts = max_attempts
        self.lease = timedelta(seconds=lease_seconds)
        self.auto_requeue = auto_requeue
        self.poll_interval_seconds = poll_interval_seconds
        self.sweep_batch_size = sweep_batch_size
        self.retry_backoff = retry_backoff or RetryConfig(
            max_attempts=max_attempts, initial_delay=5.0, max_delay=300.0, backoff_multiplier=2.0
        )
        self.clock = clock

    # ==================== Enqueue ====================

    async def enqueue(
        self,
        account_id: str,
        spec: Union[GenerationSpec, dict],
        estimated_credits: int,
        max_attempts: Optional[int] = None,
    ) -> uuid.UUID:
        """Reserve credits, then create the job.

        The reservation happens first; if it fails no job exists and the
        caller sees the ledger error (usually InsufficientCreditsError). If the
        job row cannot be written afterwards, the reservation is credited back
        before the error propagates.
        """
        validate_amount(estimated_credits)
        if not isinstance(spec, GenerationSpec):
            spec = GenerationSpec.model_validate(spec)
        job_id = uuid.uuid4()

        await self.ledger.debit(
            account_id,
            estimated_credits,
            BillingEventType.RESERVATION,
            metadata={"job_id": str(job_id), "job_type": spec.job_type.value},
        )

        try:
            async with self.session_maker() as session:
                async with session.begin():
                    repo = JobRepository(session)
                    job = await repo.create_job(
                        job_id=job_id,
                        account_id=account_id,
                        job_type=spec.job_type.value,
                        spec=spec.model_dump(mode="json"),
                        priority=spec.priority,
                        estimated_credits=estimated_credits,
                        max_attempts=max_attempts or self.max_attempts,
                    )
                    await repo.add_event(job, None, JobStatus.QUEUED, {"estimated_credits": estimated_credits})
        except Exception:
            logger.error(
                f"Job {job_id} could not be created, returning {estimated_credits} reserved credits",
                exc_info=True,
                extra={"job_id": str(job_id), "account_id": account_id},
            )
            await self.ledger.credit(
                account_id,
                estimated_credits,
                BillingEventType.JOB_REFUND,
                metadata={"job_id": str(job_id), "reason": "job_creation_failed"},
            )
            raise

        JOB_TRANSITIONS_TOTAL.labels(from_state="none", to_state=JobStatus.QUEUED.value).inc()
        logger.info(
            f"Enqueued job {job_id} for {account_id} reserving {estimated_credits} credits",
            extra={"job_id": str(job_id), "account_id": account_id},
        )
        return job_id

    # ==================== Transitions ====================

    async def transition(
        self,
        job_id: uuid.UUID,
        new_status: JobStatus,
        details: Optional[TransitionDetails] = None,
    ) -> TransitionResult:
        """Apply one legal edge.

        A non-terminal failure is requeued immediately when auto-requeue is
        enabled; the result then reports ``to_status=queued``.

        Raises:
            JobNotFoundError: no such job
            InvalidTransitionError: the edge is not allowed from the current state
            LeaseExpiredError: a worker other than the lease holder reported
        """
        return await self._locked_transition(
            job_id,
            JobStatus(new_status),
            details or TransitionDetails(),
            requeue=self.auto_requeue,
        )

    async def retry_job(self, job_id: uuid.UUID) -> TransitionResult:
        """Manually requeue a failed job that still has attempts left."""
        return await self.transition(job_id, JobStatus.QUEUED)

    async def _locked_transition(
        self,
        job_id: uuid.UUID,
        new_status: JobStatus,
        details: TransitionDetails,
        requeue: bool,
        expect: Optional[JobStatus] = None,
        expired_at: Optional[datetime] = None,
    ) -> Optional[TransitionResult]:
        account_id = await self._get_account_id(job_id)

        async with self.locks.hold(job_id):
            async with self.ledger.account_lock(account_id):
                async with self.session_maker() as session:
                    async with session.begin():
                        repo = JobRepository(session)
                        job = await repo.get_job(job_id, for_update=True)
                        if job is None:
                            raise JobNotFoundError(job_id)

                        # Guards for the sweep and for claims; losing a race is not a bug
                        if expect is not None and job.status != expect.value:
                            return None
                        if expired_at is not None and not job.lease_expired(expired_at):
                            return None

                        result = await self._apply(session, repo, job, new_status, details, requeue)

        JOB_TRANSITIONS_TOTAL.labels(
            from_state=result.from_status.value, to_state=new_status.value
        ).inc()
        if result.requeued:
            JOB_TRANSITIONS_TOTAL.labels(
                from_state=JobStatus.FAILED.value, to_state=JobStatus.QUEUED.value
            ).inc()
        logger.info(
            f"Job {job_id}: {result.from_status.value} -> {result.to_status.value} "
            f"(attempts {result.attempts})",
            extra={
                "job_id": str(job_id),
                "account_id": account_id,
                "requeued": result.requeued,
                "terminal": result.terminal,
                "credits_returned": result.credits_returned,
            },
        )
        return result

    async def _apply(
        self,
        session: AsyncSession,
        repo: JobRepository,
        job: GenerationJob,
        to_status: JobStatus,
        details: TransitionDetails,
        requeue: bool,
    ) -> TransitionResult:
        from_status = JobStatus(job.status)

        # A worker reporting on a job it no longer holds was fenced off by the
        # lease sweep or by another worker's claim
        if details.worker_id is not None and to_status in (JobStatus.COMPLETED, JobStatus.FAILED):
            if from_status != JobStatus.PROCESSING:
                raise LeaseExpiredError(job.id, details.worker_id, f"job is {from_status.value}")
            if job.worker_id is not None and job.worker_id != details.worker_id:
                raise LeaseExpiredError(job.id, details.worker_id, "lease held by another worker")

        if not is_legal_transition(from_status, to_status, job.attempts, job.max_attempts):
            logger.error(
                f"Rejected illegal transition for job {job.id}: "
                f"{from_status.value} -> {to_status.value}",
                extra={
                    "job_id": str(job.id),
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                },
            )
            raise InvalidTransitionError(job.id, from_status, to_status)

        now = self.clock()
        result = TransitionResult(
            job_id=job.id,
            from_status=from_status,
            to_status=to_status,
            attempts=job.attempts,
        )

        if to_status == JobStatus.PROCESSING:
            self._start(job, details, now)
            await repo.add_event(job, from_status, to_status, {"worker_id": details.worker_id})

        elif to_status == JobStatus.COMPLETED:
            event_details = await self._complete(session, job, details, now, result)
            await repo.add_event(job, from_status, to_status, event_details)

        elif to_status == JobStatus.FAILED:
            self._fail(job, details, now)
            await repo.add_event(
                job,
                from_status,
                to_status,
                {"error": details.error, "worker_id": details.worker_id},
            )
            if not job.can_retry():
                result.terminal = True
                result.balance = await self._refund_reservation(session, job)
                result.credits_returned = job.estimated_credits
            elif requeue:
                self._requeue(job, now, backoff=True)
                await repo.add_event(
                    job,
                    JobStatus.FAILED,
                    JobStatus.QUEUED,
                    {"automatic": True, "next_retry_at": job.next_retry_at.isoformat()},
                )
                result.requeued = True
                result.to_status = JobStatus.QUEUED

        elif to_status == JobStatus.QUEUED:
            self._requeue(job, now, backoff=False)
            await repo.add_event(job, from_status, to_status, {"automatic": False})

        result.attempts = job.attempts
        await session.flush()
        return result

    def _start(self, job: GenerationJob, details: TransitionDetails, now: datetime) -> None:
        job.status = JobStatus.PROCESSING.value
        job.started_at = now
        job.completed_at = None
        job.worker_id = details.worker_id
        job.lease_expires_at = now + self.lease
        job.last_heartbeat_at = now
        job.progress = details.progress or 0
        job.next_retry_at = None

    async def _complete(
        self,
        session: AsyncSession,
        job: GenerationJob,
        details: TransitionDetails,
        now: datetime,
        result: TransitionResult,
    ) -> dict:
        reported = details.actual_credits if details.actual_credits is not None else job.estimated_credits
        consumed = min(reported, job.estimated_credits)
        event_details: dict = {"actual_credits": reported, "worker_id": details.worker_id}

        job.status = JobStatus.COMPLETED.value
        job.completed_at = now
        job.progress = 100
        job.result = details.result
        job.error = None
        job.actual_credits = consumed
        self._clear_lease(job)
        result.terminal = True

        if reported > job.estimated_credits:
            # Capped at the reservation: the overage is recorded, never charged
            overage = reported - job.estimated_credits
            event_details["uncharged_overage"] = overage
            logger.warning(
                f"Job {job.id} reported {reported} credits against a reservation of "
                f"{job.estimated_credits}; {overage} not charged",
                extra={"job_id": str(job.id), "account_id": job.account_id, "overage": overage},
            )

        unused = job.estimated_credits - consumed
        if unused > 0:
            result.balance = await self.ledger.credit(
                job.account_id,
                unused,
                BillingEventType.SETTLEMENT,
                metadata={
                    "job_id": str(job.id),
                    "estimated_credits": job.estimated_credits,
                    "actual_credits": consumed,
                },
                session=session,
            )
            result.credits_returned = unused
            event_details["credits_returned"] = unused
        return event_details

    def _fail(self, job: GenerationJob, details: TransitionDetails, now: datetime) -> None:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        job.error = details.error or "unknown error"
        job.error_details = details.error_details
        self._clear_lease(job)

    def _requeue(self, job: GenerationJob, now: datetime, backoff: bool) -> None:
        job.status = JobStatus.QUEUED.value
        job.attempts += 1
        job.next_retry_at = None
        if backoff:
            delay = self.retry_backoff.calculate_delay(job.attempts)
            job.next_retry_at = now + timedelta(seconds=delay)
        job.started_at = None
        job.completed_at = None
        job.progress = 0

    @staticmethod
    def _clear_lease(job: GenerationJob) -> None:
        job.worker_id = None
        job.lease_expires_at = None

    async def _refund_reservation(self, session: AsyncSession, job: GenerationJob) -> Balance:
        """Return the full reservation of a job whose retries are exhausted."""
        logger.warning(
            f"Job {job.id} failed permanently after {job.attempts} retries, "
            f"refunding {job.estimated_credits} credits",
            extra={"job_id": str(job.id), "account_id": job.account_id, "error": job.error},
        )
        return await self.ledger.credit(
            job.account_id,
            job.estimated_credits,
            BillingEventType.JOB_REFUND,
            metadata={"job_id": str(job.id), "attempts": job.attempts, "reason": job.error},
            session=session,
        )

    # ==================== Worker Leases ====================

    async def claim_next_job(self, worker_id: str) -> Optional[ClaimedJob]:
        """Move the best queued job to Processing under ``worker_id``'s lease."""
        async with self.session_maker() as session:
            candidates = await JobRepository(session).next_queued_job_ids(self.clock())

        for job_id in candidates:
            result = await self._locked_transition(
                job_id,
                JobStatus.PROCESSING,
                TransitionDetails(worker_id=worker_id),
                requeue=False,
                expect=JobStatus.QUEUED,
            )
            if result is None:
                # Another worker claimed it first
                continue
            async with self.session_maker() as session:
                job = await JobRepository(session).get_job(job_id)
            return ClaimedJob(
                job_id=job.id,
                account_id=job.account_id,
                spec=job.spec,
                attempts=job.attempts,
                estimated_credits=job.estimated_credits,
                worker_id=worker_id,
                lease_expires_at=job.lease_expires_at,
            )
        return None

    async def heartbeat(
        self,
        job_id: uuid.UUID,
        worker_id: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> JobStatusInfo:
        """Extend the lease of a Processing job and record progress.

        Raises:
            LeaseExpiredError: the job is no longer Processing, the lease lapsed,
                or another worker holds it
        """
        async with self.locks.hold(job_id):
            async with self.session_maker() as session:
                async with session.begin():
                    job = await JobRepository(session).get_job(job_id, for_update=True)
                    if job is None:
                        raise JobNotFoundError(job_id)
                    now = self.clock()
                    if job.status != JobStatus.PROCESSING.value:
                        raise LeaseExpiredError(job_id, worker_id, f"job is {job.status}")
                    if worker_id is not None and job.worker_id is not None and worker_id != job.worker_id:
                        raise LeaseExpiredError(job_id, worker_id, "lease held by another worker")
                    if job.lease_expired(now):
                        raise LeaseExpiredError(job_id, worker_id, "lease expired")

                    job.lease_expires_at = now + self.lease
                    job.last_heartbeat_at = now
                    if progress is not None:
                        job.progress = max(0, min(progress, 100))
                    await session.flush()
                    return self._to_status_info(job)

    async def reclaim_expired_leases(self, now: Optional[datetime] = None) -> SweepResult:
        """Fail every Processing job whose lease lapsed, then requeue or terminate it.

        Runs periodically so a crashed worker never holds a reservation forever.
        """
        now = now or self.clock()
        async with self.session_maker() as session:
            job_ids = await JobRepository(session).expired_lease_job_ids(now, self.sweep_batch_size)

        sweep = SweepResult()
        for job_id in job_ids:
            details = TransitionDetails(
                error=LEASE_EXPIRED_ERROR,
                error_details={"reclaimed_at": now.isoformat()},
            )
            result = await self._locked_transition(
                job_id,
                JobStatus.FAILED,
                details,
                requeue=True,
                expect=JobStatus.PROCESSING,
                expired_at=now,
            )
            if result is None:
                # Heartbeat or completion landed first
                continue
            sweep.reclaimed += 1
            sweep.job_ids.append(job_id)
            if result.terminal:
                sweep.terminated += 1
            else:
                sweep.requeued += 1
            JOB_LEASES_RECLAIMED_TOTAL.inc()
            logger.warning(
                f"Reclaimed job {job_id} after lease expiry "
                f"({'terminal' if result.terminal else 'requeued'})",
                extra={"job_id": str(job_id), "attempts": result.attempts},
            )

        if sweep.reclaimed:
            logger.info(f"Lease sweep reclaimed {sweep.reclaimed} jobs")
        return sweep

    # ==================== Queries ====================

    async def get_status(self, job_id: uuid.UUID) -> JobStatusInfo:
        async with self.session_maker() as session:
            job = await JobRepository(session).get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return self._to_status_info(job)

    async def get_active_jobs(self, account_id: str) -> list[JobStatusInfo]:
        async with self.session_maker() as session:
            jobs = await JobRepository(session).get_active_jobs(account_id)
            return [self._to_status_info(job) for job in jobs]

    async def get_job_events(self, job_id: uuid.UUID) -> list[JobEventInfo]:
        async with self.session_maker() as session:
            events = await JobRepository(session).list_events(job_id)
            return [JobEventInfo.model_validate(event) for event in events]

    async def get_queue_stats(self) -> QueueStats:
        """Advisory counts and timings; never used to gate a transition."""
        async with self.session_maker() as session:
            repo = JobRepository(session)
            counts = await repo.count_by_status()
            durations = await repo.recent_processing_durations()

        stats = QueueStats(
            queued=counts.get(JobStatus.QUEUED.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
        )
        if durations:
            stats.average_processing_seconds = sum(durations) / len(durations)
            stats.estimated_wait_seconds = (
                stats.queued * stats.average_processing_seconds / max(stats.processing, 1)
            )
        return stats

    async def _get_account_id(self, job_id: uuid.UUID) -> str:
        async with self.session_maker() as session:
            account_id = await JobRepository(session).get_account_id(job_id)
        if account_id is None:
            raise JobNotFoundError(job_id)
        return account_id

    def _to_status_info(self, job: GenerationJob) -> JobStatusInfo:
        return JobStatusInfo(
            job_id=job.id,
            account_id=job.account_id,
            job_type=job.job_type,
            status=JobStatus(job.status),
            terminal=job.is_terminal(),
            progress=job.progress,
            result=job.result,
            error=job.error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            estimated_credits=job.estimated_credits,
            actual_credits=job.actual_credits,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            lease_expires_at=job.lease_expires_at,
            next_retry_at=job.next_retry_at,
            poll_interval_seconds=self.poll_interval_seconds,
        )

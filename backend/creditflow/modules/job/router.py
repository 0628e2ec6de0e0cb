"""API Router for generation jobs.

Client endpoints enqueue and poll; worker endpoints claim, heartbeat and
report transitions.
"""

import math
import uuid

from fastapi import APIRouter, Depends, HTTPException, Response

from creditflow.container import DATASTORE_DEPENDENCY, ServiceContainer, get_container
from creditflow.core.circuit_breaker import CircuitOpenError
from creditflow.modules.job.models import JobStatus
from creditflow.modules.job.schemas import (
    ClaimedJob,
    ClaimRequest,
    EnqueueRequest,
    EnqueueResponse,
    HeartbeatRequest,
    JobEventInfo,
    JobStatusInfo,
    QueueStats,
    TransitionRequest,
    TransitionResult,
)
from creditflow.modules.job.service import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStateMachine,
    LeaseExpiredError,
)
from creditflow.modules.ledger.service import (
    AccountNotFoundError,
    InsufficientCreditsError,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_machine(container: ServiceContainer = Depends(get_container)) -> JobStateMachine:
    """Dependency to get the JobStateMachine instance."""
    return container.jobs


def service_unavailable(exc: CircuitOpenError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail=f"{exc.dependency} temporarily unavailable",
        headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
    )


# ==================== Client Endpoints ====================

@router.post("/", response_model=EnqueueResponse, status_code=202)
async def enqueue_job(
    request: EnqueueRequest,
    jobs: JobStateMachine = Depends(get_job_machine),
) -> EnqueueResponse:
    """Reserve credits and queue a generation job."""
    try:
        job_id = await jobs.enqueue(request.account_id, request.spec, request.estimated_credits)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "message": "Insufficient credits",
                "available": exc.available,
                "requested": exc.requested,
            },
        )
    balance = await jobs.ledger.get_balance(request.account_id)
    return EnqueueResponse(
        job_id=job_id,
        status=JobStatus.QUEUED,
        balance=balance,
        poll_interval_seconds=jobs.poll_interval_seconds,
    )


@router.get("/stats", response_model=QueueStats)
async def get_queue_stats(jobs: JobStateMachine = Depends(get_job_machine)) -> QueueStats:
    """Advisory queue counts and timings."""
    return await jobs.get_queue_stats()


@router.get("/accounts/{account_id}/active", response_model=list[JobStatusInfo])
async def get_active_jobs(
    account_id: str,
    jobs: JobStateMachine = Depends(get_job_machine),
) -> list[JobStatusInfo]:
    return await jobs.get_active_jobs(account_id)


@router.get("/{job_id}", response_model=JobStatusInfo)
async def get_job_status(
    job_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
) -> JobStatusInfo:
    """Status for polling clients; poll until ``terminal`` is true."""
    try:
        return await container.breakers.get(DATASTORE_DEPENDENCY).execute(
            container.jobs.get_status, job_id
        )
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except CircuitOpenError as exc:
        raise service_unavailable(exc)


@router.get("/{job_id}/events", response_model=list[JobEventInfo])
async def get_job_events(
    job_id: uuid.UUID,
    jobs: JobStateMachine = Depends(get_job_machine),
) -> list[JobEventInfo]:
    """Transition history in order."""
    return await jobs.get_job_events(job_id)


@router.post("/{job_id}/retry", response_model=TransitionResult)
async def retry_job(
    job_id: uuid.UUID,
    jobs: JobStateMachine = Depends(get_job_machine),
) -> TransitionResult:
    """Requeue a failed job that still has attempts left."""
    return await _transition(jobs, job_id, TransitionRequest(status=JobStatus.QUEUED))


# ==================== Worker Endpoints ====================

@router.post("/claim", response_model=ClaimedJob, responses={204: {"description": "Queue empty"}})
async def claim_job(
    request: ClaimRequest,
    jobs: JobStateMachine = Depends(get_job_machine),
):
    claimed = await jobs.claim_next_job(request.worker_id)
    if claimed is None:
        return Response(status_code=204)
    return claimed


@router.post("/{job_id}/heartbeat", response_model=JobStatusInfo)
async def heartbeat(
    job_id: uuid.UUID,
    request: HeartbeatRequest,
    jobs: JobStateMachine = Depends(get_job_machine),
) -> JobStatusInfo:
    """Extend the worker's lease; a 409 tells the worker to stop."""
    try:
        return await jobs.heartbeat(job_id, request.worker_id, request.progress)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except LeaseExpiredError as exc:
        raise HTTPException(status_code=409, detail=f"Lease lost: {exc.reason}")


@router.post("/{job_id}/transition", response_model=TransitionResult)
async def transition_job(
    job_id: uuid.UUID,
    request: TransitionRequest,
    jobs: JobStateMachine = Depends(get_job_machine),
) -> TransitionResult:
    return await _transition(jobs, job_id, request)


async def _transition(
    jobs: JobStateMachine,
    job_id: uuid.UUID,
    request: TransitionRequest,
) -> TransitionResult:
    try:
        return await jobs.transition(job_id, request.status, request.details)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidTransitionError as exc:
        raise HTTPException(
            status_code=409,
            detail=f"Illegal transition {exc.from_status.value} -> {exc.to_status.value}",
        )
    except LeaseExpiredError as exc:
        raise HTTPException(status_code=409, detail=f"Lease lost: {exc.reason}")

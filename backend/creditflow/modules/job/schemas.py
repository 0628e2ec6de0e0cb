"""Pydantic schemas for generation jobs."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from creditflow.modules.job.models import GenerationJobType, JobStatus
from creditflow.modules.ledger.schemas import Balance


class GenerationSpec(BaseModel):
    """What the caller wants generated."""
    model_config = ConfigDict(extra="forbid")

    job_type: GenerationJobType = Field(GenerationJobType.GENERATION, description="Kind of generation")
    template_id: Optional[str] = Field(None, max_length=100, description="Mockup template")
    prompt: Optional[str] = Field(None, max_length=2000, description="Generation prompt")
    source_asset_id: Optional[str] = Field(None, max_length=100, description="Asset to vary or upscale")
    priority: int = Field(0, ge=0, le=10, description="Higher runs first")
    options: dict[str, Any] = Field(default_factory=dict, description="Model options")


class TransitionDetails(BaseModel):
    """Worker-supplied context for a transition."""
    model_config = ConfigDict(extra="forbid")

    worker_id: Optional[str] = Field(None, max_length=100)
    progress: Optional[int] = Field(None, ge=0, le=100)
    actual_credits: Optional[int] = Field(None, ge=0)
    result: Optional[dict] = None
    error: Optional[str] = None
    error_details: Optional[dict] = None


# ==================== API Requests ====================

class EnqueueRequest(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=64)
    spec: GenerationSpec
    estimated_credits: int = Field(..., gt=0, description="Credits to reserve up front")


class EnqueueResponse(BaseModel):
    job_id: uuid.UUID
    status: JobStatus
    balance: Balance
    poll_interval_seconds: int


class TransitionRequest(BaseModel):
    status: JobStatus
    details: TransitionDetails = Field(default_factory=TransitionDetails)


class HeartbeatRequest(BaseModel):
    worker_id: Optional[str] = Field(None, max_length=100)
    progress: Optional[int] = Field(None, ge=0, le=100)


class ClaimRequest(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=100)


# ==================== Results ====================

class JobStatusInfo(BaseModel):
    """Pull-based status contract for polling clients."""
    job_id: uuid.UUID
    account_id: str
    job_type: str
    status: JobStatus
    terminal: bool
    progress: int
    result: Optional[dict] = None
    error: Optional[str] = None
    attempts: int
    max_attempts: int
    estimated_credits: int
    actual_credits: Optional[int] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    poll_interval_seconds: int


class ClaimedJob(BaseModel):
    job_id: uuid.UUID
    account_id: str
    spec: dict
    attempts: int
    estimated_credits: int
    worker_id: str
    lease_expires_at: datetime


class TransitionResult(BaseModel):
    """Outcome of a transition, including any automatic requeue."""
    job_id: uuid.UUID
    from_status: JobStatus
    to_status: JobStatus
    attempts: int
    requeued: bool = False
    terminal: bool = False
    credits_returned: int = 0
    balance: Optional[Balance] = None


class JobEventInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    from_status: Optional[JobStatus] = None
    to_status: JobStatus
    attempts: int
    details: dict = Field(default_factory=dict)
    created_at: datetime


class QueueStats(BaseModel):
    """Advisory queue snapshot. Never used for correctness decisions."""
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    average_processing_seconds: Optional[float] = None
    estimated_wait_seconds: Optional[float] = None


class SweepResult(BaseModel):
    reclaimed: int = 0
    requeued: int = 0
    terminated: int = 0
    job_ids: list[uuid.UUID] = Field(default_factory=list)

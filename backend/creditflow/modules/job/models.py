"""Generation job models.

A GenerationJob is created only after its credits were reserved, and is
mutated only by the JobStateMachine. Every accepted transition appends a
GenerationJobEvent, giving an auditable state sequence per job.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from creditflow.core.clock import utcnow
from creditflow.core.database import Base


class JobStatus(str, Enum):
    """Generation job lifecycle status."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationJobType(str, Enum):
    """Kinds of generation work."""
    GENERATION = "generation"
    VARIATION = "variation"
    UPSCALE = "upscale"


# Allowed edges; Failed -> Queued is further limited by the attempt limit
LEGAL_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
}


def is_legal_transition(
    from_status: JobStatus,
    to_status: JobStatus,
    attempts: int,
    max_attempts: int,
) -> bool:
    """Check an edge against the lifecycle graph and the retry limit."""
    if to_status not in LEGAL_TRANSITIONS[from_status]:
        return False
    if from_status == JobStatus.FAILED and to_status == JobStatus.QUEUED:
        return attempts < max_attempts
    return True


class GenerationJob(Base):
    """A unit of asynchronous generation work holding a credit reservation."""

    __tablename__ = "generation_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id"), nullable=False
    )

    # What to generate
    job_type: Mapped[str] = mapped_column(String(30), nullable=False)
    spec: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.QUEUED.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Credits
    estimated_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_credits: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Outcome
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Lease held by the worker processing the job
    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Backoff: a requeued job is not offered to workers before this time
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_generation_jobs_account_status", "account_id", "status"),
        Index("ix_generation_jobs_status_priority", "status", "priority", "created_at"),
        Index("ix_generation_jobs_status_lease", "status", "lease_expires_at"),
        Index("ix_generation_jobs_status_next_retry", "status", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return f"<GenerationJob(id={self.id}, status={self.status}, attempts={self.attempts})>"

    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def is_terminal(self) -> bool:
        """Completed, or Failed with the retry limit exhausted."""
        if self.status == JobStatus.COMPLETED.value:
            return True
        return self.status == JobStatus.FAILED.value and not self.can_retry()

    def lease_expired(self, now: datetime) -> bool:
        return (
            self.status == JobStatus.PROCESSING.value
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )


class GenerationJobEvent(Base):
    """Append-only history of job transitions."""

    __tablename__ = "generation_job_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("generation_jobs.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("uq_generation_job_events_job_sequence", "job_id", "sequence", unique=True),
    )

    def __repr__(self) -> str:
        return f"<GenerationJobEvent(job_id={self.job_id}, {self.from_status} -> {self.to_status})>"

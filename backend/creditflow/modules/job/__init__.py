"""Generation jobs: lifecycle, credit reservation and worker leases."""

from creditflow.modules.job.models import (
    LEGAL_TRANSITIONS,
    GenerationJob,
    GenerationJobEvent,
    GenerationJobType,
    JobStatus,
    is_legal_transition,
)
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
from creditflow.modules.job.repository import JobRepository
from creditflow.modules.job.service import (
    InvalidTransitionError,
    JobError,
    JobNotFoundError,
    JobStateMachine,
    LeaseExpiredError,
)

__all__ = [
    # Models
    "LEGAL_TRANSITIONS",
    "GenerationJob",
    "GenerationJobEvent",
    "GenerationJobType",
    "JobStatus",
    "is_legal_transition",
    # Schemas
    "ClaimedJob",
    "GenerationSpec",
    "JobEventInfo",
    "JobStatusInfo",
    "QueueStats",
    "SweepResult",
    "TransitionDetails",
    "TransitionResult",
    # Repository
    "JobRepository",
    # Service
    "JobStateMachine",
    "JobError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "LeaseExpiredError",
]

"""Repository for generation job database operations."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.modules.job.models import GenerationJob, GenerationJobEvent, JobStatus


class JobRepository:
    """Repository for GenerationJob and its transition history."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Job CRUD ====================

    async def create_job(
        self,
        job_id: uuid.UUID,
        account_id: str,
        job_type: str,
        spec: dict,
        priority: int,
        estimated_credits: int,
        max_attempts: int,
    ) -> GenerationJob:
        job = GenerationJob(
            id=job_id,
            account_id=account_id,
            job_type=job_type,
            spec=spec,
            priority=priority,
            estimated_credits=estimated_credits,
            max_attempts=max_attempts,
            attempts=0,
            progress=0,
            status=JobStatus.QUEUED.value,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_job(self, job_id: uuid.UUID, for_update: bool = False) -> Optional[GenerationJob]:
        query = select(GenerationJob).where(GenerationJob.id == job_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_account_id(self, job_id: uuid.UUID) -> Optional[str]:
        result = await self.session.execute(
            select(GenerationJob.account_id).where(GenerationJob.id == job_id)
        )
        return result.scalar_one_or_none()

    # ==================== Transition History ====================

    async def add_event(
        self,
        job: GenerationJob,
        from_status: Optional[JobStatus],
        to_status: JobStatus,
        details: Optional[dict] = None,
    ) -> GenerationJobEvent:
        last_sequence = await self.session.execute(
            select(func.coalesce(func.max(GenerationJobEvent.sequence), 0)).where(
                GenerationJobEvent.job_id == job.id
            )
        )
        event = GenerationJobEvent(
            job_id=job.id,
            sequence=int(last_sequence.scalar_one()) + 1,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            attempts=job.attempts,
            details=details or {},
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_events(self, job_id: uuid.UUID) -> list[GenerationJobEvent]:
        result = await self.session.execute(
            select(GenerationJobEvent)
            .where(GenerationJobEvent.job_id == job_id)
            .order_by(GenerationJobEvent.sequence)
        )
        return list(result.scalars().all())

    # ==================== Queue Queries ====================

    async def next_queued_job_ids(self, now: datetime, limit: int = 5) -> list[uuid.UUID]:
        """Highest priority first, oldest first within a priority.

        Jobs still backing off after a failure are skipped.
        """
        result = await self.session.execute(
            select(GenerationJob.id)
            .where(
                GenerationJob.status == JobStatus.QUEUED.value,
                or_(GenerationJob.next_retry_at.is_(None), GenerationJob.next_retry_at <= now),
            )
            .order_by(desc(GenerationJob.priority), GenerationJob.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def expired_lease_job_ids(self, now: datetime, limit: int = 100) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(GenerationJob.id)
            .where(
                GenerationJob.status == JobStatus.PROCESSING.value,
                GenerationJob.lease_expires_at <= now,
            )
            .order_by(GenerationJob.lease_expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_active_jobs(self, account_id: str) -> list[GenerationJob]:
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.account_id == account_id,
                GenerationJob.status.in_(
                    (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
                ),
            )
            .order_by(GenerationJob.created_at)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(GenerationJob.status, func.count(GenerationJob.id)).group_by(
                GenerationJob.status
            )
        )
        return {status: count for status, count in result.all()}

    async def recent_processing_durations(self, limit: int = 100) -> list[float]:
        """Seconds between start and completion of recently completed jobs."""
        result = await self.session.execute(
            select(GenerationJob.started_at, GenerationJob.completed_at)
            .where(
                GenerationJob.status == JobStatus.COMPLETED.value,
                GenerationJob.started_at.is_not(None),
                GenerationJob.completed_at.is_not(None),
            )
            .order_by(desc(GenerationJob.completed_at))
            .limit(limit)
        )
        return [
            (completed_at - started_at).total_seconds()
            for started_at, completed_at in result.all()
        ]

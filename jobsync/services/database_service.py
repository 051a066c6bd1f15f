# jobsync/services/database_service.py

from typing import List, Optional
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from jobsync.core.config import Settings
from jobsync.core.database_engine import get_database_engine, get_session_maker
from jobsync.core.exceptions import JobNotFoundError
from jobsync.core.jobs import apply_delta, interrupted, new_job, utcnow
from jobsync.core.logging import LoggerMixin
from jobsync.models.job import Base, JobRecord
from jobsync.schemas.job import ACTIVE_STATUSES, Job, JobDelta, JobSource, JobType

CAS_ATTEMPTS = 3


class DatabaseService(LoggerMixin):
    """Job records stored in a SQL database, one row per (owner, job type)."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = get_database_engine(settings.DATABASE_URL)
        self.session_maker = get_session_maker(settings.DATABASE_URL)

    async def init_db(self) -> None:
        """Initialize database schema"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def get_session(self) -> AsyncSession:
        return self.session_maker()

    async def create_or_replace(
        self,
        owner_id: str,
        job_type: JobType,
        *,
        source: JobSource = JobSource.DATABASE,
        csv_file_path: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Job:
        job = new_job(
            owner_id,
            job_type,
            source=source,
            csv_file_path=csv_file_path,
            callback_url=callback_url,
        )
        async with self.get_session() as session:
            async with session.begin():
                await session.execute(
                    delete(JobRecord).where(
                        JobRecord.owner_id == owner_id,
                        JobRecord.job_type == job_type.value,
                    )
                )
                session.add(JobRecord(**JobRecord.columns_from_job(job)))
        self.logger.debug("Job record replaced", job_id=job.id, owner_id=owner_id)
        return job

    async def advance(self, job_id: str, delta: JobDelta) -> Job:
        """Apply a delta with a compare-and-set on updated_at."""
        for attempt in range(CAS_ATTEMPTS):
            async with self.get_session() as session:
                async with session.begin():
                    result = await session.execute(
                        select(JobRecord).where(JobRecord.id == job_id)
                    )
                    record = result.scalar_one_or_none()
                    if record is None:
                        raise JobNotFoundError(
                            f"Job {job_id} not found", {"job_id": job_id}
                        )

                    seen = record.updated_at
                    updated = apply_delta(record.to_job(), delta, utcnow())
                    values = JobRecord.columns_from_job(updated)
                    values.pop("id")

                    outcome = await session.execute(
                        update(JobRecord)
                        .where(JobRecord.id == job_id, JobRecord.updated_at == seen)
                        .values(**values)
                    )
                    if outcome.rowcount == 1:
                        return updated

            self.logger.warning(
                "Concurrent job write detected, retrying",
                job_id=job_id,
                attempt=attempt + 1,
            )

        raise JobNotFoundError(
            f"Job {job_id} kept changing concurrently", {"job_id": job_id}
        )

    async def get(self, owner_id: str, job_type: JobType) -> Optional[Job]:
        async with self.get_session() as session:
            result = await session.execute(
                select(JobRecord).where(
                    JobRecord.owner_id == owner_id,
                    JobRecord.job_type == job_type.value,
                )
            )
            record = result.scalar_one_or_none()
            return record.to_job() if record else None

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        async with self.get_session() as session:
            result = await session.execute(select(JobRecord).where(JobRecord.id == job_id))
            record = result.scalar_one_or_none()
            return record.to_job() if record else None

    async def fail_interrupted(self) -> List[Job]:
        """Mark records left active by a previous process as interrupted."""
        failed: List[Job] = []
        async with self.get_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(JobRecord).where(
                        JobRecord.status.in_([s.value for s in ACTIVE_STATUSES])
                    )
                )
                for record in result.scalars().all():
                    job = interrupted(record.to_job())
                    for key, value in JobRecord.columns_from_job(job).items():
                        setattr(record, key, value)
                    failed.append(job)
        return failed

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple

from jobsync.core.exceptions import (
    ErrorCode,
    JobNotFoundError,
    StaleProgressError,
    TerminalJobError,
    ValidationError,
)
from jobsync.schemas.job import (
    ErrorInfo,
    Job,
    JobDelta,
    JobSource,
    JobStatus,
    JobType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job(
    owner_id: str,
    job_type: JobType,
    *,
    source: JobSource = JobSource.DATABASE,
    csv_file_path: Optional[str] = None,
    callback_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """Fresh pending record with a new id and progress reset to 0."""
    now = now or utcnow()
    return Job(
        id=uuid.uuid4().hex,
        job_type=job_type,
        owner_id=owner_id,
        status=JobStatus.PENDING,
        progress=0,
        message="Job queued",
        source=source,
        csv_file_path=csv_file_path,
        callback_url=callback_url,
        started_at=now,
        updated_at=now,
    )


def apply_delta(job: Job, delta: JobDelta, now: datetime) -> Job:
    """
    Merge a worker delta into a job record.

    Rules shared by every store backend:
      - terminal records (completed/error) reject any write
      - progress never decreases for the same job id
      - any accepted non-terminal write moves the job to in_progress
      - progress 100 completes the job, completion forces progress to 100
      - processed_items never decreases and is clamped to total_items
    """
    if job.is_terminal:
        raise TerminalJobError(
            f"Job {job.id} is {job.status.value}", {"job_id": job.id}
        )

    if delta.status in (JobStatus.IDLE, JobStatus.PENDING):
        raise ValidationError(
            f"Status {delta.status.value} cannot be reported by a worker",
            {"job_id": job.id},
        )

    progress = job.progress if delta.progress is None else delta.progress
    if progress < job.progress and delta.status != JobStatus.ERROR:
        raise StaleProgressError(
            f"Progress {progress} is lower than {job.progress}",
            {"job_id": job.id, "current": job.progress, "requested": progress},
        )
    progress = max(progress, job.progress)

    status = delta.status or JobStatus.IN_PROGRESS
    if status == JobStatus.COMPLETED or (
        progress >= 100 and status != JobStatus.ERROR
    ):
        status = JobStatus.COMPLETED
        progress = 100

    total = job.total_items if delta.total_items is None else delta.total_items
    processed = (
        job.processed_items if delta.processed_items is None else delta.processed_items
    )
    if processed is not None and job.processed_items is not None:
        processed = max(processed, job.processed_items)
    if processed is not None and total is not None:
        processed = min(processed, total)

    message = job.message if delta.message is None else delta.message
    error = None
    if status == JobStatus.ERROR:
        error = delta.error or ErrorInfo(
            code=ErrorCode.JOB_FAILED, message=message or "Job failed"
        )
        message = message or error.message

    return job.model_copy(
        update={
            "status": status,
            "progress": progress,
            "processed_items": processed,
            "total_items": total,
            "message": message,
            "stage": job.stage if delta.stage is None else delta.stage,
            "error": error,
            "updated_at": now,
            "finished_at": now if status in (JobStatus.COMPLETED, JobStatus.ERROR) else None,
        }
    )


class JobRecordStore(Protocol):
    """Authoritative job state. Callers serialize writes per job id."""

    async def create_or_replace(
        self,
        owner_id: str,
        job_type: JobType,
        *,
        source: JobSource = JobSource.DATABASE,
        csv_file_path: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Job: ...

    async def advance(self, job_id: str, delta: JobDelta) -> Job: ...

    async def get(self, owner_id: str, job_type: JobType) -> Optional[Job]: ...

    async def get_by_id(self, job_id: str) -> Optional[Job]: ...

    async def fail_interrupted(self) -> List[Job]: ...


class JobStore:
    """In-memory job records, keyed by id with one current id per (owner, type)."""

    def __init__(self) -> None:
        self._store: Dict[str, Job] = {}
        self._current: Dict[Tuple[str, JobType], str] = {}

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
        previous = self._current.get((owner_id, job_type))
        if previous is not None:
            self._store.pop(previous, None)
        self._store[job.id] = job
        self._current[(owner_id, job_type)] = job.id
        return job.model_copy()

    async def advance(self, job_id: str, delta: JobDelta) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", {"job_id": job_id})

        updated = apply_delta(job, delta, utcnow())

        # compare-and-set: a replace between read and write wins
        if self._store.get(job_id) is not job:
            raise JobNotFoundError(
                f"Job {job_id} was superseded", {"job_id": job_id}
            )
        self._store[job_id] = updated
        return updated.model_copy()

    async def get(self, owner_id: str, job_type: JobType) -> Optional[Job]:
        job_id = self._current.get((owner_id, job_type))
        if job_id is None:
            return None
        return await self.get_by_id(job_id)

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        item = self._store.get(job_id)
        return item.model_copy() if item is not None else None

    async def fail_interrupted(self) -> List[Job]:
        failed = []
        for job_id, job in list(self._store.items()):
            if job.is_active:
                self._store[job_id] = interrupted(job)
                failed.append(self._store[job_id])
        return failed


def interrupted(job: Job) -> Job:
    """Terminal error record for a job whose worker died with the process."""
    return apply_delta(
        job,
        JobDelta(
            status=JobStatus.ERROR,
            message="Job was interrupted by a server restart",
            error=ErrorInfo(
                code=ErrorCode.INTERRUPTED,
                message="Job was interrupted by a server restart",
            ),
        ),
        utcnow(),
    )

# jobsync/services/job_service.py
import asyncio
from pathlib import Path
from typing import Dict, Optional, Tuple

from jobsync.core.config import Settings
from jobsync.core.exceptions import ErrorCode, ErrorSeverity, JobNotFoundError, ValidationError
from jobsync.core.jobs import JobRecordStore
from jobsync.core.logging import LoggerMixin
from jobsync.services.push_hub import PushHub
from jobsync.schemas.job import (
    ErrorInfo,
    Job,
    JobDelta,
    JobSnapshot,
    JobSource,
    JobStatus,
    JobType,
    StartJobRequest,
)

JOB_LABELS: Dict[JobType, str] = {
    JobType.PRE_PROCESSING: "Pre-processing",
    JobType.EXTRACTION: "Extraction",
    JobType.SYMPTOM_LIBRARY: "Symptom library generation",
}


class JobService(LoggerMixin):
    """
    Server-side job lifecycle: every accepted store write is published to the
    push hub while holding the job's lock, so subscribers see one job's
    events in the order the store accepted them.
    """

    def __init__(self, settings: Settings, store: JobRecordStore, hub: PushHub):
        self.settings = settings
        self.store = store
        self.hub = hub
        self._locks: Dict[str, asyncio.Lock] = {}
        # (owner, type) -> (job id, highest progress returned by a poll)
        self._high_water: Dict[Tuple[str, JobType], Tuple[str, int]] = {}

    def validate_start(self, request: StartJobRequest) -> None:
        """Reject malformed start requests before any record is created."""
        if request.source != JobSource.CSV:
            return
        if not request.csv_file_path:
            raise ValidationError("A CSV file must be uploaded when the source is csv")

        path = Path(request.csv_file_path)
        if path.suffix.lower().lstrip(".") not in self.settings.ALLOWED_EXTENSIONS:
            raise ValidationError(
                f"Unsupported file type: {path.suffix or 'none'}",
                {"csv_file_path": request.csv_file_path},
            )
        if not path.is_file():
            raise ValidationError(
                "CSV file does not exist", {"csv_file_path": request.csv_file_path}
            )

    async def start(
        self, owner_id: str, job_type: JobType, request: StartJobRequest
    ) -> Job:
        self.validate_start(request)
        job = await self.store.create_or_replace(
            owner_id,
            job_type,
            source=request.source,
            csv_file_path=request.csv_file_path,
            callback_url=request.callback_url,
        )
        self.hub.publish(job)
        self.logger.info(
            "Job created",
            job_id=job.id,
            owner_id=owner_id,
            job_type=job_type.value,
            source=request.source.value,
        )
        return job

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        return await self.store.get_by_id(job_id)

    async def advance(self, job_id: str, delta: JobDelta) -> Job:
        """
        Apply a delta and broadcast the result.

        Raises JobNotFoundError for unknown or superseded ids and
        TerminalJobError for finished jobs; nothing is published then.
        """
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        try:
            async with lock:
                job = await self.store.advance(job_id, delta)
                self.hub.publish(job)
        except JobNotFoundError:
            # unknown and superseded ids never become valid again
            self._locks.pop(job_id, None)
            raise

        if job.is_terminal:
            self._locks.pop(job_id, None)
            self.logger.info(
                "Job finished",
                job_id=job_id,
                status=job.status.value,
                processed_items=job.processed_items,
            )
        return job

    async def complete(self, job_id: str, message: str) -> Job:
        return await self.advance(
            job_id,
            JobDelta(status=JobStatus.COMPLETED, progress=100, message=message, stage="done"),
        )

    async def fail(self, job_id: str, error: ErrorInfo) -> Job:
        return await self.advance(
            job_id,
            JobDelta(status=JobStatus.ERROR, message=error.message, error=error),
        )

    async def snapshot(self, owner_id: str, job_type: JobType) -> Optional[JobSnapshot]:
        """Current state for polling; never lower than a previous poll of the same id."""
        job = await self.store.get(owner_id, job_type)
        if job is None:
            return None

        snapshot = JobSnapshot.from_job(job)
        key = (owner_id, job_type)
        seen_id, seen_progress = self._high_water.get(key, (job.id, 0))
        if seen_id == job.id and snapshot.progress < seen_progress:
            snapshot = snapshot.model_copy(update={"progress": seen_progress})
        self._high_water[key] = (job.id, snapshot.progress)
        return snapshot

    async def recover_interrupted(self) -> int:
        jobs = await self.store.fail_interrupted()
        for job in jobs:
            self.logger.warning(
                "Marked interrupted job as failed",
                job_id=job.id,
                owner_id=job.owner_id,
                job_type=job.job_type.value,
            )
        return len(jobs)


def error_info(message: str, code: ErrorCode = ErrorCode.JOB_FAILED) -> ErrorInfo:
    return ErrorInfo(code=code, severity=ErrorSeverity.ERROR, message=message)

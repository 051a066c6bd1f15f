# jobsync/services/background_processor.py
"""
Job worker: runs a workload for one job and reports its progress.
BackgroundProcessor is async since FastAPI schedules it as a background task.
"""

import asyncio
import csv
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from jobsync.core.config import Settings
from jobsync.core.exceptions import (
    ErrorCode,
    JobNotFoundError,
    JobSyncError,
    TerminalJobError,
    WorkloadError,
)
from jobsync.core.logging import LoggerMixin, bind_job_context, clear_job_context
from jobsync.schemas.job import (
    ErrorInfo,
    Job,
    JobDelta,
    JobSnapshot,
    JobSource,
    JobType,
)
from jobsync.services.job_service import JobService, error_info

ITEM_UNITS: Dict[JobType, str] = {
    JobType.PRE_PROCESSING: "patients",
    JobType.EXTRACTION: "records",
    JobType.SYMPTOM_LIBRARY: "symptoms",
}

ItemHandler = Callable[[JobType, Any], Awaitable[None]]


async def noop_item_handler(job_type: JobType, item: Any) -> None:
    """Placeholder for the extraction algorithm; yields to the event loop."""
    await asyncio.sleep(0)


class ProgressReporter:
    """Handed to a workload; turns item counts into job deltas."""

    def __init__(self, jobs: JobService, job: Job):
        self.jobs = jobs
        self.job = job
        self.unit = ITEM_UNITS[job.job_type]

    async def report(
        self,
        processed: int,
        total: int,
        *,
        message: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> Job:
        # 100 is reserved for the completion event
        progress = min(99, processed * 100 // total) if total else 0
        return await self.jobs.advance(
            self.job.id,
            JobDelta(
                progress=progress,
                processed_items=processed,
                total_items=total,
                message=message or f"Processing {processed}/{total} {self.unit}",
                stage=stage,
            ),
        )


class Workload(Protocol):
    async def run(self, job: Job, reporter: ProgressReporter) -> str:
        """Do the job's work and return the completion message."""
        ...


class BatchWorkload:
    """Walks the job's items in batches, handing each to the item handler."""

    def __init__(self, settings: Settings, handler: ItemHandler = noop_item_handler):
        self.settings = settings
        self.handler = handler

    async def load_items(self, job: Job) -> List[Any]:
        if job.source == JobSource.CSV:
            if not job.csv_file_path:
                raise WorkloadError("CSV job has no file path")
            return await asyncio.to_thread(self._read_csv_rows, job.csv_file_path)
        # records already in the database are addressed by index
        return list(range(self.settings.DATABASE_ITEM_COUNT))

    @staticmethod
    def _read_csv_rows(path: str) -> List[Dict[str, str]]:
        try:
            with open(path, newline="", encoding="utf-8-sig") as f:
                return list(csv.DictReader(f))
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise WorkloadError(f"Failed to read CSV file: {e}") from e

    async def run(self, job: Job, reporter: ProgressReporter) -> str:
        items = await self.load_items(job)
        total = len(items)
        await reporter.report(
            0, total, stage="loading", message=f"Loaded 0/{total} {reporter.unit}"
        )

        batch_size = self.settings.WORKLOAD_BATCH_SIZE
        for start in range(0, total, batch_size):
            batch = items[start : start + batch_size]
            for item in batch:
                await self.handler(job.job_type, item)
            await reporter.report(start + len(batch), total, stage="processing")

        return f"Processed {total}/{total} {reporter.unit}"


class BackgroundProcessor(LoggerMixin):
    """One instance per process; process_job runs once per started job."""

    def __init__(self, settings: Settings, jobs: JobService, workload: Workload):
        self.settings = settings
        self.jobs = jobs
        self.workload = workload

    async def process_job(self, job_id: str) -> None:
        job = await self.jobs.get_by_id(job_id)
        if not job:
            self.logger.error("Job not found", job_id=job_id)
            return

        bind_job_context(job_id=job.id, owner_id=job.owner_id, job_type=job.job_type.value)
        self.logger.info("Starting job processing")
        final: Optional[Job] = None
        try:
            job = await self.jobs.advance(
                job_id, JobDelta(message="Job started", stage="starting")
            )
            message = await self.workload.run(job, ProgressReporter(self.jobs, job))
            final = await self.jobs.complete(job_id, message)
            self.logger.info("Job processing completed")

        except (JobNotFoundError, TerminalJobError) as e:
            # a newer job of the same type replaced this one
            self.logger.info("Job superseded, worker stopping", reason=e.message)

        except JobSyncError as e:
            self.logger.error("Job processing failed", error=e.message)
            final = await self._fail(
                job_id,
                ErrorInfo.model_validate(e.to_payload()),
            )

        except Exception as e:
            self.logger.exception("Unexpected job failure", error=str(e))
            final = await self._fail(job_id, error_info(f"Job failed: {e}"))

        finally:
            clear_job_context()

        if final is not None and final.callback_url:
            await self._notify_callback(final.callback_url, final)

    async def _fail(self, job_id: str, error: ErrorInfo) -> Optional[Job]:
        try:
            return await self.jobs.fail(job_id, error)
        except (JobNotFoundError, TerminalJobError) as e:
            self.logger.info("Could not record failure", job_id=job_id, reason=e.message)
            return None

    async def _notify_callback(self, callback_url: str, job: Job) -> None:
        """Best-effort notifier; a failing callback never affects the job."""
        payload = JobSnapshot.from_job(job).to_wire()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    callback_url,
                    json=payload,
                    timeout=self.settings.CALLBACK_TIMEOUT_SECONDS,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            self.logger.warning(
                "Callback notification failed",
                job_id=job.id,
                callback_url=callback_url,
                error=str(e),
                code=ErrorCode.NETWORK.value,
            )

"""Tests for the job record rules and the in-memory store."""
import pytest

from jobsync.core.exceptions import (
    ErrorCode,
    JobNotFoundError,
    StaleProgressError,
    TerminalJobError,
    ValidationError,
)
from jobsync.core.jobs import JobStore, apply_delta, new_job, utcnow
from jobsync.schemas.job import JobDelta, JobSource, JobStatus, JobType


class TestApplyDelta:
    """Rules shared by every store backend."""

    def test_first_update_moves_to_in_progress(self):
        job = new_job("u1", JobType.EXTRACTION)
        updated = apply_delta(job, JobDelta(progress=10, message="10/100 records"), utcnow())

        assert updated.status == JobStatus.IN_PROGRESS
        assert updated.progress == 10
        assert updated.message == "10/100 records"

    def test_progress_decrease_is_rejected(self):
        job = apply_delta(new_job("u1", JobType.EXTRACTION), JobDelta(progress=40), utcnow())

        with pytest.raises(StaleProgressError):
            apply_delta(job, JobDelta(progress=39), utcnow())

    def test_omitted_progress_keeps_value(self):
        job = apply_delta(new_job("u1", JobType.EXTRACTION), JobDelta(progress=40), utcnow())
        updated = apply_delta(job, JobDelta(message="still going"), utcnow())

        assert updated.progress == 40
        assert updated.message == "still going"

    def test_progress_100_completes(self):
        job = new_job("u1", JobType.EXTRACTION)
        updated = apply_delta(job, JobDelta(progress=100), utcnow())

        assert updated.status == JobStatus.COMPLETED
        assert updated.finished_at is not None

    def test_completed_status_forces_progress_100(self):
        job = apply_delta(new_job("u1", JobType.EXTRACTION), JobDelta(progress=60), utcnow())
        updated = apply_delta(job, JobDelta(status=JobStatus.COMPLETED), utcnow())

        assert updated.progress == 100

    def test_terminal_record_rejects_writes(self):
        job = apply_delta(new_job("u1", JobType.EXTRACTION), JobDelta(progress=100), utcnow())

        with pytest.raises(TerminalJobError):
            apply_delta(job, JobDelta(progress=100), utcnow())

    def test_error_keeps_progress_and_gets_structured_error(self):
        job = apply_delta(new_job("u1", JobType.EXTRACTION), JobDelta(progress=70), utcnow())
        failed = apply_delta(
            job, JobDelta(status=JobStatus.ERROR, progress=20, message="disk full"), utcnow()
        )

        assert failed.status == JobStatus.ERROR
        assert failed.progress == 70
        assert failed.error.code == ErrorCode.JOB_FAILED
        assert failed.error.message == "disk full"

    def test_processed_items_clamped_to_total(self):
        job = new_job("u1", JobType.PRE_PROCESSING)
        updated = apply_delta(
            job, JobDelta(progress=50, processed_items=120, total_items=100), utcnow()
        )

        assert updated.processed_items == 100
        assert updated.total_items == 100

    def test_processed_items_never_decrease(self):
        job = apply_delta(
            new_job("u1", JobType.PRE_PROCESSING),
            JobDelta(progress=50, processed_items=50, total_items=100),
            utcnow(),
        )
        updated = apply_delta(job, JobDelta(progress=50, processed_items=10), utcnow())

        assert updated.processed_items == 50

    def test_worker_cannot_report_pending(self):
        job = new_job("u1", JobType.PRE_PROCESSING)

        with pytest.raises(ValidationError):
            apply_delta(job, JobDelta(status=JobStatus.PENDING), utcnow())


class TestJobStore:
    @pytest.mark.asyncio
    async def test_create_or_replace_resets(self, store: JobStore):
        first = await store.create_or_replace("u1", JobType.PRE_PROCESSING)
        await store.advance(first.id, JobDelta(progress=80))

        second = await store.create_or_replace(
            "u1", JobType.PRE_PROCESSING, source=JobSource.CSV, csv_file_path="/tmp/a.csv"
        )

        assert second.id != first.id
        assert second.progress == 0
        assert second.status == JobStatus.PENDING
        current = await store.get("u1", JobType.PRE_PROCESSING)
        assert current.id == second.id
        assert current.csv_file_path == "/tmp/a.csv"

    @pytest.mark.asyncio
    async def test_superseded_id_is_not_found(self, store: JobStore):
        first = await store.create_or_replace("u1", JobType.PRE_PROCESSING)
        await store.create_or_replace("u1", JobType.PRE_PROCESSING)

        with pytest.raises(JobNotFoundError):
            await store.advance(first.id, JobDelta(progress=5))
        assert await store.get_by_id(first.id) is None

    @pytest.mark.asyncio
    async def test_jobs_are_scoped_by_owner_and_type(self, store: JobStore):
        a = await store.create_or_replace("u1", JobType.PRE_PROCESSING)
        b = await store.create_or_replace("u1", JobType.EXTRACTION)
        c = await store.create_or_replace("u2", JobType.PRE_PROCESSING)

        assert len({a.id, b.id, c.id}) == 3
        assert (await store.get("u2", JobType.PRE_PROCESSING)).id == c.id
        assert await store.get("u2", JobType.SYMPTOM_LIBRARY) is None

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store: JobStore):
        job = await store.create_or_replace("u1", JobType.PRE_PROCESSING)
        job.progress = 99

        assert (await store.get_by_id(job.id)).progress == 0

    @pytest.mark.asyncio
    async def test_fail_interrupted_marks_active_jobs(self, store: JobStore):
        active = await store.create_or_replace("u1", JobType.PRE_PROCESSING)
        done = await store.create_or_replace("u1", JobType.EXTRACTION)
        await store.advance(done.id, JobDelta(progress=100))

        failed = await store.fail_interrupted()

        assert [job.id for job in failed] == [active.id]
        record = await store.get_by_id(active.id)
        assert record.status == JobStatus.ERROR
        assert record.error.code == ErrorCode.INTERRUPTED
        assert (await store.get_by_id(done.id)).status == JobStatus.COMPLETED

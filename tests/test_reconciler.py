"""Tests for the client-side reconciler and its monotonic guard."""
from typing import List

import pytest

from jobsync.client.reconciler import (
    RECONNECTING_SUFFIX,
    ChannelUpdate,
    Decision,
    JobView,
    Reconciler,
    Source,
    evaluate,
    normalize_status,
    parse_item_counts,
)
from jobsync.core.exceptions import ErrorCode
from jobsync.schemas.job import JobStatus, JobType


def update(source=Source.PUSH, **fields) -> ChannelUpdate:
    fields.setdefault("job_id", "job-1")
    return ChannelUpdate(source=source, **fields)


def running(reconciler: Reconciler, progress: int = 10, job_id: str = "job-1") -> None:
    reconciler.ingest(
        update(job_id=job_id, status=JobStatus.IN_PROGRESS, progress=progress, message="Working")
    )


class TestHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("in_progress", JobStatus.IN_PROGRESS),
            ("processing", JobStatus.IN_PROGRESS),
            ("complete", JobStatus.COMPLETED),
            ("FAILED", JobStatus.ERROR),
            ("", None),
            ("weird", None),
        ],
    )
    def test_normalize_status(self, value, expected):
        assert normalize_status(value) == expected

    def test_parse_item_counts(self):
        assert parse_item_counts("Processing 42/100 patients") == (42, 100)
        assert parse_item_counts("42 / 100 records done") == (42, 100)
        assert parse_item_counts("Loading") is None
        assert parse_item_counts("120/100 patients") is None

    def test_from_payload_reads_camel_case(self):
        parsed = ChannelUpdate.from_payload(
            {
                "jobId": "abc",
                "processType": "extraction",
                "status": "in_progress",
                "progress": 130,
                "processedItems": 5,
                "totalItems": 9,
                "error": {"code": "not-a-code"},
            },
            Source.POLL,
        )

        assert parsed.job_id == "abc"
        assert parsed.job_type == JobType.EXTRACTION
        assert parsed.progress == 100
        assert parsed.processed_items == 5
        assert parsed.error_code == ErrorCode.INTERNAL


class TestEvaluate:
    def test_lower_progress_is_discarded(self):
        view = JobView(job_id="job-1", status=JobStatus.IN_PROGRESS, progress=50)

        assert evaluate(view, update(progress=40)) == Decision.DISCARD
        assert evaluate(view, update(progress=50)) == Decision.APPLY
        assert evaluate(view, update(progress=None, message="hi")) == Decision.APPLY

    def test_new_job_id_resets(self):
        view = JobView(job_id="job-1", status=JobStatus.IN_PROGRESS, progress=80)

        assert evaluate(view, update(job_id="job-2", progress=0)) == Decision.RESET

    def test_retired_id_is_never_readopted(self):
        view = JobView(job_id="job-2", status=JobStatus.PENDING)

        assert evaluate(view, update(job_id="job-1", progress=90), {"job-1"}) == Decision.DISCARD

    def test_error_always_applies_to_tracked_job(self):
        view = JobView(job_id="job-1", status=JobStatus.IN_PROGRESS, progress=80)

        assert evaluate(view, update(status=JobStatus.ERROR, progress=10)) == Decision.APPLY

    def test_terminal_view_discards_same_job(self):
        view = JobView(job_id="job-1", status=JobStatus.COMPLETED, progress=100)

        assert evaluate(view, update(status=JobStatus.ERROR)) == Decision.DISCARD

    def test_foreign_job_type_is_discarded(self):
        view = JobView(job_id="job-1", job_type=JobType.EXTRACTION)

        assert evaluate(view, update(job_type=JobType.PRE_PROCESSING)) == Decision.DISCARD


class TestReconciler:
    def test_push_ahead_of_poll_keeps_higher_progress(self, reconciler: Reconciler):
        running(reconciler, 10)
        decision = reconciler.ingest(update(source=Source.POLL, status=JobStatus.IN_PROGRESS, progress=5))

        assert decision == Decision.DISCARD
        assert reconciler.view.progress == 10
        assert reconciler.view.last_source == Source.PUSH
        assert reconciler.discarded == 1

    def test_progress_is_monotonic_across_sources(self, reconciler: Reconciler):
        seen: List[int] = []
        reconciler.on_change(lambda view: seen.append(view.progress))

        for source, progress in [
            (Source.PUSH, 10),
            (Source.POLL, 30),
            (Source.PUSH, 20),
            (Source.MANUAL_REFRESH, 60),
            (Source.POLL, 55),
        ]:
            reconciler.ingest(update(source=source, progress=progress))

        assert seen == sorted(seen)
        assert reconciler.view.progress == 60
        assert reconciler.view.last_source == Source.MANUAL_REFRESH

    def test_start_requested_resets_to_pending(self, reconciler: Reconciler):
        running(reconciler, 70)

        view = reconciler.start_requested()

        assert view.status == JobStatus.PENDING
        assert view.progress == 0
        assert view.job_id is None

        # late event from the old job must not come back
        assert reconciler.ingest(update(job_id="job-1", progress=90)) == Decision.DISCARD
        assert reconciler.view.progress == 0

    def test_bind_job_adopts_start_id(self, reconciler: Reconciler):
        reconciler.start_requested()
        reconciler.bind_job("job-2")

        assert reconciler.view.job_id == "job-2"
        assert reconciler.view.status == JobStatus.PENDING
        reconciler.ingest(update(job_id="job-2", progress=15))
        assert reconciler.view.status == JobStatus.IN_PROGRESS
        assert reconciler.view.progress == 15

    def test_push_before_start_response_is_kept(self, reconciler: Reconciler):
        reconciler.start_requested()
        reconciler.ingest(update(job_id="job-2", status=JobStatus.IN_PROGRESS, progress=20))

        reconciler.bind_job("job-2")

        assert reconciler.view.job_id == "job-2"
        assert reconciler.view.progress == 20

    def test_new_job_id_from_channel_resets_view(self, reconciler: Reconciler):
        running(reconciler, 80)

        decision = reconciler.ingest(
            update(job_id="job-2", status=JobStatus.PENDING, progress=0, message="Job queued")
        )

        assert decision == Decision.RESET
        assert reconciler.view.job_id == "job-2"
        assert reconciler.view.status == JobStatus.PENDING
        assert reconciler.view.progress == 0

    def test_error_is_applied_and_sticks(self, reconciler: Reconciler):
        errors: List[JobView] = []
        reconciler.on_error(errors.append)
        running(reconciler, 40)

        reconciler.ingest(update(status=JobStatus.ERROR, message="row 12 is broken"))
        reconciler.ingest(update(progress=90))

        assert reconciler.view.status == JobStatus.ERROR
        assert reconciler.view.progress == 40
        assert reconciler.view.message == "row 12 is broken"
        assert reconciler.view.error_code == ErrorCode.JOB_FAILED
        assert len(errors) == 1

    def test_completion_forces_100_and_notifies_once(self, reconciler: Reconciler):
        completed: List[JobView] = []
        reconciler.on_complete(completed.append)
        running(reconciler, 90)

        reconciler.ingest(update(status=JobStatus.COMPLETED, progress=95, message="Done"))
        reconciler.ingest(
            update(source=Source.POLL, status=JobStatus.COMPLETED, progress=100, message="Done")
        )

        assert reconciler.view.status == JobStatus.COMPLETED
        assert reconciler.view.progress == 100
        assert len(completed) == 1

    def test_counts_parsed_from_message(self, reconciler: Reconciler):
        reconciler.ingest(update(progress=42, message="Processing 42/100 patients"))

        assert reconciler.view.processed_items == 42
        assert reconciler.view.total_items == 100

        reconciler.ingest(update(progress=42, message="Processing 40/100 patients"))
        assert reconciler.view.processed_items == 42

    def test_transport_loss_keeps_status_and_annotates(
        self, reconciler: Reconciler, clock
    ):
        running(reconciler, 30)

        reconciler.transport_lost()

        assert reconciler.view.status == JobStatus.IN_PROGRESS
        assert reconciler.view.progress == 30
        assert reconciler.view.message == "Working" + RECONNECTING_SUFFIX

        reconciler.ingest(update(source=Source.POLL, progress=35, message="Still working"))
        assert reconciler.view.message == "Still working" + RECONNECTING_SUFFIX

        reconciler.transport_restored()
        assert reconciler.view.message == "Still working"
        assert reconciler.view.reconnecting is False

    def test_poll_interval_speeds_up_after_grace(self, reconciler: Reconciler, clock):
        assert reconciler.poll_interval() is None

        running(reconciler, 10)
        assert reconciler.poll_interval() == 5.0

        reconciler.transport_lost()
        clock.advance(9)
        assert reconciler.poll_interval() == 5.0
        clock.advance(1)
        assert reconciler.poll_interval() == 1.0

        reconciler.transport_restored()
        assert reconciler.poll_interval() == 5.0

        reconciler.ingest(update(progress=100))
        assert reconciler.poll_interval() is None

    def test_start_rejected_shows_validation_error(self, reconciler: Reconciler):
        reconciler.start_requested()

        view = reconciler.start_rejected("A CSV file must be uploaded")

        assert view.status == JobStatus.ERROR
        assert view.error_code == ErrorCode.VALIDATION
        assert view.message == "A CSV file must be uploaded"

    def test_dismiss_returns_to_idle(self, reconciler: Reconciler):
        running(reconciler, 50)

        view = reconciler.dismiss()

        assert view.status == JobStatus.IDLE
        assert view.job_id is None
        assert reconciler.ingest(update(job_id="job-1", progress=60)) == Decision.DISCARD

    def test_refresh_flag(self, reconciler: Reconciler):
        reconciler.refresh_started()
        assert reconciler.view.refreshing is True

        reconciler.refresh_finished()
        assert reconciler.view.refreshing is False

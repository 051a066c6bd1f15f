# jobsync/client/reconciler.py
"""
Client-side merge of the three job update channels into one JobView.

Push events, poll responses and manual refreshes arrive independently and in
any order. Every update goes through ``evaluate``, a pure guard:

  - an update for a different job id resets the view to that job
  - an error update for the tracked job is always applied
  - otherwise the update applies only if its progress is not lower

Updates failing the guard are older information and are dropped quietly.
"""

import re
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from jobsync.core.exceptions import ErrorCode
from jobsync.core.logging import LoggerMixin
from jobsync.schemas.job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    JobType,
)

RECONNECTING_SUFFIX = " (reconnecting…)"
_ITEM_COUNTS = re.compile(r"(\d+)\s*/\s*(\d+)\s*([A-Za-z]+)")

# status spellings seen from older producers
_STATUS_ALIASES: Dict[str, JobStatus] = {
    "complete": JobStatus.COMPLETED,
    "processing": JobStatus.IN_PROGRESS,
    "running": JobStatus.IN_PROGRESS,
    "failed": JobStatus.ERROR,
}


class Source(str, Enum):
    PUSH = "push"
    POLL = "poll"
    MANUAL_REFRESH = "manual_refresh"
    LOCAL = "local"


class Decision(str, Enum):
    APPLY = "apply"
    RESET = "reset"
    DISCARD = "discard"


def normalize_status(value: Any) -> Optional[JobStatus]:
    if value is None or value == "":
        return None
    if isinstance(value, JobStatus):
        return value
    text = str(value).lower()
    if text in _STATUS_ALIASES:
        return _STATUS_ALIASES[text]
    try:
        return JobStatus(text)
    except ValueError:
        return None


def parse_item_counts(message: Optional[str]) -> Optional[Tuple[int, int]]:
    """Extract (processed, total) from text like '42/100 patients'."""
    if not message:
        return None
    match = _ITEM_COUNTS.search(message)
    if not match:
        return None
    processed, total = int(match.group(1)), int(match.group(2))
    if processed > total:
        return None
    return processed, total


class ChannelUpdate(BaseModel):
    """One observation of job state from any channel."""

    source: Source
    job_id: Optional[str] = None
    job_type: Optional[JobType] = None
    status: Optional[JobStatus] = None
    progress: Optional[int] = None
    message: Optional[str] = None
    processed_items: Optional[int] = None
    total_items: Optional[int] = None
    stage: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        source: Source,
        job_type: Optional[JobType] = None,
    ) -> "ChannelUpdate":
        """Build from a push payload or poll body (camelCase keys)."""
        error = payload.get("error")
        error_code = None
        if isinstance(error, dict) and error.get("code"):
            try:
                error_code = ErrorCode(error["code"])
            except ValueError:
                error_code = ErrorCode.INTERNAL
        progress = payload.get("progress")
        return cls(
            source=source,
            job_id=payload.get("jobId"),
            job_type=payload.get("processType") or job_type,
            status=normalize_status(payload.get("status")),
            progress=None if progress is None else max(0, min(100, int(progress))),
            message=payload.get("message"),
            processed_items=payload.get("processedItems"),
            total_items=payload.get("totalItems"),
            stage=payload.get("stage"),
            error_code=error_code,
        )


class JobView(BaseModel):
    """Presentation-facing state; derived, never authoritative."""

    job_id: Optional[str] = None
    job_type: Optional[JobType] = None
    status: JobStatus = JobStatus.IDLE
    progress: int = 0
    message: str = ""
    processed_items: Optional[int] = None
    total_items: Optional[int] = None
    stage: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    last_source: Source = Source.LOCAL
    reconnecting: bool = False
    refreshing: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def evaluate(
    view: JobView, update: ChannelUpdate, retired: Optional[Set[str]] = None
) -> Decision:
    """Monotonic guard deciding what an update may do to the view."""
    if update.job_type is not None and view.job_type is not None:
        if update.job_type != view.job_type:
            return Decision.DISCARD

    if update.job_id is not None and update.job_id != view.job_id:
        if retired and update.job_id in retired:
            return Decision.DISCARD
        return Decision.RESET

    if view.is_terminal:
        return Decision.DISCARD

    if update.status == JobStatus.ERROR:
        return Decision.APPLY

    if update.progress is None or update.progress >= view.progress:
        return Decision.APPLY

    return Decision.DISCARD


def _next_status(current: JobStatus, update: ChannelUpdate, progress: int) -> JobStatus:
    if update.status == JobStatus.ERROR:
        return JobStatus.ERROR
    if update.status == JobStatus.COMPLETED or progress >= 100:
        return JobStatus.COMPLETED
    if update.status == JobStatus.PENDING and current in (JobStatus.IDLE, JobStatus.PENDING):
        return JobStatus.PENDING
    if update.status == JobStatus.IDLE:
        return current
    return JobStatus.IN_PROGRESS


ViewListener = Callable[[JobView], None]


class Reconciler(LoggerMixin):
    """
    State machine owning the JobView for one (owner, job type).

    Not thread-safe: every method runs to completion on the client's event
    loop before the next channel callback is processed.
    """

    def __init__(
        self,
        job_type: JobType,
        *,
        poll_interval: float = 5.0,
        fast_poll_interval: float = 1.0,
        reconnect_grace: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_type = job_type
        self.poll_interval_seconds = poll_interval
        self.fast_poll_interval_seconds = fast_poll_interval
        self.reconnect_grace = reconnect_grace
        self.clock = clock

        self._view = JobView(job_type=job_type)
        self._message = ""
        self._retired: Set[str] = set()
        self._terminal_notified = False
        self._stream_down_since: Optional[float] = None
        self.discarded = 0

        self._on_change: List[ViewListener] = []
        self._on_complete: List[ViewListener] = []
        self._on_error: List[ViewListener] = []

    @property
    def view(self) -> JobView:
        return self._view

    def on_change(self, listener: ViewListener) -> None:
        self._on_change.append(listener)

    def on_complete(self, listener: ViewListener) -> None:
        self._on_complete.append(listener)

    def on_error(self, listener: ViewListener) -> None:
        self._on_error.append(listener)

    # ---------------- Lifecycle ----------------

    def start_requested(self) -> JobView:
        """User asked for a new job: reset to pending and retire the old id."""
        self._track(None, JobStatus.PENDING, "Starting…")
        return self._view

    def bind_job(self, job_id: str) -> None:
        """Adopt the id returned by the start call; it is authoritative."""
        if self._view.job_id == job_id or job_id in self._retired:
            return
        if self._view.job_id is None and self._view.status == JobStatus.PENDING:
            self._set(self._view.model_copy(update={"job_id": job_id}))
            return
        self.logger.debug(
            "Start id replaces tracked job", job_id=job_id, tracked=self._view.job_id
        )
        self._track(job_id, JobStatus.PENDING, "Starting…")

    def start_rejected(self, message: str) -> JobView:
        """Start call failed validation; the job never existed."""
        self._message = message
        self._set(
            self._view.model_copy(
                update={
                    "status": JobStatus.ERROR,
                    "error_code": ErrorCode.VALIDATION,
                    "last_source": Source.LOCAL,
                }
            )
        )
        return self._view

    def dismiss(self) -> JobView:
        """Hide the view; the server-side job is unaffected."""
        self._stream_down_since = None
        self._track(None, JobStatus.IDLE, "")
        return self._view

    def _track(self, job_id: Optional[str], status: JobStatus, message: str) -> None:
        if self._view.job_id is not None:
            self._retired.add(self._view.job_id)
        self._terminal_notified = False
        self._message = message
        self._set(
            JobView(
                job_id=job_id,
                job_type=self.job_type,
                status=status,
                reconnecting=self._view.reconnecting and status != JobStatus.IDLE,
                refreshing=self._view.refreshing,
                last_source=Source.LOCAL,
            )
        )

    # ---------------- Channel input ----------------

    def ingest(self, update: ChannelUpdate) -> Decision:
        """Merge one update from any channel."""
        view = self._view
        decision = evaluate(view, update, self._retired)

        if decision == Decision.DISCARD:
            self.discarded += 1
            self.logger.debug(
                "Discarded stale update",
                source=update.source.value,
                job_id=update.job_id,
                progress=update.progress,
                current=view.progress,
                status=view.status.value,
            )
            return decision

        if decision == Decision.RESET:
            if view.job_id is not None:
                self._retired.add(view.job_id)
            base = JobView(
                job_id=update.job_id,
                job_type=self.job_type,
                reconnecting=view.reconnecting,
                refreshing=view.refreshing,
            )
            self._message = ""
            self._terminal_notified = False
        else:
            base = view

        progress = base.progress if update.progress is None else update.progress
        progress = max(progress, base.progress)
        status = _next_status(base.status, update, progress)
        if status == JobStatus.COMPLETED:
            progress = 100

        processed, total = self._counts(base, update)

        if update.message is not None:
            self._message = update.message

        self._set(
            base.model_copy(
                update={
                    "job_id": update.job_id or base.job_id,
                    "status": status,
                    "progress": progress,
                    "processed_items": processed,
                    "total_items": total,
                    "stage": update.stage if update.stage is not None else base.stage,
                    "error_code": (
                        update.error_code or ErrorCode.JOB_FAILED
                        if status == JobStatus.ERROR
                        else None
                    ),
                    "last_source": update.source,
                }
            )
        )
        self._notify_terminal()
        return decision

    @staticmethod
    def _counts(
        base: JobView, update: ChannelUpdate
    ) -> Tuple[Optional[int], Optional[int]]:
        processed, total = update.processed_items, update.total_items
        if processed is None or total is None:
            parsed = parse_item_counts(update.message)
            if parsed is not None:
                processed, total = parsed
        if processed is None:
            return base.processed_items, base.total_items if total is None else total
        if base.processed_items is not None and processed < base.processed_items:
            return base.processed_items, base.total_items
        return processed, base.total_items if total is None else total

    # ---------------- Transport ----------------

    def transport_lost(self) -> None:
        """Push stream dropped; status is kept, only the message is annotated."""
        if self._stream_down_since is None:
            self._stream_down_since = self.clock()
        if self._view.status == JobStatus.IN_PROGRESS and not self._view.reconnecting:
            self.logger.info("Push channel lost, waiting for reconnect", job_id=self._view.job_id)
            self._set(self._view.model_copy(update={"reconnecting": True}))

    def transport_restored(self) -> None:
        self._stream_down_since = None
        if self._view.reconnecting:
            self.logger.info("Push channel restored", job_id=self._view.job_id)
            self._set(self._view.model_copy(update={"reconnecting": False}))

    def poll_interval(self) -> Optional[float]:
        """Seconds until the next poll, or None when polling should stop."""
        if self._view.status not in ACTIVE_STATUSES:
            return None
        if (
            self._stream_down_since is not None
            and self.clock() - self._stream_down_since >= self.reconnect_grace
        ):
            return self.fast_poll_interval_seconds
        return self.poll_interval_seconds

    # ---------------- Manual refresh ----------------

    def refresh_started(self) -> None:
        self._set(self._view.model_copy(update={"refreshing": True}))

    def refresh_finished(self) -> None:
        self._set(self._view.model_copy(update={"refreshing": False}))

    # ---------------- Internals ----------------

    def _set(self, view: JobView) -> None:
        message = self._message
        if view.reconnecting and view.status == JobStatus.IN_PROGRESS:
            message += RECONNECTING_SUFFIX
        self._view = view.model_copy(update={"message": message})
        for listener in self._on_change:
            listener(self._view)

    def _notify_terminal(self) -> None:
        view = self._view
        if not view.is_terminal or self._terminal_notified:
            return
        self._terminal_notified = True
        listeners = self._on_complete if view.status == JobStatus.COMPLETED else self._on_error
        for listener in listeners:
            listener(view)

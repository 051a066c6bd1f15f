# jobsync/client/estimator.py
"""
Advisory processing-time estimate shown while a file uploads.

The estimate seeds the progress view before the server reports anything;
it never feeds the reconciler's progress guard.
"""

import math
from enum import Enum
from typing import Final, Optional
from pydantic import BaseModel

from jobsync.core.exceptions import ErrorCode

BYTES_PER_MB: Final[int] = 1024 * 1024
BASE_SECONDS: Final[float] = 15
MIN_ESTIMATE_SECONDS: Final[int] = 30
RECORDS_PER_MB: Final[int] = 10_000
SECONDS_PER_RECORD: Final[float] = 0.002


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def estimate(file_size_bytes: int) -> int:
    """Seconds to process a file of the given size, piecewise by size tier."""
    size_mb = max(0, file_size_bytes) / BYTES_PER_MB

    if size_mb < 1:
        seconds = BASE_SECONDS + size_mb * 5
    elif size_mb < 5:
        seconds = BASE_SECONDS + 5 + size_mb * 10
    elif size_mb < 20:
        seconds = BASE_SECONDS + 55 + size_mb * 15
    else:
        # large exports are dominated by per-record work
        estimated_records = _round_half_up(size_mb * RECORDS_PER_MB)
        seconds = (
            BASE_SECONDS
            + 355
            + size_mb * 20
            + estimated_records * SECONDS_PER_RECORD
        )

    return max(MIN_ESTIMATE_SECONDS, _round_half_up(seconds))


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}{'' if value == 1 else 's'}"


def format_duration(seconds: int) -> str:
    """Human readable duration, e.g. '2 minutes 5 seconds'."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return _plural(seconds, "second")
    if seconds < 3600:
        return f"{_plural(seconds // 60, 'minute')} {_plural(seconds % 60, 'second')}"
    return f"{_plural(seconds // 3600, 'hour')} {_plural((seconds % 3600) // 60, 'minute')}"


class UploadPhase(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class UploadSession(BaseModel):
    """Client-local state of one file upload; never sent to the server."""

    file_size_bytes: int
    uploaded_bytes: int = 0
    estimated_processing_seconds: int
    phase: UploadPhase = UploadPhase.IDLE
    file_path: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    completed_at: Optional[float] = None

    @classmethod
    def select(cls, file_size_bytes: int) -> "UploadSession":
        """New session for a freshly selected file."""
        return cls(
            file_size_bytes=file_size_bytes,
            estimated_processing_seconds=estimate(file_size_bytes),
        )

    @property
    def upload_percent(self) -> int:
        if self.file_size_bytes <= 0:
            return 100 if self.phase != UploadPhase.IDLE else 0
        return min(100, self.uploaded_bytes * 100 // self.file_size_bytes)

    def begin(self) -> None:
        self.phase = UploadPhase.UPLOADING
        self.uploaded_bytes = 0
        self.error = None
        self.error_code = None

    def record_bytes(self, count: int) -> None:
        if self.phase != UploadPhase.UPLOADING:
            return
        self.uploaded_bytes = min(self.file_size_bytes, self.uploaded_bytes + count)
        if self.uploaded_bytes >= self.file_size_bytes:
            # every byte is sent, the server is now working on the file
            self.phase = UploadPhase.PROCESSING

    def complete(self, file_path: str, now: float) -> None:
        self.phase = UploadPhase.COMPLETE
        self.uploaded_bytes = self.file_size_bytes
        self.file_path = file_path
        self.completed_at = now

    def fail(self, message: str, code: ErrorCode) -> None:
        self.phase = UploadPhase.ERROR
        self.error = message
        self.error_code = code

    def is_expired(self, now: float, reset_after: float) -> bool:
        """True once a completed session has been shown for reset_after seconds."""
        return (
            self.phase == UploadPhase.COMPLETE
            and self.completed_at is not None
            and now - self.completed_at >= reset_after
        )

    def reset(self) -> None:
        self.phase = UploadPhase.IDLE
        self.uploaded_bytes = 0
        self.file_path = None
        self.error = None
        self.error_code = None
        self.completed_at = None

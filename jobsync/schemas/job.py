# jobsync/schemas/job.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from jobsync.core.exceptions import ErrorCode, ErrorSeverity


class JobType(str, Enum):
    PRE_PROCESSING = "pre_processing"
    EXTRACTION = "extraction"
    SYMPTOM_LIBRARY = "symptom_library"


class JobStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR})


class JobSource(str, Enum):
    DATABASE = "database"
    CSV = "csv"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ErrorInfo(WireModel):
    code: ErrorCode
    severity: ErrorSeverity = ErrorSeverity.ERROR
    message: str


class Job(WireModel):
    """Authoritative record of one background operation."""

    id: str
    job_type: JobType
    owner_id: str
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    processed_items: Optional[int] = Field(None, ge=0)
    total_items: Optional[int] = Field(None, ge=0)
    message: str = ""
    stage: Optional[str] = None
    error: Optional[ErrorInfo] = None

    source: JobSource = JobSource.DATABASE
    csv_file_path: Optional[str] = None
    callback_url: Optional[str] = None

    started_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class JobDelta(WireModel):
    """Partial update reported by a worker; omitted fields keep their value."""

    progress: Optional[int] = Field(None, ge=0, le=100)
    status: Optional[JobStatus] = None
    message: Optional[str] = None
    stage: Optional[str] = None
    processed_items: Optional[int] = Field(None, ge=0)
    total_items: Optional[int] = Field(None, ge=0)
    error: Optional[ErrorInfo] = None


class JobSnapshot(WireModel):
    """Point-in-time view of a job; also the payload of push progress events."""

    job_id: str
    process_type: JobType
    status: JobStatus
    progress: int
    message: str
    processed_items: Optional[int] = None
    total_items: Optional[int] = None
    stage: Optional[str] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobSnapshot":
        return cls(
            job_id=job.id,
            process_type=job.job_type,
            status=job.status,
            progress=job.progress,
            message=job.message,
            processed_items=job.processed_items,
            total_items=job.total_items,
            stage=job.stage,
            error=job.error,
        )


class EventType(str, Enum):
    CONNECTION = "connection"
    PROGRESS_UPDATE = "progress_update"
    ERROR = "error"


class EventEnvelope(WireModel):
    """One push event: ``type`` names the event, ``jobType`` routes it."""

    type: EventType
    job_type: Optional[JobType] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class StartJobRequest(WireModel):
    source: JobSource = JobSource.DATABASE
    csv_file_path: Optional[str] = None
    callback_url: Optional[str] = None


class StartJobResponse(WireModel):
    message: str
    job_id: str


class UploadResponse(WireModel):
    success: bool
    file_path: Optional[str] = None
    error: Optional[str] = None
    code: Optional[ErrorCode] = None

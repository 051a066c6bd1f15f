# jobsync/models/job.py

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, String, Integer, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

from jobsync.schemas.job import ErrorInfo, Job

Base = declarative_base()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobRecord(Base):
    __tablename__ = "jobs"
    __table_args__ = (UniqueConstraint("owner_id", "job_type", name="uq_jobs_owner_type"),)

    # Primary key
    id = Column(String(32), primary_key=True)

    # Ownership
    owner_id = Column(String, nullable=False, index=True)
    job_type = Column(String(32), nullable=False)

    # Status and progress
    status = Column(String(16), nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=True)
    total_items = Column(Integer, nullable=True)
    message = Column(Text, nullable=False, default="")
    stage = Column(String, nullable=True)

    # Structured error
    error_code = Column(String(32), nullable=True)
    error_severity = Column(String(16), nullable=True)
    error_message = Column(Text, nullable=True)

    # Source
    source = Column(String(16), nullable=False, default="database")
    csv_file_path = Column(String, nullable=True)
    callback_url = Column(String, nullable=True)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<JobRecord(id='{self.id}', status='{self.status}', progress={self.progress})>"

    @classmethod
    def columns_from_job(cls, job: Job) -> dict:
        """Column values for a Job, used for inserts and compare-and-set updates."""
        return {
            "id": job.id,
            "owner_id": job.owner_id,
            "job_type": job.job_type.value,
            "status": job.status.value,
            "progress": job.progress,
            "processed_items": job.processed_items,
            "total_items": job.total_items,
            "message": job.message,
            "stage": job.stage,
            "error_code": job.error.code.value if job.error else None,
            "error_severity": job.error.severity.value if job.error else None,
            "error_message": job.error.message if job.error else None,
            "source": job.source.value,
            "csv_file_path": job.csv_file_path,
            "callback_url": job.callback_url,
            "started_at": job.started_at,
            "updated_at": job.updated_at,
            "finished_at": job.finished_at,
        }

    def to_job(self) -> Job:
        error = None
        if self.error_code:
            error = ErrorInfo(
                code=self.error_code,
                severity=self.error_severity or "error",
                message=self.error_message or "",
            )
        return Job(
            id=self.id,
            job_type=self.job_type,
            owner_id=self.owner_id,
            status=self.status,
            progress=self.progress,
            processed_items=self.processed_items,
            total_items=self.total_items,
            message=self.message or "",
            stage=self.stage,
            error=error,
            source=self.source,
            csv_file_path=self.csv_file_path,
            callback_url=self.callback_url,
            started_at=_aware(self.started_at),
            updated_at=_aware(self.updated_at),
            finished_at=_aware(self.finished_at),
        )

# jobsync/core/exceptions.py
"""
Custom exceptions for the job synchronization service.
Provides structured error handling with clear error types and wire error codes.
"""

from enum import Enum
from typing import Optional, Dict, Any
from fastapi import HTTPException


class ErrorCode(str, Enum):
    """Machine-readable error code carried by every error payload."""

    VALIDATION = "validation"
    JOB_FAILED = "job_failed"
    INTERRUPTED = "interrupted"
    UPLOAD_FAILED = "upload_failed"
    NETWORK = "network"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class JobSyncError(Exception):
    """Base exception for all job synchronization operations."""

    code: ErrorCode = ErrorCode.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        """Structured error body, the free-text message is for display only."""
        return {
            "code": self.code.value,
            "severity": self.severity.value,
            "message": self.message,
        }


class ValidationError(JobSyncError):
    """Raised when a start or upload request is malformed."""

    code = ErrorCode.VALIDATION


class ConfigurationError(JobSyncError):
    """Raised when application configuration is invalid."""

    pass


class JobNotFoundError(JobSyncError):
    """Raised when a job id is unknown or has been superseded by a newer job."""

    pass


class TerminalJobError(JobSyncError):
    """Raised when a write targets a completed or errored job."""

    pass


class StaleProgressError(JobSyncError):
    """Raised when an advance would move progress backwards."""

    pass


class WorkloadError(JobSyncError):
    """Raised by a workload when the job cannot continue."""

    code = ErrorCode.JOB_FAILED


class UploadError(JobSyncError):
    """Raised when an uploaded file cannot be stored."""

    code = ErrorCode.UPLOAD_FAILED


class TransportError(JobSyncError):
    """Raised on the client when the push or poll transport fails."""

    code = ErrorCode.NETWORK
    severity = ErrorSeverity.WARNING


# HTTP Exception factories for FastAPI
def create_http_exception(
    status_code: int, message: str, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    """Create a structured HTTP exception."""
    detail = {"message": message}
    if details:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


def validation_http_error(
    message: str, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    """Create a 400 validation error."""
    return create_http_exception(
        400, message, {"code": ErrorCode.VALIDATION.value, **(details or {})}
    )


def not_found_http_error(resource: str, identifier: str) -> HTTPException:
    """Create a 404 not found error."""
    return create_http_exception(
        404, f"{resource} not found", {"resource": resource, "identifier": identifier}
    )


def internal_server_http_error(
    message: str, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    """Create a 500 internal server error."""
    return create_http_exception(500, f"Internal server error: {message}", details)

from .database_service import DatabaseService
from .push_hub import PushHub
from .job_service import JobService
from .upload_service import UploadService
from .background_processor import BackgroundProcessor

__all__ = [
    "DatabaseService",
    "PushHub",
    "JobService",
    "UploadService",
    "BackgroundProcessor",
]

# jobsync/core/dependencies.py
"""
Centralized dependency injection for FastAPI.
Process-wide singletons are created lazily and can be swapped in tests
through app.dependency_overrides or reset_dependencies().
"""

from typing import Annotated, Optional
from fastapi import Depends

from jobsync.core.config import Settings, get_settings
from jobsync.core.jobs import JobRecordStore, JobStore
from jobsync.core.logging import get_logger
from jobsync.services.background_processor import BackgroundProcessor, BatchWorkload
from jobsync.services.database_service import DatabaseService
from jobsync.services.job_service import JobService
from jobsync.services.push_hub import PushHub
from jobsync.services.upload_service import UploadService

logger = get_logger(__name__)


_job_store: Optional[JobRecordStore] = None
_push_hub: Optional[PushHub] = None
_job_service: Optional[JobService] = None
_background_processor: Optional[BackgroundProcessor] = None


def get_job_store(
    settings: Annotated[Settings, Depends(get_settings)],
) -> JobRecordStore:
    """Job record store for the configured backend, shared by all requests."""
    global _job_store
    if _job_store is None:
        if settings.JOB_STORE_BACKEND == "database":
            logger.info("Creating database job store", database_url=settings.DATABASE_URL)
            _job_store = DatabaseService(settings=settings)
        else:
            logger.info("Creating in-memory job store")
            _job_store = JobStore()
    return _job_store


def get_push_hub(
    settings: Annotated[Settings, Depends(get_settings)],
) -> PushHub:
    global _push_hub
    if _push_hub is None:
        logger.info("Creating push hub", outbox_size=settings.PUSH_OUTBOX_SIZE)
        _push_hub = PushHub(
            outbox_size=settings.PUSH_OUTBOX_SIZE,
            heartbeat_seconds=settings.PUSH_HEARTBEAT_SECONDS,
        )
    return _push_hub


def get_job_service(
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[JobRecordStore, Depends(get_job_store)],
    hub: Annotated[PushHub, Depends(get_push_hub)],
) -> JobService:
    global _job_service
    if _job_service is None:
        _job_service = JobService(settings=settings, store=store, hub=hub)
    return _job_service


def get_background_processor(
    settings: Annotated[Settings, Depends(get_settings)],
    jobs: Annotated[JobService, Depends(get_job_service)],
) -> BackgroundProcessor:
    global _background_processor
    if _background_processor is None:
        logger.debug("Creating background processor")
        _background_processor = BackgroundProcessor(
            settings=settings, jobs=jobs, workload=BatchWorkload(settings)
        )
    return _background_processor


def get_upload_service(
    settings: Annotated[Settings, Depends(get_settings)],
) -> UploadService:
    """Upload service - stateless, created per request."""
    return UploadService(settings=settings)


def reset_dependencies() -> None:
    """Drop every singleton; the next request builds fresh ones."""
    global _job_store, _push_hub, _job_service, _background_processor
    _job_store = None
    _push_hub = None
    _job_service = None
    _background_processor = None

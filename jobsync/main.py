# jobsync/main.py

from contextlib import asynccontextmanager
from fastapi import (
    FastAPI,
    UploadFile,
    Query,
    File,
    HTTPException,
    BackgroundTasks,
    Depends,
)
from typing import Annotated
from fastapi.responses import JSONResponse, StreamingResponse

from jobsync.core.config import get_settings
from jobsync.core.logging import setup_logging, get_logger
from jobsync.core.dependencies import (
    get_job_store,
    get_push_hub,
    get_job_service,
    get_background_processor,
    get_upload_service,
)
from jobsync.core.exceptions import (
    ConfigurationError,
    JobSyncError,
    ValidationError,
    validation_http_error,
    not_found_http_error,
    internal_server_http_error,
)
from jobsync.schemas.job import (
    JobSnapshot,
    JobType,
    StartJobRequest,
    StartJobResponse,
    UploadResponse,
)
from jobsync.services.background_processor import BackgroundProcessor
from jobsync.services.database_service import DatabaseService
from jobsync.services.job_service import JOB_LABELS, JobService
from jobsync.services.push_hub import PushHub
from jobsync.services.upload_service import UploadService


logger = get_logger(__name__)

OwnerId = Annotated[str, Query(alias="ownerId", min_length=1, max_length=128)]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application lifespan - startup and shutdown"""
    settings = get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, enable_json=settings.LOG_JSON)
    logger.info("Starting job progress service")

    hub = None
    try:
        settings.validate_runtime_dependencies()
        logger.info("Configuration validated successfully")

        store = get_job_store(settings)
        if isinstance(store, DatabaseService):
            await store.init_db()
            logger.info("Database initialized successfully")

        hub = get_push_hub(settings)
        jobs = get_job_service(settings, store, hub)
        interrupted = await jobs.recover_interrupted()
        if interrupted:
            logger.warning("Interrupted jobs marked as failed", count=interrupted)

        yield

    except ConfigurationError as e:
        logger.error("Configuration error during startup", error=e.message)
        raise
    finally:
        if hub is not None:
            hub.close_all()
        logger.info("Shutting down job progress service")


app = FastAPI(title="Job Progress API", lifespan=lifespan)


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/events", summary="Subscribe to Job Progress Events")
async def subscribe_events(
    owner_id: OwnerId,
    hub: Annotated[PushHub, Depends(get_push_hub)],
) -> StreamingResponse:
    connection = hub.subscribe(owner_id)
    return StreamingResponse(
        hub.stream(connection),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get(
    "/jobs/{job_type}/status",
    summary="Get Job Status",
    response_model=JobSnapshot,
)
async def get_job_status(
    job_type: JobType,
    owner_id: OwnerId,
    jobs: Annotated[JobService, Depends(get_job_service)],
) -> JobSnapshot:
    try:
        snapshot = await jobs.snapshot(owner_id, job_type)
        if snapshot is None:
            raise not_found_http_error("Job", job_type.value)
        return snapshot
    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "Failed to retrieve job status",
            owner_id=owner_id,
            job_type=job_type.value,
            error=str(e),
        )
        raise internal_server_http_error("Failed to retrieve job status")


@app.post(
    "/jobs/{job_type}/start",
    summary="Start Job",
    status_code=202,
    response_model=StartJobResponse,
)
async def start_job(
    job_type: JobType,
    owner_id: OwnerId,
    request: StartJobRequest,
    background: BackgroundTasks,
    jobs: Annotated[JobService, Depends(get_job_service)],
    processor: Annotated[BackgroundProcessor, Depends(get_background_processor)],
) -> StartJobResponse:
    try:
        job = await jobs.start(owner_id, job_type, request)
    except ValidationError as e:
        logger.warning(
            "Rejected job start",
            owner_id=owner_id,
            job_type=job_type.value,
            error=e.message,
        )
        raise validation_http_error(e.message, e.details)
    except Exception as e:
        logger.error(
            "Failed to start job", owner_id=owner_id, job_type=job_type.value, error=str(e)
        )
        raise internal_server_http_error("Failed to start job")

    background.add_task(processor.process_job, job.id)
    logger.info("Background processing scheduled", job_id=job.id)
    return StartJobResponse(message=f"{JOB_LABELS[job_type]} started", job_id=job.id)


@app.post("/uploads", summary="Upload Data File", response_model=UploadResponse)
async def upload_file(
    owner_id: OwnerId,
    uploads: Annotated[UploadService, Depends(get_upload_service)],
    file: UploadFile = File(...),
):
    try:
        path = await uploads.save(owner_id, file)
        return UploadResponse(success=True, file_path=path)
    except JobSyncError as e:
        status_code = 400 if isinstance(e, ValidationError) else 500
        logger.warning(
            "Upload rejected",
            owner_id=owner_id,
            filename=getattr(file, "filename", "unknown"),
            error=e.message,
        )
        return JSONResponse(
            status_code=status_code,
            content=UploadResponse(
                success=False, error=e.message, code=e.code
            ).to_wire(),
        )

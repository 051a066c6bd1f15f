import uvicorn

from jobsync.core.config import get_settings


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run("jobsync.main:app", reload=settings.LOG_LEVEL.upper() == "DEBUG")

"""Pytest configuration and fixtures."""
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from jobsync.client.reconciler import Reconciler
from jobsync.core.config import ClientSettings, Settings, get_settings
from jobsync.core.dependencies import reset_dependencies
from jobsync.core.jobs import JobStore
from jobsync.schemas.job import JobType
from jobsync.services.job_service import JobService
from jobsync.services.push_hub import PushHub


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path}/jobs.db",
        UPLOAD_DIR=str(tmp_path / "uploads"),
        DATABASE_ITEM_COUNT=25,
        WORKLOAD_BATCH_SIZE=10,
        PUSH_OUTBOX_SIZE=8,
        PUSH_HEARTBEAT_SECONDS=0.05,
    )


@pytest.fixture
def client_settings() -> ClientSettings:
    return ClientSettings(
        BASE_URL="http://testserver",
        POLL_INTERVAL_SECONDS=5.0,
        FAST_POLL_INTERVAL_SECONDS=1.0,
        RECONNECT_GRACE_SECONDS=10.0,
        MANUAL_REFRESH_CEILING_SECONDS=0.05,
    )


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def hub() -> PushHub:
    return PushHub(outbox_size=8, heartbeat_seconds=0.05)


@pytest.fixture
def job_service(settings: Settings, store: JobStore, hub: PushHub) -> JobService:
    return JobService(settings=settings, store=store, hub=hub)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reconciler(clock: FakeClock) -> Reconciler:
    return Reconciler(
        JobType.PRE_PROCESSING,
        poll_interval=5.0,
        fast_poll_interval=1.0,
        reconnect_grace=10.0,
        clock=clock,
    )


@pytest.fixture
def api_client(tmp_path, monkeypatch) -> Generator[TestClient, None, None]:
    """Test client over the real app with fresh singletons and an in-memory store."""
    from jobsync.main import app

    monkeypatch.setenv("JOB_STORE_BACKEND", "memory")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("DATABASE_ITEM_COUNT", "30")
    get_settings.cache_clear()
    reset_dependencies()

    with TestClient(app) as test_client:
        yield test_client

    reset_dependencies()
    get_settings.cache_clear()

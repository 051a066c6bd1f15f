# jobsync/core/config.py
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import Literal, Set
from jobsync.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./jobsync.db"
    JOB_STORE_BACKEND: Literal["memory", "database"] = "memory"

    # uploads
    UPLOAD_DIR: str = "./uploads"
    ALLOWED_EXTENSIONS: Set[str] = {"csv"}
    MAX_UPLOAD_BYTES: int = 512 * 1024 * 1024

    # push hub
    PUSH_OUTBOX_SIZE: int = 256
    PUSH_HEARTBEAT_SECONDS: float = 15.0

    # workload
    DATABASE_ITEM_COUNT: int = 100
    WORKLOAD_BATCH_SIZE: int = 10
    CALLBACK_TIMEOUT_SECONDS: float = 5.0

    # logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v:
            raise ConfigurationError("DATABASE_URL is required")
        return v

    @field_validator("PUSH_OUTBOX_SIZE", "WORKLOAD_BATCH_SIZE")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ConfigurationError("Value must be at least 1")
        return v

    def validate_runtime_dependencies(self) -> None:
        """Validate settings that depend on each other."""
        errors = []

        if self.JOB_STORE_BACKEND == "database" and not self.DATABASE_URL:
            errors.append("DATABASE_URL is not set for the database backend")

        if self.PUSH_HEARTBEAT_SECONDS <= 0:
            errors.append("PUSH_HEARTBEAT_SECONDS must be positive")

        if self.MAX_UPLOAD_BYTES <= 0:
            errors.append("MAX_UPLOAD_BYTES must be positive")

        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {', '.join(errors)}"
            )


class ClientSettings(BaseSettings):
    """Settings for the progress client, read from JOBSYNC_* variables."""

    BASE_URL: str = "http://127.0.0.1:8000"
    POLL_INTERVAL_SECONDS: float = 5.0
    FAST_POLL_INTERVAL_SECONDS: float = 1.0
    RECONNECT_GRACE_SECONDS: float = 10.0
    RECONNECT_DELAY_SECONDS: float = 3.0
    MANUAL_REFRESH_CEILING_SECONDS: float = 3.0
    REQUEST_TIMEOUT_SECONDS: float = 10.0
    UPLOAD_TIMEOUT_SECONDS: float = 2 * 60 * 60
    UPLOAD_SUCCESS_RESET_SECONDS: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="JOBSYNC_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    def validate_runtime_dependencies(self) -> None:
        if self.FAST_POLL_INTERVAL_SECONDS > self.POLL_INTERVAL_SECONDS:
            raise ConfigurationError(
                "FAST_POLL_INTERVAL_SECONDS must not exceed POLL_INTERVAL_SECONDS"
            )


@lru_cache()
def get_settings() -> Settings:
    """
    Cached factory. FastAPI calls get_settings() through Depends,
    lru_cache keeps a single Settings instance per process.
    """
    return Settings()


@lru_cache()
def get_client_settings() -> ClientSettings:
    return ClientSettings()

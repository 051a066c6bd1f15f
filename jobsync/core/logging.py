# jobsync/core/logging.py
import logging
import structlog
from typing import Any
import sys


def setup_logging(log_level: str = "INFO", enable_json: bool = False) -> None:
    """
    Setup structured logging for server and client.

    Job workers bind ``job_id``/``owner_id`` through ``bind_job_context`` so
    every event emitted while a job runs carries them without repeating them
    at each call site.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_json: Whether to output JSON formatted logs
    """

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]

    if enable_json:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    # httpx logs every status poll at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_job_context(**values: Any) -> None:
    """Attach key/values to every log event of the current task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()


class LoggerMixin:
    """Mixin to add logger to any class."""

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger

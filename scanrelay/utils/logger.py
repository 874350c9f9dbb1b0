"""Structured logging utilities for scanrelay.

This module provides async-safe structured logging using structlog.
Every event emitted while a relay job or a report delivery is in flight
carries the job_id for tracing.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Optional, TextIO
from urllib.parse import urlsplit, urlunsplit

import structlog
from structlog.types import EventDict, Processor

# Context variable for job tracking
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)


def add_job_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add job_id to log context if available."""
    job_id = job_id_var.get()
    if job_id:
        event_dict["job_id"] = job_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add epoch timestamp to log entries."""
    event_dict["timestamp"] = time.time()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format. If False, use console format.
        stream: Log destination. Defaults to stdout; the CLI passes stderr so
                its own output stays machine-readable.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_job_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        # JSON output for CI runners and the relay container
        processors.append(structlog.processors.JSONRenderer())
    else:
        # Pretty console output for local runs
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "scanrelay") -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class PerformanceLogger:
    """Context manager for tracking operation duration."""

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        warn_after_ms: float = 5_000,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.warn_after_ms = warn_after_ms
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end_time = time.perf_counter()
        duration_ms = (self.end_time - self.start_time) * 1000

        if exc_type is not None:
            self.logger.error(
                f"{self.operation} failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error=str(exc_val),
            )
        else:
            log_method = self.logger.warning if duration_ms > self.warn_after_ms else self.logger.debug
            log_method(
                f"{self.operation} completed",
                operation=self.operation,
                duration_ms=duration_ms,
            )

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.end_time == 0:
            return (time.perf_counter() - self.start_time) * 1000
        return (self.end_time - self.start_time) * 1000


def set_job_id(job_id: str) -> None:
    """Set job ID in context for all subsequent logs."""
    job_id_var.set(job_id)


def clear_job_id() -> None:
    """Clear job ID from context."""
    job_id_var.set(None)


def redact_url(url: str) -> str:
    """Strip query string and fragment from a URL before logging it.

    Presigned URLs carry their signature in the query string; logging it
    would hand out read access to the artifact until the reference expires.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable-url>"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


# Initialize logging with sensible defaults
# Reconfigured by the CLI and the relay app based on environment
configure_logging()

"""
Structured logging utilities for bulk operation services using structlog.

Key Features:
- Async-safe context management with contextvars
- Processor chains for flexible log enrichment
- Environment-based output formatting
- Optional file-based logging with rotation
- Task context binding for queue workers
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars
from structlog.typing import Processor


def add_service_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add service identity fields to all logs.

    Fields added:
    - service.name: Logical service name (from SERVICE_NAME env var)
    - deployment.environment: Environment (development/staging/production)

    Args:
        logger: The logger instance (unused but required by structlog)
        method_name: The logging method name (unused but required by structlog)
        event_dict: The log event dictionary to enrich

    Returns:
        Enriched event dictionary with service context fields
    """
    event_dict["service.name"] = os.getenv("SERVICE_NAME", "unknown")
    event_dict["deployment.environment"] = os.getenv("ENVIRONMENT", "development")
    return event_dict


def configure_service_logging(
    service_name: str,
    environment: str | None = None,
    log_level: str = "INFO",
    log_to_file: bool | None = None,
    log_file_path: str | None = None,
) -> None:
    """
    Configure structlog for a service process.

    Args:
        service_name: Name of the service (e.g., "bulk_operations_service")
        environment: Environment name (defaults to ENVIRONMENT env var)
        log_level: Logging level (defaults to "INFO")
        log_to_file: Enable file-based logging (defaults to LOG_TO_FILE env var)
        log_file_path: Path to log file (defaults to LOG_FILE_PATH env var
            or /app/logs/{service_name}.log)

    Environment Variables:
        LOG_FORMAT: "json" for JSON, "console" for human-readable (default: console)
        LOG_TO_FILE: Enable file logging (default: false)
        LOG_FILE_PATH: Custom log file path (default: /app/logs/{service_name}.log)
        LOG_MAX_BYTES: Max bytes per log file before rotation (default: 104857600 = 100MB)
        LOG_BACKUP_COUNT: Number of backup log files to keep (default: 10)
    """
    if environment is None:
        environment = os.getenv("ENVIRONMENT", "development")

    os.environ.setdefault("SERVICE_NAME", service_name)
    os.environ.setdefault("ENVIRONMENT", environment)

    if log_to_file is None:
        log_to_file = os.getenv("LOG_TO_FILE", "false").lower() in ("true", "1", "yes")

    log_format = os.getenv("LOG_FORMAT", "").lower()
    use_json = log_format == "json" or (not log_format and environment == "production")

    callsite = structlog.processors.CallsiteParameterAdder(
        parameters=[
            structlog.processors.CallsiteParameter.FILENAME,
            structlog.processors.CallsiteParameter.FUNC_NAME,
            structlog.processors.CallsiteParameter.LINENO,
        ],
    )

    if use_json:
        processors: list[Processor] = [
            merge_contextvars,
            add_service_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            callsite,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            merge_contextvars,
            add_service_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            callsite,
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        if log_file_path is None:
            log_file_path = os.getenv("LOG_FILE_PATH", f"/app/logs/{service_name}.log")

        log_file = Path(log_file_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        max_bytes = int(os.getenv("LOG_MAX_BYTES", "104857600"))
        backup_count = int(os.getenv("LOG_BACKUP_COUNT", "10"))

        handlers.append(
            RotatingFileHandler(
                filename=str(log_file),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )

    logging.basicConfig(
        format="%(message)s",
        handlers=handlers,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_service_logger(name: str | None = None) -> Any:
    """
    Create a service logger with optional name binding.

    Args:
        name: Optional logger name (e.g., "worker", "api", "tracker")

    Returns:
        A configured structlog BoundLogger instance
    """
    logger = structlog.get_logger()

    if name:
        logger = logger.bind(logger_name=name)

    return logger


def log_task_processing(
    logger: structlog.stdlib.BoundLogger,
    message: str,
    operation_id: str,
    batch_index: int,
    delivery_count: int | None = None,
    **additional_context: Any,
) -> None:
    """
    Bind task context for the current worker coroutine and log the message.

    Every subsequent log line emitted from the same context carries
    operation_id and batch_index until the next call rebinds them.

    Args:
        logger: The structlog logger instance
        message: Log message
        operation_id: Operation the task belongs to
        batch_index: Batch index within the operation
        delivery_count: How many times the queue has delivered this task
        **additional_context: Additional context to include in the log
    """
    clear_contextvars()
    bind_contextvars(operation_id=operation_id, batch_index=batch_index)
    if delivery_count is not None:
        bind_contextvars(delivery_count=delivery_count)

    logger.info(message, **additional_context)

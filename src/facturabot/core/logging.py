"""Structured logging configuration for facturabot.

Provides structured JSON logging with request context propagation and
log level management using structlog.
"""
# ruff: noqa: ARG001  # Processor signatures required by structlog API

import logging
import sys
from typing import Any, Literal

import structlog
from structlog.types import Processor

from facturabot.config.settings import get_settings
from facturabot.core.context import get_current_context_or_none

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def add_request_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add request context to log entries.

    Extracts correlation_id, tenant_id, and actor_id from the current
    RequestContext if available. Explicit fields passed to the log call win.
    """
    ctx = get_current_context_or_none()
    if ctx is not None:
        event_dict.setdefault("correlation_id", str(ctx.correlation_id))
        event_dict.setdefault("tenant_id", str(ctx.tenant_id))
        if ctx.actor_id is not None:
            event_dict.setdefault("actor_id", ctx.actor_id)

    return event_dict


def add_environment_info(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add environment information to log entries."""
    settings = get_settings()
    event_dict["environment"] = settings.ENVIRONMENT
    return event_dict


def setup_logging(
    log_level: LogLevel | None = None,
    json_format: bool | None = None,
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Override log level (default from settings)
        json_format: Use JSON output (default: True in production, False in dev)
        add_timestamp: Include timestamp in log entries
    """
    settings = get_settings()

    effective_level = log_level or settings.log_level
    effective_json = (
        json_format if json_format is not None else settings.ENVIRONMENT == "production"
    )

    numeric_level = getattr(logging, effective_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_request_context,
        add_environment_info,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if effective_json:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    # SQLAlchemy and redis are noisy at INFO
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (uses caller module if None)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class LogContext:
    """Context manager for adding temporary log context.

    Example:
        with LogContext(operation_id=op.operation_id, tenant_id=str(tenant_id)):
            logger.info("invoice_operation_started")
    """

    def __init__(self, **kwargs: Any):
        """Initialize with context values to add."""
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        """Enter context and bind values."""
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context and unbind values."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())


def log_external_call(
    logger: structlog.stdlib.BoundLogger,
    service: str,
    operation: str,
    duration_ms: float,
    success: bool,
    **kwargs: Any,
) -> None:
    """Log an external service call."""
    level = "info" if success else "warning"
    getattr(logger, level)(
        "external_call",
        service=service,
        operation=operation,
        duration_ms=round(duration_ms, 2),
        success=success,
        **kwargs,
    )

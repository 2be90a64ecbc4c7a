"""
Structured logging with structlog.

Renders JSON for machine parsing or colored console output for local use.
"""

import logging
import sys
from typing import Any, List

import structlog
from structlog.types import EventDict, Processor

SERVICE_NAME = "enhpix"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = SERVICE_NAME
    return event_dict


def setup_logging(level: str = "INFO", fmt: str = "console") -> None:
    """
    Configure structured logging with structlog.

    JSON output looks like:
    {
        "event": "credit_consumed",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "enhpix.core.ledger",
        "service": "enhpix",
        "user_id": "user-456",
        ...additional context
    }

    Args:
        level: Standard library level name (DEBUG, INFO, ...)
        fmt: "json" or "console"
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("credit_consumed", user_id=user_id, remaining=2)
    """
    return structlog.get_logger(name)


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(user_id="user-456", request_id="req-123"):
            logger.info("enhancement_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())

"""Structured logging for the dialer.

Every entry carries the service and environment bound at startup, plus
whatever scope the current task is working in: a webhook delivery binds
``provider_call_id``/``dedup_key``, a job binds ``job_id``/``job_name``.
Scopes are contextvars, so concurrent tasks never see each other's fields.

Usage:
    setup_logging(level="INFO", json_output=True, service_name="campaign-dialer")

    with log_context(job_id=str(job.id), job_name=job.name):
        log.info("Job started")  # includes job_id and job_name
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

# Libraries that log every statement or request at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx", "httpcore", "uvicorn.access")


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    service_name: str | None = None,
    environment: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines for log shippers; otherwise colored console
        service_name: Bound as ``service`` on every entry
        environment: Bound as ``environment`` on every entry
    """
    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    process_fields = {"service": service_name, "environment": environment}
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in process_fields.items() if value}
    )


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every entry logged inside the block.

    ``None`` values are skipped. Fields bound by an outer block are
    restored on exit.
    """
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)

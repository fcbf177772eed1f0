"""
Logging setup for the ingestion service.

Import jobs run on background threads, interleaved with request handling.
Every log line carries the id of the job being processed on that thread
(``-`` outside a job) so a single job can be followed in the output.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from logging.config import dictConfig
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(job_id)-36s | %(name)s | %(message)s"

_current_job_id: ContextVar[str] = ContextVar("current_job_id", default="-")
_is_configured = False


class JobContextFilter(logging.Filter):
    """Stamp records with the import job active on the current thread."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = _current_job_id.get()
        return True


@contextmanager
def job_log_context(job_id: str) -> Iterator[None]:
    token = _current_job_id.set(job_id)
    try:
        yield
    finally:
        _current_job_id.reset(token)


def configure_logging(level: Optional[str] = None, force: bool = False) -> None:
    """
    Install the console handler once.

    Args:
        level: Log level name for the root and ``bizdir`` loggers (default INFO)
        force: Reconfigure even if logging was already set up
    """
    global _is_configured

    if _is_configured and not force:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "job_context": {"()": JobContextFilter},
            },
            "formatters": {
                "standard": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "filters": ["job_context"],
                    "level": log_level,
                }
            },
            "root": {"handlers": ["console"], "level": log_level},
            "loggers": {
                # SQL echo drowns out batch progress
                "sqlalchemy.engine": {"level": "WARNING"},
                "bizdir": {"level": log_level},
            },
        }
    )

    _is_configured = True

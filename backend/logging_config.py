"""JSON log lines on stdout.

Each record becomes one object: severity, event message, logger name, UTC
timestamp, plus whichever fields below the caller passed via ``extra={}``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone

_REQUEST_FIELDS = ("request_id", "method", "path", "status_code", "duration_ms")
_JOB_FIELDS = (
    "job_id",
    "lesson_id",
    "course_id",
    "run_id",
    "provider_job_id",
    "agent_type",
    "from_status",
    "status",
    "check_attempts",
    "mode",
    "error",
)
_RETRY_FIELDS = ("operation", "attempt", "max_attempts", "delay_seconds")
_CONTENT_FIELDS = (
    "key",
    "manifest_url",
    "deleted",
    "dry_run_only",
    "superseded",
    "word_target",
    "word_count",
    "module_title",
    "modules",
    "lessons",
    "videos",
    "expected",
    "received",
    "total_hours",
)

EXTRA_FIELDS = _REQUEST_FIELDS + _JOB_FIELDS + _RETRY_FIELDS + _CONTENT_FIELDS


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "severity": record.levelname if record.levelno in _SEVERITIES else "DEFAULT",
            "message": record.getMessage(),
            "logger": record.name,
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        }
        payload.update(
            {name: getattr(record, name) for name in EXTRA_FIELDS if getattr(record, name, None) is not None}
        )
        # Warnings carry traces too: a failed mirror is logged at WARNING.
        if record.exc_info and record.levelno >= logging.WARNING:
            payload["stack_trace"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(payload, default=str)


_SEVERITIES = frozenset({logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL})


def configure_logging() -> None:
    """Route the root logger through :class:`JsonLogFormatter`.

    Idempotent: any handlers already on the root logger are dropped. The level
    comes from ``STUDIO_LOG_LEVEL`` (default INFO).
    """
    root = logging.getLogger()
    root.setLevel(os.getenv("STUDIO_LOG_LEVEL", "INFO").upper())
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    root.addHandler(handler)

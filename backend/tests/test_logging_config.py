from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT))

from backend.logging_config import JsonLogFormatter, configure_logging


def _record(level=logging.INFO, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("studio.videos", level, __file__, 10, "video_job.transition", None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_known_extra_fields():
    payload = json.loads(
        JsonLogFormatter().format(_record(job_id="j1", status="completed", check_attempts=3, unrelated="x"))
    )

    assert payload["severity"] == "INFO"
    assert payload["message"] == "video_job.transition"
    assert payload["logger"] == "studio.videos"
    assert payload["job_id"] == "j1"
    assert payload["check_attempts"] == 3
    assert "unrelated" not in payload


def test_stack_trace_only_for_warnings_and_above():
    try:
        raise OSError("disk full")
    except OSError:
        exc_info = sys.exc_info()

    warning = json.loads(JsonLogFormatter().format(_record(logging.WARNING, exc_info=exc_info)))
    info = json.loads(JsonLogFormatter().format(_record(logging.INFO, exc_info=exc_info)))

    assert "OSError: disk full" in warning["stack_trace"]
    assert "stack_trace" not in info


def test_configure_logging_replaces_handlers(monkeypatch):
    monkeypatch.setenv("STUDIO_LOG_LEVEL", "debug")
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    try:
        configure_logging()
        configure_logging()

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonLogFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = original_handlers
        root.setLevel(original_level)

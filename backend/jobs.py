from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue, Retry

from backend.db import get_database
from backend.observability import METRICS
from lesson_pipeline.course_authoring import (
    create_course_from_spec,
    generate_course_spec,
    write_course_content,
)
from lesson_pipeline.llm_client import client_from_env as llm_client_from_env


LOGGER = logging.getLogger("studio.jobs")

AGENT_COURSE_SPEC = "orchestration"
AGENT_COURSE_WRITER = "course_writer"

_RUN_STARTED_AT: dict[str, float] = {}


def _log_job_event(event: str, **fields: Any) -> None:
    LOGGER.info(event, extra={k: v for k, v in fields.items() if v is not None})


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_queue() -> Queue:
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    connection = Redis.from_url(redis_url)
    return Queue("studio", connection=connection)


def _should_run_jobs_inline() -> bool:
    return os.getenv("STUDIO_INLINE_JOBS", "").strip().lower() in {"1", "true", "yes", "on"}


def _run_job_inline(run_id: str, agent_type: str, task, *args, **kwargs) -> None:
    try:
        task(run_id, *args, **kwargs)
    except Exception as exc:
        # Agent tasks mark their own run failed before re-raising.
        run = get_database().fetch_agent_run(run_id)
        if not run or run.get("status") != "failed":
            _update_run(run_id, "failed", error=str(exc), agent_type=agent_type)


def _handle_job_failure(job, exc_type, exc_value, traceback) -> None:
    _update_run(job.args[0] if job.args else job.id, "failed", error=str(exc_value))


def _create_run_record(
    run_id: str,
    agent_type: str,
    course_id: Optional[str],
    input_data: Dict[str, Any],
) -> None:
    db = get_database()
    now = _iso_now()
    db.create_agent_run(
        {
            "id": run_id,
            "course_id": course_id,
            "agent_type": agent_type,
            "status": "queued",
            "input_data": input_data,
            "output_data": None,
            "error": None,
            "created_at": now,
            "updated_at": now,
        }
    )
    _log_job_event("agent_run.created", run_id=run_id, course_id=course_id, agent_type=agent_type, status="queued")
    METRICS.increment_job_status(agent_type, "queued")


def _update_run(
    run_id: str,
    status: str,
    output_data: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    course_id: Optional[str] = None,
    agent_type: Optional[str] = None,
) -> None:
    db = get_database()
    db.update_agent_run(
        run_id,
        status=status,
        output_data=output_data,
        error=error,
        course_id=course_id,
        updated_at=_iso_now(),
    )
    _log_job_event("agent_run.updated", run_id=run_id, status=status, error=error)

    resolved_type = agent_type
    if not resolved_type:
        run = db.fetch_agent_run(run_id)
        if isinstance(run, dict):
            resolved_type = str(run.get("agent_type") or "unknown")

    if resolved_type:
        METRICS.increment_job_status(resolved_type, status)

        if status == "running":
            _RUN_STARTED_AT[run_id] = perf_counter()
        elif status in {"completed", "failed"}:
            started_at = _RUN_STARTED_AT.pop(run_id, None)
            if started_at is not None:
                METRICS.observe_latency(f"agent.{resolved_type}", (perf_counter() - started_at) * 1000)
        if status == "failed":
            METRICS.increment_job_failure(resolved_type)


def enqueue_agent_run(
    agent_type: str,
    course_id: Optional[str],
    input_data: Dict[str, Any],
    task,
    *args,
    **kwargs,
) -> str:
    run_id = str(uuid.uuid4())
    _create_run_record(run_id, agent_type, course_id, input_data)

    if _should_run_jobs_inline():
        _log_job_event("agent_run.dispatch", run_id=run_id, course_id=course_id, agent_type=agent_type, mode="inline")
        _run_job_inline(run_id, agent_type, task, *args, **kwargs)
        return run_id

    try:
        queue = _get_queue()
        _log_job_event("agent_run.dispatch", run_id=run_id, course_id=course_id, agent_type=agent_type, mode="queue")
        queue.enqueue(
            task,
            run_id,
            *args,
            retry=Retry(max=2, interval=[30, 120]),
            on_failure=_handle_job_failure,
            job_timeout=1800,
            **kwargs,
        )
    except Exception as exc:
        _log_job_event(
            "agent_run.dispatch_failed",
            run_id=run_id,
            course_id=course_id,
            agent_type=agent_type,
            error=str(exc),
        )
        _run_job_inline(run_id, agent_type, task, *args, **kwargs)

    return run_id


def run_course_spec_job(
    run_id: str,
    username: str,
    knowledge_level: str,
    course_title: str,
    hours: float,
) -> Dict[str, Any]:
    _log_job_event("agent_run.start", run_id=run_id, agent_type=AGENT_COURSE_SPEC)
    _update_run(run_id, "running", agent_type=AGENT_COURSE_SPEC)
    try:
        db = get_database()
        course_spec = generate_course_spec(llm_client_from_env(), username, knowledge_level, course_title, hours)
        course = create_course_from_spec(db, course_spec)
        _update_run(
            run_id,
            "completed",
            output_data=course_spec,
            course_id=course["id"],
            agent_type=AGENT_COURSE_SPEC,
        )
        writer_run_id = enqueue_agent_run(
            AGENT_COURSE_WRITER,
            course["id"],
            {"courseId": course["id"]},
            run_course_writer_job,
            course["id"],
            course_spec,
        )
        _log_job_event("agent_run.complete", run_id=run_id, course_id=course["id"], agent_type=AGENT_COURSE_SPEC)
        return {"courseId": course["id"], "courseSpec": course_spec, "writerRunId": writer_run_id}
    except Exception as exc:
        _update_run(run_id, "failed", error=str(exc), agent_type=AGENT_COURSE_SPEC)
        LOGGER.exception("agent_run.failed", extra={"run_id": run_id, "agent_type": AGENT_COURSE_SPEC})
        raise


def run_course_writer_job(run_id: str, course_id: str, course_spec: Dict[str, Any]) -> Dict[str, Any]:
    _log_job_event("agent_run.start", run_id=run_id, course_id=course_id, agent_type=AGENT_COURSE_WRITER)
    _update_run(run_id, "running", agent_type=AGENT_COURSE_WRITER)
    try:
        db = get_database()
        content = write_course_content(llm_client_from_env(), db, course_id, course_spec)
        _update_run(run_id, "completed", output_data=content, agent_type=AGENT_COURSE_WRITER)
        _log_job_event("agent_run.complete", run_id=run_id, course_id=course_id, agent_type=AGENT_COURSE_WRITER)
        return content
    except Exception as exc:
        _update_run(run_id, "failed", error=str(exc), agent_type=AGENT_COURSE_WRITER)
        LOGGER.exception("agent_run.failed", extra={"run_id": run_id, "course_id": course_id})
        raise

from __future__ import annotations

import logging
import os
import secrets
import threading
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from time import perf_counter
from typing import Any, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from redis import Redis

from backend.db import get_database
from backend.jobs import AGENT_COURSE_SPEC, enqueue_agent_run, run_course_spec_job
from backend.logging_config import configure_logging
from backend.observability import METRICS, render_prometheus_metrics
from backend.runtime_config import validate_runtime_environment
from backend.storage import (
    presign_attachment_upload,
    public_url,
    save_manifest,
    storage_path_for_key,
)
from lesson_pipeline.course_authoring import CourseGenerationError, validate_course_request
from lesson_pipeline.llm_client import client_from_env as llm_client_from_env
from lesson_pipeline.publisher import ManifestPublishError, publish_course
from lesson_pipeline.reconciler import reconcile
from lesson_pipeline.script_preparer import ScriptGenerationError, prepare_script
from lesson_pipeline.submitter import submit_video_job
from lesson_pipeline.video_jobs import FAILED
from lesson_pipeline.video_library import (
    active_jobs_for_course,
    canonical_videos_for_course,
    jobs_for_lesson,
    purge_videos,
)
from lesson_pipeline.video_provider import VideoProviderError
from lesson_pipeline.video_provider import client_from_env as video_client_from_env


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    validate_runtime_environment("api")
    yield


app = FastAPI(title="Course Studio API", lifespan=app_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in os.getenv("STUDIO_CORS_ORIGINS", "*").split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

LOGGER = logging.getLogger("studio.api")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id

    started_at = perf_counter()
    response = await call_next(request)
    duration_ms = (perf_counter() - started_at) * 1000

    response.headers["x-request-id"] = request_id
    LOGGER.info(
        "request.complete",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
        },
    )
    return response


class _InMemoryRateLimiter:
    def __init__(self) -> None:
        self._events_by_key: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, *, limit: int, window_seconds: int, now: float) -> bool:
        cutoff = now - window_seconds
        with self._lock:
            events = self._events_by_key[key]
            while events and events[0] <= cutoff:
                events.popleft()
            if len(events) >= limit:
                return False
            events.append(now)
            return True


_WRITE_RATE_LIMITER = _InMemoryRateLimiter()


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ScriptRequest(_CamelModel):
    target_duration_minutes: float = Field(alias="targetDurationMinutes")
    persist_draft: bool = Field(default=False, alias="persistDraft")
    regenerate: bool = False


class VideoRequest(_CamelModel):
    target_duration_minutes: Any = Field(alias="targetDurationMinutes")
    script: Optional[str] = None
    force_regenerate: bool = Field(default=False, alias="forceRegenerate")
    dry_run: bool = Field(default=False, alias="dryRun")


class RefreshRequest(_CamelModel):
    course_id: Optional[str] = Field(default=None, alias="courseId")
    job_id: Optional[str] = Field(default=None, alias="jobId")
    lesson_id: Optional[str] = Field(default=None, alias="lessonId")
    limit: int = 25
    force: bool = False


class CourseGenerateRequest(_CamelModel):
    username: Optional[str] = None
    user_knowledge_level: Optional[str] = Field(default=None, alias="userKnowledgeLevel")
    course_title: Optional[str] = Field(default=None, alias="courseTitle")
    course_length_hours: Optional[float] = Field(default=None, alias="courseLengthHours")


class PresignRequest(_CamelModel):
    filename: str
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    public: bool = False


class AttachmentRequest(_CamelModel):
    filename: str
    storage_path: str = Field(alias="storagePath")
    asset_type: Optional[str] = Field(default=None, alias="assetType")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    alt_text: Optional[str] = Field(default=None, alias="altText")
    public: bool = False


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _enforce_write_auth(request: Request) -> None:
    expected_token = os.getenv("STUDIO_WRITE_API_TOKEN", "").strip()
    if not expected_token:
        return

    authorization = request.headers.get("authorization", "")
    scheme, _, provided_token = authorization.partition(" ")

    if scheme.lower() != "bearer" or not provided_token.strip():
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header.")

    if not secrets.compare_digest(provided_token.strip(), expected_token):
        raise HTTPException(status_code=403, detail="Invalid API token.")


def _parse_positive_int_env(name: str, default: int) -> int:
    raw_value = os.getenv(name, str(default)).strip()
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc
    if parsed <= 0:
        raise RuntimeError(f"{name} must be a positive integer.")
    return parsed


def _write_rate_limit_config() -> tuple[int, int]:
    max_requests = _parse_positive_int_env("STUDIO_WRITE_RATE_LIMIT_MAX_REQUESTS", 60)
    window_seconds = _parse_positive_int_env("STUDIO_WRITE_RATE_LIMIT_WINDOW_SEC", 60)
    return max_requests, window_seconds


def _client_identifier(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "")
    if forwarded_for.strip():
        return forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _enforce_write_rate_limit(request: Request, *, now: Optional[float] = None) -> None:
    max_requests, window_seconds = _write_rate_limit_config()
    timestamp = now if now is not None else perf_counter()
    if not _WRITE_RATE_LIMITER.allow(
        _client_identifier(request),
        limit=max_requests,
        window_seconds=window_seconds,
        now=timestamp,
    ):
        raise HTTPException(
            status_code=429,
            detail="Too many write requests. Please retry shortly.",
        )


def _guard_write(request: Request) -> None:
    _enforce_write_auth(request)
    _enforce_write_rate_limit(request)


def _video_provider():
    if not os.getenv("HEYGEN_API_KEY"):
        return None
    return video_client_from_env()


def _llm_client():
    if not os.getenv("OPENAI_API_KEY"):
        return None
    return llm_client_from_env()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (ScriptGenerationError, VideoProviderError, CourseGenerationError, ManifestPublishError)):
        METRICS.increment_provider_error(exc.__class__.__name__)
        return HTTPException(status_code=502, detail=str(exc))
    raise exc


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _video_job_payload(job: dict) -> dict:
    return {
        "lessonVideoId": job.get("id"),
        "lessonId": job.get("lesson_id"),
        "status": job.get("video_status"),
        "providerVideoId": job.get("video_id"),
        "targetDurationSeconds": _json_value(job.get("target_duration_s")),
        "videoDurationSeconds": _json_value(job.get("video_duration_s")),
        "videoUrl": job.get("video_url"),
        "publicUrl": job.get("public_url"),
        "checkAttempts": job.get("check_attempts"),
        "lastCheckedAt": _json_value(job.get("last_checked_at")),
        "nextCheckAt": _json_value(job.get("next_check_at")),
        "errorMessage": job.get("error_message"),
        "dryRun": bool(job.get("dry_run")),
        "createdAt": _json_value(job.get("created_at")),
    }


def _fetch_lesson_or_404(db, lesson_id: str) -> dict:
    lesson = db.fetch_lesson(lesson_id)
    if not lesson:
        raise HTTPException(status_code=404, detail="Lesson not found.")
    return lesson


def _fetch_course_or_404(db, course_id: str) -> dict:
    course = db.fetch_course(course_id)
    if not course:
        raise HTTPException(status_code=404, detail="Course not found.")
    return course


@app.get("/ops/metrics")
def ops_metrics() -> dict:
    db = get_database()
    return {
        "status": "ok",
        "time": _iso_now(),
        "metrics": METRICS.snapshot(video_jobs=db.count_video_jobs_by_status()),
    }


@app.get("/ops/metrics/prometheus")
def ops_metrics_prometheus() -> PlainTextResponse:
    db = get_database()
    snapshot = METRICS.snapshot(video_jobs=db.count_video_jobs_by_status())
    return PlainTextResponse(
        content=render_prometheus_metrics(snapshot),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "time": _iso_now()}


@app.get("/health/ready")
def readiness() -> JSONResponse:
    checks: dict[str, dict[str, str]] = {}
    overall_status = "ok"

    db = get_database()
    try:
        db.healthcheck()
        checks["database"] = {"status": "ok"}
    except Exception as exc:
        overall_status = "degraded"
        checks["database"] = {"status": "error", "reason": str(exc)}

    inline_jobs = os.getenv("STUDIO_INLINE_JOBS", "").strip().lower() in {"1", "true", "yes", "on"}
    if inline_jobs:
        checks["queue"] = {"status": "skipped", "reason": "STUDIO_INLINE_JOBS is enabled."}
    else:
        redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        try:
            redis_client = Redis.from_url(redis_url)
            redis_client.ping()
            checks["queue"] = {"status": "ok"}
        except Exception as exc:
            overall_status = "degraded"
            checks["queue"] = {"status": "error", "reason": str(exc)}

    checks["videoProvider"] = (
        {"status": "ok"} if os.getenv("HEYGEN_API_KEY") else {"status": "skipped", "reason": "HEYGEN_API_KEY not set."}
    )

    status_code = 200 if overall_status == "ok" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": overall_status,
            "time": _iso_now(),
            "checks": checks,
        },
    )


@app.post("/lessons/{lesson_id}/script")
def generate_lesson_script(request: Request, lesson_id: str, payload: ScriptRequest) -> dict:
    _guard_write(request)
    db = get_database()
    started = perf_counter()
    try:
        prepared = prepare_script(
            db,
            _llm_client(),
            lesson_id,
            payload.target_duration_minutes,
            persist_draft=payload.persist_draft,
            regenerate=payload.regenerate,
        )
    except (LookupError, ValueError, ScriptGenerationError) as exc:
        raise _http_error(exc) from exc
    METRICS.observe_latency("script.prepare", (perf_counter() - started) * 1000)
    return {
        "lessonId": lesson_id,
        "script": prepared.script,
        "source": prepared.source,
        "wordTarget": prepared.word_target,
        "draftSaved": payload.persist_draft and prepared.source == "generated",
    }


@app.post("/lessons/{lesson_id}/video")
def submit_lesson_video(request: Request, lesson_id: str, payload: VideoRequest) -> dict:
    _guard_write(request)
    db = get_database()
    dry_run = payload.dry_run or os.getenv("STUDIO_VIDEO_DRY_RUN", "").strip().lower() in {"1", "true", "yes", "on"}
    started = perf_counter()
    try:
        result = submit_video_job(
            db,
            None if dry_run else _video_provider(),
            _llm_client(),
            lesson_id,
            payload.target_duration_minutes,
            script=payload.script,
            force_regenerate=payload.force_regenerate,
            dry_run=dry_run,
        )
    except (LookupError, ValueError, ScriptGenerationError, VideoProviderError) as exc:
        METRICS.increment_job_status("video_submit", "error")
        raise _http_error(exc) from exc
    METRICS.increment_job_status("video_submit", result.status)
    METRICS.observe_latency("video.submit", (perf_counter() - started) * 1000)
    return result.as_payload()


@app.get("/lessons/{lesson_id}/videos")
def list_lesson_videos(lesson_id: str, limit: Optional[int] = Query(default=None, ge=1, le=200)) -> dict:
    db = get_database()
    _fetch_lesson_or_404(db, lesson_id)
    jobs = jobs_for_lesson(db, lesson_id, limit=limit)
    return {"lessonId": lesson_id, "videos": [_video_job_payload(job) for job in jobs]}


@app.post("/videos/refresh")
def refresh_videos(request: Request, payload: RefreshRequest) -> dict:
    # Copying renders into storage is left to scripts/refresh_videos.py; a request never downloads video.
    _guard_write(request)
    db = get_database()
    started = perf_counter()
    try:
        summary = reconcile(
            db,
            _video_provider(),
            course_id=payload.course_id,
            job_id=payload.job_id,
            lesson_id=payload.lesson_id,
            limit=payload.limit,
            force=payload.force,
        )
    except (ValueError, VideoProviderError) as exc:
        raise _http_error(exc) from exc
    for transition in summary.transitions:
        METRICS.increment_job_status("video_reconcile", transition["to"])
        if transition["to"] == FAILED:
            METRICS.increment_job_failure("video_render")
    if summary.errors:
        for _ in range(summary.errors):
            METRICS.increment_provider_error("video_status")
    METRICS.observe_latency("video.reconcile", (perf_counter() - started) * 1000)
    return summary.as_payload()


@app.get("/courses/{course_id}/videos/active")
def list_active_videos(course_id: str) -> dict:
    db = get_database()
    _fetch_course_or_404(db, course_id)
    jobs = active_jobs_for_course(db, course_id)
    return {"courseId": course_id, "videos": [_video_job_payload(job) for job in jobs]}


@app.get("/courses/{course_id}/videos/completed")
def list_completed_videos(course_id: str) -> dict:
    db = get_database()
    _fetch_course_or_404(db, course_id)
    canonical = canonical_videos_for_course(db, course_id)
    return {
        "courseId": course_id,
        "videos": {lesson_id: _video_job_payload(job) for lesson_id, job in canonical.items()},
    }


@app.delete("/videos")
def delete_videos(
    request: Request,
    course_id: Optional[str] = Query(default=None, alias="courseId"),
    dry_run_only: bool = Query(default=False, alias="dryRunOnly"),
) -> dict:
    _guard_write(request)
    db = get_database()
    try:
        deleted = purge_videos(db, course_id=course_id, dry_run_only=dry_run_only)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"deleted": deleted, "courseId": course_id, "dryRunOnly": dry_run_only}


@app.post("/courses/{course_id}/publish")
def publish(request: Request, course_id: str) -> dict:
    _guard_write(request)
    db = get_database()
    started = perf_counter()
    try:
        result = publish_course(db, save_manifest, course_id)
    except (LookupError, ManifestPublishError) as exc:
        METRICS.increment_job_status("publish", "error")
        raise _http_error(exc) from exc
    METRICS.increment_job_status("publish", "synced")
    METRICS.observe_latency("course.publish", (perf_counter() - started) * 1000)
    return result.as_payload()


@app.post("/courses/generate")
def generate_course(request: Request, payload: CourseGenerateRequest) -> dict:
    _guard_write(request)
    try:
        hours = validate_course_request(
            payload.username,
            payload.user_knowledge_level,
            payload.course_title,
            payload.course_length_hours,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc

    run_id = enqueue_agent_run(
        AGENT_COURSE_SPEC,
        None,
        {
            "username": payload.username,
            "userKnowledgeLevel": payload.user_knowledge_level,
            "courseTitle": payload.course_title,
            "courseLengthHours": hours,
        },
        run_course_spec_job,
        payload.username,
        payload.user_knowledge_level,
        payload.course_title,
        hours,
    )
    run = get_database().fetch_agent_run(run_id)
    return {
        "agentRunId": run_id,
        "status": run["status"] if run else "queued",
        "courseId": run.get("course_id") if run else None,
    }


@app.get("/agent-runs/{run_id}")
def get_agent_run(run_id: str) -> dict:
    db = get_database()
    run = db.fetch_agent_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Agent run not found.")
    return {
        "agentRunId": run["id"],
        "agentType": run.get("agent_type"),
        "status": run.get("status"),
        "courseId": run.get("course_id"),
        "output": run.get("output_data"),
        "error": run.get("error"),
        "createdAt": _json_value(run.get("created_at")),
        "completedAt": _json_value(run.get("completed_at")),
    }


@app.post("/lessons/{lesson_id}/attachments/presign")
def presign_attachment(request: Request, lesson_id: str, payload: PresignRequest) -> dict:
    _guard_write(request)
    db = get_database()
    _fetch_lesson_or_404(db, lesson_id)
    try:
        return presign_attachment_upload(lesson_id, payload.filename, payload.mime_type, payload.public)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/lessons/{lesson_id}/attachments")
def register_attachment(request: Request, lesson_id: str, payload: AttachmentRequest) -> dict:
    _guard_write(request)
    db = get_database()
    _fetch_lesson_or_404(db, lesson_id)
    if f"lessons/{lesson_id}/" not in payload.storage_path:
        raise HTTPException(status_code=400, detail="storagePath does not belong to this lesson.")
    row = db.create_attachment(
        {
            "id": str(uuid4()),
            "lesson_id": lesson_id,
            "filename": payload.filename,
            "asset_type": payload.asset_type,
            "storage_path": storage_path_for_key(payload.storage_path),
            "public_url": public_url(payload.storage_path) if payload.public else None,
            "mime_type": payload.mime_type,
            "alt_text": payload.alt_text,
            "created_at": datetime.now(timezone.utc),
        }
    )
    return {
        "attachmentId": row["id"],
        "lessonId": lesson_id,
        "filename": row["filename"],
        "storagePath": row["storage_path"],
        "publicUrl": row.get("public_url"),
    }

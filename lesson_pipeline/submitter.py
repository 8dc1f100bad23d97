from __future__ import annotations

import hashlib
import logging
import math
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from lesson_pipeline.script_preparer import LessonNotFoundError, prepare_script
from lesson_pipeline.video_jobs import (
    COMPLETED,
    DRY_RUN,
    DRY_RUN_ID_PREFIX,
    IN_FLIGHT_STATUSES,
    PENDING,
    PROCESSING,
    REUSED,
    SKIPPED,
    ActiveJobExistsError,
)
from lesson_pipeline.video_provider import VideoProviderError


LOGGER = logging.getLogger("studio.videos")

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SubmissionResult:
    accepted: bool
    status: str
    job_id: Optional[str] = None
    provider_job_id: Optional[str] = None
    video_url: Optional[str] = None
    message: str = ""

    def as_payload(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "status": self.status,
            "lessonVideoId": self.job_id,
            "providerVideoId": self.provider_job_id,
            "videoUrl": self.video_url,
            "message": self.message,
        }


def max_video_minutes() -> float:
    raw_value = os.getenv("STUDIO_MAX_VIDEO_MINUTES", "30").strip()
    try:
        parsed = float(raw_value)
    except ValueError as exc:
        raise RuntimeError("STUDIO_MAX_VIDEO_MINUTES must be a number.") from exc
    if parsed <= 0:
        raise RuntimeError("STUDIO_MAX_VIDEO_MINUTES must be positive.")
    return parsed


def validate_submission(lesson_id: Optional[str], target_duration_minutes: Any) -> float:
    if not lesson_id or not str(lesson_id).strip():
        raise ValueError("lessonId is required.")
    if isinstance(target_duration_minutes, bool):
        raise ValueError("targetDurationMinutes must be a number.")
    try:
        minutes = float(target_duration_minutes)
    except (TypeError, ValueError) as exc:
        raise ValueError("targetDurationMinutes must be a number.") from exc
    if not math.isfinite(minutes) or minutes <= 0:
        raise ValueError("targetDurationMinutes must be greater than zero.")
    limit = max_video_minutes()
    if minutes > limit:
        raise ValueError(f"targetDurationMinutes must be at most {limit:g}.")
    return minutes


def dry_run_enabled(requested: bool = False) -> bool:
    if requested:
        return True
    return os.getenv("STUDIO_VIDEO_DRY_RUN", "").strip().lower() in TRUE_VALUES


def dry_run_provider_id(lesson_id: str, script: str) -> str:
    digest = hashlib.sha256(f"{lesson_id}|{script}".encode("utf-8")).hexdigest()
    return f"{DRY_RUN_ID_PREFIX}{digest[:16]}"


def dry_run_video_url(provider_job_id: str) -> str:
    base = os.getenv("STUDIO_DRY_RUN_VIDEO_BASE_URL", "https://dry-run.invalid/videos").rstrip("/")
    return f"{base}/{provider_job_id}.mp4"


def _created_at_key(job: Dict[str, Any]) -> str:
    created_at = job.get("created_at")
    if isinstance(created_at, datetime):
        return created_at.isoformat()
    return str(created_at or "")


def canonical_job(jobs: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Most recently created completed job, if any."""
    completed = [job for job in jobs if job.get("video_status") == COMPLETED]
    if not completed:
        return None
    return max(completed, key=_created_at_key)


def active_job(jobs: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    in_flight = [job for job in jobs if job.get("video_status") in IN_FLIGHT_STATUSES]
    if not in_flight:
        return None
    return max(in_flight, key=_created_at_key)


def _reused(job: Dict[str, Any]) -> SubmissionResult:
    return SubmissionResult(
        accepted=False,
        status=REUSED,
        job_id=job.get("id"),
        provider_job_id=job.get("video_id"),
        message="A video for this lesson is already rendering.",
    )


def submit_video_job(
    db,
    provider,
    llm,
    lesson_id: str,
    target_duration_minutes: Any,
    script: Optional[str] = None,
    force_regenerate: bool = False,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> SubmissionResult:
    minutes = validate_submission(lesson_id, target_duration_minutes)
    current_time = now or datetime.now(timezone.utc)

    lesson = db.fetch_lesson(lesson_id)
    if not lesson:
        raise LessonNotFoundError(lesson_id)

    jobs = db.fetch_video_jobs(lesson_ids=[lesson_id])
    if not force_regenerate:
        canonical = canonical_job(jobs)
        if canonical:
            LOGGER.info("video_job.skipped", extra={"lesson_id": lesson_id, "job_id": canonical.get("id")})
            return SubmissionResult(
                accepted=False,
                status=SKIPPED,
                job_id=canonical.get("id"),
                provider_job_id=canonical.get("video_id"),
                video_url=canonical.get("video_url"),
                message="Lesson already has a completed video; pass forceRegenerate to render again.",
            )
        in_flight = active_job(jobs)
        if in_flight:
            LOGGER.info("video_job.reused", extra={"lesson_id": lesson_id, "job_id": in_flight.get("id")})
            return _reused(in_flight)

    prepared = prepare_script(db, llm, lesson_id, minutes, script)
    is_dry_run = dry_run_enabled(dry_run)
    target_duration_s = int(round(minutes * 60))
    job_id = str(uuid.uuid4())

    if is_dry_run:
        provider_job_id = dry_run_provider_id(lesson_id, prepared.script)
        payload = {
            "id": job_id,
            "lesson_id": lesson_id,
            "video_status": COMPLETED,
            "target_duration_s": target_duration_s,
            "script": prepared.script,
            "video_url": dry_run_video_url(provider_job_id),
            "next_check_at": None,
            "dry_run": True,
            "created_at": current_time,
        }

        def start_render() -> str:
            return provider_job_id

    else:
        if provider is None:
            raise VideoProviderError("Video provider is not configured (missing HEYGEN_API_KEY).")
        payload = {
            "id": job_id,
            "lesson_id": lesson_id,
            "video_status": PENDING,
            "target_duration_s": target_duration_s,
            "script": prepared.script,
            "video_url": None,
            "next_check_at": current_time,
            "dry_run": False,
            "created_at": current_time,
        }

        def start_render() -> str:
            return provider.create_render(prepared.script, target_duration_s, title=lesson.get("title"))

    try:
        row, superseded = db.insert_video_job(payload, start_render, supersede_active=force_regenerate)
    except ActiveJobExistsError:
        # Lost the race against a concurrent submission for the same lesson.
        current = active_job(db.fetch_video_jobs(lesson_ids=[lesson_id], statuses=IN_FLIGHT_STATUSES))
        if current is None:
            raise
        LOGGER.info("video_job.reused", extra={"lesson_id": lesson_id, "job_id": current.get("id")})
        return _reused(current)

    for superseded_id in superseded:
        LOGGER.info("video_job.superseded", extra={"lesson_id": lesson_id, "job_id": superseded_id})

    LOGGER.info(
        "video_job.submitted",
        extra={
            "lesson_id": lesson_id,
            "job_id": row.get("id"),
            "provider_job_id": row.get("video_id"),
            "status": row.get("video_status"),
            "script_source": prepared.source,
            "mode": "dry_run" if is_dry_run else "provider",
        },
    )

    if is_dry_run:
        return SubmissionResult(
            accepted=True,
            status=DRY_RUN,
            job_id=row.get("id"),
            provider_job_id=row.get("video_id"),
            video_url=row.get("video_url"),
            message="Dry run: video marked completed without calling the provider.",
        )
    return SubmissionResult(
        accepted=True,
        status=PROCESSING,
        job_id=row.get("id"),
        provider_job_id=row.get("video_id"),
        message="Video job accepted; refresh to track rendering.",
    )

"""Reconcile outstanding lesson video jobs against the render provider.

Safe to run concurrently from cron and from the UI: every write is a
compare-and-swap on the status and attempt count the job was read with, and a
lost race is ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from lesson_pipeline.video_jobs import (
    COMPLETED,
    FAILED,
    PollPolicy,
    Transition,
    is_due,
    next_state,
    poll_policy_from_env,
)
from lesson_pipeline.video_provider import VideoProviderError


LOGGER = logging.getLogger("studio.videos")

MAX_RECONCILE_LIMIT = 200

MirrorFn = Callable[[Dict[str, Any], str], Tuple[str, Optional[str]]]


@dataclass
class ReconcileSummary:
    checked: int = 0
    completed: int = 0
    still_pending: int = 0
    failed: int = 0
    not_due: int = 0
    errors: int = 0
    transitions: List[Dict[str, Any]] = field(default_factory=list)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "stillPending": self.still_pending,
            "failed": self.failed,
            "notDue": self.not_due,
            "errors": self.errors,
            "transitions": self.transitions,
        }


def _mirror_completed(db, job: Dict[str, Any], transition: Transition, mirror: MirrorFn) -> None:
    try:
        storage_path, public_url = mirror(job, transition.video_url)
    except Exception:
        # The provider URL stays authoritative; a missing mirror only costs durability.
        LOGGER.warning("video_job.mirror_failed", extra={"job_id": job.get("id")}, exc_info=True)
        return
    # Guarded on the completed row this pass wrote, so a purge or rewrite in between wins.
    db.update_video_job(
        job["id"],
        expected_status=COMPLETED,
        expected_attempts=transition.check_attempts,
        fields={"storage_path": storage_path, "public_url": public_url},
    )


def reconcile(
    db,
    provider,
    course_id: Optional[str] = None,
    job_id: Optional[str] = None,
    lesson_id: Optional[str] = None,
    limit: int = 25,
    force: bool = False,
    now: Optional[datetime] = None,
    policy: Optional[PollPolicy] = None,
    mirror: Optional[MirrorFn] = None,
) -> ReconcileSummary:
    """Poll every due outstanding job once and write its next state.

    Raises:
        ValueError: ``limit`` is outside 1..200
        VideoProviderError: no provider is configured while jobs are due;
            no row is touched in that case
    """
    if limit < 1 or limit > MAX_RECONCILE_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_RECONCILE_LIMIT}.")

    current_time = now or datetime.now(timezone.utc)
    active_policy = policy or poll_policy_from_env()
    summary = ReconcileSummary()

    jobs = db.fetch_outstanding_video_jobs(
        course_id=course_id,
        lesson_id=lesson_id,
        job_id=job_id,
        limit=limit,
    )
    due_jobs = []
    for job in jobs:
        if force or is_due(job, current_time):
            due_jobs.append(job)
        else:
            summary.not_due += 1

    if due_jobs and provider is None:
        raise VideoProviderError("Video provider is not configured.")

    for job in due_jobs:
        summary.checked += 1
        provider_job_id = job.get("video_id")
        observation = None
        lookup_error = None

        if not provider_job_id:
            lookup_error = "Job has no provider video id."
            summary.errors += 1
        else:
            try:
                observation = provider.get_status(provider_job_id)
            except VideoProviderError as exc:
                lookup_error = str(exc)
                summary.errors += 1
                LOGGER.warning(
                    "video_job.lookup_failed",
                    extra={"job_id": job.get("id"), "provider_job_id": provider_job_id, "error": lookup_error},
                )

        transition = next_state(
            job["video_status"],
            job.get("check_attempts") or 0,
            observation,
            active_policy,
            current_time,
            lookup_error=lookup_error,
        )
        written = db.update_video_job(
            job["id"],
            expected_status=job["video_status"],
            expected_attempts=job.get("check_attempts") or 0,
            fields=transition.as_update(),
        )
        if not written:
            LOGGER.info("video_job.race_lost", extra={"job_id": job.get("id")})
            continue

        if transition.status == COMPLETED:
            summary.completed += 1
            if mirror is not None and transition.video_url:
                _mirror_completed(db, job, transition, mirror)
        elif transition.status == FAILED:
            summary.failed += 1
        else:
            summary.still_pending += 1

        summary.transitions.append(
            {
                "lessonVideoId": job["id"],
                "lessonId": job.get("lesson_id"),
                "from": job["video_status"],
                "to": transition.status,
                "checkAttempts": transition.check_attempts,
            }
        )
        LOGGER.info(
            "video_job.transition",
            extra={
                "job_id": job["id"],
                "lesson_id": job.get("lesson_id"),
                "from_status": job["video_status"],
                "status": transition.status,
                "check_attempts": transition.check_attempts,
                "error": transition.error_message,
            },
        )

    return summary

"""Read views over lesson video jobs, plus the operator purge."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from lesson_pipeline.submitter import canonical_job
from lesson_pipeline.video_jobs import COMPLETED, IN_FLIGHT_STATUSES


LOGGER = logging.getLogger("studio.videos")


def _course_lesson_ids(db, course_id: str) -> List[str]:
    return [lesson["id"] for lesson in db.fetch_lessons_for_course(course_id)]


def jobs_for_lesson(db, lesson_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    return db.fetch_video_jobs(lesson_ids=[lesson_id], limit=limit)


def active_jobs_for_course(db, course_id: str) -> List[Dict[str, Any]]:
    return db.fetch_video_jobs(lesson_ids=_course_lesson_ids(db, course_id), statuses=IN_FLIGHT_STATUSES)


def canonical_videos_for_course(db, course_id: str) -> Dict[str, Dict[str, Any]]:
    """Latest completed job per lesson, keyed by lesson id."""
    completed = db.fetch_video_jobs(lesson_ids=_course_lesson_ids(db, course_id), statuses=[COMPLETED])
    by_lesson: Dict[str, List[Dict[str, Any]]] = {}
    for job in completed:
        by_lesson.setdefault(job["lesson_id"], []).append(job)
    return {lesson_id: canonical_job(jobs) for lesson_id, jobs in by_lesson.items()}


def purge_videos(db, course_id: Optional[str] = None, dry_run_only: bool = False) -> int:
    if not course_id and not dry_run_only:
        raise ValueError("Provide courseId and/or dryRunOnly to purge videos.")
    deleted = db.delete_video_jobs(course_id=course_id, dry_run_only=dry_run_only)
    LOGGER.warning(
        "video_job.purged",
        extra={"course_id": course_id, "dry_run_only": dry_run_only, "deleted": deleted},
    )
    return deleted

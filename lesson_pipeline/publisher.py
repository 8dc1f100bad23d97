from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from lesson_pipeline.manifest import build_course_manifest
from lesson_pipeline.video_jobs import COMPLETED


LOGGER = logging.getLogger("studio.publish")

SYNC_SYNCING = "syncing"
SYNC_SYNCED = "synced"
SYNC_ERROR = "error"

# (course_id, serialized manifest) -> (object key, public url)
ManifestWriter = Callable[[str, str], Tuple[str, str]]


class ManifestPublishError(RuntimeError):
    """Writing the course manifest to storage failed."""


class CourseNotFoundError(LookupError):
    def __init__(self, course_id: str) -> None:
        super().__init__(f"Course not found: {course_id}")
        self.course_id = course_id


@dataclass(frozen=True)
class PublishResult:
    course_id: str
    key: str
    manifest_url: str
    published_at: datetime

    def as_payload(self) -> dict:
        return {
            "courseId": self.course_id,
            "key": self.key,
            "manifestUrl": self.manifest_url,
            "publishedAt": self.published_at.isoformat(),
        }


def publish_course(
    db,
    write_manifest: ManifestWriter,
    course_id: str,
    now: Optional[datetime] = None,
) -> PublishResult:
    course = db.fetch_course(course_id)
    if not course:
        raise CourseNotFoundError(course_id)

    published_at = now or datetime.now(timezone.utc)
    db.update_course(course_id, {"s3_sync_status": SYNC_SYNCING, "s3_error_message": None})
    LOGGER.info("publish.started", extra={"course_id": course_id})

    try:
        modules = db.fetch_modules(course_id)
        lessons = db.fetch_lessons_for_course(course_id)
        lesson_ids = [lesson["id"] for lesson in lessons]
        videos = db.fetch_video_jobs(lesson_ids=lesson_ids, statuses=[COMPLETED])
        attachments = db.fetch_attachments(lesson_ids)
        manifest = build_course_manifest(course, modules, lessons, videos, attachments, published_at)
        body = json.dumps(manifest, indent=2)
        key, manifest_url = write_manifest(course_id, body)
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        db.update_course(course_id, {"s3_sync_status": SYNC_ERROR, "s3_error_message": message[:1000]})
        LOGGER.error("publish.failed", extra={"course_id": course_id, "error": message}, exc_info=True)
        raise ManifestPublishError(f"Publishing course {course_id} failed: {message}") from exc

    db.update_course(
        course_id,
        {
            "s3_sync_status": SYNC_SYNCED,
            "s3_manifest_url": manifest_url,
            "s3_published_at": published_at,
            "s3_error_message": None,
        },
    )
    LOGGER.info(
        "publish.completed",
        extra={
            "course_id": course_id,
            "key": key,
            "manifest_url": manifest_url,
            "modules": len(manifest["modules"]),
            "lessons": len(lesson_ids),
            "videos": len(videos),
        },
    )
    return PublishResult(course_id=course_id, key=key, manifest_url=manifest_url, published_at=published_at)

"""Denormalized course manifest consumed by static course players."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping


COURSE_FIELDS = (
    "id",
    "title",
    "description",
    "target_knowledge_level",
    "length_hours",
    "created_by",
    "created_at",
    "updated_at",
)
MODULE_FIELDS = ("id", "title", "description", "position")
LESSON_FIELDS = ("id", "title", "content", "position", "video_script")
VIDEO_FIELDS = (
    "id",
    "video_url",
    "public_url",
    "storage_path",
    "video_duration_s",
    "target_duration_s",
    "created_at",
)
ATTACHMENT_FIELDS = (
    "id",
    "filename",
    "asset_type",
    "public_url",
    "storage_path",
    "mime_type",
    "alt_text",
)


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _pick(row: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    return {name: _json_value(row.get(name)) for name in fields}


def _sort_key(value: Any) -> str:
    return value.isoformat() if isinstance(value, (datetime, date)) else str(value or "")


def build_course_manifest(
    course: Mapping[str, Any],
    modules: Iterable[Mapping[str, Any]],
    lessons: Iterable[Mapping[str, Any]],
    videos: Iterable[Mapping[str, Any]],
    attachments: Iterable[Mapping[str, Any]],
    published_at: datetime,
) -> Dict[str, Any]:
    """Assemble the manifest. Pure: no I/O, input rows are not modified.

    Modules and lessons keep their ``position`` order; only completed videos
    are listed, newest first, so the first entry is the canonical one.
    """
    lessons_by_module: Dict[str, List[Mapping[str, Any]]] = {}
    for lesson in sorted(lessons, key=lambda row: row.get("position") or 0):
        lessons_by_module.setdefault(lesson.get("module_id"), []).append(lesson)

    videos_by_lesson: Dict[str, List[Mapping[str, Any]]] = {}
    completed = [video for video in videos if video.get("video_status", "completed") == "completed"]
    for video in sorted(completed, key=lambda row: _sort_key(row.get("created_at")), reverse=True):
        videos_by_lesson.setdefault(video.get("lesson_id"), []).append(video)

    attachments_by_lesson: Dict[str, List[Mapping[str, Any]]] = {}
    for attachment in attachments:
        attachments_by_lesson.setdefault(attachment.get("lesson_id"), []).append(attachment)

    manifest_modules = []
    for module in sorted(modules, key=lambda row: row.get("position") or 0):
        module_entry = _pick(module, MODULE_FIELDS)
        module_entry["lessons"] = [
            {
                **_pick(lesson, LESSON_FIELDS),
                "videos": [_pick(video, VIDEO_FIELDS) for video in videos_by_lesson.get(lesson.get("id"), [])],
                "attachments": [
                    _pick(attachment, ATTACHMENT_FIELDS)
                    for attachment in attachments_by_lesson.get(lesson.get("id"), [])
                ],
            }
            for lesson in lessons_by_module.get(module.get("id"), [])
        ]
        manifest_modules.append(module_entry)

    return {
        "course": _pick(course, COURSE_FIELDS),
        "modules": manifest_modules,
        "published_at": published_at.isoformat(),
    }

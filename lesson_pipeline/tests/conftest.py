"""Shared fakes for lesson pipeline tests."""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT))

from lesson_pipeline.video_jobs import IN_FLIGHT_STATUSES, ActiveJobExistsError
from lesson_pipeline.video_provider import RenderStatus


class FakeDB:
    """In-memory stand-in for ``backend.db.Database`` with the same method contracts."""

    def __init__(self) -> None:
        self.courses: dict[str, dict] = {}
        self.course_specs: list[dict] = []
        self.modules: dict[str, dict] = {}
        self.lessons: dict[str, dict] = {}
        self.attachments: list[dict] = []
        self.video_jobs: dict[str, dict] = {}
        self.course_updates: list[dict] = []

    # Courses, modules, lessons

    def add_course(self, course_id: str, **fields) -> dict:
        course = {"id": course_id, "title": f"Course {course_id}", "status": "draft", **fields}
        self.courses[course_id] = course
        return course

    def add_module(self, module_id: str, course_id: str, position: int, **fields) -> dict:
        module = {"id": module_id, "course_id": course_id, "title": module_id, "position": position, **fields}
        self.modules[module_id] = module
        return module

    def add_lesson(self, lesson_id: str, module_id: str, position: int = 1, **fields) -> dict:
        lesson = {
            "id": lesson_id,
            "module_id": module_id,
            "title": f"Lesson {lesson_id}",
            "content": "Recursion is a function calling itself.",
            "position": position,
            "video_script": None,
            **fields,
        }
        self.lessons[lesson_id] = lesson
        return lesson

    def add_video_job(self, job_id: str, lesson_id: str, status: str, **fields) -> dict:
        job = {
            "id": job_id,
            "lesson_id": lesson_id,
            "video_status": status,
            "video_id": f"provider-{job_id}",
            "target_duration_s": 180,
            "video_duration_s": None,
            "script": "Narration.",
            "video_url": None,
            "storage_path": None,
            "public_url": None,
            "check_attempts": 0,
            "last_checked_at": None,
            "next_check_at": None,
            "error_message": None,
            "dry_run": False,
            "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
            **fields,
        }
        self.video_jobs[job_id] = job
        return job

    def create_course(self, payload: dict) -> dict:
        self.courses[payload["id"]] = dict(payload)
        return self.courses[payload["id"]]

    def fetch_course(self, course_id: str):
        return self.courses.get(course_id)

    def update_course(self, course_id: str, fields: dict) -> None:
        self.course_updates.append(dict(fields))
        self.courses[course_id].update(fields)

    def insert_course_spec(self, spec_id: str, course_id: str, spec_data: dict) -> None:
        self.course_specs.append({"id": spec_id, "course_id": course_id, "spec_data": spec_data})

    def create_module(self, payload: dict) -> dict:
        self.modules[payload["id"]] = dict(payload)
        return self.modules[payload["id"]]

    def fetch_modules(self, course_id: str) -> list[dict]:
        rows = [module for module in self.modules.values() if module["course_id"] == course_id]
        return sorted(rows, key=lambda row: row["position"])

    def create_lesson(self, payload: dict) -> dict:
        self.lessons[payload["id"]] = {"video_script": None, **payload}
        return self.lessons[payload["id"]]

    def fetch_lesson(self, lesson_id: str):
        return self.lessons.get(lesson_id)

    def fetch_lessons_for_course(self, course_id: str) -> list[dict]:
        module_positions = {
            module["id"]: module["position"] for module in self.modules.values() if module["course_id"] == course_id
        }
        rows = [lesson for lesson in self.lessons.values() if lesson["module_id"] in module_positions]
        return sorted(rows, key=lambda row: (module_positions[row["module_id"]], row["position"]))

    def update_lesson_script(self, lesson_id: str, script: str) -> None:
        self.lessons[lesson_id]["video_script"] = script

    def fetch_attachments(self, lesson_ids) -> list[dict]:
        return [attachment for attachment in self.attachments if attachment["lesson_id"] in set(lesson_ids)]

    # Lesson video jobs

    def fetch_video_job(self, job_id: str):
        return self.video_jobs.get(job_id)

    def fetch_video_jobs(self, lesson_ids=None, statuses=None, limit: Optional[int] = None) -> list[dict]:
        rows = list(self.video_jobs.values())
        if lesson_ids is not None:
            rows = [row for row in rows if row["lesson_id"] in set(lesson_ids)]
        if statuses is not None:
            rows = [row for row in rows if row["video_status"] in set(statuses)]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows[:limit] if limit is not None else rows

    def fetch_outstanding_video_jobs(self, course_id=None, lesson_id=None, job_id=None, limit: int = 25):
        rows = [row for row in self.video_jobs.values() if row["video_status"] in IN_FLIGHT_STATUSES]
        if course_id:
            lesson_ids = {lesson["id"] for lesson in self.fetch_lessons_for_course(course_id)}
            rows = [row for row in rows if row["lesson_id"] in lesson_ids]
        if lesson_id:
            rows = [row for row in rows if row["lesson_id"] == lesson_id]
        if job_id:
            rows = [row for row in rows if row["id"] == job_id]
        rows.sort(key=lambda row: (row["next_check_at"] is not None, row["next_check_at"] or row["created_at"]))
        return [dict(row) for row in rows[:limit]]

    def insert_video_job(self, payload, start_render, *, supersede_active=False, superseded_message="Superseded"):
        active = [
            row
            for row in self.video_jobs.values()
            if row["lesson_id"] == payload["lesson_id"] and row["video_status"] in IN_FLIGHT_STATUSES
        ]
        if active and not supersede_active and payload["video_status"] in IN_FLIGHT_STATUSES:
            raise ActiveJobExistsError(payload["lesson_id"])
        # Provider runs before anything is written, matching a rolled-back transaction on failure.
        provider_job_id = start_render()
        superseded = []
        if supersede_active:
            for row in active:
                row.update({"video_status": "failed", "error_message": superseded_message, "next_check_at": None})
                superseded.append(row["id"])
        row = {
            "video_duration_s": None,
            "storage_path": None,
            "public_url": None,
            "check_attempts": 0,
            "last_checked_at": None,
            "error_message": None,
            **payload,
            "video_id": provider_job_id,
        }
        self.video_jobs[row["id"]] = row
        return dict(row), superseded

    def update_video_job(self, job_id: str, *, expected_status: str, expected_attempts: int, fields: dict) -> bool:
        row = self.video_jobs.get(job_id)
        if row is None or row["video_status"] != expected_status or row["check_attempts"] != expected_attempts:
            return False
        row.update(fields)
        return True

    def delete_video_jobs(self, course_id=None, dry_run_only: bool = False) -> int:
        lesson_ids = None
        if course_id:
            lesson_ids = {lesson["id"] for lesson in self.fetch_lessons_for_course(course_id)}
        doomed = [
            job_id
            for job_id, row in self.video_jobs.items()
            if (lesson_ids is None or row["lesson_id"] in lesson_ids) and (not dry_run_only or row["dry_run"])
        ]
        for job_id in doomed:
            del self.video_jobs[job_id]
        return len(doomed)


class FakeProvider:
    def __init__(self, statuses: Optional[dict[str, RenderStatus]] = None, fail_create: Optional[Exception] = None):
        self.statuses = statuses or {}
        self.fail_create = fail_create
        self.created: list[dict] = []
        self.status_calls: list[str] = []
        self._counter = 0

    def create_render(self, script: str, target_duration_s: int, *, title=None) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        self._counter += 1
        self.created.append({"script": script, "target_duration_s": target_duration_s, "title": title})
        return f"heygen-{self._counter}"

    def get_status(self, provider_job_id: str) -> RenderStatus:
        self.status_calls.append(provider_job_id)
        status = self.statuses[provider_job_id]
        if isinstance(status, Exception):
            raise status
        return status


class FakeLLM:
    def __init__(self, reply: str = "Welcome to the lesson.", error: Optional[Exception] = None, json_replies=None):
        self.reply = reply
        self.error = error
        self.json_replies = list(json_replies or [])
        self.calls: list[dict] = []

    def complete(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt, **kwargs})
        if self.error is not None:
            raise self.error
        return self.reply

    def complete_json(self, system_prompt: str, user_prompt: str, **kwargs) -> dict:
        self.calls.append({"system": system_prompt, "user": user_prompt, **kwargs})
        if self.error is not None:
            raise self.error
        return self.json_replies.pop(0)


@pytest.fixture
def fake_db():
    db = FakeDB()
    db.add_course("course-1")
    db.add_module("module-1", "course-1", position=1)
    db.add_lesson("L1", "module-1", position=1)
    return db


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

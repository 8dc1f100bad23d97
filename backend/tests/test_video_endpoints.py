from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT))

pytest.importorskip("fastapi")

try:
    from fastapi.testclient import TestClient
except RuntimeError:  # pragma: no cover - environment-specific import guard
    TestClient = None

if TestClient is None:
    pytestmark = pytest.mark.skip(reason="fastapi.testclient requires httpx")

import backend.app as app_module
from backend.observability import METRICS
from lesson_pipeline.publisher import CourseNotFoundError, ManifestPublishError, PublishResult
from lesson_pipeline.reconciler import ReconcileSummary
from lesson_pipeline.script_preparer import LessonNotFoundError
from lesson_pipeline.submitter import SubmissionResult
from lesson_pipeline.video_provider import VideoProviderError


CREATED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeDB:
    def __init__(self) -> None:
        self.courses = {"course-1": {"id": "course-1", "title": "Recursion"}}
        self.lessons = {"L1": {"id": "L1", "module_id": "m1", "title": "Base case", "position": 1}}
        self.jobs = [
            {
                "id": "job-done",
                "lesson_id": "L1",
                "video_status": "completed",
                "video_id": "heygen-1",
                "video_url": "https://cdn.test/done.mp4",
                "check_attempts": 3,
                "dry_run": False,
                "created_at": CREATED_AT,
            },
            {
                "id": "job-active",
                "lesson_id": "L1",
                "video_status": "processing",
                "video_id": "heygen-2",
                "check_attempts": 1,
                "dry_run": False,
                "created_at": CREATED_AT,
            },
        ]
        self.attachments: list[dict] = []
        self.agent_runs: dict[str, dict] = {}

    def fetch_course(self, course_id):
        return self.courses.get(course_id)

    def fetch_lesson(self, lesson_id):
        return self.lessons.get(lesson_id)

    def fetch_lessons_for_course(self, course_id):
        return list(self.lessons.values()) if course_id in self.courses else []

    def fetch_video_jobs(self, lesson_ids=None, statuses=None, limit=None):
        rows = [
            job
            for job in self.jobs
            if (lesson_ids is None or job["lesson_id"] in set(lesson_ids))
            and (statuses is None or job["video_status"] in set(statuses))
        ]
        return rows[:limit] if limit is not None else rows

    def fetch_outstanding_video_jobs(self, course_id=None, lesson_id=None, job_id=None, limit=25):
        return [dict(job) for job in self.jobs if job["video_status"] in {"pending", "processing"}][:limit]

    def update_video_job(self, job_id, *, expected_status, expected_attempts, fields):
        raise AssertionError("no job may be written")

    def create_attachment(self, payload):
        self.attachments.append(payload)
        return payload

    def fetch_agent_run(self, run_id):
        return self.agent_runs.get(run_id)


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDB()
    monkeypatch.setattr(app_module, "get_database", lambda: db)
    monkeypatch.setattr(app_module, "_WRITE_RATE_LIMITER", app_module._InMemoryRateLimiter())
    monkeypatch.delenv("STUDIO_WRITE_API_TOKEN", raising=False)
    monkeypatch.delenv("STUDIO_VIDEO_DRY_RUN", raising=False)
    METRICS.reset()
    return db


@pytest.fixture
def client(fake_db):
    return TestClient(app_module.app)


def test_submit_video_returns_submission_payload(client, monkeypatch):
    provider = object()
    calls = []

    def fake_submit(db, video_provider, llm, lesson_id, minutes, **kwargs):
        calls.append({"provider": video_provider, "lesson_id": lesson_id, "minutes": minutes, **kwargs})
        return SubmissionResult(
            accepted=True, status="processing", job_id="job-new", provider_job_id="heygen-9", message="Video job submitted."
        )

    monkeypatch.setattr(app_module, "submit_video_job", fake_submit)
    monkeypatch.setattr(app_module, "_video_provider", lambda: provider)
    monkeypatch.setattr(app_module, "_llm_client", lambda: None)

    response = client.post("/lessons/L1/video", json={"targetDurationMinutes": 3, "forceRegenerate": True})

    assert response.status_code == 200
    assert response.json() == {
        "accepted": True,
        "status": "processing",
        "lessonVideoId": "job-new",
        "providerVideoId": "heygen-9",
        "videoUrl": None,
        "message": "Video job submitted.",
    }
    assert calls[0]["provider"] is provider
    assert calls[0]["force_regenerate"] is True
    assert calls[0]["dry_run"] is False
    assert METRICS.snapshot()["jobStatusEvents"]["video_submit"] == {"processing": 1}


def test_dry_run_flag_skips_provider(client, monkeypatch):
    seen = {}

    def fake_submit(db, video_provider, llm, lesson_id, minutes, **kwargs):
        seen["provider"] = video_provider
        seen["dry_run"] = kwargs["dry_run"]
        return SubmissionResult(accepted=True, status="dry_run", job_id="j", provider_job_id="dryRun_abc")

    monkeypatch.setenv("STUDIO_VIDEO_DRY_RUN", "true")
    monkeypatch.setattr(app_module, "submit_video_job", fake_submit)
    monkeypatch.setattr(app_module, "_video_provider", lambda: pytest.fail("provider should not be built"))
    monkeypatch.setattr(app_module, "_llm_client", lambda: None)

    response = client.post("/lessons/L1/video", json={"targetDurationMinutes": 3})

    assert response.json()["status"] == "dry_run"
    assert seen == {"provider": None, "dry_run": True}


@pytest.mark.parametrize(
    "error,status_code",
    [
        (LessonNotFoundError("L9"), 404),
        (ValueError("targetDurationMinutes must be a positive number."), 400),
        (VideoProviderError("Video render request failed: HTTP 401: bad key"), 502),
    ],
)
def test_submit_video_maps_errors(client, monkeypatch, error, status_code):
    def failing_submit(*args, **kwargs):
        raise error

    monkeypatch.setattr(app_module, "submit_video_job", failing_submit)
    monkeypatch.setattr(app_module, "_video_provider", lambda: None)
    monkeypatch.setattr(app_module, "_llm_client", lambda: None)

    response = client.post("/lessons/L9/video", json={"targetDurationMinutes": 3})

    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)
    if status_code == 502:
        assert METRICS.snapshot()["providerErrors"] == {"VideoProviderError": 1}


def test_refresh_returns_summary_and_counts_transitions(client, monkeypatch):
    seen = {}

    def fake_reconcile(db, provider, **kwargs):
        seen.update(kwargs)
        return ReconcileSummary(
            checked=2,
            completed=1,
            failed=1,
            errors=1,
            transitions=[
                {"lessonVideoId": "a", "lessonId": "L1", "from": "processing", "to": "completed", "checkAttempts": 4},
                {"lessonVideoId": "b", "lessonId": "L1", "from": "pending", "to": "failed", "checkAttempts": 40},
            ],
        )

    monkeypatch.setenv("STUDIO_MIRROR_VIDEOS", "true")
    monkeypatch.setattr(app_module, "reconcile", fake_reconcile)
    monkeypatch.setattr(app_module, "_video_provider", lambda: None)

    response = client.post("/videos/refresh", json={"courseId": "course-1", "limit": 10, "force": True})

    assert response.status_code == 200
    body = response.json()
    assert (body["checked"], body["completed"], body["failed"], body["stillPending"]) == (2, 1, 1, 0)
    assert seen["course_id"] == "course-1"
    assert seen["limit"] == 10
    assert seen["force"] is True
    assert "mirror" not in seen
    snapshot = METRICS.snapshot()
    assert snapshot["jobFailures"] == {"video_render": 1}
    assert snapshot["providerErrors"] == {"video_status": 1}


def test_refresh_without_provider_is_bad_gateway(client, fake_db, monkeypatch):
    monkeypatch.setattr(app_module, "_video_provider", lambda: None)

    response = client.post("/videos/refresh", json={"force": True})

    assert response.status_code == 502
    assert response.json()["detail"] == "Video provider is not configured."
    assert fake_db.jobs[1]["check_attempts"] == 1


def test_refresh_rejects_bad_limit(client, monkeypatch):
    monkeypatch.setattr(app_module, "_video_provider", lambda: None)

    response = client.post("/videos/refresh", json={"limit": 500})

    assert response.status_code == 400
    assert "limit" in response.json()["detail"]


def test_lesson_video_listing(client):
    response = client.get("/lessons/L1/videos")

    assert response.status_code == 200
    videos = response.json()["videos"]
    assert [video["lessonVideoId"] for video in videos] == ["job-done", "job-active"]
    assert videos[0]["createdAt"] == "2026-03-01T12:00:00+00:00"


def test_unknown_lesson_listing_is_404(client):
    assert client.get("/lessons/nope/videos").status_code == 404


def test_course_video_views(client):
    active = client.get("/courses/course-1/videos/active").json()
    completed = client.get("/courses/course-1/videos/completed").json()

    assert [video["lessonVideoId"] for video in active["videos"]] == ["job-active"]
    assert completed["videos"]["L1"]["videoUrl"] == "https://cdn.test/done.mp4"
    assert client.get("/courses/missing/videos/active").status_code == 404


def test_purge_requires_filter(client):
    response = client.delete("/videos")

    assert response.status_code == 400


def test_publish_success_and_errors(client, monkeypatch):
    published_at = datetime(2026, 3, 2, tzinfo=timezone.utc)
    outcomes = [
        PublishResult("course-1", "studio/courses/course-1/manifest.json", "https://cdn.test/m.json", published_at),
        ManifestPublishError("Publishing course course-1 failed: bucket unreachable"),
        CourseNotFoundError("missing"),
    ]

    def fake_publish(db, write_manifest, course_id):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(app_module, "publish_course", fake_publish)

    ok = client.post("/courses/course-1/publish")
    failed = client.post("/courses/course-1/publish")
    missing = client.post("/courses/missing/publish")

    assert ok.status_code == 200
    assert ok.json()["manifestUrl"] == "https://cdn.test/m.json"
    assert failed.status_code == 502
    assert missing.status_code == 404


def test_generate_course_enqueues_spec_agent(client, fake_db, monkeypatch):
    enqueued = []

    def fake_enqueue(agent_type, course_id, input_data, task, *args):
        enqueued.append((agent_type, input_data, args))
        fake_db.agent_runs["run-1"] = {"id": "run-1", "status": "queued"}
        return "run-1"

    monkeypatch.setattr(app_module, "enqueue_agent_run", fake_enqueue)

    response = client.post(
        "/courses/generate",
        json={"username": "ada", "userKnowledgeLevel": "beginner", "courseTitle": "Recursion", "courseLengthHours": 2},
    )

    assert response.status_code == 200
    assert response.json() == {"agentRunId": "run-1", "status": "queued", "courseId": None}
    assert enqueued[0][0] == "orchestration"
    assert enqueued[0][2] == ("ada", "beginner", "Recursion", 2.0)


def test_generate_course_validates_request(client):
    response = client.post(
        "/courses/generate",
        json={"username": "ada", "userKnowledgeLevel": "expert", "courseTitle": "Recursion", "courseLengthHours": 2},
    )

    assert response.status_code == 400
    assert "Invalid knowledge level" in response.json()["detail"]


def test_agent_run_lookup(client, fake_db):
    fake_db.agent_runs["run-1"] = {"id": "run-1", "agent_type": "course_writer", "status": "completed", "course_id": "course-1"}

    assert client.get("/agent-runs/run-1").json()["courseId"] == "course-1"
    assert client.get("/agent-runs/run-404").status_code == 404


def test_attachment_presign_and_register(client, fake_db, monkeypatch, tmp_path):
    monkeypatch.delenv("STORAGE_MODE", raising=False)
    monkeypatch.setenv("STUDIO_STORAGE_DIR", str(tmp_path / "storage"))

    presign = client.post("/lessons/L1/attachments/presign", json={"filename": "slides.pdf", "mimeType": "application/pdf"})

    assert presign.status_code == 200
    key = presign.json()["storage_path"]
    assert key.startswith("lessons/L1/")

    registered = client.post(
        "/lessons/L1/attachments",
        json={"filename": "slides.pdf", "storagePath": key, "assetType": "document", "public": True},
    )

    assert registered.status_code == 200
    assert fake_db.attachments[0]["lesson_id"] == "L1"
    assert registered.json()["publicUrl"].startswith("file://")


def test_attachment_for_other_lesson_is_rejected(client):
    response = client.post(
        "/lessons/L1/attachments",
        json={"filename": "x.pdf", "storagePath": "lessons/L2/123-abcd-x.pdf"},
    )

    assert response.status_code == 400

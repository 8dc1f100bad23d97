from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT))

from backend.runtime_config import validate_runtime_environment


def test_requires_database_url_for_api(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL must be set"):
        validate_runtime_environment("api", env={"STUDIO_INLINE_JOBS": "true"})


def test_requires_redis_url_when_inline_jobs_disabled():
    env = {
        "DATABASE_URL": "postgres://example",
        "STUDIO_INLINE_JOBS": "false",
        "REDIS_URL": "   ",
    }

    with pytest.raises(RuntimeError, match="REDIS_URL must be set when queue-backed jobs are enabled"):
        validate_runtime_environment("api", env=env)


def test_worker_requires_redis_url_even_if_inline_flag_is_true():
    env = {
        "DATABASE_URL": "postgres://example",
        "STUDIO_INLINE_JOBS": "true",
        "REDIS_URL": "",
    }

    with pytest.raises(RuntimeError, match="REDIS_URL must be set when queue-backed jobs are enabled"):
        validate_runtime_environment("worker", env=env)


def test_inline_api_allows_missing_redis_url_with_valid_database_and_local_storage(tmp_path):
    env = {
        "DATABASE_URL": "postgres://example",
        "STUDIO_INLINE_JOBS": "true",
        "STUDIO_STORAGE_DIR": str(tmp_path / "storage"),
    }

    validate_runtime_environment("api", env=env)


def test_s3_storage_requires_bucket():
    env = {
        "DATABASE_URL": "postgres://example",
        "STUDIO_INLINE_JOBS": "true",
        "STORAGE_MODE": "s3",
    }

    with pytest.raises(RuntimeError, match="S3_BUCKET must be set for S3 storage"):
        validate_runtime_environment("api", env=env)


def test_invalid_poll_policy_is_reported():
    env = {
        "DATABASE_URL": "postgres://example",
        "STUDIO_INLINE_JOBS": "true",
        "STUDIO_POLL_MAX_ATTEMPTS": "0",
    }

    with pytest.raises(RuntimeError, match="STUDIO_POLL_MAX_ATTEMPTS must be positive"):
        validate_runtime_environment("api", env=env)


def test_partial_video_provider_config_is_rejected():
    env = {
        "DATABASE_URL": "postgres://example",
        "STUDIO_INLINE_JOBS": "true",
        "HEYGEN_API_KEY": "key",
        "HEYGEN_AVATAR_ID": "avatar",
    }

    with pytest.raises(RuntimeError, match="HEYGEN_VOICE_ID must be set when HEYGEN_API_KEY is set"):
        validate_runtime_environment("api", env=env)


def test_all_errors_are_reported_together():
    env = {
        "STUDIO_INLINE_JOBS": "true",
        "STUDIO_WRITE_RATE_LIMIT_WINDOW_SEC": "0",
        "STUDIO_MAX_VIDEO_MINUTES": "lots",
    }

    with pytest.raises(RuntimeError) as exc_info:
        validate_runtime_environment("api", env=env)

    message = str(exc_info.value)
    assert message.startswith("Invalid runtime environment for api:")
    assert "DATABASE_URL must be set." in message
    assert "STUDIO_WRITE_RATE_LIMIT_WINDOW_SEC must be a positive integer." in message
    assert "STUDIO_MAX_VIDEO_MINUTES must be a number." in message

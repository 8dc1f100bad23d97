from __future__ import annotations

import os
from typing import Mapping

from backend.storage import _config as storage_config
from lesson_pipeline.video_jobs import poll_policy_from_env


INLINE_TRUE_VALUES = {"1", "true", "yes", "on"}


def _require_positive_int(env: Mapping[str, str], name: str, default: int) -> None:
    raw_value = env.get(name, str(default)).strip()
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc
    if parsed <= 0:
        raise RuntimeError(f"{name} must be a positive integer.")


def _require_positive_number(env: Mapping[str, str], name: str, default: float) -> None:
    raw_value = env.get(name, str(default)).strip()
    try:
        parsed = float(raw_value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number.") from exc
    if parsed <= 0:
        raise RuntimeError(f"{name} must be positive.")


def _is_enabled(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in INLINE_TRUE_VALUES


def validate_runtime_environment(mode: str, env: Mapping[str, str] | None = None) -> None:
    active_env = env or os.environ

    errors: list[str] = []
    database_url = active_env.get("DATABASE_URL", "").strip()
    if not database_url:
        errors.append("DATABASE_URL must be set.")

    redis_url = active_env.get("REDIS_URL", "redis://localhost:6379/0").strip()
    inline_jobs = _is_enabled(active_env, "STUDIO_INLINE_JOBS")
    if mode == "worker" or not inline_jobs:
        if not redis_url:
            errors.append("REDIS_URL must be set when queue-backed jobs are enabled.")

    try:
        storage_config(active_env)
    except RuntimeError as exc:
        errors.append(str(exc))

    try:
        poll_policy_from_env(active_env)
    except RuntimeError as exc:
        errors.append(str(exc))

    for env_name, default in (
        ("STUDIO_WRITE_RATE_LIMIT_MAX_REQUESTS", 60),
        ("STUDIO_WRITE_RATE_LIMIT_WINDOW_SEC", 60),
        ("STUDIO_NARRATION_WPM", 150),
    ):
        try:
            _require_positive_int(active_env, env_name, default)
        except RuntimeError as exc:
            errors.append(str(exc))

    try:
        _require_positive_number(active_env, "STUDIO_MAX_VIDEO_MINUTES", 30)
    except RuntimeError as exc:
        errors.append(str(exc))

    # The provider key is optional (dry runs need none), but a partial config is a mistake.
    if active_env.get("HEYGEN_API_KEY", "").strip():
        for env_name in ("HEYGEN_AVATAR_ID", "HEYGEN_VOICE_ID"):
            if not active_env.get(env_name, "").strip():
                errors.append(f"{env_name} must be set when HEYGEN_API_KEY is set.")

    if errors:
        error_lines = "\n- ".join(errors)
        raise RuntimeError(f"Invalid runtime environment for {mode}:\n- {error_lines}")

"""Lesson video job states and the polling state machine.

A job moves strictly forward: ``pending -> processing -> completed | failed``
(``pending`` may resolve directly). ``skipped`` and ``dry_run`` only appear in
submission responses and are never stored on a row.

``next_state`` is pure: it takes the job's current status and attempt count,
one provider observation and the poll policy, and returns the fields to write.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from lesson_pipeline.retry_utils import backoff_delay
from lesson_pipeline.video_provider import (
    RENDER_FAILED,
    RENDER_IN_PROGRESS,
    RENDER_SUCCEEDED,
    RenderStatus,
)


PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"
DRY_RUN = "dry_run"
REUSED = "reused"

IN_FLIGHT_STATUSES = frozenset({PENDING, PROCESSING})

DRY_RUN_ID_PREFIX = "dryRun_"


class ActiveJobExistsError(Exception):
    """Another in-flight job already holds the lesson's active slot."""

    def __init__(self, lesson_id: str) -> None:
        super().__init__(f"Lesson {lesson_id} already has a video job in flight.")
        self.lesson_id = lesson_id


@dataclass(frozen=True)
class PollPolicy:
    initial_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 600.0
    max_attempts: int = 40

    def delay_after(self, attempts: int) -> float:
        return backoff_delay(
            attempts,
            self.initial_delay_seconds,
            self.backoff_multiplier,
            self.max_delay_seconds,
        )


def _positive_number(env: Mapping[str, str], name: str, default: float, *, integer: bool = False) -> Any:
    raw_value = env.get(name, str(default)).strip()
    try:
        parsed = int(raw_value) if integer else float(raw_value)
    except ValueError as exc:
        kind = "an integer" if integer else "a number"
        raise RuntimeError(f"{name} must be {kind}.") from exc
    if parsed <= 0:
        raise RuntimeError(f"{name} must be positive.")
    return parsed


def poll_policy_from_env(env: Mapping[str, str] | None = None) -> PollPolicy:
    active_env = env if env is not None else os.environ
    initial = _positive_number(active_env, "STUDIO_POLL_INITIAL_DELAY_SEC", 30)
    multiplier = _positive_number(active_env, "STUDIO_POLL_BACKOFF_MULTIPLIER", 2)
    if multiplier < 1:
        raise RuntimeError("STUDIO_POLL_BACKOFF_MULTIPLIER must be at least 1.")
    max_delay = _positive_number(active_env, "STUDIO_POLL_MAX_DELAY_SEC", 600)
    max_attempts = _positive_number(active_env, "STUDIO_POLL_MAX_ATTEMPTS", 40, integer=True)
    return PollPolicy(
        initial_delay_seconds=initial,
        backoff_multiplier=multiplier,
        max_delay_seconds=max(max_delay, initial),
        max_attempts=max_attempts,
    )


@dataclass(frozen=True)
class Transition:
    status: str
    check_attempts: int
    last_checked_at: datetime
    next_check_at: Optional[datetime]
    video_url: Optional[str] = None
    video_duration_s: Optional[float] = None
    error_message: Optional[str] = None

    def as_update(self) -> Dict[str, Any]:
        return {
            "video_status": self.status,
            "check_attempts": self.check_attempts,
            "last_checked_at": self.last_checked_at,
            "next_check_at": self.next_check_at,
            "video_url": self.video_url,
            "video_duration_s": self.video_duration_s,
            "error_message": self.error_message,
        }


def next_state(
    current_status: str,
    check_attempts: int,
    observation: Optional[RenderStatus],
    policy: PollPolicy,
    now: datetime,
    lookup_error: Optional[str] = None,
) -> Transition:
    """Compute the job fields after one status check.

    ``observation`` is None when the provider could not be queried; pass the
    reason as ``lookup_error``. Such a check still consumes an attempt.
    """
    if current_status not in IN_FLIGHT_STATUSES:
        raise ValueError(f"Job in status '{current_status}' is not being polled.")

    attempts = max(0, int(check_attempts or 0))

    if observation is not None and observation.state == RENDER_SUCCEEDED and observation.video_url:
        return Transition(
            status=COMPLETED,
            check_attempts=attempts + 1,
            last_checked_at=now,
            next_check_at=None,
            video_url=observation.video_url,
            video_duration_s=observation.duration_seconds,
        )

    if observation is not None and observation.state == RENDER_FAILED:
        return Transition(
            status=FAILED,
            check_attempts=attempts + 1,
            last_checked_at=now,
            next_check_at=None,
            error_message=observation.error or "Video provider reported the render as failed.",
        )

    if attempts >= policy.max_attempts:
        return Transition(
            status=FAILED,
            check_attempts=attempts + 1,
            last_checked_at=now,
            next_check_at=None,
            error_message=f"Video render did not finish after {attempts} status checks.",
        )

    status = current_status
    if observation is not None and observation.state in {RENDER_IN_PROGRESS, RENDER_SUCCEEDED}:
        status = PROCESSING

    new_attempts = attempts + 1
    return Transition(
        status=status,
        check_attempts=new_attempts,
        last_checked_at=now,
        next_check_at=now + timedelta(seconds=policy.delay_after(new_attempts)),
        error_message=lookup_error,
    )


def is_due(job: Mapping[str, Any], now: datetime) -> bool:
    next_check_at = job.get("next_check_at")
    if next_check_at is None:
        return True
    if isinstance(next_check_at, str):
        next_check_at = datetime.fromisoformat(next_check_at)
    return next_check_at <= now

from datetime import timedelta

import pytest

from lesson_pipeline.video_jobs import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    PollPolicy,
    is_due,
    next_state,
    poll_policy_from_env,
)
from lesson_pipeline.video_provider import (
    RENDER_FAILED,
    RENDER_IN_PROGRESS,
    RENDER_QUEUED,
    RENDER_SUCCEEDED,
    RenderStatus,
)


POLICY = PollPolicy(initial_delay_seconds=30, backoff_multiplier=2, max_delay_seconds=600, max_attempts=5)


def test_success_with_url_completes(now):
    transition = next_state(
        PROCESSING,
        2,
        RenderStatus(state=RENDER_SUCCEEDED, video_url="https://cdn.test/v.mp4", duration_seconds=181.5),
        POLICY,
        now,
    )

    assert transition.status == COMPLETED
    assert transition.video_url == "https://cdn.test/v.mp4"
    assert transition.video_duration_s == 181.5
    assert transition.check_attempts == 3
    assert transition.next_check_at is None


def test_success_without_url_keeps_polling(now):
    transition = next_state(PENDING, 0, RenderStatus(state=RENDER_SUCCEEDED), POLICY, now)

    assert transition.status == PROCESSING
    assert transition.video_url is None
    assert transition.next_check_at == now + timedelta(seconds=30)


def test_provider_failure_is_terminal_with_message(now):
    transition = next_state(
        PENDING,
        0,
        RenderStatus(state=RENDER_FAILED, error="avatar not found"),
        POLICY,
        now,
    )

    assert transition.status == FAILED
    assert transition.error_message == "avatar not found"
    assert transition.video_url is None


def test_rendering_moves_pending_to_processing_with_backoff(now):
    first = next_state(PENDING, 0, RenderStatus(state=RENDER_IN_PROGRESS), POLICY, now)
    third = next_state(PROCESSING, 2, RenderStatus(state=RENDER_IN_PROGRESS), POLICY, now)

    assert first.status == PROCESSING
    assert first.check_attempts == 1
    assert first.last_checked_at == now
    assert first.next_check_at == now + timedelta(seconds=30)
    assert third.next_check_at == now + timedelta(seconds=120)


def test_queued_observation_stays_pending(now):
    transition = next_state(PENDING, 0, RenderStatus(state=RENDER_QUEUED), POLICY, now)

    assert transition.status == PENDING
    assert transition.check_attempts == 1


def test_backoff_is_capped(now):
    transition = next_state(PROCESSING, 4, RenderStatus(state=RENDER_IN_PROGRESS), PollPolicy(max_attempts=40), now)

    assert transition.next_check_at == now + timedelta(seconds=480)
    capped = next_state(PROCESSING, 10, RenderStatus(state=RENDER_IN_PROGRESS), PollPolicy(max_attempts=40), now)
    assert capped.next_check_at == now + timedelta(seconds=600)


def test_attempt_cap_fails_job_on_next_poll(now):
    transition = next_state(PROCESSING, 5, RenderStatus(state=RENDER_IN_PROGRESS), POLICY, now)

    assert transition.status == FAILED
    assert "did not finish after 5 status checks" in transition.error_message


def test_success_on_final_poll_still_completes(now):
    transition = next_state(
        PROCESSING, 5, RenderStatus(state=RENDER_SUCCEEDED, video_url="https://cdn.test/late.mp4"), POLICY, now
    )

    assert transition.status == COMPLETED


def test_lookup_error_consumes_attempt(now):
    transition = next_state(PENDING, 1, None, POLICY, now, lookup_error="Video status request failed: HTTP 502")

    assert transition.status == PENDING
    assert transition.check_attempts == 2
    assert transition.error_message == "Video status request failed: HTTP 502"


def test_terminal_status_is_rejected(now):
    with pytest.raises(ValueError):
        next_state(COMPLETED, 1, RenderStatus(state=RENDER_IN_PROGRESS), POLICY, now)


def test_queued_report_never_moves_a_processing_job_back(now):
    transition = next_state(PROCESSING, 1, RenderStatus(state=RENDER_QUEUED), POLICY, now)

    assert transition.status == PROCESSING
    assert transition.check_attempts == 2


def test_is_due(now):
    assert is_due({"next_check_at": None}, now)
    assert is_due({"next_check_at": now}, now)
    assert not is_due({"next_check_at": now + timedelta(seconds=1)}, now)
    assert not is_due({"next_check_at": (now + timedelta(minutes=5)).isoformat()}, now)


def test_poll_policy_from_env_defaults():
    assert poll_policy_from_env({}) == PollPolicy()


def test_poll_policy_from_env_rejects_bad_values():
    with pytest.raises(RuntimeError, match="STUDIO_POLL_MAX_ATTEMPTS must be an integer"):
        poll_policy_from_env({"STUDIO_POLL_MAX_ATTEMPTS": "forever"})
    with pytest.raises(RuntimeError, match="STUDIO_POLL_BACKOFF_MULTIPLIER must be at least 1"):
        poll_policy_from_env({"STUDIO_POLL_BACKOFF_MULTIPLIER": "0.5"})

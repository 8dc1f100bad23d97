"""Client for the avatar-video render provider (HeyGen REST API)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from lesson_pipeline.llm_client import upstream_error_detail
from lesson_pipeline.retry_utils import (
    MaxRetriesExceeded,
    NonRetryableError,
    retry_config_from_env,
    with_retry,
)


# Normalized render states reported to the reconciler.
RENDER_QUEUED = "queued"
RENDER_IN_PROGRESS = "rendering"
RENDER_SUCCEEDED = "succeeded"
RENDER_FAILED = "failed"

_PROVIDER_STATE_MAP = {
    "pending": RENDER_QUEUED,
    "waiting": RENDER_QUEUED,
    "processing": RENDER_IN_PROGRESS,
    "completed": RENDER_SUCCEEDED,
    "failed": RENDER_FAILED,
}


class VideoProviderError(RuntimeError):
    """The video provider rejected a request or could not be reached."""


@dataclass(frozen=True)
class RenderStatus:
    state: str
    video_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    raw_status: Optional[str] = None


def _provider_error_message(payload: Dict[str, Any]) -> Optional[str]:
    error = payload.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("detail") or error.get("code") or error)
    return str(error)


def parse_render_status(payload: Dict[str, Any]) -> RenderStatus:
    if not isinstance(payload, dict):
        raise VideoProviderError("Video status response is not a JSON object.")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise VideoProviderError("Video status response has no data object.")

    raw_status = str(data.get("status") or "").strip().lower()
    # Unknown states keep the job in flight; the attempt cap ends it eventually.
    state = _PROVIDER_STATE_MAP.get(raw_status, RENDER_IN_PROGRESS)

    duration = data.get("duration")
    try:
        duration_seconds = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration_seconds = None

    error_message = _provider_error_message(data)
    if state == RENDER_FAILED and not error_message:
        error_message = "Video provider reported the render as failed."

    return RenderStatus(
        state=state,
        video_url=data.get("video_url") or None,
        duration_seconds=duration_seconds,
        error=error_message,
        raw_status=raw_status or None,
    )


@dataclass(frozen=True)
class HeyGenClient:
    api_key: str
    avatar_id: str
    voice_id: str
    base_url: str = "https://api.heygen.com"
    timeout: float = 30.0
    width: int = 1280
    height: int = 720

    def _request(self, method: str, path: str, operation_name: str, **kwargs: Any) -> Dict[str, Any]:
        def make_request() -> Dict[str, Any]:
            response = httpx.request(
                method,
                f"{self.base_url}{path}",
                headers={"X-Api-Key": self.api_key, "Accept": "application/json"},
                timeout=self.timeout,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()

        try:
            body = with_retry(make_request, config=retry_config_from_env(), operation_name=operation_name)
        except (NonRetryableError, MaxRetriesExceeded) as exc:
            raise VideoProviderError(f"{operation_name} failed: {upstream_error_detail(exc)}") from exc
        if not isinstance(body, dict):
            raise VideoProviderError(f"{operation_name} failed: response is not a JSON object.")
        return body

    def create_render(self, script: str, target_duration_s: int, *, title: Optional[str] = None) -> str:
        """Start a render and return the provider's video id.

        The provider has no duration parameter; length follows the script,
        which the script preparer sizes from ``target_duration_s``.
        """
        payload = {
            "video_inputs": [
                {
                    "character": {
                        "type": "avatar",
                        "avatar_id": self.avatar_id,
                        "avatar_style": "normal",
                    },
                    "voice": {
                        "type": "text",
                        "input_text": script,
                        "voice_id": self.voice_id,
                    },
                }
            ],
            "dimension": {"width": self.width, "height": self.height},
        }
        if title:
            payload["title"] = title[:100]

        body = self._request("POST", "/v2/video/generate", "Video render request", json=payload)
        error_message = _provider_error_message(body)
        if error_message:
            raise VideoProviderError(f"Video render request rejected: {error_message}")
        data = body.get("data")
        video_id = data.get("video_id") if isinstance(data, dict) else None
        if not video_id:
            raise VideoProviderError("Video render response missing video_id.")
        return str(video_id)

    def get_status(self, provider_job_id: str) -> RenderStatus:
        body = self._request(
            "GET",
            "/v1/video_status.get",
            "Video status request",
            params={"video_id": provider_job_id},
        )
        return parse_render_status(body)


def client_from_env() -> HeyGenClient:
    missing = [name for name in ("HEYGEN_API_KEY", "HEYGEN_AVATAR_ID", "HEYGEN_VOICE_ID") if not os.getenv(name)]
    if missing:
        raise RuntimeError("Missing required environment variable: " + ", ".join(missing))
    return HeyGenClient(
        api_key=os.environ["HEYGEN_API_KEY"],
        avatar_id=os.environ["HEYGEN_AVATAR_ID"],
        voice_id=os.environ["HEYGEN_VOICE_ID"],
        base_url=os.getenv("HEYGEN_BASE_URL", "https://api.heygen.com").rstrip("/"),
    )

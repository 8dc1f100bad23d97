from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from lesson_pipeline.retry_utils import (
    MaxRetriesExceeded,
    NonRetryableError,
    retry_config_from_env,
    with_retry,
)


DEFAULT_OPENAI_MODEL = "gpt-4.1-2025-04-14"


class LLMError(RuntimeError):
    """The generative text provider failed or returned an unusable response."""


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def upstream_error_detail(exc: BaseException) -> str:
    """Best human-readable detail for a failed provider call, including the body when present."""
    cause = exc.__cause__ if exc.__cause__ is not None else exc
    if isinstance(cause, httpx.HTTPStatusError):
        body = cause.response.text[:500]
        return f"HTTP {cause.response.status_code}: {body}"
    return str(cause)


@dataclass(frozen=True)
class OpenAIChatClient:
    api_key: str
    model: str = DEFAULT_OPENAI_MODEL
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 90.0

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        def make_request() -> Dict[str, Any]:
            response = httpx.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()

        try:
            return with_retry(
                make_request,
                config=retry_config_from_env(),
                operation_name="OpenAI chat completion",
            )
        except (NonRetryableError, MaxRetriesExceeded) as exc:
            raise LLMError(f"OpenAI API error: {upstream_error_detail(exc)}") from exc

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int = 2000,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = self._post(payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError("OpenAI response missing message content.") from exc
        if not isinstance(content, str) or not content.strip():
            raise LLMError("OpenAI response contained an empty message.")
        return content

    def complete_json(self, system_prompt: str, user_prompt: str, **kwargs: Any) -> Dict[str, Any]:
        raw = self.complete(system_prompt, user_prompt, json_mode=True, **kwargs)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LLMError(f"LLM failed to return valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise LLMError("LLM returned JSON that is not an object.")
        return parsed


def client_from_env(model: Optional[str] = None) -> OpenAIChatClient:
    return OpenAIChatClient(
        api_key=_require_env("OPENAI_API_KEY"),
        model=model or os.getenv("STUDIO_OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
        base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
    )

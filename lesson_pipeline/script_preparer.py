"""Narration scripts for lesson videos.

The duration drives the script length: the word budget is the requested
minutes times the narration pace, and the model is asked to stay close to it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from lesson_pipeline.llm_client import LLMError


LOGGER = logging.getLogger("studio.scripts")

DEFAULT_WORDS_PER_MINUTE = 150
MAX_LESSON_CHARS = 24000

SOURCE_OVERRIDE = "override"
SOURCE_DRAFT = "draft"
SOURCE_GENERATED = "generated"

SCRIPT_SYSTEM_PROMPT = (
    "You write narration scripts for an on-screen presenter who teaches one lesson.\n"
    "Write plain spoken prose only: no headings, markdown, bullet points, stage directions "
    "or speaker labels.\n"
    "Open with what the learner will get from the lesson, teach the key ideas with one "
    "concrete example, and close with a short recap.\n"
    "Respect the word budget; the narration length sets the video length."
)


class ScriptGenerationError(RuntimeError):
    """The generative text provider could not produce a narration script."""


class LessonNotFoundError(LookupError):
    def __init__(self, lesson_id: str) -> None:
        super().__init__(f"Lesson not found: {lesson_id}")
        self.lesson_id = lesson_id


@dataclass(frozen=True)
class PreparedScript:
    script: str
    source: str
    word_target: int


def words_per_minute() -> int:
    raw_value = os.getenv("STUDIO_NARRATION_WPM", str(DEFAULT_WORDS_PER_MINUTE)).strip()
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise RuntimeError("STUDIO_NARRATION_WPM must be an integer.") from exc
    if parsed <= 0:
        raise RuntimeError("STUDIO_NARRATION_WPM must be a positive integer.")
    return parsed


def word_budget(target_duration_minutes: float, wpm: Optional[int] = None) -> int:
    pace = wpm if wpm is not None else words_per_minute()
    return max(1, int(round(float(target_duration_minutes) * pace)))


def build_script_prompt(lesson: dict[str, Any], target_duration_minutes: float, word_target: int) -> str:
    content = str(lesson.get("content") or "").strip()
    if len(content) > MAX_LESSON_CHARS:
        content = content[:MAX_LESSON_CHARS]
    return (
        f"Lesson title: {lesson.get('title') or 'Untitled lesson'}\n"
        f"Target length: {target_duration_minutes:g} minutes (about {word_target} words).\n\n"
        "Lesson content (markdown):\n"
        f"{content}\n\n"
        f"Write the narration script now, between {int(word_target * 0.9)} and "
        f"{int(word_target * 1.1)} words."
    )


def prepare_script(
    db,
    llm,
    lesson_id: str,
    target_duration_minutes: float,
    override_script: Optional[str] = None,
    *,
    persist_draft: bool = False,
    regenerate: bool = False,
) -> PreparedScript:
    word_target = word_budget(target_duration_minutes)

    if override_script is not None and override_script.strip():
        return PreparedScript(script=override_script, source=SOURCE_OVERRIDE, word_target=word_target)

    lesson = db.fetch_lesson(lesson_id)
    if not lesson:
        raise LessonNotFoundError(lesson_id)

    draft = str(lesson.get("video_script") or "").strip()
    if draft and not regenerate:
        return PreparedScript(script=draft, source=SOURCE_DRAFT, word_target=word_target)

    if not str(lesson.get("content") or "").strip():
        raise ValueError("Lesson has no content to build a narration script from.")

    if llm is None:
        raise ScriptGenerationError("Script generation is not configured (missing OPENAI_API_KEY).")

    prompt = build_script_prompt(lesson, target_duration_minutes, word_target)
    try:
        script = llm.complete(
            SCRIPT_SYSTEM_PROMPT,
            prompt,
            # Tokens run about 1.4 per English word; leave headroom.
            max_tokens=max(256, int(word_target * 2)),
            temperature=0.6,
        ).strip()
    except LLMError as exc:
        raise ScriptGenerationError(f"Script generation failed: {exc}") from exc

    if not script:
        raise ScriptGenerationError("Script generation failed: empty script returned.")

    LOGGER.info(
        "script.generated",
        extra={
            "lesson_id": lesson_id,
            "word_target": word_target,
            "word_count": len(script.split()),
        },
    )

    if persist_draft:
        db.update_lesson_script(lesson_id, script)
        LOGGER.info("script.draft_saved", extra={"lesson_id": lesson_id})

    return PreparedScript(script=script, source=SOURCE_GENERATED, word_target=word_target)

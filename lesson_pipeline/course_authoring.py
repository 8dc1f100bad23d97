"""Course-authoring agents: course spec generation and lesson writing."""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from lesson_pipeline.llm_client import LLMError
from lesson_pipeline.schema_validator import SchemaValidator


LOGGER = logging.getLogger("studio.authoring")

KNOWLEDGE_LEVELS = ("beginner", "intermediate", "advanced")
COURSE_SPEC_SCHEMA = "course_spec.schema.json"
LESSON_MINUTES = 30
MAX_COURSE_HOURS = 200

COURSE_SPEC_SYSTEM_PROMPT = """You normalize course generation requests into a structured CourseSpec.
Given the request, produce learning objectives suited to the knowledge level, a module
breakdown with estimated hours per module, prerequisites, a difficulty rating from 1 to 5
and a target audience description.

totalHours is the duration of the WHOLE course. The estimatedHours of all modules must
add up to totalHours.

Return a JSON object with exactly this structure:
{
  "courseSpec": {
    "title": "normalized course title",
    "description": "detailed course description",
    "targetKnowledgeLevel": "beginner|intermediate|advanced",
    "totalHours": number,
    "createdBy": "username",
    "learningObjectives": ["..."],
    "prerequisites": ["..."],
    "targetAudience": "...",
    "difficultyRating": 1-5,
    "suggestedModules": [
      {"title": "...", "description": "...", "estimatedHours": number, "position": number}
    ]
  }
}"""

LESSON_WRITER_SYSTEM_PROMPT = """You write detailed educational lessons for one course module.
Each lesson has a clear learning objective, engaging explanations with real-world
examples, practice exercises and key takeaways, pitched at the target knowledge level
and building on the previous lessons. Write lesson content in markdown.

Return a JSON object with this structure:
{"lessons": [{"title": "lesson title", "content": "markdown content", "position": number}]}"""


class CourseGenerationError(RuntimeError):
    """A course-authoring agent could not produce usable content."""


def validate_course_request(
    username: Optional[str],
    knowledge_level: Optional[str],
    course_title: Optional[str],
    hours: Any,
) -> float:
    if not username or not knowledge_level or not course_title or hours in (None, ""):
        raise ValueError("Missing required fields: username, userKnowledgeLevel, courseTitle, courseLengthHours")
    if knowledge_level not in KNOWLEDGE_LEVELS:
        raise ValueError("Invalid knowledge level. Must be: beginner, intermediate, or advanced")
    try:
        parsed = float(hours)
    except (TypeError, ValueError) as exc:
        raise ValueError("courseLengthHours must be a number.") from exc
    if not math.isfinite(parsed) or parsed <= 0 or parsed > MAX_COURSE_HOURS:
        raise ValueError(f"courseLengthHours must be between 0 and {MAX_COURSE_HOURS}.")
    return parsed


def lessons_for_hours(estimated_hours: float) -> int:
    # Half-up rounding: 1.25 hours is 3 lessons, not 2.
    return max(1, int(math.floor(float(estimated_hours) * 60 / LESSON_MINUTES + 0.5)))


def rescale_module_hours(course_spec: Dict[str, Any]) -> Dict[str, Any]:
    """Scale module estimates so they add up to ``totalHours``; returns a new spec."""
    modules = [dict(module) for module in course_spec.get("suggestedModules") or []]
    total_hours = float(course_spec["totalHours"])
    estimated_sum = sum(float(module.get("estimatedHours") or 0) for module in modules)
    if modules and estimated_sum > 0 and not math.isclose(estimated_sum, total_hours, rel_tol=1e-6):
        factor = total_hours / estimated_sum
        for module in modules:
            module["estimatedHours"] = round(float(module["estimatedHours"]) * factor, 2)
    for index, module in enumerate(modules, start=1):
        module.setdefault("position", index)
    return {**course_spec, "suggestedModules": modules}


def _course_spec_prompt(username: str, knowledge_level: str, course_title: str, hours: float) -> str:
    return (
        "Create a normalized CourseSpec for:\n"
        f"- Title: {course_title}\n"
        f"- Target Knowledge Level: {knowledge_level}\n"
        f"- Duration: {hours:g} hours\n"
        f"- Created by: {username}\n\n"
        "Break the course into logical modules with clear learning objectives; the content "
        "generator will write lessons from this spec."
    )


def generate_course_spec(
    llm,
    username: str,
    knowledge_level: str,
    course_title: str,
    hours: Any,
    validator: Optional[SchemaValidator] = None,
) -> Dict[str, Any]:
    total_hours = validate_course_request(username, knowledge_level, course_title, hours)
    if llm is None:
        raise CourseGenerationError("Course generation is not configured (missing OPENAI_API_KEY).")

    try:
        response = llm.complete_json(
            COURSE_SPEC_SYSTEM_PROMPT,
            _course_spec_prompt(username, knowledge_level, course_title, total_hours),
            max_tokens=2000,
            temperature=0.7,
        )
    except LLMError as exc:
        raise CourseGenerationError(f"Course spec generation failed: {exc}") from exc

    course_spec = response.get("courseSpec")
    if not isinstance(course_spec, dict):
        raise CourseGenerationError("Course spec generation failed: response has no courseSpec object.")

    # The request is authoritative for these; the model only proposes structure.
    course_spec = {
        **course_spec,
        "id": str(uuid.uuid4()),
        "totalHours": total_hours,
        "targetKnowledgeLevel": knowledge_level,
        "createdBy": username,
        "metadata": {"generatedAt": datetime.now(timezone.utc).isoformat(), "version": "1.0"},
    }
    course_spec.setdefault("title", course_title)

    try:
        (validator or SchemaValidator()).validate(course_spec, COURSE_SPEC_SCHEMA)
    except ValueError as exc:
        raise CourseGenerationError(f"Generated course spec is invalid: {exc}") from exc

    course_spec = rescale_module_hours(course_spec)
    LOGGER.info(
        "course_spec.generated",
        extra={"modules": len(course_spec["suggestedModules"]), "total_hours": total_hours},
    )
    return course_spec


def create_course_from_spec(db, course_spec: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    current_time = now or datetime.now(timezone.utc)
    course = db.create_course(
        {
            "id": str(uuid.uuid4()),
            "title": course_spec["title"],
            "description": course_spec.get("description"),
            "target_knowledge_level": course_spec.get("targetKnowledgeLevel"),
            "length_hours": course_spec.get("totalHours"),
            "created_by": course_spec.get("createdBy"),
            "status": "draft",
            "created_at": current_time,
            "updated_at": current_time,
        }
    )
    db.insert_course_spec(str(uuid.uuid4()), course["id"], course_spec)
    return course


def _lesson_prompt(course_spec: Dict[str, Any], module: Dict[str, Any], lesson_count: int) -> str:
    plural = "s" if lesson_count > 1 else ""
    return (
        "Generate detailed lessons for this module:\n"
        f"Module: {module['title']}\n"
        f"Description: {module.get('description') or ''}\n"
        f"Target Knowledge Level: {course_spec.get('targetKnowledgeLevel')}\n"
        f"Estimated Hours: {module['estimatedHours']}\n\n"
        "Course Context:\n"
        f"- Course Title: {course_spec.get('title')}\n"
        f"- Learning Objectives: {', '.join(course_spec.get('learningObjectives') or [])}\n"
        f"- Prerequisites: {', '.join(course_spec.get('prerequisites') or [])}\n\n"
        f"Generate EXACTLY {lesson_count} lesson{plural}, each about {LESSON_MINUTES} minutes of content."
    )


def _write_module(llm, db, course_id: str, course_spec: Dict[str, Any], module: Dict[str, Any], position: int):
    module_row = db.create_module(
        {
            "id": str(uuid.uuid4()),
            "course_id": course_id,
            "title": module["title"],
            "description": module.get("description"),
            "position": module.get("position", position),
        }
    )
    lesson_count = lessons_for_hours(module["estimatedHours"])
    try:
        response = llm.complete_json(
            LESSON_WRITER_SYSTEM_PROMPT,
            _lesson_prompt(course_spec, module, lesson_count),
            max_tokens=4000,
            temperature=0.7,
        )
    except LLMError as exc:
        raise CourseGenerationError(f"Lesson generation failed for module '{module['title']}': {exc}") from exc

    lessons = response.get("lessons")
    if not isinstance(lessons, list) or not lessons:
        raise CourseGenerationError(f"Lesson generation returned no lessons for module '{module['title']}'.")
    if len(lessons) != lesson_count:
        LOGGER.warning(
            "course_writer.lesson_count_mismatch",
            extra={"module_title": module["title"], "expected": lesson_count, "received": len(lessons)},
        )

    written = []
    for index, lesson in enumerate(lessons[:lesson_count], start=1):
        if not isinstance(lesson, dict) or not lesson.get("title"):
            raise CourseGenerationError(f"Lesson generation returned a malformed lesson for '{module['title']}'.")
        row = db.create_lesson(
            {
                "id": str(uuid.uuid4()),
                "module_id": module_row["id"],
                "title": lesson["title"],
                "content": lesson.get("content") or "",
                "position": index,
            }
        )
        written.append({"id": row["id"], "title": row["title"], "position": row["position"]})
    return {
        "id": module_row["id"],
        "title": module_row["title"],
        "position": module_row["position"],
        "lessons": written,
    }


def write_course_content(llm, db, course_id: str, course_spec: Dict[str, Any]) -> Dict[str, Any]:
    if not course_id or not course_spec:
        raise ValueError("Missing required fields: courseId, courseSpec")
    if llm is None:
        raise CourseGenerationError("Lesson generation is not configured (missing OPENAI_API_KEY).")

    db.update_course(course_id, {"status": "generating"})
    modules: List[Dict[str, Any]] = []
    try:
        for position, module in enumerate(course_spec.get("suggestedModules") or [], start=1):
            modules.append(_write_module(llm, db, course_id, course_spec, module, position))
            LOGGER.info("course_writer.module_written", extra={"course_id": course_id, "module_title": module["title"]})
    except Exception:
        db.update_course(course_id, {"status": "failed"})
        raise

    db.update_course(course_id, {"status": "completed"})
    return {"modules": modules}

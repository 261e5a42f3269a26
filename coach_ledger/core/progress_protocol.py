"""Embedded progress-event protocol.

An assistant reply may end with one machine-readable block::

    Nice plate! Plenty of protein here.
    [[PROGRESS_EVENT_JSON]]
    {"type": "meal_log", "calories": 540, "protein_g": 32, ...}
    [[/PROGRESS_EVENT_JSON]]

The block is cut from the text the user sees and, when it parses as a JSON
object, becomes a ProgressEvent row. Field-level validation happens when the
payload is read back (``decode_progress_payload``), never at ingestion.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger("uvicorn.error")

PROGRESS_JSON_TAG_START = "[[PROGRESS_EVENT_JSON]]"
PROGRESS_JSON_TAG_END = "[[/PROGRESS_EVENT_JSON]]"


class ProgressType(str, Enum):
    meal_log = "meal_log"
    body_scan = "body_scan"
    workout_plan = "workout_plan"
    insight = "insight"


WORKFLOW_PROGRESS_TYPES: dict[str, ProgressType] = {
    "food_scan": ProgressType.meal_log,
    "body_scan": ProgressType.body_scan,
    "fitness_plan": ProgressType.workout_plan,
}


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    notes: Optional[str] = None


class MealLogPayload(_PayloadBase):
    type: Literal["meal_log"] = "meal_log"
    calories: Optional[float] = Field(default=None, ge=0)
    protein_g: Optional[float] = Field(default=None, ge=0)
    carbs_g: Optional[float] = Field(default=None, ge=0)
    fat_g: Optional[float] = Field(default=None, ge=0)
    fiber_g: Optional[float] = Field(default=None, ge=0)
    sugar_g: Optional[float] = Field(default=None, ge=0)
    meal_label: Optional[str] = None
    quality_score: Optional[float] = Field(default=None, ge=0, le=100)


class BodyScanPayload(_PayloadBase):
    type: Literal["body_scan"] = "body_scan"
    trend: Optional[Literal["improving", "stable", "regressing", "unclear"]] = None
    focus_areas: list[str] = Field(default_factory=list)
    estimated_changes: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class WorkoutExercise(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    sets: Optional[int] = None
    reps: Optional[Union[int, str]] = None


class WorkoutDay(BaseModel):
    model_config = ConfigDict(extra="allow")

    day: str
    focus: Optional[str] = None
    exercises: list[WorkoutExercise] = Field(default_factory=list)


class WorkoutPlanPayload(_PayloadBase):
    type: Literal["workout_plan"] = "workout_plan"
    training_days_per_week: Optional[int] = Field(default=None, ge=0, le=7)
    goal: Optional[str] = None
    experience_level: Optional[str] = None
    plan: list[WorkoutDay] = Field(default_factory=list)


class InsightPayload(_PayloadBase):
    type: Literal["insight"] = "insight"
    summary: Optional[str] = None


ProgressPayload = Annotated[
    Union[MealLogPayload, BodyScanPayload, WorkoutPlanPayload, InsightPayload],
    Field(discriminator="type"),
]
_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(ProgressPayload)


@dataclass(frozen=True)
class ProgressExtraction:
    cleaned_text: str
    payload: Optional[dict[str, Any]] = None


def parse_payload_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    # Models sometimes wrap the object in code fences or a stray sentence.
    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Progress payload is not a JSON object")


def _join_around_cut(before: str, after: str) -> str:
    before = before.rstrip(" \t")
    after = after.lstrip(" \t")
    if before and after and not before.endswith("\n") and not after.startswith("\n"):
        joined = f"{before} {after}"
    else:
        joined = before + after
    return re.sub(r"\n{3,}", "\n\n", joined).strip()


def extract_progress_event(raw_reply: Optional[str]) -> ProgressExtraction:
    if not raw_reply:
        return ProgressExtraction(cleaned_text=raw_reply or "")

    start = raw_reply.find(PROGRESS_JSON_TAG_START)
    end = raw_reply.find(PROGRESS_JSON_TAG_END)
    if start == -1 or end == -1 or end < start:
        return ProgressExtraction(cleaned_text=raw_reply)

    interior = raw_reply[start + len(PROGRESS_JSON_TAG_START) : end].strip()
    cleaned = _join_around_cut(raw_reply[:start], raw_reply[end + len(PROGRESS_JSON_TAG_END) :])

    payload: Optional[dict[str, Any]] = None
    if interior:
        try:
            payload = parse_payload_json(interior)
        except ValueError:
            logger.warning("ledger_progress_payload_unparseable length=%s", len(interior))
    return ProgressExtraction(cleaned_text=cleaned, payload=payload)


def progress_type_for(workflow: Optional[str], payload: Optional[dict[str, Any]]) -> Optional[ProgressType]:
    if workflow and workflow in WORKFLOW_PROGRESS_TYPES:
        return WORKFLOW_PROGRESS_TYPES[workflow]
    declared = str((payload or {}).get("type") or "").strip().lower()
    try:
        return ProgressType(declared)
    except ValueError:
        return None


def decode_progress_payload(
    event_type: Union[str, ProgressType], payload: Any
) -> Optional[Union[MealLogPayload, BodyScanPayload, WorkoutPlanPayload, InsightPayload]]:
    if not isinstance(payload, dict):
        return None
    type_value = event_type.value if isinstance(event_type, ProgressType) else str(event_type)
    try:
        return _PAYLOAD_ADAPTER.validate_python({**payload, "type": type_value})
    except ValidationError:
        return None


_INSTRUCTION_FIELDS: dict[ProgressType, tuple[str, ...]] = {
    ProgressType.meal_log: (
        '"type": "meal_log"',
        '"calories": number (estimated total kcal)',
        '"protein_g", "carbs_g", "fat_g": numbers',
        '"fiber_g", "sugar_g": number or null',
        '"meal_label": "breakfast" | "lunch" | "dinner" | "snack" | "unknown"',
        '"quality_score": number between 0 and 100 (higher is better)',
        '"notes": short summary (1-2 sentences)',
    ),
    ProgressType.body_scan: (
        '"type": "body_scan"',
        '"trend": "improving" | "stable" | "regressing" | "unclear"',
        '"focus_areas": array of short strings like ["waist", "shoulders"]',
        '"estimated_changes": 1-2 sentences describing visual changes',
        '"confidence": number between 0 and 1',
        '"notes": extra context or advice',
    ),
    ProgressType.workout_plan: (
        '"type": "workout_plan"',
        '"training_days_per_week": number',
        '"goal": short string such as "fat loss", "hypertrophy", "strength"',
        '"experience_level": "beginner" | "intermediate" | "advanced"',
        '"plan": array of days, each {"day": string, "focus": string, '
        '"exercises": [{"name": string, "sets": number, "reps": string}]}',
    ),
}


def progress_instructions(workflow: Optional[str]) -> str:
    progress_type = WORKFLOW_PROGRESS_TYPES.get(workflow or "")
    if progress_type is None:
        return ""
    lines = [
        "After your normal answer, output a single JSON object between the tags "
        f"{PROGRESS_JSON_TAG_START} and {PROGRESS_JSON_TAG_END}.",
        f"The JSON logs a {progress_type.value} progress event and must have:",
        *[f"- {field}" for field in _INSTRUCTION_FIELDS[progress_type]],
        "Do not explain the JSON and do not mention that you are creating a log; "
        "just include the block at the end.",
    ]
    return "\n".join(lines)

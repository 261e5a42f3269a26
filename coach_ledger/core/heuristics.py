import re
from typing import Optional

MEAL_PATTERNS = [
    "analysis of your plate",
    "your plate",
    "this meal",
    "meal analysis",
    "meal breakdown",
    "estimated calories",
    "estimated macros",
    "macro breakdown",
    "macronutrient",
    "food scan",
    "calories in this",
]

WORKOUT_PATTERNS = [
    "workout plan",
    "training plan",
    "weekly plan",
    "training split",
    "workout split",
    "weekly schedule",
    "sets x reps",
    "progressive overload plan",
]

BODY_SCAN_PATTERNS = [
    "progress photos",
    "progress photo",
    "body scan",
    "physique update",
    "body composition looks",
    "compared to your previous photos",
]

# "550 kcal", "1,200 calories", "640.5 kcal"
CALORIE_PATTERN = re.compile(r"(\d{1,3}(?:,\d{3})+|\d+)(?:\.(\d+))?\s*(?:kcal|calories)\b", re.IGNORECASE)
MIN_CALORIES = 1
MAX_CALORIES = 10000


def _matches_any(text: str, patterns: list[str]) -> bool:
    lowered = text.lower()
    return any(pattern in lowered for pattern in patterns)


def is_meal_text(text: str) -> bool:
    return _matches_any(text, MEAL_PATTERNS)


def is_workout_text(text: str) -> bool:
    return _matches_any(text, WORKOUT_PATTERNS)


def is_body_scan_text(text: str) -> bool:
    return _matches_any(text, BODY_SCAN_PATTERNS)


def classify_text(text: str) -> set[str]:
    labels: set[str] = set()
    if not text:
        return labels
    if is_meal_text(text):
        labels.add("meal")
    if is_workout_text(text):
        labels.add("workout")
    if is_body_scan_text(text):
        labels.add("body_scan")
    return labels


def extract_calories(text: str) -> Optional[float]:
    for match in CALORIE_PATTERN.finditer(text or ""):
        whole = match.group(1).replace(",", "")
        fraction = match.group(2)
        value = float(f"{whole}.{fraction}") if fraction else float(whole)
        if MIN_CALORIES <= value <= MAX_CALORIES:
            return value
    return None

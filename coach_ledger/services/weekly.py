import logging
import math
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from coach_ledger.core.clock import as_utc, utc_now
from coach_ledger.core.heuristics import classify_text, extract_calories
from coach_ledger.core.progress_protocol import ProgressType, decode_progress_payload
from coach_ledger.core.schemas import WeeklySummary
from coach_ledger.db.models import Conversation, Message, ProgressEvent

logger = logging.getLogger("uvicorn.error")

WEEK = timedelta(days=7)


def _average_per_day(buckets: dict[date, float]) -> float:
    # Only days that logged something count toward the denominator.
    if not buckets:
        return 0.0
    return round(sum(buckets.values()) / len(buckets), 1)


def _summary(
    *,
    meals: int,
    scans: int,
    workouts: int,
    buckets: dict[date, float],
    source: str,
) -> WeeklySummary:
    return WeeklySummary(
        meals_count=meals,
        body_scans_count=scans,
        workouts_count=workouts,
        avg_calories_per_day=_average_per_day(buckets),
        calories_by_day={day.isoformat(): round(total, 1) for day, total in sorted(buckets.items())},
        source=source,
    )


def _numeric_calories(payload: Any) -> Optional[float]:
    # Read straight from the stored payload so one bad sibling field does not hide the number.
    if not isinstance(payload, dict):
        return None
    value = payload.get("calories")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return float(value)


def _structured_summary(events: list[ProgressEvent]) -> WeeklySummary:
    meals = scans = workouts = 0
    buckets: dict[date, float] = defaultdict(float)
    for event in events:
        if decode_progress_payload(event.type, event.payload) is None:
            logger.info("ledger_progress_payload_invalid event_id=%s type=%s", event.id, event.type)
        if event.type == ProgressType.meal_log.value:
            meals += 1
            calories = _numeric_calories(event.payload)
            if calories is not None:
                buckets[as_utc(event.created_at).date()] += calories
        elif event.type == ProgressType.body_scan.value:
            scans += 1
        elif event.type == ProgressType.workout_plan.value:
            workouts += 1
    return _summary(meals=meals, scans=scans, workouts=workouts, buckets=buckets, source="structured")


def _heuristic_summary(messages: list[Message]) -> WeeklySummary:
    meals = scans = workouts = 0
    buckets: dict[date, float] = defaultdict(float)
    for message in messages:
        labels = classify_text(message.content)
        if "meal" in labels:
            meals += 1
            calories = extract_calories(message.content)
            if calories is not None:
                buckets[as_utc(message.created_at).date()] += calories
        if "body_scan" in labels:
            scans += 1
        if "workout" in labels:
            workouts += 1
    source = "heuristic" if (meals or scans or workouts) else "none"
    return _summary(meals=meals, scans=scans, workouts=workouts, buckets=buckets, source=source)


def summarize_week(
    db: Session,
    *,
    user_id: int,
    now: Optional[datetime] = None,
    window: timedelta = WEEK,
) -> WeeklySummary:
    """Rolling progress stats for the dashboard.

    Structured ProgressEvent rows are the source of truth. Only when the user
    has none in the window do we fall back to phrase matching over assistant
    replies, which is best effort and will misread some messages.
    """
    timestamp = as_utc(now) or utc_now()
    since = timestamp - window

    events = (
        db.query(ProgressEvent)
        .filter(
            ProgressEvent.user_id == user_id,
            ProgressEvent.created_at >= since,
            ProgressEvent.created_at <= timestamp,
        )
        .order_by(ProgressEvent.created_at.asc(), ProgressEvent.id.asc())
        .all()
    )
    if events:
        return _structured_summary(events)

    messages = (
        db.query(Message)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(
            Conversation.user_id == user_id,
            Message.role == "assistant",
            Message.created_at >= since,
            Message.created_at <= timestamp,
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
    return _heuristic_summary(messages)

import logging
import os
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from coach_ledger.core.clock import as_utc, utc_now
from coach_ledger.db.models import Conversation, User

logger = logging.getLogger("uvicorn.error")

REUSE_WINDOW_MINUTES = int(os.getenv("CONVERSATION_REUSE_WINDOW_MINUTES", "60"))
CONVERSATION_SOURCE = os.getenv("CONVERSATION_SOURCE", "web_widget")
_CLIENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_:\-]{1,64}$")


class CoachingMode(str, Enum):
    strength = "strength"
    hypertrophy = "hypertrophy"
    mobility = "mobility"
    fat_loss = "fat_loss"


class Workflow(str, Enum):
    food_scan = "food_scan"
    body_scan = "body_scan"
    fitness_plan = "fitness_plan"


WORKFLOW_TITLES: dict[str, str] = {
    Workflow.food_scan.value: "Meal scan",
    Workflow.body_scan.value: "Body scan",
    Workflow.fitness_plan.value: "Workout plan",
}

COACHING_MODE_TITLES: dict[str, str] = {
    CoachingMode.strength.value: "Strength coaching",
    CoachingMode.hypertrophy.value: "Hypertrophy coaching",
    CoachingMode.mobility.value: "Mobility coaching",
    CoachingMode.fat_loss.value: "Fat loss coaching",
}


def default_reuse_window() -> timedelta:
    return timedelta(minutes=REUSE_WINDOW_MINUTES)


def normalize_coaching_mode(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip().lower()
    if not cleaned:
        return None
    if cleaned not in COACHING_MODE_TITLES:
        logger.info("ledger_unknown_coaching_mode value=%s", cleaned[:32])
        return None
    return cleaned


def normalize_workflow(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip().lower()
    if not cleaned:
        return None
    if cleaned not in WORKFLOW_TITLES:
        logger.info("ledger_unknown_workflow value=%s", cleaned[:32])
        return None
    return cleaned


def is_valid_conversation_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_CLIENT_ID_PATTERN.match(value or ""))


def new_conversation_id() -> str:
    return uuid4().hex


def _create(
    db: Session,
    *,
    user: User,
    conversation_id: Optional[str],
    coaching_mode: Optional[str],
    workflow: Optional[str],
    source: Optional[str],
    now: datetime,
) -> Conversation:
    conversation = Conversation(
        id=conversation_id or new_conversation_id(),
        user_id=user.id,
        started_at=now,
        coaching_mode=coaching_mode,
        workflow=workflow,
        source=(source or CONVERSATION_SOURCE)[:64],
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def _refresh_tags(db: Session, conversation: Conversation, coaching_mode: Optional[str], workflow: Optional[str]) -> None:
    changed = False
    if coaching_mode and conversation.coaching_mode != coaching_mode:
        conversation.coaching_mode = coaching_mode
        changed = True
    if workflow and conversation.workflow != workflow:
        conversation.workflow = workflow
        changed = True
    if changed:
        db.commit()
        db.refresh(conversation)


def resolve_conversation(
    db: Session,
    *,
    user: User,
    conversation_id: Optional[str] = None,
    coaching_mode: Optional[str] = None,
    workflow: Optional[str] = None,
    reuse_window: Optional[timedelta] = None,
    source: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Conversation:
    timestamp = as_utc(now) or utc_now()
    coaching_mode = normalize_coaching_mode(coaching_mode)
    workflow = normalize_workflow(workflow)
    requested_id = (conversation_id or "").strip() or None

    if requested_id:
        existing = db.get(Conversation, requested_id) if is_valid_conversation_id(requested_id) else None
        if existing is not None and existing.user_id == user.id:
            _refresh_tags(db, existing, coaching_mode, workflow)
            return existing
        if existing is not None:
            logger.warning(
                "ledger_conversation_foreign_id user_id=%s conversation_id=%s", user.id, requested_id
            )
            requested_id = None
        elif not is_valid_conversation_id(requested_id):
            logger.info("ledger_conversation_invalid_id user_id=%s", user.id)
            requested_id = None
        return _create(
            db,
            user=user,
            conversation_id=requested_id,
            coaching_mode=coaching_mode,
            workflow=workflow,
            source=source,
            now=timestamp,
        )

    since = timestamp - (reuse_window if reuse_window is not None else default_reuse_window())
    recent = (
        db.query(Conversation)
        .filter(
            Conversation.user_id == user.id,
            Conversation.started_at >= since,
            Conversation.ended_at.is_(None),
        )
        .order_by(Conversation.started_at.desc())
        .first()
    )
    if recent is not None:
        _refresh_tags(db, recent, coaching_mode, workflow)
        return recent
    return _create(
        db,
        user=user,
        conversation_id=None,
        coaching_mode=coaching_mode,
        workflow=workflow,
        source=source,
        now=timestamp,
    )


def start_conversation(
    db: Session,
    *,
    user: User,
    coaching_mode: Optional[str] = None,
    workflow: Optional[str] = None,
    source: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Conversation:
    return _create(
        db,
        user=user,
        conversation_id=None,
        coaching_mode=normalize_coaching_mode(coaching_mode),
        workflow=normalize_workflow(workflow),
        source=source,
        now=as_utc(now) or utc_now(),
    )


def end_conversation(db: Session, *, conversation: Conversation, now: Optional[datetime] = None) -> Conversation:
    if conversation.ended_at is None:
        conversation.ended_at = as_utc(now) or utc_now()
        db.commit()
        db.refresh(conversation)
    return conversation


def last_activity_at(conversation: Conversation) -> datetime:
    return as_utc(conversation.last_message_at or conversation.started_at)


def conversation_title(conversation: Conversation) -> str:
    if conversation.title and conversation.title.strip():
        return conversation.title.strip()

    activity = last_activity_at(conversation)
    date_label = f"{activity:%b} {activity.day}" if activity else ""
    base = (
        WORKFLOW_TITLES.get(conversation.workflow or "")
        or COACHING_MODE_TITLES.get(conversation.coaching_mode or "")
        or "Chat"
    )
    return f"{base} · {date_label}" if date_label else base


def list_recent_conversations(
    db: Session,
    *,
    user_id: int,
    limit: int = 4,
    pool: int = 20,
) -> list[tuple[Conversation, str]]:
    rows = (
        db.query(Conversation)
        .filter(Conversation.user_id == user_id)
        .order_by(
            func.coalesce(Conversation.last_message_at, Conversation.started_at).desc(),
            Conversation.started_at.desc(),
        )
        .limit(pool)
        .all()
    )
    seen_titles: set[str] = set()
    picked: list[tuple[Conversation, str]] = []
    for row in rows:
        title = conversation_title(row)
        key = title.strip().lower()
        if not key or key in seen_titles:
            continue
        seen_titles.add(key)
        picked.append((row, title))
        if len(picked) >= limit:
            break
    return picked

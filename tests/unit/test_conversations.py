from datetime import datetime, timedelta, timezone
from uuid import uuid4

from coach_ledger.db.models import Conversation
from coach_ledger.services.conversations import (
    conversation_title,
    end_conversation,
    is_valid_conversation_id,
    list_recent_conversations,
    resolve_conversation,
)

WINDOW = timedelta(minutes=60)


def test_requests_inside_window_share_a_conversation(db_session, create_user, fixed_now) -> None:
    user = create_user()
    first = resolve_conversation(db_session, user=user, reuse_window=WINDOW, now=fixed_now)
    second = resolve_conversation(db_session, user=user, reuse_window=WINDOW, now=fixed_now + timedelta(minutes=20))
    assert second.id == first.id


def test_reuse_window_expires(db_session, create_user, fixed_now) -> None:
    user = create_user()
    first = resolve_conversation(db_session, user=user, reuse_window=WINDOW, now=fixed_now)
    later = resolve_conversation(db_session, user=user, reuse_window=WINDOW, now=fixed_now + timedelta(hours=2))
    assert later.id != first.id


def test_ended_conversation_is_not_reused(db_session, create_user, fixed_now) -> None:
    user = create_user()
    first = resolve_conversation(db_session, user=user, reuse_window=WINDOW, now=fixed_now)
    end_conversation(db_session, conversation=first, now=fixed_now + timedelta(minutes=1))

    nxt = resolve_conversation(db_session, user=user, reuse_window=WINDOW, now=fixed_now + timedelta(minutes=2))
    assert nxt.id != first.id
    assert first.ended_at is not None


def test_unknown_client_id_is_created_with_that_id(db_session, create_user) -> None:
    user = create_user()
    client_id = f"widget-{uuid4().hex[:12]}"
    conversation = resolve_conversation(db_session, user=user, conversation_id=client_id)
    assert conversation.id == client_id
    assert conversation.user_id == user.id
    assert conversation.source == "web_widget"

    again = resolve_conversation(db_session, user=user, conversation_id=client_id)
    assert again.id == client_id


def test_foreign_conversation_id_gets_a_new_server_id(db_session, create_user, create_conversation) -> None:
    owned = create_conversation()
    intruder = create_user()
    conversation = resolve_conversation(db_session, user=intruder, conversation_id=owned.id)
    assert conversation.id != owned.id
    assert conversation.user_id == intruder.id


def test_malformed_client_id_is_replaced(db_session, create_user) -> None:
    user = create_user()
    conversation = resolve_conversation(db_session, user=user, conversation_id="not a valid id!")
    assert conversation.id != "not a valid id!"
    assert len(conversation.id) == 32
    assert not is_valid_conversation_id("x" * 65)


def test_tags_update_in_place(db_session, create_user, fixed_now) -> None:
    user = create_user()
    conversation = resolve_conversation(db_session, user=user, coaching_mode="strength", now=fixed_now)
    assert conversation.coaching_mode == "strength"
    assert conversation.workflow is None

    updated = resolve_conversation(
        db_session, user=user, workflow="Food_Scan", coaching_mode="bogus", now=fixed_now + timedelta(minutes=1)
    )
    assert updated.id == conversation.id
    assert updated.workflow == "food_scan"
    assert updated.coaching_mode == "strength"


def test_title_from_workflow_and_date() -> None:
    conversation = Conversation(
        id="t1",
        user_id=1,
        started_at=datetime(2026, 3, 5, 9, 30, tzinfo=timezone.utc),
        workflow="food_scan",
    )
    assert conversation_title(conversation) == "Meal scan · Mar 5"

    conversation.workflow = None
    conversation.coaching_mode = "mobility"
    assert conversation_title(conversation) == "Mobility coaching · Mar 5"

    conversation.title = "  Knee rehab  "
    assert conversation_title(conversation) == "Knee rehab"


def test_recent_conversations_skip_duplicate_titles(db_session, create_user, create_conversation, fixed_now) -> None:
    user = create_user()
    create_conversation(user=user, workflow="food_scan", now=fixed_now - timedelta(hours=3))
    create_conversation(user=user, workflow="food_scan", now=fixed_now - timedelta(hours=2))
    newest = create_conversation(user=user, workflow="body_scan", now=fixed_now - timedelta(hours=1))

    picked = list_recent_conversations(db_session, user_id=user.id)
    titles = [title for _, title in picked]
    assert titles == ["Body scan · Mar 11", "Meal scan · Mar 11"]
    assert picked[0][0].id == newest.id


def test_recent_conversations_respect_limit(db_session, create_user, create_conversation, fixed_now) -> None:
    user = create_user()
    for offset, mode in enumerate(["strength", "hypertrophy", "mobility", "fat_loss"]):
        create_conversation(user=user, coaching_mode=mode, now=fixed_now - timedelta(days=offset))
    create_conversation(user=user, workflow="fitness_plan", now=fixed_now - timedelta(days=5))

    assert len(list_recent_conversations(db_session, user_id=user.id, limit=4)) == 4

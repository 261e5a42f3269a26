from datetime import timedelta

import pytest

from coach_ledger.core.clock import as_utc
from coach_ledger.core.errors import InvalidMessageError, MessageNotFoundError, OwnershipError
from coach_ledger.db.models import HiddenMessage, PinnedMessage
from coach_ledger.services import messages as message_store
from coach_ledger.services.messages import (
    append_message,
    count_messages_for_user,
    list_messages,
    list_messages_for_user,
)
from coach_ledger.services.overlays import (
    OverlayOutcome,
    hide_message,
    pin_message,
    unhide_message,
    unpin_message,
)


def test_append_bumps_last_message_at(db_session, create_conversation, fixed_now) -> None:
    conversation = create_conversation(now=fixed_now)
    message = append_message(
        db_session,
        conversation=conversation,
        role="assistant",
        content="  Keep your protein high.  ",
        user_id=conversation.user_id,
        created_at=fixed_now + timedelta(seconds=30),
    )
    assert message.content == "Keep your protein high."
    assert message.user_id is None
    assert as_utc(conversation.last_message_at) == fixed_now + timedelta(seconds=30)


def test_append_rejects_empty_content_and_unknown_role(db_session, create_conversation) -> None:
    conversation = create_conversation()
    with pytest.raises(InvalidMessageError):
        append_message(db_session, conversation=conversation, role="user", content="   ")
    with pytest.raises(InvalidMessageError):
        append_message(db_session, conversation=conversation, role="system", content="hello")


def test_append_truncates_long_content(db_session, create_conversation, monkeypatch) -> None:
    monkeypatch.setattr(message_store, "MESSAGE_MAX_CHARS", 10)
    conversation = create_conversation()
    message = append_message(db_session, conversation=conversation, role="user", content="abcdefghijklmnop")
    assert message.content == "abcdefghij"


def test_listing_is_ordered_with_id_tiebreak(db_session, create_conversation, fixed_now) -> None:
    conversation = create_conversation(now=fixed_now)
    appended = [
        append_message(db_session, conversation=conversation, role="user", content=f"turn {idx}", created_at=fixed_now)
        for idx in range(3)
    ]
    appended.append(
        append_message(
            db_session,
            conversation=conversation,
            role="assistant",
            content="later",
            created_at=fixed_now + timedelta(seconds=1),
        )
    )

    oldest_first = list_messages(db_session, conversation_id=conversation.id, newest_first=False)
    assert [row.id for row in oldest_first] == [row.id for row in appended]
    newest_first = list_messages(db_session, conversation_id=conversation.id)
    assert [row.id for row in newest_first] == [row.id for row in reversed(appended)]


def test_hide_is_idempotent_and_filters_listing(db_session, seed_exchange) -> None:
    conversation, question, answer = seed_exchange()
    user_id = conversation.user_id

    assert hide_message(db_session, user_id=user_id, message_id=question.id) == OverlayOutcome.hidden
    assert hide_message(db_session, user_id=user_id, message_id=question.id) == OverlayOutcome.already_hidden
    rows = db_session.query(HiddenMessage).filter(
        HiddenMessage.user_id == user_id, HiddenMessage.message_id == question.id
    )
    assert rows.count() == 1

    visible = list_messages_for_user(db_session, user_id=user_id)
    assert [view.id for view in visible] == [answer.id]
    assert count_messages_for_user(db_session, user_id=user_id) == 1
    # Hidden is a per-user overlay; the message itself is untouched.
    assert len(list_messages(db_session, conversation_id=conversation.id)) == 2


def test_unhide_restores_message(db_session, seed_exchange) -> None:
    conversation, question, _ = seed_exchange()
    user_id = conversation.user_id
    hide_message(db_session, user_id=user_id, message_id=question.id)

    assert unhide_message(db_session, user_id=user_id, message_id=question.id) == OverlayOutcome.unhidden
    assert unhide_message(db_session, user_id=user_id, message_id=question.id) == OverlayOutcome.not_hidden
    assert count_messages_for_user(db_session, user_id=user_id) == 2


def test_pin_unpin_pin_leaves_one_row(db_session, seed_exchange) -> None:
    conversation, _, answer = seed_exchange()
    user_id = conversation.user_id

    assert pin_message(db_session, user_id=user_id, message_id=answer.id) == OverlayOutcome.pinned
    assert unpin_message(db_session, user_id=user_id, message_id=answer.id) == OverlayOutcome.unpinned
    assert unpin_message(db_session, user_id=user_id, message_id=answer.id) == OverlayOutcome.not_pinned
    assert pin_message(db_session, user_id=user_id, message_id=answer.id) == OverlayOutcome.pinned
    assert pin_message(db_session, user_id=user_id, message_id=answer.id) == OverlayOutcome.already_pinned

    rows = db_session.query(PinnedMessage).filter(
        PinnedMessage.user_id == user_id, PinnedMessage.message_id == answer.id
    )
    assert rows.count() == 1
    views = {view.id: view for view in list_messages_for_user(db_session, user_id=user_id)}
    assert views[answer.id].pinned is True
    assert len(views) == 2


def test_overlay_on_someone_elses_message(db_session, seed_exchange, create_user) -> None:
    _, question, _ = seed_exchange()
    stranger = create_user()
    with pytest.raises(OwnershipError):
        hide_message(db_session, user_id=stranger.id, message_id=question.id)
    with pytest.raises(OwnershipError):
        pin_message(db_session, user_id=stranger.id, message_id=question.id)


def test_overlay_on_missing_message(db_session, create_user) -> None:
    user = create_user()
    with pytest.raises(MessageNotFoundError):
        hide_message(db_session, user_id=user.id, message_id=987654321)


def test_user_scoped_listing_by_conversation(db_session, create_user, seed_exchange) -> None:
    user = create_user()
    first, _, _ = seed_exchange(user=user)
    seed_exchange(user=user)

    views = list_messages_for_user(db_session, user_id=user.id, conversation_id=first.id, newest_first=False)
    assert [view.role for view in views] == ["user", "assistant"]
    assert all(view.conversation_id == first.id for view in views)
    assert count_messages_for_user(db_session, user_id=user.id) == 4

import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import and_, exists, func
from sqlalchemy.orm import Query, Session

from coach_ledger.core.clock import as_utc, utc_now
from coach_ledger.core.errors import InvalidMessageError
from coach_ledger.db.models import Conversation, HiddenMessage, Message, PinnedMessage

MESSAGE_MAX_CHARS = int(os.getenv("MESSAGE_MAX_CHARS", "20000"))


class MessageRole(str, Enum):
    user = "user"
    assistant = "assistant"


@dataclass(frozen=True)
class MessageView:
    id: int
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    pinned: bool = False


def append_message(
    db: Session,
    *,
    conversation: Conversation,
    role: str,
    content: str,
    user_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> Message:
    if role not in {item.value for item in MessageRole}:
        raise InvalidMessageError(f"Unsupported message role: {role!r}")
    text = (content or "").strip()
    if not text:
        raise InvalidMessageError("Message content must not be empty")

    timestamp = as_utc(created_at) or utc_now()
    message = Message(
        conversation_id=conversation.id,
        user_id=user_id if role == MessageRole.user.value else None,
        role=role,
        content=text[:MESSAGE_MAX_CHARS],
        created_at=timestamp,
    )
    previous = as_utc(conversation.last_message_at)
    if previous is None or timestamp > previous:
        conversation.last_message_at = timestamp
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def _ordered(query: Query, newest_first: bool) -> Query:
    if newest_first:
        return query.order_by(Message.created_at.desc(), Message.id.desc())
    return query.order_by(Message.created_at.asc(), Message.id.asc())


def list_messages(
    db: Session,
    *,
    conversation_id: str,
    limit: int = 50,
    newest_first: bool = True,
) -> list[Message]:
    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    return _ordered(query, newest_first).limit(max(0, limit)).all()


def _visible_for_user(db: Session, user_id: int, conversation_id: Optional[str]) -> Query:
    hidden = exists().where(and_(HiddenMessage.message_id == Message.id, HiddenMessage.user_id == user_id))
    query = (
        db.query(Message, PinnedMessage.id)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .outerjoin(
            PinnedMessage,
            and_(PinnedMessage.message_id == Message.id, PinnedMessage.user_id == user_id),
        )
        .filter(Conversation.user_id == user_id, ~hidden)
    )
    if conversation_id is not None:
        query = query.filter(Message.conversation_id == conversation_id)
    return query


def list_messages_for_user(
    db: Session,
    *,
    user_id: int,
    conversation_id: Optional[str] = None,
    limit: int = 50,
    newest_first: bool = True,
) -> list[MessageView]:
    rows = _ordered(_visible_for_user(db, user_id, conversation_id), newest_first).limit(max(0, limit)).all()
    return [
        MessageView(
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            created_at=as_utc(message.created_at),
            pinned=pin_id is not None,
        )
        for message, pin_id in rows
    ]


def count_messages_for_user(db: Session, *, user_id: int) -> int:
    hidden = exists().where(and_(HiddenMessage.message_id == Message.id, HiddenMessage.user_id == user_id))
    total = (
        db.query(func.count(Message.id))
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(Conversation.user_id == user_id, ~hidden)
        .scalar()
    )
    return int(total or 0)

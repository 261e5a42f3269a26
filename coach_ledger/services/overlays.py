import logging
from enum import Enum
from typing import Type, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coach_ledger.core.errors import MessageNotFoundError, OwnershipError
from coach_ledger.db.models import Conversation, HiddenMessage, Message, PinnedMessage

logger = logging.getLogger("uvicorn.error")

OverlayModel = Union[Type[HiddenMessage], Type[PinnedMessage]]


class OverlayOutcome(str, Enum):
    hidden = "hidden"
    already_hidden = "already_hidden"
    unhidden = "unhidden"
    not_hidden = "not_hidden"
    pinned = "pinned"
    already_pinned = "already_pinned"
    unpinned = "unpinned"
    not_pinned = "not_pinned"


def owned_message(db: Session, *, user_id: int, message_id: int) -> Message:
    row = (
        db.query(Message, Conversation.user_id)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(Message.id == message_id)
        .first()
    )
    if row is None:
        raise MessageNotFoundError(message_id)
    message, owner_id = row
    if owner_id != user_id:
        raise OwnershipError(user_id, message_id)
    return message


def _mark(db: Session, model: OverlayModel, *, user_id: int, message_id: int) -> bool:
    message = owned_message(db, user_id=user_id, message_id=message_id)
    existing = db.query(model).filter(model.user_id == user_id, model.message_id == message.id).first()
    if existing is not None:
        return False
    db.add(model(user_id=user_id, message_id=message.id))
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request inserted the same (user, message) pair first.
        db.rollback()
        return False
    return True


def _unmark(db: Session, model: OverlayModel, *, user_id: int, message_id: int) -> bool:
    message = owned_message(db, user_id=user_id, message_id=message_id)
    deleted = (
        db.query(model)
        .filter(model.user_id == user_id, model.message_id == message.id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)


def hide_message(db: Session, *, user_id: int, message_id: int) -> OverlayOutcome:
    created = _mark(db, HiddenMessage, user_id=user_id, message_id=message_id)
    logger.info("ledger_message_hidden user_id=%s message_id=%s created=%s", user_id, message_id, created)
    return OverlayOutcome.hidden if created else OverlayOutcome.already_hidden


def unhide_message(db: Session, *, user_id: int, message_id: int) -> OverlayOutcome:
    removed = _unmark(db, HiddenMessage, user_id=user_id, message_id=message_id)
    return OverlayOutcome.unhidden if removed else OverlayOutcome.not_hidden


def pin_message(db: Session, *, user_id: int, message_id: int) -> OverlayOutcome:
    created = _mark(db, PinnedMessage, user_id=user_id, message_id=message_id)
    logger.info("ledger_message_pinned user_id=%s message_id=%s created=%s", user_id, message_id, created)
    return OverlayOutcome.pinned if created else OverlayOutcome.already_pinned


def unpin_message(db: Session, *, user_id: int, message_id: int) -> OverlayOutcome:
    removed = _unmark(db, PinnedMessage, user_id=user_id, message_id=message_id)
    return OverlayOutcome.unpinned if removed else OverlayOutcome.not_pinned

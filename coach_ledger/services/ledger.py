import logging
import os
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Union
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coach_ledger.core.clock import as_utc
from coach_ledger.core.errors import (
    AmbiguousIdentityError,
    InvalidActionError,
    MessageNotFoundError,
    MissingIdentityError,
    PersistenceUnavailableError,
)
from coach_ledger.core.progress_protocol import extract_progress_event, progress_type_for
from coach_ledger.core.schemas import (
    AccountSummary,
    AttachmentMeta,
    ConversationEndResult,
    ConversationItem,
    MessageActionResult,
    MessageItem,
    ReplyRecord,
    TurnRecord,
    UploadPreviewItem,
    WeeklySummary,
)
from coach_ledger.db.models import Conversation, User
from coach_ledger.db.session import Storage, get_storage
from coach_ledger.services.conversations import (
    default_reuse_window,
    end_conversation,
    list_recent_conversations,
    normalize_workflow,
    resolve_conversation,
    start_conversation,
)
from coach_ledger.services.identity import find_user, normalize_email, normalize_external_id, resolve_user
from coach_ledger.services.messages import (
    MessageRole,
    append_message,
    count_messages_for_user,
    list_messages_for_user,
)
from coach_ledger.services.overlays import OverlayOutcome, hide_message, pin_message, unhide_message, unpin_message
from coach_ledger.services.progress import record_progress_event
from coach_ledger.services.uploads import record_uploads, uploads_preview
from coach_ledger.services.weekly import summarize_week

logger = logging.getLogger("uvicorn.error")

RECENT_MESSAGES_LIMIT = int(os.getenv("ACCOUNT_RECENT_MESSAGES", "10"))
UPLOADS_PREVIEW_LIMIT = int(os.getenv("ACCOUNT_UPLOADS_PREVIEW", "9"))
CONVERSATION_LIST_LIMIT = 4
ATTACHMENTS_ONLY_CONTENT = "[attachments]"

OverlayHandler = Callable[..., OverlayOutcome]

# "delete" is what the dashboard button sends; it only ever hides.
MESSAGE_ACTIONS: dict[str, tuple[str, OverlayHandler]] = {
    "hide": ("hide", hide_message),
    "delete": ("hide", hide_message),
    "unhide": ("unhide", unhide_message),
    "pin": ("pin", pin_message),
    "unpin": ("unpin", unpin_message),
}


def new_guest_id() -> str:
    return f"guest:{uuid4().hex[:12]}"


def _attachment(meta: Union[AttachmentMeta, dict[str, Any]]) -> AttachmentMeta:
    if isinstance(meta, AttachmentMeta):
        return meta
    return AttachmentMeta.model_validate(meta)


class Ledger:
    """Conversation and progress ledger used by the chat and dashboard collaborators.

    Writes never fail the caller because history logging failed: storage
    errors are logged and a success-shaped result is returned. Reads degrade
    to empty results carrying a ``reason``. Only malformed caller input and
    ownership violations propagate as exceptions.
    """

    def __init__(self, storage: Storage, *, reuse_window: Optional[timedelta] = None) -> None:
        self.storage = storage
        self.reuse_window = reuse_window if reuse_window is not None else default_reuse_window()

    def _resolve_writer(self, db: Session, external_id: Optional[str], email: Optional[str]) -> User:
        try:
            return resolve_user(db, external_id=external_id, email=email)
        except AmbiguousIdentityError as exc:
            if not external_id:
                raise
            logger.warning(
                "ledger_identity_ambiguous external_user_id=%s email_user_id=%s",
                exc.external_user_id,
                exc.email_user_id,
            )
            return resolve_user(db, external_id=external_id)

    def record_turn(
        self,
        external_id: Optional[str] = None,
        email: Optional[str] = None,
        conversation_id: Optional[str] = None,
        coaching_mode: Optional[str] = None,
        workflow: Optional[str] = None,
        user_text: Optional[str] = None,
        attachments: Optional[Iterable[Union[AttachmentMeta, dict[str, Any]]]] = None,
    ) -> TurnRecord:
        external_id = normalize_external_id(external_id)
        email = normalize_email(email)
        if not external_id and not email:
            external_id = new_guest_id()
        files = [_attachment(item) for item in (attachments or [])]
        fallback = TurnRecord(conversation_id=conversation_id, user_external_id=external_id)

        if not self.storage.available:
            logger.info("ledger_record_turn_skipped reason=persistence_unavailable")
            return fallback
        try:
            with self.storage.session() as db:
                user = self._resolve_writer(db, external_id, email)
                conversation = resolve_conversation(
                    db,
                    user=user,
                    conversation_id=conversation_id,
                    coaching_mode=coaching_mode,
                    workflow=workflow,
                    reuse_window=self.reuse_window,
                )
                if files:
                    try:
                        record_uploads(
                            db,
                            user_id=user.id,
                            conversation_id=conversation.id,
                            uploads=files,
                            workflow=conversation.workflow,
                        )
                    except SQLAlchemyError as exc:
                        db.rollback()
                        logger.exception("ledger_uploads_error user_id=%s detail=%s", user.id, str(exc))

                content = (user_text or "").strip() or (ATTACHMENTS_ONLY_CONTENT if files else "")
                if content:
                    append_message(
                        db,
                        conversation=conversation,
                        role=MessageRole.user.value,
                        content=content,
                        user_id=user.id,
                    )
                return TurnRecord(conversation_id=conversation.id, user_external_id=user.external_id or external_id)
        except (SQLAlchemyError, PersistenceUnavailableError, AmbiguousIdentityError) as exc:
            logger.exception("ledger_record_turn_error detail=%s", str(exc))
            return fallback

    def record_reply(
        self,
        conversation_id: Optional[str],
        raw_text: Optional[str],
        workflow: Optional[str] = None,
    ) -> ReplyRecord:
        extraction = extract_progress_event(raw_text)
        cleaned = extraction.cleaned_text
        if not conversation_id or not self.storage.available:
            return ReplyRecord(cleaned_text=cleaned, conversation_id=conversation_id)

        progress_event_id: Optional[int] = None
        try:
            with self.storage.session() as db:
                conversation = db.get(Conversation, conversation_id)
                if conversation is None:
                    logger.warning("ledger_reply_unknown_conversation conversation_id=%s", conversation_id)
                    return ReplyRecord(cleaned_text=cleaned, conversation_id=conversation_id)

                message = None
                if cleaned.strip():
                    message = append_message(
                        db,
                        conversation=conversation,
                        role=MessageRole.assistant.value,
                        content=cleaned,
                    )
                if extraction.payload is not None:
                    event_type = progress_type_for(
                        normalize_workflow(workflow) or conversation.workflow, extraction.payload
                    )
                    if event_type is None:
                        logger.info("ledger_progress_event_untyped conversation_id=%s", conversation.id)
                    else:
                        event = record_progress_event(
                            db,
                            user_id=conversation.user_id,
                            event_type=event_type,
                            payload=extraction.payload,
                            conversation_id=conversation.id,
                            message_id=message.id if message is not None else None,
                        )
                        progress_event_id = event.id if event is not None else None
        except SQLAlchemyError as exc:
            logger.exception("ledger_record_reply_error conversation_id=%s detail=%s", conversation_id, str(exc))
        return ReplyRecord(
            cleaned_text=cleaned,
            conversation_id=conversation_id,
            progress_event_id=progress_event_id,
        )

    def start_conversation(
        self,
        external_id: Optional[str] = None,
        email: Optional[str] = None,
        coaching_mode: Optional[str] = None,
        workflow: Optional[str] = None,
    ) -> TurnRecord:
        external_id = normalize_external_id(external_id)
        email = normalize_email(email)
        if not external_id and not email:
            raise MissingIdentityError()
        if not self.storage.available:
            return TurnRecord(conversation_id=None, user_external_id=external_id)
        try:
            with self.storage.session() as db:
                user = self._resolve_writer(db, external_id, email)
                conversation = start_conversation(db, user=user, coaching_mode=coaching_mode, workflow=workflow)
                return TurnRecord(conversation_id=conversation.id, user_external_id=user.external_id or external_id)
        except (SQLAlchemyError, PersistenceUnavailableError) as exc:
            logger.exception("ledger_start_conversation_error detail=%s", str(exc))
            return TurnRecord(conversation_id=None, user_external_id=external_id)

    def end_conversation(
        self,
        conversation_id: str,
        external_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> ConversationEndResult:
        if not normalize_external_id(external_id) and not normalize_email(email):
            raise MissingIdentityError()
        if not self.storage.available:
            return ConversationEndResult(ok=False, conversation_id=conversation_id, reason="persistence_disabled")
        try:
            with self.storage.session() as db:
                user = self._reader(db, external_id, email)
                if user is None:
                    return ConversationEndResult(ok=False, conversation_id=conversation_id, reason="user_not_found")
                conversation = db.get(Conversation, conversation_id)
                # Foreign threads report as missing.
                if conversation is None or conversation.user_id != user.id:
                    return ConversationEndResult(
                        ok=False, conversation_id=conversation_id, reason="conversation_not_found"
                    )
                conversation = end_conversation(db, conversation=conversation)
                return ConversationEndResult(
                    ok=True, conversation_id=conversation.id, ended_at=as_utc(conversation.ended_at)
                )
        except SQLAlchemyError as exc:
            logger.exception("ledger_end_conversation_error conversation_id=%s detail=%s", conversation_id, str(exc))
            return ConversationEndResult(ok=False, conversation_id=conversation_id, reason="db_error")

    def _weekly(self, db: Session, user_id: int, now: Optional[datetime]) -> WeeklySummary:
        try:
            return summarize_week(db, user_id=user_id, now=now)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("ledger_weekly_summary_error user_id=%s detail=%s", user_id, str(exc))
            return WeeklySummary.empty()

    def _uploads(self, db: Session, user_id: int) -> list[UploadPreviewItem]:
        try:
            return uploads_preview(db, user_id=user_id, limit=UPLOADS_PREVIEW_LIMIT)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("ledger_uploads_preview_error user_id=%s detail=%s", user_id, str(exc))
            return []

    def get_account_summary(
        self,
        external_id: Optional[str] = None,
        email: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AccountSummary:
        if not normalize_external_id(external_id) and not normalize_email(email):
            return AccountSummary(has_data=False, reason="missing_identity")
        if not self.storage.available:
            return AccountSummary(has_data=False, reason="persistence_disabled")
        try:
            with self.storage.session() as db:
                try:
                    user = find_user(db, external_id=external_id, email=email)
                except AmbiguousIdentityError:
                    return AccountSummary(has_data=False, reason="ambiguous_identity")
                if user is None:
                    return AccountSummary(has_data=False, reason="user_not_found")

                total = count_messages_for_user(db, user_id=user.id)
                if total == 0:
                    return AccountSummary(has_data=False, total_messages=0)
                recent = list_messages_for_user(db, user_id=user.id, limit=RECENT_MESSAGES_LIMIT)
                return AccountSummary(
                    has_data=True,
                    total_messages=total,
                    last_message_at=recent[0].created_at if recent else None,
                    recent_messages=[MessageItem(**asdict(view)) for view in recent],
                    weekly_summary=self._weekly(db, user.id, now),
                    uploads_preview=self._uploads(db, user.id),
                )
        except SQLAlchemyError as exc:
            logger.exception("ledger_account_summary_error detail=%s", str(exc))
            return AccountSummary(has_data=False, reason="db_error")

    def _reader(self, db: Session, external_id: Optional[str], email: Optional[str]) -> Optional[User]:
        try:
            return find_user(db, external_id=external_id, email=email)
        except AmbiguousIdentityError as exc:
            logger.warning(
                "ledger_identity_ambiguous external_user_id=%s email_user_id=%s",
                exc.external_user_id,
                exc.email_user_id,
            )
            return None

    def list_conversations(self, external_id: Optional[str] = None, email: Optional[str] = None) -> list[ConversationItem]:
        if not normalize_external_id(external_id) and not normalize_email(email):
            return []
        if not self.storage.available:
            return []
        try:
            with self.storage.session() as db:
                user = self._reader(db, external_id, email)
                if user is None:
                    return []
                return [
                    ConversationItem(
                        id=conversation.id,
                        title=title,
                        started_at=as_utc(conversation.started_at),
                        last_message_at=as_utc(conversation.last_message_at),
                        coaching_mode=conversation.coaching_mode,
                        workflow=conversation.workflow,
                    )
                    for conversation, title in list_recent_conversations(
                        db, user_id=user.id, limit=CONVERSATION_LIST_LIMIT
                    )
                ]
        except SQLAlchemyError as exc:
            logger.exception("ledger_list_conversations_error detail=%s", str(exc))
            return []

    def list_conversation_messages(
        self,
        conversation_id: str,
        external_id: Optional[str] = None,
        email: Optional[str] = None,
        limit: int = 50,
    ) -> list[MessageItem]:
        if not normalize_external_id(external_id) and not normalize_email(email):
            return []
        if not self.storage.available:
            return []
        try:
            with self.storage.session() as db:
                user = self._reader(db, external_id, email)
                if user is None:
                    return []
                views = list_messages_for_user(
                    db, user_id=user.id, conversation_id=conversation_id, limit=limit, newest_first=False
                )
                return [MessageItem(**asdict(view)) for view in views]
        except SQLAlchemyError as exc:
            logger.exception("ledger_list_messages_error conversation_id=%s detail=%s", conversation_id, str(exc))
            return []

    def apply_message_action(
        self,
        action: Optional[str],
        message_id: Any,
        external_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> MessageActionResult:
        normalized = (action or "").strip().lower()
        if normalized not in MESSAGE_ACTIONS:
            raise InvalidActionError(action)
        canonical, handler = MESSAGE_ACTIONS[normalized]
        try:
            target_id = int(message_id)
        except (TypeError, ValueError) as exc:
            raise InvalidActionError(action, reason="missing_message_id") from exc
        if not normalize_external_id(external_id) and not normalize_email(email):
            raise MissingIdentityError()
        if not self.storage.available:
            return MessageActionResult(ok=False, action=canonical, reason="persistence_disabled")

        try:
            with self.storage.session() as db:
                try:
                    user = find_user(db, external_id=external_id, email=email)
                except AmbiguousIdentityError:
                    return MessageActionResult(ok=False, action=canonical, reason="ambiguous_identity")
                if user is None:
                    return MessageActionResult(ok=False, action=canonical, reason="user_not_found")
                try:
                    outcome = handler(db, user_id=user.id, message_id=target_id)
                except MessageNotFoundError:
                    return MessageActionResult(ok=False, action=canonical, reason="message_not_found")
                return MessageActionResult(ok=True, action=canonical, outcome=outcome.value)
        except SQLAlchemyError as exc:
            logger.exception(
                "ledger_message_action_error action=%s message_id=%s detail=%s", canonical, target_id, str(exc)
            )
            return MessageActionResult(ok=False, action=canonical, reason="db_error")


def get_ledger() -> Ledger:
    return Ledger(get_storage())

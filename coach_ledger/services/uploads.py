import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coach_ledger.core.clock import as_utc, utc_now
from coach_ledger.core.schemas import AttachmentMeta, UploadPreviewItem
from coach_ledger.db.models import Message, Upload

logger = logging.getLogger("uvicorn.error")

EXCERPT_CHARS = 140


def record_uploads(
    db: Session,
    *,
    user_id: int,
    conversation_id: Optional[str],
    uploads: Iterable[AttachmentMeta],
    workflow: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> list[Upload]:
    timestamp = as_utc(created_at) or utc_now()
    rows = [
        Upload(
            user_id=user_id,
            conversation_id=conversation_id,
            # Inline (base64) attachments are never stored, only noted.
            url=(meta.url or "").strip() or "inline",
            type=(meta.type or "").strip() or "unknown",
            workflow=workflow,
            filename=meta.filename,
            size_bytes=meta.size_bytes,
            created_at=timestamp,
        )
        for meta in uploads
    ]
    if not rows:
        return []
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    return rows


def link_nearest_message(db: Session, upload: Upload) -> Optional[Message]:
    if not upload.conversation_id:
        return None
    uploaded_at = upload.created_at

    reply = (
        db.query(Message)
        .filter(
            Message.conversation_id == upload.conversation_id,
            Message.role == "assistant",
            Message.created_at >= uploaded_at,
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
        .first()
    )
    if reply is not None:
        return reply

    return (
        db.query(Message)
        .filter(Message.conversation_id == upload.conversation_id, Message.created_at <= uploaded_at)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .first()
    )


def _excerpt(text: str) -> str:
    flat = " ".join((text or "").split())
    if len(flat) <= EXCERPT_CHARS:
        return flat
    return f"{flat[:EXCERPT_CHARS].rstrip()}..."


def uploads_preview(db: Session, *, user_id: int, limit: int = 9) -> list[UploadPreviewItem]:
    rows = (
        db.query(Upload)
        .filter(Upload.user_id == user_id)
        .order_by(Upload.created_at.desc(), Upload.id.desc())
        .limit(max(0, limit))
        .all()
    )
    items: list[UploadPreviewItem] = []
    for row in rows:
        linked: Optional[Message] = None
        try:
            linked = link_nearest_message(db, row)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("ledger_upload_link_error upload_id=%s detail=%s", row.id, str(exc))
        items.append(
            UploadPreviewItem(
                id=row.id,
                type=row.type,
                url=row.url,
                filename=row.filename,
                workflow=row.workflow,
                conversation_id=row.conversation_id,
                created_at=as_utc(row.created_at),
                linked_message_id=linked.id if linked else None,
                linked_message_excerpt=_excerpt(linked.content) if linked else None,
            )
        )
    return items

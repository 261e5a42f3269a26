import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from coach_ledger.core.clock import as_utc, utc_now
from coach_ledger.core.progress_protocol import ProgressType
from coach_ledger.db.models import ProgressEvent

logger = logging.getLogger("uvicorn.error")


def record_progress_event(
    db: Session,
    *,
    user_id: int,
    event_type: ProgressType,
    payload: dict[str, Any],
    conversation_id: Optional[str] = None,
    message_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> Optional[ProgressEvent]:
    if not isinstance(payload, dict):
        return None
    event = ProgressEvent(
        user_id=user_id,
        conversation_id=conversation_id,
        message_id=message_id,
        type=ProgressType(event_type).value,
        payload=payload,
        created_at=as_utc(created_at) or utc_now(),
    )
    db.add(event)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        # A lost progress row never aborts the reply that carried it.
        db.rollback()
        logger.exception(
            "ledger_progress_event_error user_id=%s type=%s detail=%s", user_id, event.type, str(exc)
        )
        return None
    db.refresh(event)
    return event

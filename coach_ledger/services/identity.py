import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coach_ledger.core.clock import as_utc, utc_now
from coach_ledger.core.errors import AmbiguousIdentityError, MissingIdentityError
from coach_ledger.db.models import User

logger = logging.getLogger("uvicorn.error")


def normalize_external_id(external_id: Optional[str]) -> Optional[str]:
    cleaned = (external_id or "").strip()
    return cleaned[:255] or None


def normalize_email(email: Optional[str]) -> Optional[str]:
    cleaned = (email or "").strip().lower()
    return cleaned[:255] or None


def _lookup(db: Session, external_id: Optional[str], email: Optional[str]) -> tuple[Optional[User], Optional[User]]:
    by_external = None
    by_email = None
    if external_id:
        by_external = db.query(User).filter(User.external_id == external_id).first()
    if email:
        by_email = db.query(User).filter(User.email == email).first()
    if by_external and by_email and by_external.id != by_email.id:
        raise AmbiguousIdentityError(by_external.id, by_email.id)
    return by_external, by_email


def find_user(db: Session, external_id: Optional[str] = None, email: Optional[str] = None) -> Optional[User]:
    external_id = normalize_external_id(external_id)
    email = normalize_email(email)
    if not external_id and not email:
        raise MissingIdentityError()
    by_external, by_email = _lookup(db, external_id, email)
    return by_external or by_email


def _bump_last_seen(user: User, now: datetime) -> None:
    previous = as_utc(user.last_seen_at)
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    user.last_seen_at = now


def resolve_user(
    db: Session,
    external_id: Optional[str] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> User:
    external_id = normalize_external_id(external_id)
    email = normalize_email(email)
    if not external_id and not email:
        raise MissingIdentityError()
    timestamp = as_utc(now) or utc_now()

    by_external, by_email = _lookup(db, external_id, email)
    user = by_external or by_email
    if user is not None:
        _bump_last_seen(user, timestamp)
        if email and not user.email and by_email is None:
            user.email = email
        elif email and user.email and user.email != email:
            logger.info("ledger_identity_email_kept user_id=%s", user.id)
        if external_id and not user.external_id:
            user.external_id = external_id
        db.commit()
        db.refresh(user)
        return user

    user = User(external_id=external_id, email=email, created_at=timestamp, last_seen_at=timestamp)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Lost a creation race with a concurrent request for the same identity.
        db.rollback()
        existing = find_user(db, external_id=external_id, email=email)
        if existing is None:
            raise
        _bump_last_seen(existing, timestamp)
        db.commit()
        db.refresh(existing)
        return existing
    db.refresh(user)
    return user

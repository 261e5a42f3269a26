from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from coach_ledger.db.models import Conversation, User
from coach_ledger.db.session import Storage, configure_database, create_tables
from coach_ledger.services.conversations import start_conversation
from coach_ledger.services.identity import resolve_user
from coach_ledger.services.ledger import Ledger
from coach_ledger.services.messages import append_message


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "coach_ledger_test.db"


@pytest.fixture(scope="session")
def storage(test_db_path: Path) -> Storage:
    handle = configure_database(f"sqlite:///{test_db_path}")
    create_tables()
    return handle


@pytest.fixture(scope="session")
def app(storage: Storage):
    from coach_ledger.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(storage: Storage):
    with storage.session() as db:
        yield db


@pytest.fixture
def ledger(storage: Storage) -> Ledger:
    return Ledger(storage)


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 11, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def unique_id() -> Callable[[str], str]:
    def _unique_id(prefix: str = "user") -> str:
        return f"{prefix}:{uuid4().hex[:10]}"

    return _unique_id


@pytest.fixture
def create_user(db_session: Session, unique_id) -> Callable[..., User]:
    def _create_user(email: Optional[str] = None, now: Optional[datetime] = None) -> User:
        return resolve_user(db_session, external_id=unique_id("user"), email=email, now=now)

    return _create_user


@pytest.fixture
def create_conversation(db_session: Session, create_user) -> Callable[..., Conversation]:
    def _create_conversation(
        user: Optional[User] = None,
        workflow: Optional[str] = None,
        coaching_mode: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Conversation:
        owner = user or create_user()
        return start_conversation(db_session, user=owner, workflow=workflow, coaching_mode=coaching_mode, now=now)

    return _create_conversation


@pytest.fixture
def seed_exchange(db_session: Session, create_conversation):
    """A conversation holding one user turn and one assistant reply a few seconds apart."""

    def _seed(
        user: Optional[User] = None,
        prompt: str = "What should I eat after training?",
        reply: str = "Aim for protein and some carbs within a couple of hours.",
        at: Optional[datetime] = None,
    ):
        conversation = create_conversation(user=user, now=at)
        asked_at = at or conversation.started_at
        question = append_message(
            db_session,
            conversation=conversation,
            role="user",
            content=prompt,
            user_id=conversation.user_id,
            created_at=asked_at,
        )
        answer = append_message(
            db_session,
            conversation=conversation,
            role="assistant",
            content=reply,
            created_at=asked_at + timedelta(seconds=5),
        )
        return conversation, question, answer

    return _seed

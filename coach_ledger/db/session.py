import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from coach_ledger.core.errors import PersistenceUnavailableError
from coach_ledger.db.models import Base

logger = logging.getLogger("uvicorn.error")

# DATABASE_URL wins; otherwise a SQLite file at DB_PATH.
DB_PATH = os.getenv("DB_PATH", "/var/data/coach_ledger.db")
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
PERSISTENCE_ENABLED = os.getenv("LEDGER_PERSISTENCE_ENABLED", "1").strip().lower() not in {"0", "false", "no", "off"}

# Columns added after the first schema release, upgraded in place on SQLite.
_SQLITE_COLUMN_UPGRADES: dict[str, dict[str, str]] = {
    "conversations": {
        "title": "VARCHAR(180)",
        "last_message_at": "DATETIME",
    },
    "uploads": {
        "filename": "VARCHAR(255)",
        "size_bytes": "INTEGER",
    },
}


def _default_database_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL
    return f"sqlite:///{DB_PATH}"


def _build_engine(database_url: str) -> Engine:
    connect_args: dict = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_file = database_url.split(":///", 1)[1] if ":///" in database_url else ""
        if db_file and db_file != ":memory:":
            # Ensure parent directory exists when a nested path is configured.
            Path(db_file).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


class Storage:
    """Storage handle shared by every ledger component.

    The engine is built on first use, not at import time, so a service whose
    database is misconfigured still starts and degrades to empty reads and
    no-op writes.
    """

    def __init__(self, database_url: Optional[str], enabled: bool = True) -> None:
        self.database_url = database_url
        self.enabled = bool(enabled and database_url)
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._init_error: Optional[str] = None

    def _ensure_engine(self) -> Engine:
        if self._engine is not None:
            return self._engine
        if not self.enabled:
            raise PersistenceUnavailableError("persistence_disabled")
        if self._init_error:
            raise PersistenceUnavailableError("storage_init_failed")
        try:
            engine = _build_engine(self.database_url or "")
        except (SQLAlchemyError, OSError, ImportError) as exc:
            self._init_error = str(exc)
            logger.exception("ledger_storage_init_error detail=%s", str(exc))
            raise PersistenceUnavailableError("storage_init_failed") from exc
        self._engine = engine
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        return engine

    @property
    def available(self) -> bool:
        try:
            self._ensure_engine()
        except PersistenceUnavailableError:
            return False
        return True

    def create_tables(self) -> None:
        engine = self._ensure_engine()
        Base.metadata.create_all(bind=engine)
        if engine.dialect.name != "sqlite":
            return
        # Lightweight forward-compatible column upgrades for SQLite without full migrations.
        with engine.begin() as conn:
            for table, upgrades in _SQLITE_COLUMN_UPGRADES.items():
                columns = {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})")).fetchall()}
                for column, ddl_type in upgrades.items():
                    if column not in columns:
                        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))

    @contextmanager
    def session(self) -> Iterator[Session]:
        self._ensure_engine()
        assert self._session_factory is not None
        db: Session = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None


_storage: Optional[Storage] = None


def get_storage() -> Storage:
    global _storage
    if _storage is None:
        _storage = Storage(_default_database_url(), enabled=PERSISTENCE_ENABLED)
    return _storage


def configure_database(database_url: Optional[str], enabled: bool = True) -> Storage:
    global _storage
    if _storage is not None:
        _storage.dispose()
    _storage = Storage(database_url, enabled=enabled)
    return _storage


def create_tables() -> None:
    storage = get_storage()
    if not storage.enabled:
        logger.info("ledger_persistence_disabled")
        return
    try:
        storage.create_tables()
    except PersistenceUnavailableError:
        # Already logged by the storage handle; the service keeps running without history.
        return

"""Database engine, session management, and schema initialization."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator

import structlog
from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from job_ingest.config import AppConfig
from job_ingest.migrations import apply_migrations
from job_ingest.models import BackfillState, Base, EmailConfigRow, SyncState

logger = structlog.get_logger(__name__)


def _configure_sqlite(dbapi_conn: object, _connection_record: object) -> None:
    """Enable WAL and a busy timeout so short audit writes wait instead of failing."""
    cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=False,
        pool_pre_ping=True,
    )
    if database_url.startswith("sqlite"):
        event.listen(engine, "connect", _configure_sqlite)
    return engine


def ensure_schema(engine: Engine) -> None:
    """Create missing tables and apply pending migrations. Safe to call every cycle."""
    Base.metadata.create_all(bind=engine)
    apply_migrations(engine)


def seed_mailbox_state(session: Session, mailbox: str) -> None:
    """Insert the sync and backfill rows for *mailbox* if they do not exist yet."""
    if session.get(SyncState, mailbox) is None:
        session.add(SyncState(mailbox=mailbox, last_uid=0))
    if session.get(BackfillState, mailbox) is None:
        now = datetime.now(timezone.utc)
        session.add(
            BackfillState(
                mailbox=mailbox,
                highest_uid_seen=None,
                lowest_uid_processed=None,
                active=False,
                started_at=now,
                updated_at=now,
                model_version="v1",
            )
        )


def init_db(config: AppConfig) -> sessionmaker[Session]:
    """Create the engine, ensure the schema, and return a session factory."""
    engine = create_db_engine(config.database_url)
    ensure_schema(engine)
    logger.info("database_initialized", url=config.database_url)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Context manager yielding a session with auto-commit/rollback."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def load_stored_config(factory: sessionmaker[Session]) -> EmailConfigRow | None:
    """Return the most recently saved ``email_config`` row, if any."""
    with session_scope(factory) as session:
        return session.execute(
            select(EmailConfigRow).order_by(EmailConfigRow.updated_at.desc()).limit(1)
        ).scalar_one_or_none()


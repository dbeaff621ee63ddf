"""SQLAlchemy ORM models for all database tables."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

PARSE_PENDING = "pending"
PARSE_PARSED = "parsed"
PARSE_ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all models."""


class SyncState(Base):
    """Highest UID fully handled by the live incremental sync, per mailbox."""

    __tablename__ = "email_sync_state"

    mailbox: Mapped[str] = mapped_column(String(200), primary_key=True)
    last_uid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<SyncState mailbox={self.mailbox!r} last_uid={self.last_uid}>"


class BackfillState(Base):
    """Cursor of the descending header-only historical crawl."""

    __tablename__ = "email_backfill_state"

    mailbox: Mapped[str] = mapped_column(String(200), primary_key=True)
    highest_uid_seen: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lowest_uid_processed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    model_version: Mapped[str | None] = mapped_column(String(20), nullable=True, default="v1")

    @property
    def initialized(self) -> bool:
        return self.highest_uid_seen is not None

    def __repr__(self) -> str:
        return (
            f"<BackfillState mailbox={self.mailbox!r} highest={self.highest_uid_seen} "
            f"lowest={self.lowest_uid_processed} active={self.active}>"
        )


class HeaderCacheEntry(Base):
    """Header-only triage result for one historical UID."""

    __tablename__ = "email_header_cache"
    __table_args__ = (
        Index("idx_header_cache_decision", "decision"),
        Index("idx_header_cache_model", "model_version"),
    )

    uid: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_version: Mapped[str | None] = mapped_column(String(20), nullable=True)
    promoted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<HeaderCacheEntry uid={self.uid} decision={self.decision!r}>"


class StoredEmail(Base):
    """A relevant, classified message (one row per Message-ID)."""

    __tablename__ = "emails"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_email: Mapped[str | None] = mapped_column(String(500), nullable=True)
    to_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(50), nullable=True)
    cls: Mapped[str | None] = mapped_column("class", String(30), nullable=True, index=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_headers: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    parsed_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    parse_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PARSE_PENDING, index=True
    )
    parsed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    openai_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    uid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mailbox: Mapped[str | None] = mapped_column(String(200), nullable=True)
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    classification_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    openai_prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    openai_completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    openai_total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    openai_cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<StoredEmail id={self.id} uid={self.uid} class={self.cls!r} status={self.parse_status!r}>"


class IngestionLogEntry(Base):
    """Append-only trace of every phase/status transition."""

    __tablename__ = "ingestion_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    phase: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    uid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(500), nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    cls: Mapped[str | None] = mapped_column("class", String(30), nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(50), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<IngestionLogEntry {self.phase}:{self.status} uid={self.uid}>"


class OpenAiCallLog(Base):
    """One row per enrichment completion call."""

    __tablename__ = "openai_call_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("emails.id", ondelete="SET NULL"), nullable=True, index=True
    )
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    request_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class EmailConfigRow(Base):
    """IMAP credentials saved through the UI; used as a config fallback."""

    __tablename__ = "email_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host: Mapped[str | None] = mapped_column(String(300), nullable=True)
    port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    secure: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    user: Mapped[str | None] = mapped_column(String(300), nullable=True)
    password: Mapped[str | None] = mapped_column(String(500), nullable=True)
    mailbox: Mapped[str | None] = mapped_column(String(200), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class FetchFailure(Base):
    """Consecutive fetch/parse failures for one UID of the live sync."""

    __tablename__ = "email_fetch_failure"

    mailbox: Mapped[str] = mapped_column(String(200), primary_key=True)
    uid: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_lettered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<FetchFailure mailbox={self.mailbox!r} uid={self.uid} attempts={self.attempts}>"


class SchemaMigration(Base):
    """Ledger of applied schema migrations."""

    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

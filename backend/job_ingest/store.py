"""Persistence layer: sync cursors, idempotent email upsert, backfill cache.

Every public method is its own short unit of work (one session, one
commit), so a crash between two calls never leaves a half-applied write.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from job_ingest.database import seed_mailbox_state, session_scope
from job_ingest.email.classifier import JOB_ALERT, DetailLevel, classify_at, is_relevant
from job_ingest.email.parser import ParsedMessage
from job_ingest.ingest_log import IngestionLog
from job_ingest.models import (
    PARSE_ERROR,
    PARSE_PARSED,
    PARSE_PENDING,
    BackfillState,
    EmailConfigRow,
    FetchFailure,
    HeaderCacheEntry,
    OpenAiCallLog,
    StoredEmail,
    SyncState,
)

logger = structlog.get_logger(__name__)

_VENDORS = (
    ("greenhouse", re.compile(r"greenhouse")),
    ("lever", re.compile(r"\blever\b")),
    ("workday", re.compile(r"workday|myworkdayjobs")),
    ("ashby", re.compile(r"ashbyhq|\bashby\b")),
    ("icims", re.compile(r"icims")),
    ("smartrecruiters", re.compile(r"smartrecruiters")),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def infer_vendor(text: str) -> str:
    """Best-effort applicant-tracking-system vendor from message text."""
    lowered = (text or "").lower()
    for name, pattern in _VENDORS:
        if pattern.search(lowered):
            return name
    return ""


def fallback_message_id(mailbox: str, uid: int) -> str:
    """Stable surrogate key for messages without a Message-ID header."""
    return f"{mailbox}:{uid}@no-message-id"


@dataclass(frozen=True)
class UpsertOutcome:
    """Result of :meth:`EmailStore.upsert_email`."""

    stored: bool
    cls: str
    reason: str
    email_id: Optional[int] = None
    created: bool = False


@dataclass(frozen=True)
class PendingEmail:
    id: int
    subject: str
    body: str


class EmailStore:
    """Reads and writes every ingestion table except ``ingestion_log``."""

    def __init__(self, session_factory: sessionmaker[Session], log: IngestionLog) -> None:
        self._factory = session_factory
        self._log = log

    def ensure_mailbox(self, mailbox: str) -> None:
        with session_scope(self._factory) as session:
            seed_mailbox_state(session, mailbox)

    # ── Incremental sync cursor ───────────────────────────

    def get_sync_state(self, mailbox: str) -> int:
        """Current ``last_uid`` for *mailbox* (0 when never synced)."""
        with session_scope(self._factory) as session:
            state = session.get(SyncState, mailbox)
            return state.last_uid if state else 0

    def advance_sync_state(self, mailbox: str, uid: int) -> int:
        """Move the cursor forward to *uid*. Lower values are ignored."""
        with session_scope(self._factory) as session:
            state = session.get(SyncState, mailbox)
            if state is None:
                state = SyncState(mailbox=mailbox, last_uid=0)
                session.add(state)
            if uid > state.last_uid:
                state.last_uid = uid
                state.updated_at = _utcnow()
            return state.last_uid

    # ── Fetch failure ledger ──────────────────────────────

    def record_fetch_failure(self, mailbox: str, uid: int, error: str, max_attempts: int) -> FetchFailure:
        """Count one more failed attempt; dead-letter once *max_attempts* is reached."""
        with session_scope(self._factory) as session:
            failure = session.get(FetchFailure, (mailbox, uid))
            if failure is None:
                failure = FetchFailure(mailbox=mailbox, uid=uid, attempts=0)
                session.add(failure)
            failure.attempts += 1
            failure.last_error = error[:2000]
            failure.dead_lettered = failure.attempts >= max_attempts
            session.flush()
            return failure

    def clear_fetch_failure(self, mailbox: str, uid: int) -> None:
        with session_scope(self._factory) as session:
            session.execute(
                delete(FetchFailure).where(FetchFailure.mailbox == mailbox, FetchFailure.uid == uid)
            )

    def is_dead_lettered(self, mailbox: str, uid: int) -> bool:
        with session_scope(self._factory) as session:
            failure = session.get(FetchFailure, (mailbox, uid))
            return bool(failure and failure.dead_lettered)

    def dead_lettered_uids(self, mailbox: str) -> list[int]:
        with session_scope(self._factory) as session:
            return list(
                session.execute(
                    select(FetchFailure.uid)
                    .where(FetchFailure.mailbox == mailbox, FetchFailure.dead_lettered.is_(True))
                    .order_by(FetchFailure.uid)
                ).scalars()
            )

    # ── Emails ────────────────────────────────────────────

    def upsert_email(
        self,
        parsed: ParsedMessage,
        uid: int,
        mailbox: str,
        *,
        include_alerts: bool = False,
    ) -> UpsertOutcome:
        """Classify *parsed* and insert-or-update it keyed by Message-ID.

        Non-relevant messages are not written; a ``skip_non_relevant``
        event is logged instead.
        """
        subject = parsed.subject or ""
        body_for_rules = parsed.classifier_text
        result = classify_at(DetailLevel.FULL, subject, body_for_rules)

        if not is_relevant(result, subject, body_for_rules, include_alerts=include_alerts):
            self._log.event(
                "fetch",
                "skip_non_relevant",
                uid=uid,
                subject=subject,
                detail=result.reason or "no reason",
            )
            return UpsertOutcome(stored=False, cls=result.cls, reason=result.reason)

        message_id = parsed.message_id or fallback_message_id(mailbox, uid)
        vendor = infer_vendor(subject + " " + parsed.text)
        now = _utcnow()
        fields: dict[str, Any] = {
            "date": parsed.date or now,
            "subject": subject or "(no subject)",
            "from_email": parsed.from_,
            "to_email": parsed.to,
            "vendor": vendor,
            "cls": result.cls,
            "body": parsed.text,
            "raw_headers": parsed.raw_headers,
            "raw_html": parsed.html,
            "uid": uid,
            "mailbox": mailbox,
            "classification_confidence": result.confidence,
            "classification_reason": result.reason,
        }

        with session_scope(self._factory) as session:
            row = session.execute(
                select(StoredEmail).where(StoredEmail.message_id == message_id)
            ).scalar_one_or_none()
            created = row is None
            if row is None:
                row = StoredEmail(
                    message_id=message_id,
                    parse_status=PARSE_PENDING,
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
                session.add(row)
            else:
                for name, value in fields.items():
                    setattr(row, name, value)
                row.parse_status = PARSE_PENDING
                row.updated_at = now
            session.execute(
                update(HeaderCacheEntry).where(HeaderCacheEntry.uid == uid).values(promoted=True)
            )
            session.flush()
            email_id = row.id

        self._log.event(
            "fetch",
            "stored",
            uid=uid,
            message_id=message_id,
            subject=subject,
            cls=result.cls,
            vendor=vendor,
            detail=result.reason,
        )
        logger.info("email_stored", uid=uid, cls=result.cls, created=created)
        return UpsertOutcome(
            stored=True, cls=result.cls, reason=result.reason, email_id=email_id, created=created
        )

    def get_email(self, email_id: int) -> Optional[StoredEmail]:
        with session_scope(self._factory) as session:
            return session.get(StoredEmail, email_id)

    def email_detail(self, email_id: int) -> Optional[tuple[StoredEmail, list[OpenAiCallLog]]]:
        """The stored row with its enrichment call history, oldest call first."""
        with session_scope(self._factory) as session:
            row = session.get(StoredEmail, email_id)
            if row is None:
                return None
            calls = list(
                session.execute(
                    select(OpenAiCallLog)
                    .where(OpenAiCallLog.email_id == email_id)
                    .order_by(OpenAiCallLog.id)
                ).scalars()
            )
            return row, calls

    def find_by_message_id(self, message_id: str) -> Optional[StoredEmail]:
        with session_scope(self._factory) as session:
            return session.execute(
                select(StoredEmail).where(StoredEmail.message_id == message_id)
            ).scalar_one_or_none()

    # ── Enrichment queue ──────────────────────────────────

    def pending_for_enrichment(self, limit: int) -> list[PendingEmail]:
        """Up to *limit* rows awaiting enrichment, most recent first."""
        with session_scope(self._factory) as session:
            rows = session.execute(
                select(StoredEmail.id, StoredEmail.subject, StoredEmail.body)
                .where(StoredEmail.parse_status == PARSE_PENDING)
                .order_by(StoredEmail.id.desc())
                .limit(limit)
            ).all()
            return [PendingEmail(id=r.id, subject=r.subject or "", body=r.body or "") for r in rows]

    def pending_count(self) -> int:
        with session_scope(self._factory) as session:
            return int(
                session.execute(
                    select(func.count(StoredEmail.id)).where(StoredEmail.parse_status == PARSE_PENDING)
                ).scalar()
                or 0
            )

    def mark_parsed(
        self,
        email_id: int,
        *,
        parsed_json: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        cost_usd: float,
        request_json: str,
        response_json: str,
    ) -> None:
        """Store the enrichment result and append its call-log row in one transaction."""
        with session_scope(self._factory) as session:
            row = session.get(StoredEmail, email_id)
            if row is None:
                return
            row.parsed_json = parsed_json
            row.parse_status = PARSE_PARSED
            row.parsed_at = _utcnow()
            row.openai_model = model
            row.openai_prompt_tokens = prompt_tokens
            row.openai_completion_tokens = completion_tokens
            row.openai_total_tokens = total_tokens
            row.openai_cost_usd = cost_usd
            session.add(
                OpenAiCallLog(
                    email_id=email_id,
                    model=model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=total_tokens,
                    cost_usd=cost_usd,
                    request_json=request_json,
                    response_json=response_json,
                )
            )

    def mark_error(self, email_id: int) -> None:
        with session_scope(self._factory) as session:
            session.execute(
                update(StoredEmail)
                .where(StoredEmail.id == email_id)
                .values(parse_status=PARSE_ERROR, parsed_at=_utcnow())
            )

    # ── Backfill ──────────────────────────────────────────

    def get_backfill_state(self, mailbox: str) -> Optional[BackfillState]:
        with session_scope(self._factory) as session:
            return session.get(BackfillState, mailbox)

    def update_backfill_state(self, mailbox: str, **values: Any) -> None:
        if not values:
            return
        values["updated_at"] = _utcnow()
        with session_scope(self._factory) as session:
            session.execute(
                update(BackfillState).where(BackfillState.mailbox == mailbox).values(**values)
            )

    def set_backfill_active(self, mailbox: str, active: bool) -> BackfillState:
        """Start or pause the backfill crawl, creating the state row if needed."""
        now = _utcnow()
        with session_scope(self._factory) as session:
            state = session.get(BackfillState, mailbox)
            if state is None:
                state = BackfillState(
                    mailbox=mailbox,
                    active=active,
                    started_at=now,
                    updated_at=now,
                    model_version="v1",
                )
                session.add(state)
            else:
                state.active = active
                state.started_at = state.started_at or now
                state.updated_at = now
            session.flush()
            return state

    def cached_uids(self, uids: Iterable[int]) -> set[int]:
        wanted = list(uids)
        if not wanted:
            return set()
        with session_scope(self._factory) as session:
            return set(
                session.execute(
                    select(HeaderCacheEntry.uid).where(HeaderCacheEntry.uid.in_(wanted))
                ).scalars()
            )

    def insert_headers(self, entries: Iterable[HeaderCacheEntry]) -> int:
        """Insert header-cache rows whose UID is not cached yet. Returns rows inserted."""
        pending = list(entries)
        if not pending:
            return 0
        with session_scope(self._factory) as session:
            existing = set(
                session.execute(
                    select(HeaderCacheEntry.uid).where(
                        HeaderCacheEntry.uid.in_([e.uid for e in pending])
                    )
                ).scalars()
            )
            inserted = 0
            for entry in pending:
                if entry.uid in existing:
                    continue
                session.add(entry)
                existing.add(entry.uid)
                inserted += 1
            return inserted

    def header_cache(
        self, decision: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> list[HeaderCacheEntry]:
        stmt = select(HeaderCacheEntry)
        if decision:
            stmt = stmt.where(HeaderCacheEntry.decision == decision)
        stmt = stmt.order_by(HeaderCacheEntry.uid.desc()).limit(limit).offset(offset)
        with session_scope(self._factory) as session:
            return list(session.execute(stmt).scalars())

    def unpromoted_relevant_uids(self, limit: int) -> list[int]:
        with session_scope(self._factory) as session:
            return list(
                session.execute(
                    select(HeaderCacheEntry.uid)
                    .where(
                        HeaderCacheEntry.decision == "relevant",
                        HeaderCacheEntry.promoted.is_(False),
                    )
                    .order_by(HeaderCacheEntry.uid.desc())
                    .limit(limit)
                ).scalars()
            )

    def mark_promoted(self, uid: int) -> None:
        with session_scope(self._factory) as session:
            session.execute(
                update(HeaderCacheEntry).where(HeaderCacheEntry.uid == uid).values(promoted=True)
            )

    def header_decision_counts(self) -> dict[str, int]:
        with session_scope(self._factory) as session:
            rows = session.execute(
                select(HeaderCacheEntry.decision, func.count(HeaderCacheEntry.uid)).group_by(
                    HeaderCacheEntry.decision
                )
            ).all()
            return {decision or "": int(count) for decision, count in rows}

    # ── Stored IMAP credentials ───────────────────────────

    def save_email_config(self, **values: Any) -> EmailConfigRow:
        """Replace the persisted ``email_config`` row."""
        with session_scope(self._factory) as session:
            session.execute(delete(EmailConfigRow))
            row = EmailConfigRow(**values)
            session.add(row)
            session.flush()
            return row

    def clear_email_config(self) -> None:
        with session_scope(self._factory) as session:
            session.execute(delete(EmailConfigRow))

    # ── Maintenance ───────────────────────────────────────

    def reclassify_existing(self, limit: int = 1000, *, include_alerts: bool = False) -> int:
        """Re-run the classifier over stored rows; drop rows that no longer qualify.

        Returns the number of rows kept and updated.
        """
        updated = 0
        deleted = 0
        with session_scope(self._factory) as session:
            rows = session.execute(
                select(StoredEmail).order_by(StoredEmail.id.desc()).limit(limit)
            ).scalars()
            for row in rows:
                subject = row.subject or ""
                body = row.body or ""
                result = classify_at(DetailLevel.FULL, subject, body)
                if not is_relevant(result, subject, body, include_alerts=include_alerts):
                    session.delete(row)
                    deleted += 1
                    continue
                row.cls = result.cls
                row.classification_confidence = result.confidence
                row.classification_reason = result.reason
                updated += 1
        self._log.event("parse", "reclassify", detail=f"reclassified={updated}; deleted={deleted}")
        return updated

    def purge_irrelevant(self) -> int:
        """Delete stored rows with no class or the ``job_alert`` class."""
        with session_scope(self._factory) as session:
            result = session.execute(
                delete(StoredEmail).where(
                    or_(StoredEmail.cls.is_(None), StoredEmail.cls == "", StoredEmail.cls == JOB_ALERT)
                )
            )
            removed = int(result.rowcount or 0)
        self._log.event("parse", "purge", detail=f"purge_deleted={removed}")
        return removed

    # ── Stats ─────────────────────────────────────────────

    def stats(self, mailbox: str) -> dict[str, Any]:
        with session_scope(self._factory) as session:
            def _status_count(status: str) -> int:
                return int(
                    session.execute(
                        select(func.count(StoredEmail.id)).where(StoredEmail.parse_status == status)
                    ).scalar()
                    or 0
                )

            total = int(session.execute(select(func.count(StoredEmail.id))).scalar() or 0)
            last_parsed_at = session.execute(select(func.max(StoredEmail.parsed_at))).scalar()
            last_email_date = session.execute(select(func.max(StoredEmail.date))).scalar()
            state = session.get(SyncState, mailbox)

            vendors = session.execute(
                select(StoredEmail.vendor, func.count(StoredEmail.id).label("count"))
                .where(StoredEmail.vendor.is_not(None), StoredEmail.vendor != "")
                .group_by(StoredEmail.vendor)
                .order_by(func.count(StoredEmail.id).desc())
                .limit(10)
            ).all()
            classes = session.execute(
                select(StoredEmail.cls, func.count(StoredEmail.id).label("count"))
                .where(StoredEmail.cls.is_not(None), StoredEmail.cls != "")
                .group_by(StoredEmail.cls)
                .order_by(func.count(StoredEmail.id).desc())
            ).all()

            parsed_count = _status_count(PARSE_PARSED)
            total_usd, total_tokens = session.execute(
                select(func.sum(StoredEmail.openai_cost_usd), func.sum(StoredEmail.openai_total_tokens)).where(
                    StoredEmail.parse_status == PARSE_PARSED
                )
            ).one()
            total_usd = float(total_usd or 0.0)
            total_tokens = int(total_tokens or 0)
            cost_denominator = parsed_count
            if total_usd == 0:
                log_usd, log_tokens, log_emails = session.execute(
                    select(
                        func.sum(OpenAiCallLog.cost_usd),
                        func.sum(OpenAiCallLog.total_tokens),
                        func.count(func.distinct(OpenAiCallLog.email_id)),
                    )
                ).one()
                if log_usd:
                    total_usd = float(log_usd)
                    total_tokens = int(log_tokens or total_tokens)
                    cost_denominator = int(log_emails or parsed_count)

            return {
                "counts": {
                    "total": total,
                    "parsed": parsed_count,
                    "pending": _status_count(PARSE_PENDING),
                    "error": _status_count(PARSE_ERROR),
                },
                "last_parsed_at": last_parsed_at,
                "last_email_date": last_email_date,
                "last_uid": state.last_uid if state else None,
                "vendors": [{"vendor": v, "count": int(c)} for v, c in vendors],
                "classes": [{"cls": k, "count": int(c)} for k, c in classes],
                "cost": {
                    "total_usd": round(total_usd, 6),
                    "avg_per_email_usd": round(total_usd / cost_denominator, 6) if cost_denominator else 0.0,
                    "total_tokens": total_tokens,
                },
            }

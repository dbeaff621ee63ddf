"""Append-only ingestion audit log (the ``ingestion_log`` table).

The log is a best-effort sink: a failed insert must never interrupt an
ingestion cycle. Write errors are kept in a bounded buffer and the first
few are surfaced through structlog.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from job_ingest.database import session_scope
from job_ingest.models import IngestionLogEntry, OpenAiCallLog, StoredEmail

logger = structlog.get_logger(__name__)

_DEBUG_DETAIL_MAX = 500


class IngestionLog:
    """Writes phase/status events for one ingestion process."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        debug_max: int = 250,
        verbose: bool = False,
        surfaced_errors: int = 5,
    ) -> None:
        self._factory = session_factory
        self._debug_max = debug_max
        self._verbose = verbose
        self._debug_count = 0
        self._surfaced_limit = surfaced_errors
        self.write_errors: deque[str] = deque(maxlen=surfaced_errors)
        self._write_error_total = 0

    @property
    def debug_count(self) -> int:
        return self._debug_count

    def reset_run(self) -> None:
        """Reset per-run counters (protocol debug cap)."""
        self._debug_count = 0

    def event(
        self,
        phase: str,
        status: str,
        *,
        uid: Optional[int] = None,
        message_id: Optional[str] = None,
        subject: Optional[str] = None,
        cls: Optional[str] = None,
        vendor: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        """Record one event. Never raises."""
        logger.debug("ingest_event", phase=phase, status=status, uid=uid, detail=(detail or "")[:140])
        try:
            with session_scope(self._factory) as session:
                session.add(
                    IngestionLogEntry(
                        phase=phase,
                        status=status,
                        uid=uid,
                        message_id=message_id,
                        subject=subject,
                        cls=cls,
                        vendor=vendor,
                        detail=detail,
                    )
                )
        except SQLAlchemyError as exc:
            self._write_error_total += 1
            self.write_errors.append(str(exc))
            if self._write_error_total <= self._surfaced_limit:
                logger.error("ingest_log_write_failed", phase=phase, status=status, error=str(exc))

    def imap_debug(self, level: str, message: str) -> None:
        """Persist a protocol debug line, respecting the verbose flag and per-run cap."""
        if not self._verbose:
            return
        if self._debug_count >= self._debug_max:
            return
        self._debug_count += 1
        self.event("imap_dbg", level, detail=(message or "")[:_DEBUG_DETAIL_MAX])

    # ── Queries ───────────────────────────────────────────

    def recent_logs(self, limit: int = 100, since: Optional[datetime] = None) -> list[IngestionLogEntry]:
        stmt = select(IngestionLogEntry).order_by(IngestionLogEntry.id.desc()).limit(limit)
        if since is not None:
            stmt = stmt.where(IngestionLogEntry.created_at >= since)
        with session_scope(self._factory) as session:
            return list(session.execute(stmt).scalars())

    def _latest_run_start(self, session: Session) -> Optional[IngestionLogEntry]:
        return session.execute(
            select(IngestionLogEntry)
            .where(IngestionLogEntry.phase == "run", IngestionLogEntry.status == "start")
            .order_by(IngestionLogEntry.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def skipped_in_latest_run(self, limit: int = 200) -> list[IngestionLogEntry]:
        """``fetch/skip_non_relevant`` entries of the latest run (all runs if none started)."""
        with session_scope(self._factory) as session:
            stmt = select(IngestionLogEntry).where(
                IngestionLogEntry.phase == "fetch",
                IngestionLogEntry.status == "skip_non_relevant",
            )
            start = self._latest_run_start(session)
            if start is not None:
                stmt = stmt.where(IngestionLogEntry.id >= start.id)
            stmt = stmt.order_by(IngestionLogEntry.id.desc()).limit(limit)
            return list(session.execute(stmt).scalars())

    def run_metrics(self) -> Optional[dict[str, Any]]:
        """Summarize the most recent run, or None if no run has started."""
        with session_scope(self._factory) as session:
            start = self._latest_run_start(session)
            if start is None:
                return None

            def _count(phase: str, status: Optional[str] = None) -> int:
                stmt = select(func.count(IngestionLogEntry.id)).where(
                    IngestionLogEntry.id >= start.id, IngestionLogEntry.phase == phase
                )
                if status is not None:
                    stmt = stmt.where(IngestionLogEntry.status == status)
                return int(session.execute(stmt).scalar() or 0)

            end = session.execute(
                select(IngestionLogEntry)
                .where(
                    IngestionLogEntry.id > start.id,
                    IngestionLogEntry.phase == "run",
                    IngestionLogEntry.status == "end",
                )
                .order_by(IngestionLogEntry.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            current = session.execute(
                select(IngestionLogEntry)
                .where(IngestionLogEntry.id >= start.id)
                .order_by(IngestionLogEntry.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            pending = session.execute(
                select(func.count(StoredEmail.id)).where(StoredEmail.parse_status == "pending")
            ).scalar() or 0
            tokens, cost = session.execute(
                select(func.sum(OpenAiCallLog.total_tokens), func.sum(OpenAiCallLog.cost_usd)).where(
                    OpenAiCallLog.created_at >= start.created_at
                )
            ).one()

            duration_ms = None
            if end is not None:
                duration_ms = int((end.created_at - start.created_at).total_seconds() * 1000)

            return {
                "start": start.created_at,
                "end": end.created_at if end is not None else None,
                "in_progress": end is None,
                "current": f"{current.phase}:{current.status}" if current is not None else None,
                "duration_ms": duration_ms,
                "fetch": {
                    "stored": _count("fetch", "stored"),
                    "skipped_non_relevant": _count("fetch", "skip_non_relevant"),
                    "errors": _count("fetch", "error"),
                },
                "parse": {
                    "parsed": _count("parse", "parsed"),
                    "errors": _count("parse", "error"),
                    "pending_queue": int(pending),
                },
                "openai": {"tokens": int(tokens or 0), "cost_usd": round(float(cost or 0.0), 6)},
                "protocol": {"count": _count("imap_dbg"), "verbose": self._verbose},
            }

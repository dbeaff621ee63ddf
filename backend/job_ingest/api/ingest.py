"""Ingest trigger, status, log and stats endpoints."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request

from job_ingest.ingest.runner import IngestionRunner, IngestSummary
from job_ingest.schemas import (
    EmailStatsOut,
    IngestionLogOut,
    IngestResultOut,
    IngestStatusOut,
    IngestTriggerOut,
    LogsOut,
    RunMetricsOut,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/email", tags=["ingest"])


class IngestTrigger:
    """Runs at most one ingestion cycle at a time in a background thread."""

    def __init__(self, runner: IngestionRunner) -> None:
        self._runner = runner
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_result: Optional[IngestSummary] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def start(self) -> bool:
        """Start a cycle unless one is already running. Returns True if started."""
        if not self._lock.acquire(blocking=False):
            return False
        self.started_at = datetime.now(timezone.utc)
        self.finished_at = None
        self._thread = threading.Thread(target=self._run, name="ingest-cycle", daemon=True)
        self._thread.start()
        return True

    def _run(self) -> None:
        try:
            self.last_result = self._runner.run_once()
            self.last_error = None
        except Exception as exc:
            logger.error("background_ingest_error", error=str(exc))
            self.last_error = str(exc)
        finally:
            self.finished_at = datetime.now(timezone.utc)
            self._lock.release()

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the current cycle (if any) has finished."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)


def get_runner(request: Request) -> IngestionRunner:
    return request.app.state.runner


def get_trigger(request: Request) -> IngestTrigger:
    return request.app.state.trigger


@router.post("/ingest", response_model=IngestTriggerOut, status_code=202)
def trigger_ingest(trigger: IngestTrigger = Depends(get_trigger)) -> IngestTriggerOut:
    """Start one ingestion cycle in the background (fire-and-forget)."""
    started = trigger.start()
    if started:
        logger.info("ingest_triggered_via_api")
    return IngestTriggerOut(
        running=True,
        started_at=trigger.started_at,
        message="Ingest started" if started else "Ingest already running",
    )


@router.get("/ingest/status", response_model=IngestStatusOut)
def ingest_status(trigger: IngestTrigger = Depends(get_trigger)) -> IngestStatusOut:
    result = trigger.last_result
    return IngestStatusOut(
        running=trigger.running,
        started_at=trigger.started_at,
        finished_at=trigger.finished_at,
        last_error=trigger.last_error,
        last_result=(
            IngestResultOut(
                processed=result.processed,
                stored=result.stored,
                skipped=result.skipped,
                errors=result.errors,
                dead_lettered=result.dead_lettered,
                last_uid=result.last_uid,
                enriched=result.enriched,
                backfill_inserted=result.backfill_inserted,
                aborted=result.aborted,
            )
            if result is not None
            else None
        ),
    )


@router.get("/logs", response_model=LogsOut)
def list_logs(
    limit: int = Query(200, ge=1, le=1000),
    since: Optional[datetime] = None,
    runner: IngestionRunner = Depends(get_runner),
) -> LogsOut:
    """Most recent ingestion log entries plus metrics of the latest run."""
    rows = runner.log.recent_logs(limit=limit, since=since)
    metrics = runner.log.run_metrics()
    return LogsOut(
        logs=[IngestionLogOut.model_validate(row) for row in rows],
        metrics=RunMetricsOut.model_validate(metrics) if metrics else None,
    )


@router.get("/skipped", response_model=list[IngestionLogOut])
def list_skipped(
    limit: int = Query(200, ge=1, le=500),
    runner: IngestionRunner = Depends(get_runner),
) -> list[IngestionLogOut]:
    """Messages the relevance gate dropped during the latest run."""
    return [IngestionLogOut.model_validate(row) for row in runner.log.skipped_in_latest_run(limit)]


@router.get("/stats", response_model=EmailStatsOut)
def email_stats(runner: IngestionRunner = Depends(get_runner)) -> EmailStatsOut:
    return EmailStatsOut.model_validate(runner.store.stats(runner.config.imap_mailbox))

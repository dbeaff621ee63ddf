"""Backfill crawl status, start/pause toggle and header-cache browsing."""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from job_ingest.api.ingest import get_runner
from job_ingest.ingest.runner import IngestionRunner
from job_ingest.schemas import BackfillAction, BackfillOut, BackfillStateOut, HeaderCacheOut

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/email", tags=["backfill"])


def _progress_percent(highest: Optional[int], lowest: Optional[int]) -> Optional[float]:
    """Share of the crawl done, counting down from ``highest`` to UID 1."""
    if not highest or not lowest:
        return None
    span = highest - 1
    if span <= 0:
        return 0.0
    return round((highest - lowest) / span * 100, 2)


def _backfill_out(runner: IngestionRunner) -> BackfillOut:
    state = runner.store.get_backfill_state(runner.config.imap_mailbox)
    decisions = runner.store.header_decision_counts()
    if state is None:
        return BackfillOut(decisions=decisions)
    return BackfillOut(
        active=state.active,
        initialized=state.initialized,
        percent=_progress_percent(state.highest_uid_seen, state.lowest_uid_processed),
        state=BackfillStateOut.model_validate(state),
        decisions=decisions,
    )


@router.get("/backfill", response_model=BackfillOut)
def backfill_status(runner: IngestionRunner = Depends(get_runner)) -> BackfillOut:
    return _backfill_out(runner)


@router.post("/backfill", response_model=BackfillOut)
def toggle_backfill(
    body: BackfillAction,
    runner: IngestionRunner = Depends(get_runner),
) -> BackfillOut:
    """Start or pause the historical header crawl. Slices run during ingest cycles."""
    active = body.action == "start"
    runner.store.set_backfill_active(runner.config.imap_mailbox, active)
    runner.log.event("backfill", "activated" if active else "paused", detail="api")
    logger.info("backfill_toggled", action=body.action)
    return _backfill_out(runner)


@router.get("/header-cache", response_model=list[HeaderCacheOut])
def list_header_cache(
    decision: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    runner: IngestionRunner = Depends(get_runner),
) -> list[HeaderCacheOut]:
    rows = runner.store.header_cache(decision=decision, limit=limit, offset=offset)
    return [HeaderCacheOut.model_validate(row) for row in rows]

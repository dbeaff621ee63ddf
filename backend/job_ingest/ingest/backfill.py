"""Historical backfill: descending, header-only crawl of old mail.

One call to :func:`run_backfill_slice` advances the crawl by at most one
window of ``email_backfill_batch`` UIDs. Envelopes are triaged with the
header classifier and cached by UID; bodies are only downloaded later by
:func:`promote_headers`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from job_ingest.config import AppConfig
from job_ingest.email.classifier import HEADER_MODEL_VERSION, DetailLevel, classify_at
from job_ingest.email.client import DebugHook, FetchFields, MailboxClient
from job_ingest.email.parser import parse_message
from job_ingest.errors import BackfillError, IngestError
from job_ingest.ingest_log import IngestionLog
from job_ingest.models import HeaderCacheEntry
from job_ingest.store import EmailStore

logger = structlog.get_logger(__name__)

MailboxFactory = Callable[[AppConfig, Optional[DebugHook]], MailboxClient]


@dataclass
class BackfillSliceResult:
    ran: bool = False
    begin_uid: Optional[int] = None
    end_uid: Optional[int] = None
    inserted: int = 0
    completed: bool = False


def _initialize(store: EmailStore, log: IngestionLog, config: AppConfig, client: MailboxClient) -> int:
    """Capture the mailbox UID ceiling.

    ``lowest_uid_processed`` stays unset until the first window commits, so a
    failed first slice retries from the ceiling.
    """
    mailbox = config.imap_mailbox
    highest = client.highest_uid()
    if highest > 0:
        store.update_backfill_state(mailbox, highest_uid_seen=highest, lowest_uid_processed=None)
        log.event("backfill", "init", detail=f"highest={highest}")
    else:
        store.update_backfill_state(mailbox, highest_uid_seen=0, lowest_uid_processed=0, active=False)
        log.event("backfill", "init_zero", detail="no messages present")
    return highest


def run_backfill_slice(
    store: EmailStore,
    log: IngestionLog,
    config: AppConfig,
    mailbox_factory: MailboxFactory = MailboxClient,
) -> BackfillSliceResult:
    """Run one descending slice if the crawl is active.

    Raises:
        BackfillError: when the slice could not complete. The cursor is
            left untouched so the next cycle retries the same window.
    """
    mailbox = config.imap_mailbox
    result = BackfillSliceResult()
    state = store.get_backfill_state(mailbox)
    if state is None or not state.active:
        return result

    lowest = state.lowest_uid_processed
    if state.initialized and lowest is not None and lowest <= 1:
        store.update_backfill_state(mailbox, active=False)
        log.event("backfill", "complete", detail="reached_uid_1")
        result.completed = True
        return result

    result.ran = True
    try:
        with mailbox_factory(config, log.imap_debug) as client:
            if not state.initialized:
                highest = _initialize(store, log, config, client)
                if highest <= 0:
                    result.completed = True
                    return result
                end_uid = highest
            elif lowest is None:
                end_uid = state.highest_uid_seen or 0
            else:
                end_uid = lowest - 1

            if end_uid <= 0:
                store.update_backfill_state(mailbox, active=False, lowest_uid_processed=1)
                log.event("backfill", "complete", detail="start_uid<=0")
                result.completed = True
                return result

            begin_uid = max(1, end_uid - config.email_backfill_batch + 1)
            result.begin_uid, result.end_uid = begin_uid, end_uid
            log.event("backfill", "slice_start", detail=f"range={begin_uid}-{end_uid}")

            fetched = sorted(
                client.fetch(f"{begin_uid}:{end_uid}", FetchFields.ENVELOPE),
                key=lambda m: m.uid,
                reverse=True,
            )
    except IngestError as exc:
        stage = "slice_fail" if state.initialized else "init_connect_fail"
        log.event("backfill", "error", detail=f"{stage}: {exc}")
        raise BackfillError(str(exc)) from exc

    already = store.cached_uids(m.uid for m in fetched)
    entries = []
    for message in fetched:
        if message.uid in already or message.envelope is None:
            continue
        envelope = message.envelope
        verdict = classify_at(DetailLevel.HEADERS_ONLY, envelope.subject, sender=envelope.from_email)
        entries.append(
            HeaderCacheEntry(
                uid=message.uid,
                subject=envelope.subject,
                from_email=envelope.from_email,
                date=envelope.date,
                size=message.size,
                decision=verdict.decision.value,
                score=verdict.score,
                reason=verdict.reason,
                model_version=HEADER_MODEL_VERSION,
                promoted=False,
            )
        )
    result.inserted = store.insert_headers(entries)

    updates: dict[str, object] = {"lowest_uid_processed": begin_uid}
    if begin_uid <= 1:
        updates["active"] = False
        result.completed = True
    store.update_backfill_state(mailbox, **updates)
    log.event(
        "backfill",
        "slice_end",
        detail=f"range={begin_uid}-{end_uid}; inserted={result.inserted}",
    )
    if result.completed:
        log.event("backfill", "complete", detail="reached_uid_1")
    logger.info(
        "backfill_slice_done",
        begin=begin_uid,
        end=end_uid,
        inserted=result.inserted,
        completed=result.completed,
    )
    return result


def promote_headers(
    store: EmailStore,
    log: IngestionLog,
    config: AppConfig,
    limit: int = 20,
    mailbox_factory: MailboxFactory = MailboxClient,
) -> int:
    """Download full sources for ``relevant`` cached headers and store them.

    Returns the number of messages that passed the relevance gate and were
    stored. Every examined UID is marked promoted.
    """
    uids = store.unpromoted_relevant_uids(limit)
    if not uids:
        return 0

    stored = 0
    mailbox = config.imap_mailbox
    with mailbox_factory(config, log.imap_debug) as client:
        for uid in uids:
            log.event("backfill", "promote_start", uid=uid)
            try:
                fetched = client.fetch_message(uid)
                if fetched is None or not fetched.source:
                    log.event("backfill", "promote_skip", uid=uid, detail="no source")
                    store.mark_promoted(uid)
                    continue
                parsed = parse_message(fetched.source)
            except IngestError as exc:
                log.event("backfill", "promote_error", uid=uid, detail=str(exc))
                continue
            outcome = store.upsert_email(
                parsed, uid, mailbox, include_alerts=config.email_include_alerts
            )
            store.mark_promoted(uid)
            if outcome.stored:
                stored += 1
    log.event("backfill", "promote_end", detail=f"examined={len(uids)}; stored={stored}")
    return stored

"""Run-once ingestion cycle: incremental sync, enrichment, one backfill slice."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker

from job_ingest.config import AppConfig, get_config, hydrate_from_store
from job_ingest.database import ensure_schema, init_db, load_stored_config
from job_ingest.email.client import MailboxClient
from job_ingest.email.parser import parse_message
from job_ingest.enrichment.llm import CompletionClient, create_completion_client
from job_ingest.enrichment.pipeline import enrich_pending
from job_ingest.errors import (
    BackfillError,
    ConfigError,
    MailboxConnectionError,
    MessageParseError,
)
from job_ingest.ingest.backfill import MailboxFactory, run_backfill_slice
from job_ingest.ingest_log import IngestionLog
from job_ingest.logging_config import bind_cycle, clear_cycle
from job_ingest.store import EmailStore

logger = structlog.get_logger(__name__)


@dataclass
class IngestSummary:
    """Result summary after one ingestion cycle."""

    processed: int = 0
    stored: int = 0
    skipped: int = 0
    errors: int = 0
    dead_lettered: int = 0
    last_uid: int = 0
    enriched: int = 0
    backfill_inserted: int = 0
    aborted: Optional[str] = None
    run_id: Optional[str] = None
    error_details: list[str] = field(default_factory=list)


class IngestionRunner:
    """Owns everything one process needs to run ingestion cycles.

    Per-run state (protocol debug cap, counters) lives on the instance
    and is reset at the start of every :meth:`run_once`.
    """

    def __init__(
        self,
        config: AppConfig,
        session_factory: Optional[sessionmaker[Session]] = None,
        *,
        mailbox_factory: MailboxFactory = MailboxClient,
        completion: Optional[CompletionClient] = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory or init_db(config)
        self.mailbox_factory = mailbox_factory
        self._completion = completion
        self.log = IngestionLog(
            self.session_factory,
            debug_max=config.email_imap_debug_max,
            verbose=config.email_imap_verbose,
        )
        self.store = EmailStore(self.session_factory, self.log)

    def _effective_config(self) -> AppConfig:
        return hydrate_from_store(self.config, load_stored_config(self.session_factory))

    def _completion_client(self, config: AppConfig) -> Optional[CompletionClient]:
        if not config.enrichment_enabled:
            return None
        if self._completion is None:
            self._completion = create_completion_client(config)
        return self._completion

    # ── Cycle ─────────────────────────────────────────────

    def run_once(self) -> IngestSummary:
        """Run one complete cycle.

        Configuration and connection problems abort the cycle and are
        reported in the summary. Anything unexpected is logged as fatal
        and re-raised.
        """
        summary = IngestSummary(run_id=bind_cycle(self.config.imap_mailbox))
        try:
            return self._run_cycle(summary)
        finally:
            clear_cycle()

    def _run_cycle(self, summary: IngestSummary) -> IngestSummary:
        ensure_schema(self.session_factory.kw["bind"])
        self.log.event("schema", "ensured")
        self.log.reset_run()
        self.log.event("run", "start", detail="ingest cycle start")

        try:
            config = self._effective_config()
            self.store.ensure_mailbox(config.imap_mailbox)
            try:
                self._validate(config)
            except ConfigError as exc:
                summary.aborted = "env"
                self.log.event("run", "error", detail=f"env_validation_failed: {exc}")
                self.log.event("run", "end", detail="aborted (env)")
                logger.warning("ingest_aborted", reason="config", missing=exc.missing)
                return summary

            self.log.event(
                "run",
                "config",
                detail=(
                    f"imap_debug_max={config.email_imap_debug_max}; "
                    f"verbose={str(config.email_imap_verbose).lower()}"
                ),
            )

            try:
                self._sync(config, summary)
            except MailboxConnectionError as exc:
                summary.aborted = "imap_connect"
                self.log.event("imap", "error", detail=str(exc))
                self.log.event("run", "end", detail="aborted (imap_connect)")
                logger.warning("ingest_aborted", reason="imap_connect", error=str(exc))
                return summary

            try:
                enrichment = enrich_pending(
                    self.store, self.log, self._completion_client(config), config
                )
                summary.enriched = enrichment.parsed
            except Exception as exc:
                self.log.event("parse", "error", detail=f"openai_enrich_fail: {exc}")

            try:
                result = run_backfill_slice(self.store, self.log, config, self.mailbox_factory)
                summary.backfill_inserted = result.inserted
            except BackfillError:
                pass  # already recorded by the slice
            except Exception as exc:
                self.log.event("backfill", "error", detail=f"slice_fail: {exc}")

            summary.last_uid = self.store.get_sync_state(config.imap_mailbox)
            self.log.event("run", "end", detail="ingest cycle end")
        except Exception as exc:
            self.log.event("run", "error", detail=f"fatal: {exc}")
            self.log.event("run", "end", detail="ingest cycle end (fatal)")
            logger.exception("ingest_fatal")
            raise

        logger.info(
            "ingest_cycle_done",
            processed=summary.processed,
            stored=summary.stored,
            skipped=summary.skipped,
            errors=summary.errors,
            last_uid=summary.last_uid,
        )
        return summary

    @staticmethod
    def _validate(config: AppConfig) -> None:
        missing = config.missing_imap_fields()
        if missing:
            raise ConfigError(missing)

    # ── Incremental sync ──────────────────────────────────

    def _sync(self, config: AppConfig, summary: IngestSummary) -> None:
        mailbox = config.imap_mailbox
        last_uid = self.store.get_sync_state(mailbox)
        limit = config.effective_initial_limit if last_uid == 0 else config.imap_batch_limit

        with self.mailbox_factory(config, self.log.imap_debug) as client:
            self.log.event("imap", "connected", detail=f"{config.imap_host}:{config.imap_port}")
            status = client.status
            self.log.event(
                "imap",
                "mailbox_open",
                detail=f"{mailbox} exists={status.exists if status else '?'}",
            )

            if last_uid > 0:
                uid_range = f"{last_uid + 1}:*"
            else:
                highest = client.highest_uid()
                if highest:
                    start_uid = max(1, highest - limit + 1)
                else:
                    exists = status.exists if status else 0
                    start_uid = max(1, (exists or limit) - limit + 1)
                uid_range = f"{start_uid}:*"
                self.log.event("search", "initial_window", detail=f"uid_window={uid_range}")

            self.log.event("search", "criteria", detail=f'{{"uid": "{uid_range}"}}')
            self.log.event("search", "start", detail="iterating via fetch()")

            # "N:*" always matches the newest message, even when N is past it.
            uids = [uid for uid in client.search_uids(uid_range) if uid > last_uid][:limit]
            held = False
            processed_uid = 0
            for uid in uids:
                try:
                    ok = self._process_uid(client, config, uid, summary)
                except MailboxConnectionError as exc:
                    self.log.event("imap", "error", uid=uid, detail=f"connection_lost: {exc}")
                    break
                if not ok:
                    held = True
                elif not held:
                    self.store.advance_sync_state(mailbox, uid)
                processed_uid = uid
                summary.processed += 1

            self.log.event(
                "search",
                "found",
                uid=processed_uid or None,
                detail=f"processed {summary.processed} messages",
            )

    def _process_uid(
        self, client: MailboxClient, config: AppConfig, uid: int, summary: IngestSummary
    ) -> bool:
        """Fetch, parse and store one UID. Returns True when the cursor may pass it."""
        mailbox = config.imap_mailbox
        self.log.event("fetch", "start", uid=uid, detail="fetching source")
        try:
            fetched = client.fetch_message(uid)
            if fetched is None or not fetched.source:
                raise MessageParseError("no source", uid=uid)
            parsed = parse_message(fetched.source)
        except MessageParseError as exc:
            return self._handle_failure(config, uid, exc, summary)

        outcome = self.store.upsert_email(
            parsed, uid, mailbox, include_alerts=config.email_include_alerts
        )
        self.store.clear_fetch_failure(mailbox, uid)
        if outcome.stored:
            summary.stored += 1
        else:
            summary.skipped += 1
        return True

    def _handle_failure(
        self, config: AppConfig, uid: int, exc: Exception, summary: IngestSummary
    ) -> bool:
        summary.errors += 1
        summary.error_details.append(f"uid {uid}: {exc}")
        self.log.event("fetch", "error", uid=uid, detail=f"parse_fail: {exc}")
        failure = self.store.record_fetch_failure(
            config.imap_mailbox, uid, str(exc), config.email_max_fetch_attempts
        )
        if failure.dead_lettered:
            summary.dead_lettered += 1
            self.log.event(
                "fetch",
                "dead_letter",
                uid=uid,
                detail=f"attempts={failure.attempts}; advancing past uid",
            )
            logger.warning("uid_dead_lettered", uid=uid, attempts=failure.attempts)
            return True
        logger.warning("uid_fetch_failed", uid=uid, attempts=failure.attempts, error=str(exc))
        return False


def run_once(config: Optional[AppConfig] = None) -> IngestSummary:
    """Build a runner from configuration and execute a single cycle."""
    return IngestionRunner(config or get_config()).run_once()

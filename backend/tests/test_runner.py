"""End-to-end ingestion cycles against an in-memory mailbox."""

from __future__ import annotations

import pytest
import structlog
from pydantic import SecretStr
from sqlalchemy import func, select

from conftest import FakeMailbox, applied_message, newsletter
from job_ingest.database import session_scope
from job_ingest.enrichment.llm import Completion, Usage
from job_ingest.ingest.runner import IngestionRunner
from job_ingest.models import FetchFailure, StoredEmail


def _events(runner: IngestionRunner, phase: str, status: str | None = None):
    entries = reversed(runner.log.recent_logs(limit=1000))
    return [e for e in entries if e.phase == phase and (status is None or e.status == status)]


def _mailbox(uids, applied=(), **kwargs) -> FakeMailbox:
    return FakeMailbox(
        {uid: applied_message(uid) if uid in applied else newsletter(uid) for uid in uids},
        **kwargs,
    )


class StubCompletion:
    def __init__(self) -> None:
        self.calls = 0

    def complete(self, model, messages, temperature, max_tokens):
        self.calls += 1
        return Completion(
            content='{"company": "Acme", "role": "Software Engineer"}',
            usage=Usage(prompt_tokens=100, completion_tokens=50, total_tokens=150),
        )


class TestIncrementalSync:
    def test_new_uids_processed_and_cursor_advanced(self, config, session_factory, store):
        store.advance_sync_state("INBOX", 100)
        mailbox = _mailbox(range(101, 106), applied={103})
        runner = IngestionRunner(config, session_factory, mailbox_factory=mailbox)

        summary = runner.run_once()

        assert summary.aborted is None
        assert summary.processed == 5
        assert summary.stored == 1
        assert summary.skipped == 4
        assert summary.last_uid == 105
        assert store.get_sync_state("INBOX") == 105
        assert mailbox.fetched == [101, 102, 103, 104, 105]
        assert [e.uid for e in _events(runner, "fetch", "start")] == [101, 102, 103, 104, 105]
        assert len(_events(runner, "fetch", "skip_non_relevant")) == 4
        assert _events(runner, "run", "end")[-1].detail == "ingest cycle end"
        assert mailbox.logouts == 1

    def test_second_run_with_no_new_mail_is_a_no_op(self, config, session_factory, store):
        mailbox = _mailbox(range(101, 104), applied={103})
        runner = IngestionRunner(config, session_factory, mailbox_factory=mailbox)
        runner.run_once()

        summary = runner.run_once()

        assert summary.processed == 0
        assert summary.last_uid == 103
        with session_scope(session_factory) as session:
            assert session.execute(select(func.count(StoredEmail.id))).scalar() == 1

    def test_initial_window_capped(self, config, session_factory, store):
        config = config.model_copy(update={"imap_batch_limit": 10, "imap_max_initial_sync": 5})
        mailbox = _mailbox(range(1, 31))
        runner = IngestionRunner(config, session_factory, mailbox_factory=mailbox)

        summary = runner.run_once()

        assert summary.processed == 5
        assert mailbox.fetched == [26, 27, 28, 29, 30]
        assert _events(runner, "search", "initial_window")[0].detail == "uid_window=26:*"
        assert store.get_sync_state("INBOX") == 30

    def test_batch_limit_bounds_one_cycle(self, config, session_factory, store):
        config = config.model_copy(update={"imap_batch_limit": 2})
        store.advance_sync_state("INBOX", 100)
        runner = IngestionRunner(
            config, session_factory, mailbox_factory=_mailbox(range(101, 106))
        )

        assert runner.run_once().last_uid == 102
        assert runner.run_once().last_uid == 104
        assert runner.run_once().last_uid == 105


class TestPoisonMessages:
    def test_failed_uid_holds_cursor_until_dead_lettered(self, config, session_factory, store):
        store.advance_sync_state("INBOX", 100)
        mailbox = _mailbox(range(101, 106), applied={103}, broken={102})
        runner = IngestionRunner(config, session_factory, mailbox_factory=mailbox)

        first = runner.run_once()
        assert first.errors == 1
        assert first.processed == 5
        assert store.get_sync_state("INBOX") == 101

        runner.run_once()
        assert store.get_sync_state("INBOX") == 101

        third = runner.run_once()
        assert third.dead_lettered == 1
        assert store.get_sync_state("INBOX") == 105
        assert store.is_dead_lettered("INBOX", 102)
        assert len(_events(runner, "fetch", "dead_letter")) == 1
        assert len(_events(runner, "fetch", "error")) == 3
        with session_scope(session_factory) as session:
            assert session.execute(select(func.count(StoredEmail.id))).scalar() == 1

    def test_recovered_uid_clears_failure(self, config, session_factory, store):
        store.advance_sync_state("INBOX", 100)
        mailbox = _mailbox(range(101, 104), broken={102})
        runner = IngestionRunner(config, session_factory, mailbox_factory=mailbox)

        runner.run_once()
        assert store.get_sync_state("INBOX") == 101

        mailbox.broken.clear()
        runner.run_once()

        assert store.get_sync_state("INBOX") == 103
        with session_scope(session_factory) as session:
            assert session.get(FetchFailure, ("INBOX", 102)) is None


class TestAborts:
    def test_missing_settings_abort_before_connecting(self, config, session_factory):
        config = config.model_copy(update={"imap_host": ""})
        mailbox = _mailbox(range(1, 4))
        runner = IngestionRunner(config, session_factory, mailbox_factory=mailbox)

        summary = runner.run_once()

        assert summary.aborted == "env"
        assert mailbox.connects == 0
        error = _events(runner, "run", "error")[-1]
        assert error.detail.startswith("env_validation_failed")
        assert "IMAP_HOST" in error.detail
        assert _events(runner, "run", "end")[-1].detail == "aborted (env)"

    def test_connect_failure_aborts_cycle(self, config, session_factory, store):
        runner = IngestionRunner(
            config, session_factory, mailbox_factory=FakeMailbox(fail_connect=True)
        )

        summary = runner.run_once()

        assert summary.aborted == "imap_connect"
        assert store.get_sync_state("INBOX") == 0
        assert _events(runner, "imap", "error")
        assert _events(runner, "run", "end")[-1].detail == "aborted (imap_connect)"

    def test_unexpected_error_logged_and_reraised(self, config, session_factory):
        def exploding_factory(config, on_debug=None):
            raise RuntimeError("kaboom")

        runner = IngestionRunner(config, session_factory, mailbox_factory=exploding_factory)

        with pytest.raises(RuntimeError, match="kaboom"):
            runner.run_once()

        assert _events(runner, "run", "error")[-1].detail == "fatal: kaboom"
        assert _events(runner, "run", "end")


class TestCycleSteps:
    def test_enrichment_skipped_without_api_key(self, config, session_factory):
        runner = IngestionRunner(config, session_factory, mailbox_factory=_mailbox([1]))
        runner.run_once()
        skipped = _events(runner, "parse", "skip_no_api_key")
        assert skipped and skipped[0].detail == "OPENAI_API_KEY not set"

    def test_stored_emails_enriched_in_same_cycle(self, config, session_factory, store):
        config = config.model_copy(update={"openai_api_key": SecretStr("sk-test")})
        stub = StubCompletion()
        runner = IngestionRunner(
            config,
            session_factory,
            mailbox_factory=_mailbox(range(1, 4), applied={2, 3}),
            completion=stub,
        )

        summary = runner.run_once()

        assert summary.stored == 2
        assert summary.enriched == 2
        assert stub.calls == 2
        assert store.pending_count() == 0

    def test_active_backfill_runs_one_slice(self, config, session_factory, store):
        store.set_backfill_active("INBOX", True)
        runner = IngestionRunner(config, session_factory, mailbox_factory=_mailbox(range(1, 6)))

        summary = runner.run_once()

        assert summary.backfill_inserted == 5
        assert len(store.header_cache()) == 5
        assert not store.get_backfill_state("INBOX").active

    def test_stored_credentials_fill_missing_settings(self, tmp_path, session_factory):
        from job_ingest.config import get_config

        bare = get_config(
            database_url=f"sqlite:///{tmp_path / 'ingest.db'}",
            openai_api_key="",
        )
        runner = IngestionRunner(bare, session_factory, mailbox_factory=_mailbox([1]))
        runner.store.save_email_config(
            host="imap.saved.example", port=993, secure=True, user="me", password="pw", mailbox="INBOX"
        )

        summary = runner.run_once()

        assert summary.aborted is None
        assert summary.processed == 1


class TestCycleContext:
    def test_run_id_bound_during_cycle_and_cleared_after(self, config, session_factory):
        seen = {}
        mailbox = _mailbox([1])

        def factory(cfg, on_debug=None):
            seen.update(structlog.contextvars.get_contextvars())
            return mailbox(cfg, on_debug)

        summary = IngestionRunner(config, session_factory, mailbox_factory=factory).run_once()

        assert summary.run_id
        assert seen == {"run_id": summary.run_id, "mailbox": "INBOX"}
        assert "run_id" not in structlog.contextvars.get_contextvars()

    def test_each_cycle_gets_its_own_run_id(self, config, session_factory):
        runner = IngestionRunner(config, session_factory, mailbox_factory=_mailbox([1]))
        assert runner.run_once().run_id != runner.run_once().run_id

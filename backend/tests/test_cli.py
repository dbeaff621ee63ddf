"""Tests for the ``job-ingest`` command line."""

from __future__ import annotations

import json

import pytest

from conftest import FakeMailbox, applied_message, newsletter
from job_ingest.cli import main
from job_ingest.ingest.runner import IngestionRunner


@pytest.fixture
def runner(config, session_factory) -> IngestionRunner:
    mailbox = FakeMailbox({1: newsletter(1), 2: applied_message(2)})
    return IngestionRunner(config, session_factory, mailbox_factory=mailbox)


def test_run_prints_summary(runner, capsys):
    assert main(["run"], runner=runner) == 0
    out = capsys.readouterr().out
    assert "processed=2 stored=1 skipped=1" in out
    assert "last_uid=2" in out


def test_run_reports_abort(config, session_factory, capsys):
    runner = IngestionRunner(
        config, session_factory, mailbox_factory=FakeMailbox(fail_connect=True)
    )
    assert main(["run"], runner=runner) == 0
    assert "aborted (imap_connect)" in capsys.readouterr().out


def test_backfill_start_then_status(runner, capsys):
    assert main(["backfill", "start"], runner=runner) == 0
    capsys.readouterr()

    assert main(["backfill", "status"], runner=runner) == 0
    out = capsys.readouterr().out
    status = json.loads(out[out.index("{") :])
    assert status["active"] is True
    assert status["highest_uid_seen"] is None


def test_backfill_promote(runner, capsys):
    main(["backfill", "start"], runner=runner)
    runner.run_once()
    capsys.readouterr()

    assert main(["backfill", "promote"], runner=runner) == 0
    assert "promoted_and_stored=" in capsys.readouterr().out


def test_purge_and_reclassify(runner, capsys):
    runner.run_once()
    capsys.readouterr()

    assert main(["reclassify"], runner=runner) == 0
    assert "reclassified=1" in capsys.readouterr().out
    assert main(["purge"], runner=runner) == 0
    assert "purged=0" in capsys.readouterr().out


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        main(["rewind"])

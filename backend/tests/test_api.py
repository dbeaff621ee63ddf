"""HTTP API tests using FastAPI's TestClient."""

from __future__ import annotations

import threading

import pytest
from fastapi.testclient import TestClient

from conftest import FakeMailbox, applied_message, newsletter
from job_ingest.ingest.runner import IngestionRunner
from job_ingest.main import create_app


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox({1: newsletter(1), 2: applied_message(2), 3: newsletter(3)})


@pytest.fixture
def runner(config, session_factory, mailbox) -> IngestionRunner:
    return IngestionRunner(config, session_factory, mailbox_factory=mailbox)


@pytest.fixture
def client(config, runner):
    with TestClient(create_app(config, runner=runner)) as test_client:
        yield test_client


def _run_ingest(client: TestClient) -> None:
    resp = client.post("/api/email/ingest")
    assert resp.status_code == 202
    client.app.state.trigger.wait(timeout=10)


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


class TestIngest:
    def test_trigger_runs_cycle_in_background(self, client):
        resp = client.post("/api/email/ingest")
        assert resp.status_code == 202
        assert resp.json()["running"] is True
        assert resp.json()["message"] == "Ingest started"

        client.app.state.trigger.wait(timeout=10)
        status = client.get("/api/email/ingest/status").json()
        assert status["running"] is False
        assert status["last_error"] is None
        assert status["last_result"]["processed"] == 3
        assert status["last_result"]["stored"] == 1
        assert status["last_result"]["last_uid"] == 3

    def test_second_trigger_while_running(self, config, session_factory):
        gate = threading.Event()
        gated = FakeMailbox({1: newsletter(1)}, gate=gate)
        runner = IngestionRunner(config, session_factory, mailbox_factory=gated)
        with TestClient(create_app(config, runner=runner)) as client:
            first = client.post("/api/email/ingest").json()
            second = client.post("/api/email/ingest").json()
            assert first["message"] == "Ingest started"
            assert second["message"] == "Ingest already running"
            assert client.get("/api/email/ingest/status").json()["running"] is True
            gate.set()
            client.app.state.trigger.wait(timeout=10)
        assert gated.connects == 1

    def test_status_before_any_run(self, client):
        status = client.get("/api/email/ingest/status").json()
        assert status == {
            "running": False,
            "started_at": None,
            "finished_at": None,
            "last_error": None,
            "last_result": None,
        }


class TestLogsAndStats:
    def test_logs_include_run_metrics(self, client):
        _run_ingest(client)
        body = client.get("/api/email/logs", params={"limit": 500}).json()

        pairs = [(log["phase"], log["status"]) for log in body["logs"]]
        assert ("run", "start") in pairs
        assert ("fetch", "stored") in pairs
        stored = next(log for log in body["logs"] if log["status"] == "stored")
        assert stored["class"] == "applied"

        metrics = body["metrics"]
        assert metrics["in_progress"] is False
        assert metrics["fetch"] == {"stored": 1, "skipped_non_relevant": 2, "errors": 0}
        assert metrics["parse"]["pending_queue"] == 1

    def test_logs_limit_validated(self, client):
        assert client.get("/api/email/logs", params={"limit": 0}).status_code == 422

    def test_skipped(self, client):
        _run_ingest(client)
        skipped = client.get("/api/email/skipped").json()
        assert sorted(entry["uid"] for entry in skipped) == [1, 3]

    def test_stats(self, client):
        _run_ingest(client)
        stats = client.get("/api/email/stats").json()
        assert stats["counts"]["total"] == 1
        assert stats["counts"]["pending"] == 1
        assert stats["last_uid"] == 3
        assert stats["classes"] == [{"class": "applied", "count": 1}]


class TestBackfill:
    def test_start_and_pause(self, client):
        started = client.post("/api/email/backfill", json={"action": "start"}).json()
        assert started["active"] is True
        assert started["initialized"] is False

        paused = client.post("/api/email/backfill", json={"action": "pause"}).json()
        assert paused["active"] is False

    def test_unknown_action_rejected(self, client):
        assert client.post("/api/email/backfill", json={"action": "rewind"}).status_code == 422

    def test_slice_visible_after_ingest(self, client):
        client.post("/api/email/backfill", json={"action": "start"})
        _run_ingest(client)

        body = client.get("/api/email/backfill").json()
        assert body["initialized"] is True
        assert body["active"] is False
        assert body["percent"] == 100.0
        assert body["decisions"] == {"skip": 2, "relevant": 1}

        relevant = client.get("/api/email/header-cache", params={"decision": "relevant"}).json()
        assert [entry["uid"] for entry in relevant] == [2]


class TestEmailsAndConfig:
    def test_detail(self, client):
        _run_ingest(client)
        email_id = client.app.state.runner.store.find_by_message_id("applied-2@acme.example").id
        detail = client.get(f"/api/email/detail/{email_id}").json()
        assert detail["uid"] == 2
        assert detail["class"] == "applied"
        assert detail["parse_status"] == "pending"
        assert detail["calls"] == []

    def test_detail_missing(self, client):
        assert client.get("/api/email/detail/999").status_code == 404

    def test_email_config_roundtrip(self, client):
        assert client.get("/api/email-config").json()["has_password"] is False

        saved = client.post(
            "/api/email-config",
            json={"host": "imap.saved.example", "user": "me", "password": "pw"},
        )
        assert saved.status_code == 200
        body = client.get("/api/email-config").json()
        assert body["host"] == "imap.saved.example"
        assert body["port"] == 993
        assert body["has_password"] is True
        assert "password" not in body

        assert client.delete("/api/email-config").status_code == 204
        assert client.get("/api/email-config").json()["host"] is None

    def test_email_config_validation(self, client):
        assert client.post("/api/email-config", json={"host": "", "user": "me", "password": "pw"}).status_code == 422

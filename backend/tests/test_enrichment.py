"""Tests for the enrichment batch and the completion wrapper."""

from __future__ import annotations

import json
import threading

import pytest
from pydantic import SecretStr

from job_ingest.email.parser import ParsedMessage
from job_ingest.enrichment.llm import (
    Completion,
    Usage,
    complete_with_timeout,
    create_completion_client,
)
from job_ingest.enrichment.pipeline import (
    MAX_TOKENS,
    SYSTEM_PROMPT,
    TEMPERATURE,
    enrich_pending,
    estimate_cost,
    parse_completion_json,
)
from job_ingest.errors import EnrichmentError


class StubCompletion:
    """Records every call and replays canned answers."""

    def __init__(self, content='{"company": "Acme"}', usage=None, fail_on=None):
        self.content = content
        self.usage = usage or Usage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
        self.fail_on = fail_on
        self.calls = []

    def complete(self, model, messages, temperature, max_tokens):
        self.calls.append(
            {"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.fail_on and self.fail_on in messages[-1]["content"]:
            raise RuntimeError("rate limited")
        return Completion(content=self.content, usage=self.usage)


class SlowCompletion:
    def __init__(self):
        self.release = threading.Event()

    def complete(self, model, messages, temperature, max_tokens):
        self.release.wait(timeout=5)
        return Completion(content="{}")


def _store_applied(store, n: int, subject: str = "Thank you for applying to Acme") -> int:
    parsed = ParsedMessage(
        message_id=f"<e-{n}@acme.example>",
        date=None,
        subject=subject,
        from_="jobs@acme.example",
        to="me@example.com",
        text="We received your application for the engineer role.",
        html="",
    )
    return store.upsert_email(parsed, n, "INBOX").email_id


@pytest.fixture
def priced_config(config):
    return config.model_copy(
        update={
            "openai_api_key": SecretStr("sk-test"),
            "openai_price_prompt_per_1k": 0.15,
            "openai_price_completion_per_1k": 0.6,
        }
    )


def _statuses(ingest_log):
    return [(e.status, e.detail) for e in reversed(ingest_log.recent_logs(limit=500)) if e.phase == "parse"]


def test_pending_row_enriched_and_costed(store, ingest_log, priced_config):
    email_id = _store_applied(store, 1)
    client = StubCompletion()

    summary = enrich_pending(store, ingest_log, client, priced_config)

    assert summary.parsed == 1 and summary.errors == 0
    assert summary.remaining_pending == 0
    call = client.calls[0]
    assert call["temperature"] == TEMPERATURE == 0.2
    assert call["max_tokens"] == MAX_TOKENS == 300
    assert call["model"] == "gpt-4o-mini"
    assert call["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert "Subject: Thank you for applying to Acme" in call["messages"][1]["content"]

    row, calls = store.email_detail(email_id)
    assert row.parse_status == "parsed"
    assert json.loads(row.parsed_json) == {"company": "Acme"}
    assert row.openai_total_tokens == 150
    assert row.openai_cost_usd == pytest.approx(0.045)
    assert len(calls) == 1 and calls[0].cost_usd == pytest.approx(0.045)

    statuses = [s for s, _ in _statuses(ingest_log)]
    assert statuses[0] == "batch_start"
    assert "parsed" in statuses
    assert _statuses(ingest_log)[-1] == ("batch_end", "remaining_pending=0")


def test_unparseable_answer_kept_raw(store, ingest_log, priced_config):
    email_id = _store_applied(store, 1)
    enrich_pending(store, ingest_log, StubCompletion(content="Company: Acme"), priced_config)

    row = store.get_email(email_id)
    assert row.parse_status == "parsed"
    assert json.loads(row.parsed_json) == {"raw": "Company: Acme"}


def test_failing_row_marked_error_and_batch_continues(store, ingest_log, priced_config):
    good = _store_applied(store, 1, subject="Thank you for applying to Acme")
    bad = _store_applied(store, 2, subject="Thank you for applying to Globex")
    client = StubCompletion(fail_on="Globex")

    summary = enrich_pending(store, ingest_log, client, priced_config)

    assert summary.parsed == 1 and summary.errors == 1
    assert store.get_email(good).parse_status == "parsed"
    assert store.get_email(bad).parse_status == "error"
    assert ("error", "rate limited") in _statuses(ingest_log)


def test_most_recent_first_and_limit(store, ingest_log, priced_config):
    ids = [_store_applied(store, n, subject=f"Thank you for applying to Co{n}") for n in range(1, 4)]
    client = StubCompletion()

    enrich_pending(store, ingest_log, client, priced_config, limit=2)

    assert len(client.calls) == 2
    assert "Co3" in client.calls[0]["messages"][1]["content"]
    assert "Co2" in client.calls[1]["messages"][1]["content"]
    assert store.get_email(ids[0]).parse_status == "pending"


def test_no_client_skips_batch(store, ingest_log, config):
    _store_applied(store, 1)
    summary = enrich_pending(store, ingest_log, None, config)

    assert summary.skipped_reason == "OPENAI_API_KEY not set"
    assert store.pending_count() == 1
    assert _statuses(ingest_log) == [("skip_no_api_key", "OPENAI_API_KEY not set")]


def test_no_client_without_api_key(config):
    assert create_completion_client(config) is None


def test_hard_timeout_raises():
    slow = SlowCompletion()
    try:
        with pytest.raises(EnrichmentError, match="hard-timeout"):
            complete_with_timeout(
                slow, "m", [{"role": "user", "content": "x"}], temperature=0.2, max_tokens=10, timeout_sec=0.05
            )
    finally:
        slow.release.set()


def test_parse_completion_json_strips_fences():
    assert parse_completion_json('```json\n{"role": "SWE"}\n```') == {"role": "SWE"}
    assert parse_completion_json("") == {"raw": ""}


def test_estimate_cost(priced_config):
    assert estimate_cost(priced_config, 100, 50) == 0.045
    assert estimate_cost(priced_config, 0, 0) == 0.0

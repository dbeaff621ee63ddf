"""Enrichment batch: pending stored emails through the completion capability."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from job_ingest.config import AppConfig
from job_ingest.enrichment.llm import CompletionClient, complete_with_timeout
from job_ingest.ingest_log import IngestionLog
from job_ingest.store import EmailStore, PendingEmail

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = "You extract structured fields from job application related emails."

_USER_PROMPT = (
    "Extract structured job application email info as JSON with keys: company, role, "
    "next_action, action_date(if any), sentiment(one of neutral,positive,negative), "
    "summary(<=160 chars).\nSubject: {subject}\nBody: {body}"
)

TEMPERATURE = 0.2
MAX_TOKENS = 300
BODY_CHARS = 4000
LOG_PAYLOAD_CHARS = 8000

_FENCE_RE = re.compile(r"```json|```")


@dataclass
class EnrichmentSummary:
    """Result of one :func:`enrich_pending` batch."""

    attempted: int = 0
    parsed: int = 0
    errors: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    remaining_pending: int = 0
    skipped_reason: Optional[str] = None


def build_prompt(subject: str, body: str) -> str:
    return _USER_PROMPT.format(subject=subject, body=(body or "")[:BODY_CHARS])


def parse_completion_json(content: str) -> Any:
    """Decode the model's JSON answer, wrapping unparseable text as ``{"raw": ...}``."""
    cleaned = _FENCE_RE.sub("", content or "").strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        return {"raw": content}


def estimate_cost(config: AppConfig, prompt_tokens: int, completion_tokens: int) -> float:
    cost = (prompt_tokens / 1000.0) * config.openai_price_prompt_per_1k + (
        completion_tokens / 1000.0
    ) * config.openai_price_completion_per_1k
    return round(cost, 6)


def _enrich_one(
    row: PendingEmail,
    store: EmailStore,
    log: IngestionLog,
    client: CompletionClient,
    config: AppConfig,
) -> tuple[int, float]:
    log.event("parse", "item_start", uid=row.id, subject=row.subject)
    prompt = build_prompt(row.subject, row.body)
    completion = complete_with_timeout(
        client,
        config.openai_email_model,
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=TEMPERATURE,
        max_tokens=MAX_TOKENS,
        timeout_sec=config.openai_timeout_sec,
    )

    usage = completion.usage
    total_tokens = usage.total_tokens or usage.prompt_tokens + usage.completion_tokens
    cost = estimate_cost(config, usage.prompt_tokens, usage.completion_tokens)
    parsed = parse_completion_json(completion.content)

    store.mark_parsed(
        row.id,
        parsed_json=json.dumps(parsed),
        model=config.openai_email_model,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_tokens=total_tokens,
        cost_usd=cost,
        request_json=json.dumps({"system": SYSTEM_PROMPT, "user": prompt[:LOG_PAYLOAD_CHARS]}),
        response_json=json.dumps({"content": completion.content[:LOG_PAYLOAD_CHARS]}),
    )
    log.event(
        "parse",
        "parsed",
        uid=row.id,
        subject=row.subject,
        detail=(
            f"tokens prompt={usage.prompt_tokens} completion={usage.completion_tokens} "
            f"total={total_tokens} cost=${cost}"
        ),
    )
    return total_tokens, cost


def enrich_pending(
    store: EmailStore,
    log: IngestionLog,
    client: Optional[CompletionClient],
    config: AppConfig,
    limit: Optional[int] = None,
) -> EnrichmentSummary:
    """Enrich up to *limit* pending emails (most recent first).

    A failing row is marked ``error`` and the batch moves on. Without a
    completion client the whole step is skipped and logged.
    """
    summary = EnrichmentSummary()
    if client is None:
        summary.skipped_reason = "OPENAI_API_KEY not set"
        log.event("parse", "skip_no_api_key", detail=summary.skipped_reason)
        return summary

    rows = store.pending_for_enrichment(limit or config.openai_parse_batch)
    if not rows:
        return summary

    log.event("parse", "batch_start", detail=f"pending_count={len(rows)}")
    for row in rows:
        summary.attempted += 1
        try:
            tokens, cost = _enrich_one(row, store, log, client, config)
        except Exception as exc:
            summary.errors += 1
            logger.warning("enrichment_failed", email_id=row.id, error=str(exc))
            store.mark_error(row.id)
            log.event("parse", "error", uid=row.id, subject=row.subject, detail=str(exc))
            continue
        summary.parsed += 1
        summary.total_tokens += tokens
        summary.cost_usd = round(summary.cost_usd + cost, 6)

    summary.remaining_pending = store.pending_count()
    log.event("parse", "batch_end", detail=f"remaining_pending={summary.remaining_pending}")
    logger.info(
        "enrichment_batch_done",
        parsed=summary.parsed,
        errors=summary.errors,
        remaining=summary.remaining_pending,
    )
    return summary

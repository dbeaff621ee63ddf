"""Pydantic schemas for API request/response validation."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field


# ── Ingest trigger ────────────────────────────────────────


class IngestTriggerOut(BaseModel):
    running: bool
    started_at: Optional[datetime] = None
    message: str


class IngestResultOut(BaseModel):
    """Summary of the last completed cycle."""

    processed: int = 0
    stored: int = 0
    skipped: int = 0
    errors: int = 0
    dead_lettered: int = 0
    last_uid: int = 0
    enriched: int = 0
    backfill_inserted: int = 0
    aborted: Optional[str] = None


class IngestStatusOut(BaseModel):
    running: bool
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Optional[IngestResultOut] = None


# ── Log ───────────────────────────────────────────────────


class IngestionLogOut(BaseModel):
    id: int
    created_at: datetime
    phase: Optional[str] = None
    status: Optional[str] = None
    uid: Optional[int] = None
    message_id: Optional[str] = None
    subject: Optional[str] = None
    cls: Optional[str] = Field(None, serialization_alias="class")
    vendor: Optional[str] = None
    detail: Optional[str] = None

    model_config = {"from_attributes": True}


class FetchCountsOut(BaseModel):
    stored: int
    skipped_non_relevant: int
    errors: int


class ParseCountsOut(BaseModel):
    parsed: int
    errors: int
    pending_queue: int


class OpenAiUsageOut(BaseModel):
    tokens: int
    cost_usd: float


class ProtocolOut(BaseModel):
    count: int
    verbose: bool


class RunMetricsOut(BaseModel):
    start: datetime
    end: Optional[datetime] = None
    in_progress: bool
    current: Optional[str] = None
    duration_ms: Optional[int] = None
    fetch: FetchCountsOut
    parse: ParseCountsOut
    openai: OpenAiUsageOut
    protocol: ProtocolOut


class LogsOut(BaseModel):
    logs: List[IngestionLogOut]
    metrics: Optional[RunMetricsOut] = None


# ── Stats ─────────────────────────────────────────────────


class StatusCountsOut(BaseModel):
    total: int
    parsed: int
    pending: int
    error: int


class VendorCount(BaseModel):
    vendor: str
    count: int


class ClassCount(BaseModel):
    cls: str = Field(..., serialization_alias="class")
    count: int


class CostOut(BaseModel):
    total_usd: float
    avg_per_email_usd: float
    total_tokens: int


class EmailStatsOut(BaseModel):
    counts: StatusCountsOut
    last_parsed_at: Optional[datetime] = None
    last_email_date: Optional[datetime] = None
    last_uid: Optional[int] = None
    vendors: List[VendorCount]
    classes: List[ClassCount]
    cost: CostOut


# ── Backfill ──────────────────────────────────────────────


class BackfillStateOut(BaseModel):
    mailbox: str
    highest_uid_seen: Optional[int] = None
    lowest_uid_processed: Optional[int] = None
    active: bool = False
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_version: Optional[str] = None

    model_config = {"from_attributes": True}


class BackfillOut(BaseModel):
    active: bool = False
    initialized: bool = False
    percent: Optional[float] = None
    state: Optional[BackfillStateOut] = None
    decisions: dict[str, int] = Field(default_factory=dict)


class BackfillAction(BaseModel):
    """Request body for toggling the backfill crawl."""

    action: Literal["start", "pause"]


class HeaderCacheOut(BaseModel):
    uid: int
    subject: Optional[str] = None
    from_email: Optional[str] = None
    date: Optional[datetime] = None
    size: Optional[int] = None
    decision: str
    score: float
    reason: Optional[str] = None
    model_version: Optional[str] = None
    promoted: bool = False
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Email detail / credentials ────────────────────────────


class OpenAiCallOut(BaseModel):
    id: int
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class EmailDetailOut(BaseModel):
    id: int
    message_id: str
    uid: Optional[int] = None
    mailbox: Optional[str] = None
    date: Optional[datetime] = None
    subject: Optional[str] = None
    from_email: Optional[str] = None
    to_email: Optional[str] = None
    vendor: Optional[str] = None
    cls: Optional[str] = Field(None, serialization_alias="class")
    classification_confidence: Optional[float] = None
    classification_reason: Optional[str] = None
    body: Optional[str] = None
    parse_status: str
    parsed_at: Optional[datetime] = None
    parsed_json: Any = None
    openai_model: Optional[str] = None
    openai_cost_usd: Optional[float] = None
    calls: List[OpenAiCallOut] = Field(default_factory=list)


class EmailConfigIn(BaseModel):
    """Stored IMAP credentials; used when the environment does not set them."""

    host: str = Field(..., min_length=1, max_length=300)
    port: int = Field(993, ge=1, le=65535)
    secure: bool = True
    user: str = Field(..., min_length=1, max_length=300)
    password: str = Field(..., min_length=1, max_length=500)
    mailbox: str = Field("INBOX", min_length=1, max_length=200)


class EmailConfigOut(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    secure: Optional[bool] = None
    user: Optional[str] = None
    mailbox: Optional[str] = None
    has_password: bool = False
    updated_at: Optional[datetime] = None

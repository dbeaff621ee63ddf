"""Stored email detail and persisted IMAP credential endpoints."""

from __future__ import annotations

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException

from job_ingest.api.ingest import get_runner
from job_ingest.database import load_stored_config
from job_ingest.ingest.runner import IngestionRunner
from job_ingest.schemas import EmailConfigIn, EmailConfigOut, EmailDetailOut, OpenAiCallOut

logger = structlog.get_logger(__name__)
router = APIRouter(tags=["emails"])


@router.get("/api/email/detail/{email_id}", response_model=EmailDetailOut)
def email_detail(email_id: int, runner: IngestionRunner = Depends(get_runner)) -> EmailDetailOut:
    found = runner.store.email_detail(email_id)
    if found is None:
        raise HTTPException(status_code=404, detail="Email not found")
    row, calls = found

    parsed_json = None
    if row.parsed_json:
        try:
            parsed_json = json.loads(row.parsed_json)
        except ValueError:
            parsed_json = {"raw": row.parsed_json}

    return EmailDetailOut(
        id=row.id,
        message_id=row.message_id,
        uid=row.uid,
        mailbox=row.mailbox,
        date=row.date,
        subject=row.subject,
        from_email=row.from_email,
        to_email=row.to_email,
        vendor=row.vendor,
        cls=row.cls,
        classification_confidence=row.classification_confidence,
        classification_reason=row.classification_reason,
        body=row.body,
        parse_status=row.parse_status,
        parsed_at=row.parsed_at,
        parsed_json=parsed_json,
        openai_model=row.openai_model,
        openai_cost_usd=row.openai_cost_usd,
        calls=[OpenAiCallOut.model_validate(call) for call in calls],
    )


@router.get("/api/email-config", response_model=EmailConfigOut)
def get_email_config(runner: IngestionRunner = Depends(get_runner)) -> EmailConfigOut:
    """Persisted IMAP credentials (the password itself is never returned)."""
    row = load_stored_config(runner.session_factory)
    if row is None:
        return EmailConfigOut()
    return EmailConfigOut(
        host=row.host,
        port=row.port,
        secure=row.secure,
        user=row.user,
        mailbox=row.mailbox,
        has_password=bool(row.password),
        updated_at=row.updated_at,
    )


@router.post("/api/email-config", response_model=EmailConfigOut)
def save_email_config(
    body: EmailConfigIn, runner: IngestionRunner = Depends(get_runner)
) -> EmailConfigOut:
    row = runner.store.save_email_config(**body.model_dump())
    logger.info("email_config_saved", host=row.host, user=row.user)
    return EmailConfigOut(
        host=row.host,
        port=row.port,
        secure=row.secure,
        user=row.user,
        mailbox=row.mailbox,
        has_password=True,
        updated_at=row.updated_at,
    )


@router.delete("/api/email-config", status_code=204)
def delete_email_config(runner: IngestionRunner = Depends(get_runner)) -> None:
    runner.store.clear_email_config()
    logger.info("email_config_cleared")

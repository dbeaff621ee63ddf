"""Shared fixtures: file-backed SQLite under tmp_path, fake mailbox, message builders."""

from __future__ import annotations

import threading
from email.message import EmailMessage
from email.utils import format_datetime
from datetime import datetime, timezone
from typing import Iterator, Optional

import pytest
from sqlalchemy.orm import Session, sessionmaker

from job_ingest.config import AppConfig, get_config
from job_ingest.database import init_db
from job_ingest.email.client import FetchedMessage, FetchFields, MailboxStatus
from job_ingest.email.parser import parse_envelope
from job_ingest.errors import MailboxConnectionError
from job_ingest.ingest_log import IngestionLog
from job_ingest.store import EmailStore


def make_message(
    subject: str,
    body: str,
    *,
    message_id: Optional[str] = None,
    sender: str = "Acme Careers <no-reply@acme.example>",
    to: str = "me@example.com",
    date: Optional[datetime] = None,
    html: Optional[str] = None,
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Date"] = format_datetime(date or datetime(2025, 8, 1, 12, 0, tzinfo=timezone.utc))
    if message_id is not None:
        msg["Message-ID"] = message_id
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


def newsletter(uid: int) -> bytes:
    return make_message(
        f"Weekly roundup #{uid}",
        "Here is what happened in the community this week. Enjoy the reading list.",
        message_id=f"<roundup-{uid}@news.example>",
        sender="News <news@news.example>",
    )


def applied_message(uid: int, company: str = "Acme") -> bytes:
    return make_message(
        f"Thank you for applying to {company} - Software Engineer",
        f"Thank you for applying to {company}. We received your application for the "
        "Software Engineer position and will be in touch.",
        message_id=f"<applied-{uid}@{company.lower()}.example>",
    )


class FakeMailbox:
    """In-memory stand-in for :class:`MailboxClient`.

    Instances are also usable as the runner's ``mailbox_factory``.
    """

    def __init__(
        self,
        messages: Optional[dict[int, bytes]] = None,
        *,
        broken: Optional[set[int]] = None,
        fail_connect: bool = False,
        gate: Optional[threading.Event] = None,
    ) -> None:
        self.messages = dict(messages or {})
        self.broken = set(broken or ())
        self.fail_connect = fail_connect
        self.gate = gate
        self.connects = 0
        self.logouts = 0
        self.fetched: list[int] = []
        self.status: Optional[MailboxStatus] = None

    def __call__(self, config: AppConfig, on_debug=None) -> "FakeMailbox":
        self.mailbox_name = config.imap_mailbox
        return self

    def __enter__(self) -> "FakeMailbox":
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.fail_connect:
            raise MailboxConnectionError("connect failed: connection refused")
        self.connects += 1
        highest = self.highest_uid()
        self.status = MailboxStatus(
            name=getattr(self, "mailbox_name", "INBOX"),
            exists=len(self.messages),
            uid_next=highest + 1,
        )
        return self

    def __exit__(self, *exc: object) -> None:
        self.logouts += 1

    def highest_uid(self) -> int:
        return max(self.messages) if self.messages else 0

    def _range(self, uid_range: str) -> list[int]:
        uids = sorted(self.messages)
        if ":" not in uid_range:
            wanted = int(uid_range)
            return [wanted] if wanted in self.messages else []
        low_s, high_s = uid_range.split(":", 1)
        low = int(low_s)
        if high_s == "*":
            found = [u for u in uids if u >= low]
            # IMAP: "N:*" always includes the highest UID
            if not found and uids:
                found = [uids[-1]]
            return found
        high = int(high_s)
        low, high = min(low, high), max(low, high)
        return [u for u in uids if low <= u <= high]

    def search_uids(self, uid_range: Optional[str]) -> list[int]:
        if uid_range is None:
            return sorted(self.messages)
        return self._range(uid_range)

    def fetch(self, uid_range: str, fields: FetchFields) -> Iterator[FetchedMessage]:
        for uid in self._range(uid_range):
            raw = self.messages[uid]
            if fields is FetchFields.ENVELOPE:
                yield FetchedMessage(uid=uid, envelope=parse_envelope(raw), size=len(raw))
            elif uid in self.broken:
                yield FetchedMessage(uid=uid, source=None)
            else:
                yield FetchedMessage(uid=uid, source=raw, size=len(raw))

    def fetch_message(self, uid: int) -> Optional[FetchedMessage]:
        self.fetched.append(uid)
        for fetched in self.fetch(str(uid), FetchFields.SOURCE):
            return fetched
        return None


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return get_config(
        database_url=f"sqlite:///{tmp_path / 'ingest.db'}",
        imap_host="imap.example.com",
        imap_user="me@example.com",
        imap_pass="secret",
        imap_mailbox="INBOX",
        imap_batch_limit=50,
        imap_max_initial_sync=None,
        email_backfill_batch=100,
        email_include_alerts=False,
        email_imap_verbose=False,
        email_max_fetch_attempts=3,
        openai_api_key="",
        log_file=None,
    )


@pytest.fixture
def session_factory(config: AppConfig) -> sessionmaker[Session]:
    return init_db(config)


@pytest.fixture
def ingest_log(session_factory: sessionmaker[Session]) -> IngestionLog:
    return IngestionLog(session_factory)


@pytest.fixture
def store(session_factory: sessionmaker[Session], ingest_log: IngestionLog) -> EmailStore:
    email_store = EmailStore(session_factory, ingest_log)
    email_store.ensure_mailbox("INBOX")
    return email_store

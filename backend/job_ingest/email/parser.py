"""MIME parsing: raw RFC 822 bytes to structured message fields."""

from __future__ import annotations

import email as email_lib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Optional, Tuple

import structlog
from bs4 import BeautifulSoup
from icalendar import Calendar

from job_ingest.errors import MessageParseError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CalendarEvent:
    """The parts of a ``text/calendar`` VEVENT the pipeline cares about."""

    summary: str = ""
    start: str = ""
    location: str = ""

    def describe(self) -> str:
        parts = [f"Calendar invite: {self.summary or '(no title)'}"]
        if self.start:
            parts.append(f"at {self.start}")
        if self.location:
            parts.append(f"({self.location})")
        return " ".join(parts)


@dataclass(frozen=True)
class ParsedMessage:
    """Structured output from parsing a raw message."""

    message_id: Optional[str]
    date: Optional[datetime]
    subject: str
    from_: str
    to: str
    text: str
    html: str
    header_lines: Tuple[Tuple[str, str], ...] = ()
    calendar_events: Tuple[CalendarEvent, ...] = field(default_factory=tuple)

    @property
    def raw_headers(self) -> str:
        return "\n".join(f"{key}: {value}" for key, value in self.header_lines)

    @property
    def classifier_text(self) -> str:
        """Body text plus calendar invite summaries, as seen by the classifier."""
        if not self.calendar_events:
            return self.text
        invites = "\n".join(ev.describe() for ev in self.calendar_events)
        return f"{self.text}\n{invites}" if self.text else invites


@dataclass(frozen=True)
class Envelope:
    """Header-only view of a message (backfill)."""

    subject: str
    from_email: str
    date: Optional[datetime]


# ── Noise detection tokens ────────────────────────────────
_NOISE_TOKENS = [
    "color:",
    "font-",
    "px",
    "{",
    "}",
    "margin",
    "padding",
    "z-index",
    "mso-",
    "a:visited",
]


def is_noise_text(text: str, threshold: int = 3) -> bool:
    """Return True if *text* looks like CSS / HTML junk rather than real content."""
    lowered = text.lower()
    hits = sum(1 for tok in _NOISE_TOKENS if tok in lowered)
    return hits >= threshold


# ── MIME helpers ──────────────────────────────────────────


def decode_mime_text(value: Optional[str]) -> str:
    """Decode a MIME-encoded header value to a plain string."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(str(value)))).strip()
    except Exception:
        return str(value).strip()


def parse_date(date_raw: str) -> Optional[datetime]:
    """Parse a raw email date into a UTC datetime, or None."""
    if not date_raw:
        return None
    try:
        dt = parsedate_to_datetime(date_raw)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def first_address(value: str) -> str:
    """Return the first bare e-mail address in a From/To header value."""
    for name, addr in getaddresses([value or ""]):
        if addr:
            return addr
        if name:
            return name
    return ""


def _decode_payload(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _html_to_text(html: str) -> str:
    """Strip HTML tags and return readable text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text("\n", strip=True)


def _ical_text(component, name: str) -> str:
    value = component.get(name)
    return " ".join(str(value).split()) if value is not None else ""


def parse_calendar(raw: str) -> List[CalendarEvent]:
    """Extract VEVENT summary/start/location from iCalendar text.

    Unparseable calendars yield no events instead of failing the message.
    """
    try:
        calendar = Calendar.from_ical(raw)
    except ValueError as exc:
        logger.warning("calendar_parse_failed", error=str(exc))
        return []

    events: List[CalendarEvent] = []
    for component in calendar.walk("VEVENT"):
        start = component.get("DTSTART")
        events.append(
            CalendarEvent(
                summary=_ical_text(component, "SUMMARY"),
                start=start.dt.isoformat() if start is not None else "",
                location=_ical_text(component, "LOCATION"),
            )
        )
    return events


def _extract_bodies(msg: Message) -> Tuple[str, str, List[CalendarEvent]]:
    plain_parts: List[str] = []
    html_parts: List[str] = []
    events: List[CalendarEvent] = []

    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        ctype = part.get_content_type()
        cdisp = str(part.get("Content-Disposition", "")).lower()
        if ctype == "text/calendar":
            events.extend(parse_calendar(_decode_payload(part)))
            continue
        if "attachment" in cdisp:
            continue
        if ctype == "text/plain":
            plain_parts.append(_decode_payload(part))
        elif ctype == "text/html":
            html_parts.append(_decode_payload(part))

    plain_text = "\n".join(p for p in plain_parts if p).strip()
    html = "\n".join(p for p in html_parts if p)

    # Prefer plain-text unless it's mostly noise (CSS leftovers)
    if plain_text and not is_noise_text(plain_text):
        text = plain_text
    elif html:
        text = _html_to_text(html)
    else:
        text = plain_text
    return text, html, events


def _extract_message_id(msg: Message) -> Optional[str]:
    raw = msg.get("Message-ID", "") or msg.get("Message-Id", "")
    if not raw:
        return None
    cleaned = str(raw).strip().strip("<>").strip()
    return cleaned or None


def parse_message(raw: bytes) -> ParsedMessage:
    """Parse raw message bytes into a :class:`ParsedMessage`.

    Raises:
        MessageParseError: when the bytes cannot be read as a message.
    """
    if not raw:
        raise MessageParseError("empty message source")
    try:
        msg = email_lib.message_from_bytes(raw)
        text, html, events = _extract_bodies(msg)
        header_lines = tuple((key, decode_mime_text(value)) for key, value in msg.items())
        return ParsedMessage(
            message_id=_extract_message_id(msg),
            date=parse_date(decode_mime_text(msg.get("Date", ""))),
            subject=decode_mime_text(msg.get("Subject", "")),
            from_=decode_mime_text(msg.get("From", "")),
            to=decode_mime_text(msg.get("To", "")),
            text=text,
            html=html,
            header_lines=header_lines,
            calendar_events=tuple(events),
        )
    except MessageParseError:
        raise
    except Exception as exc:
        raise MessageParseError(f"parse_fail: {exc}") from exc


def parse_envelope(header_bytes: bytes) -> Envelope:
    """Parse a header-only block (Subject/From/Date) fetched during backfill."""
    msg = email_lib.message_from_bytes(header_bytes or b"")
    return Envelope(
        subject=decode_mime_text(msg.get("Subject", "")),
        from_email=first_address(decode_mime_text(msg.get("From", ""))),
        date=parse_date(decode_mime_text(msg.get("Date", ""))),
    )

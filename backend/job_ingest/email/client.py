"""IMAP mailbox client with retry logic and proper resource management."""

from __future__ import annotations

import imaplib
import re
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Optional, Tuple

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from job_ingest.config import AppConfig
from job_ingest.email.parser import Envelope, parse_envelope
from job_ingest.errors import MailboxConnectionError, MessageParseError

logger = structlog.get_logger(__name__)

DebugHook = Callable[[str, str], None]

# Transient socket-level errors worth retrying while opening the connection
_RETRYABLE = (
    socket.timeout,
    ConnectionResetError,
    ConnectionRefusedError,
)

_UID_RE = re.compile(rb"UID (\d+)")
_SIZE_RE = re.compile(rb"RFC822\.SIZE (\d+)")
_UIDNEXT_RE = re.compile(rb"UIDNEXT (\d+)")
_NEW_RESPONSE_RE = re.compile(rb"^\d+ \(")


class FetchFields(str, Enum):
    """What to download for each message."""

    SOURCE = "source"
    ENVELOPE = "envelope"


_FETCH_ITEMS = {
    FetchFields.SOURCE: "(UID BODY.PEEK[])",
    FetchFields.ENVELOPE: "(UID RFC822.SIZE BODY.PEEK[HEADER.FIELDS (SUBJECT FROM DATE)])",
}


@dataclass(frozen=True)
class MailboxStatus:
    name: str
    exists: int
    uid_next: Optional[int]


@dataclass(frozen=True)
class FetchedMessage:
    """One message from a FETCH response; ``source`` or ``envelope`` is set."""

    uid: int
    source: Optional[bytes] = None
    envelope: Optional[Envelope] = None
    size: Optional[int] = None


def quote_mailbox(name: str) -> str:
    if name.startswith('"') or not re.search(r'[\s"]', name):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def split_fetch_response(data: list) -> List[Tuple[bytes, bytes]]:
    """Group an imaplib FETCH response into ``(metadata, literal)`` pairs.

    Servers may put ``UID``/``RFC822.SIZE`` before or after the literal, so
    trailing fragments such as ``b' UID 101)'`` are folded into the metadata
    of the preceding item.
    """
    items: List[Tuple[bytes, bytes]] = []
    for part in data or []:
        if isinstance(part, tuple) and len(part) >= 2:
            items.append((bytes(part[0] or b""), bytes(part[1] or b"")))
        elif isinstance(part, bytes):
            stripped = part.strip()
            if not stripped or stripped == b")":
                continue
            if items and not _NEW_RESPONSE_RE.match(stripped):
                meta, literal = items[-1]
                items[-1] = (meta + b" " + stripped, literal)
            else:
                items.append((stripped, b""))
    return items


class MailboxClient:
    """IMAP connection wrapper with retry, timeout, and context-manager support.

    Usage::

        with MailboxClient(config) as client:
            for uid in client.search_uids(f"{last_uid + 1}:*"):
                fetched = client.fetch_message(uid)
    """

    def __init__(self, config: AppConfig, on_debug: Optional[DebugHook] = None) -> None:
        self._config = config
        self._on_debug = on_debug
        self._mail: imaplib.IMAP4 | None = None
        self.status: MailboxStatus | None = None

    # ── Context manager ───────────────────────────────────
    def __enter__(self) -> "MailboxClient":
        self.connect()
        self.open(self._config.imap_mailbox)
        return self

    def __exit__(self, *exc: object) -> None:
        self.logout()

    def _debug(self, level: str, message: str) -> None:
        if self._on_debug is not None:
            self._on_debug(level, message)

    # ── Connection ────────────────────────────────────────
    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=15),
        reraise=True,
    )
    def _open_socket(self) -> imaplib.IMAP4:
        cfg = self._config
        factory = imaplib.IMAP4_SSL if cfg.imap_secure else imaplib.IMAP4
        return factory(cfg.imap_host, cfg.imap_port, timeout=cfg.imap_timeout_sec)

    def connect(self) -> None:
        """Open the connection and authenticate.

        Raises:
            MailboxConnectionError: on any socket or authentication failure.
        """
        cfg = self._config
        logger.info("imap_connecting", host=cfg.imap_host, port=cfg.imap_port, secure=cfg.imap_secure)
        self._debug("info", f"connecting {cfg.imap_host}:{cfg.imap_port}")
        try:
            self._mail = self._open_socket()
            self._debug("debug", f"C: LOGIN {cfg.imap_user} ****")
            typ, data = self._mail.login(cfg.imap_user, cfg.imap_pass.get_secret_value())
            self._debug("debug", f"S: {typ} {_first_line(data)}")
        except (imaplib.IMAP4.error, OSError) as exc:
            self._debug("error", f"connect failed: {exc}")
            self._mail = None
            raise MailboxConnectionError(f"connect failed: {exc}") from exc
        logger.info("imap_authenticated", username=cfg.imap_user)

    def open(self, mailbox: str) -> MailboxStatus:
        """Select *mailbox* read-only and capture its message count and UIDNEXT."""
        mail = self._ensure_connected()
        self._debug("debug", f"C: EXAMINE {mailbox}")
        try:
            typ, data = mail.select(quote_mailbox(mailbox), readonly=True)
        except imaplib.IMAP4.error as exc:
            raise MailboxConnectionError(f"cannot open mailbox {mailbox}: {exc}") from exc
        self._debug("debug", f"S: {typ} {_first_line(data)}")
        if typ != "OK":
            raise MailboxConnectionError(f"cannot open mailbox {mailbox}: {_first_line(data)}")

        try:
            exists = int(data[0]) if data and data[0] else 0
        except (TypeError, ValueError):
            exists = 0
        self.status = MailboxStatus(name=mailbox, exists=exists, uid_next=self._read_uid_next(mailbox))
        logger.info("imap_mailbox_opened", mailbox=mailbox, exists=exists, uid_next=self.status.uid_next)
        return self.status

    def _read_uid_next(self, mailbox: str) -> Optional[int]:
        mail = self._ensure_connected()
        _, values = mail.response("UIDNEXT")
        for value in values or []:
            if value:
                return int(value)
        self._debug("debug", f"C: STATUS {mailbox} (UIDNEXT)")
        typ, data = mail.status(quote_mailbox(mailbox), "(UIDNEXT)")
        self._debug("debug", f"S: {typ} {_first_line(data)}")
        if typ == "OK" and data and data[0]:
            match = _UIDNEXT_RE.search(data[0])
            if match:
                return int(match.group(1))
        return None

    def logout(self) -> None:
        """Safely close the connection. Never raises."""
        if self._mail is None:
            return
        try:
            self._mail.logout()
            self._debug("debug", "C: LOGOUT")
            logger.debug("imap_disconnected")
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug("imap_logout_failed", error=str(exc))
        finally:
            self._mail = None

    # ── Queries ───────────────────────────────────────────
    def _ensure_connected(self) -> imaplib.IMAP4:
        if self._mail is None:
            raise MailboxConnectionError("IMAP client not connected; call connect() first")
        return self._mail

    def highest_uid(self) -> int:
        """The mailbox's authoritative UID ceiling (0 for an empty mailbox)."""
        if self.status is not None and self.status.uid_next:
            return max(0, self.status.uid_next - 1)
        uids = self.search_uids(None)
        return uids[-1] if uids else 0

    def search_uids(self, uid_range: Optional[str]) -> List[int]:
        """Return the sorted UIDs inside *uid_range* (``None`` = all)."""
        mail = self._ensure_connected()
        criteria = f"UID {uid_range}" if uid_range else "ALL"
        self._debug("debug", f"C: UID SEARCH {criteria}")
        try:
            typ, data = mail.uid("SEARCH", None, criteria)
        except imaplib.IMAP4.abort as exc:
            raise MailboxConnectionError(f"connection lost during search: {exc}") from exc
        self._debug("debug", f"S: {typ} {_first_line(data)[:200]}")
        if typ != "OK":
            raise MailboxConnectionError(f"IMAP UID SEARCH failed: {_first_line(data)}")
        tokens = (data[0] or b"").split() if data else []
        return sorted(int(t) for t in tokens)

    def fetch(self, uid_range: str, fields: FetchFields) -> Iterator[FetchedMessage]:
        """Fetch *uid_range* and yield one :class:`FetchedMessage` per message."""
        mail = self._ensure_connected()
        items = _FETCH_ITEMS[fields]
        self._debug("debug", f"C: UID FETCH {uid_range} {items}")
        try:
            typ, data = mail.uid("FETCH", uid_range, items)
        except imaplib.IMAP4.abort as exc:
            raise MailboxConnectionError(f"connection lost during fetch: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise MessageParseError(f"fetch failed for {uid_range}: {exc}") from exc
        self._debug("debug", f"S: {typ} {len(data or [])} parts")
        if typ != "OK":
            raise MessageParseError(f"fetch failed for {uid_range}: {_first_line(data)}")

        for meta, literal in split_fetch_response(data):
            uid_match = _UID_RE.search(meta)
            if not uid_match:
                continue
            uid = int(uid_match.group(1))
            size_match = _SIZE_RE.search(meta)
            size = int(size_match.group(1)) if size_match else None
            if fields is FetchFields.SOURCE:
                yield FetchedMessage(uid=uid, source=literal or None, size=size or len(literal))
            else:
                yield FetchedMessage(uid=uid, envelope=parse_envelope(literal), size=size)

    def fetch_message(self, uid: int) -> Optional[FetchedMessage]:
        """Fetch the full source of one UID, or None if the server returned nothing."""
        for fetched in self.fetch(str(uid), FetchFields.SOURCE):
            if fetched.uid == uid:
                return fetched
        logger.warning("imap_fetch_empty", uid=uid)
        return None


def _first_line(data: object) -> str:
    if isinstance(data, (list, tuple)) and data:
        first = data[0]
        if isinstance(first, tuple):
            first = first[0]
        if isinstance(first, bytes):
            return first.decode(errors="replace")
        return str(first)
    return ""

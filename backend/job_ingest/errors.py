"""Exception types raised inside an ingestion cycle.

Only errors that escape :meth:`IngestionRunner.run_once` reach the caller;
everything below is absorbed by the runner and recorded in ``ingestion_log``.
"""

from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    """Base class for ingestion failures."""


class ConfigError(IngestError):
    """Required configuration is missing; nothing is connected or mutated."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__("Missing required IMAP settings: " + ", ".join(missing))


class MailboxConnectionError(IngestError):
    """Connecting, authenticating or selecting the mailbox failed."""


class MessageParseError(IngestError):
    """A single message could not be fetched or parsed."""

    def __init__(self, message: str, uid: Optional[int] = None) -> None:
        self.uid = uid
        super().__init__(message)


class EnrichmentError(IngestError):
    """An enrichment call for one stored email failed."""


class BackfillError(IngestError):
    """A backfill slice could not complete."""

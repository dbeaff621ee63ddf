"""Application configuration with Pydantic Settings validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Fields that may be filled from the persisted ``email_config`` row.
_STORE_FIELDS: dict[str, str] = {
    "imap_host": "host",
    "imap_port": "port",
    "imap_secure": "secure",
    "imap_user": "user",
    "imap_pass": "password",
    "imap_mailbox": "mailbox",
}


class AppConfig(BaseSettings):
    """All ingestion settings, loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=("../.env", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── IMAP ──────────────────────────────────────────────
    imap_host: str = ""
    imap_port: int = 993
    imap_secure: bool = True
    imap_user: str = ""
    imap_pass: SecretStr = SecretStr("")
    imap_mailbox: str = "INBOX"
    imap_timeout_sec: int = 30

    # ── Sync ──────────────────────────────────────────────
    imap_batch_limit: int = 50
    imap_max_initial_sync: Optional[int] = None
    email_imap_verbose: bool = False
    email_imap_debug_max: int = 250
    email_backfill_batch: int = 200
    email_include_alerts: bool = False
    email_max_fetch_attempts: int = 3

    # ── Enrichment ────────────────────────────────────────
    openai_api_key: SecretStr = SecretStr("")
    openai_email_model: str = "gpt-4o-mini"
    openai_parse_batch: int = 5
    openai_price_prompt_per_1k: float = 0.15
    openai_price_completion_per_1k: float = 0.60
    openai_timeout_sec: int = 12

    # ── Database ──────────────────────────────────────────
    database_url: str = "sqlite:///job_ingest.db"

    # ── Server ────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000

    # ── Logging ───────────────────────────────────────────
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False

    # ── Validators ────────────────────────────────────────
    @field_validator(
        "imap_secure", "email_imap_verbose", "email_include_alerts", "log_json", mode="before"
    )
    @classmethod
    def parse_bool(cls, v: object) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in {"1", "true", "yes", "on"}
        return bool(v)

    @field_validator("imap_host", "imap_user", "imap_mailbox", mode="before")
    @classmethod
    def strip_text(cls, v: object) -> str:
        return str(v or "").strip()

    @model_validator(mode="after")
    def _check_limits(self) -> "AppConfig":
        if self.imap_batch_limit < 1:
            raise ValueError("imap_batch_limit must be >= 1")
        if self.email_backfill_batch < 1:
            raise ValueError("email_backfill_batch must be >= 1")
        if not self.imap_mailbox:
            self.imap_mailbox = "INBOX"
        return self

    # ── Derived values ────────────────────────────────────
    @property
    def max_initial_sync(self) -> int:
        """Initial-sync cap; defaults to the batch limit when unset."""
        if self.imap_max_initial_sync is None:
            return self.imap_batch_limit
        return self.imap_max_initial_sync

    @property
    def effective_initial_limit(self) -> int:
        return max(1, min(self.max_initial_sync, self.imap_batch_limit))

    @property
    def enrichment_enabled(self) -> bool:
        return bool(self.openai_api_key.get_secret_value())

    @property
    def database_path(self) -> Optional[Path]:
        """Return the SQLite file path, or None for non-file databases."""
        if self.database_url.startswith("sqlite:///"):
            return Path(self.database_url.replace("sqlite:///", ""))
        return None

    def missing_imap_fields(self) -> list[str]:
        """Names of the required IMAP settings that are still empty."""
        missing = []
        if not self.imap_host:
            missing.append("IMAP_HOST")
        if not self.imap_user:
            missing.append("IMAP_USER")
        if not self.imap_pass.get_secret_value():
            missing.append("IMAP_PASS")
        return missing


def get_config(**overrides: Any) -> AppConfig:
    """Load and return validated config.

    Keyword overrides take precedence over environment variables, which
    take precedence over defaults.
    """
    return AppConfig(**overrides)  # type: ignore[arg-type]


def hydrate_from_store(config: AppConfig, row: Any) -> AppConfig:
    """Fill unset IMAP settings from a persisted ``email_config`` row.

    Only fields that were neither passed explicitly nor found in the
    environment are taken from the row, so the stored credentials act as
    a fallback below env and above the built-in defaults.
    """
    if row is None:
        return config

    updates: dict[str, Any] = {}
    for field_name, column in _STORE_FIELDS.items():
        if field_name in config.model_fields_set:
            continue
        value = getattr(row, column, None)
        if value is None or value == "":
            continue
        if field_name == "imap_pass":
            value = SecretStr(str(value))
        elif field_name == "imap_secure":
            value = bool(value)
        elif field_name == "imap_port":
            value = int(value)
        updates[field_name] = value

    if not updates:
        return config
    return config.model_copy(update=updates)

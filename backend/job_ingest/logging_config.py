"""Process logging for the ingestion daemon (structlog over stdlib logging).

The ``ingestion_log`` table is the audit trail; this is the operator's
console/file view of the same process. Every line logged during a cycle
carries the ``run_id`` and ``mailbox`` bound by :func:`bind_cycle`.
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Optional

import structlog

_QUIET_LOGGERS = ("httpcore", "httpx", "urllib3", "openai", "sqlalchemy.engine")


def _formatter(renderer: structlog.types.Processor, pre_chain: list) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json_console: bool = False,
) -> None:
    """Configure structlog and stdlib logging. Safe to call more than once.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path that receives JSON lines as well.
        json_console: Render stdout as JSON instead of the dev console
            format (for daemons whose output is collected).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if json_console:
        console_renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    handlers[0].setFormatter(_formatter(console_renderer, pre_chain))
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        handler.setLevel(log_level)
        root.addHandler(handler)
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_cycle(mailbox: str, run_id: Optional[str] = None) -> str:
    """Bind ``run_id``/``mailbox`` to every log line until :func:`clear_cycle`."""
    run_id = run_id or uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(run_id=run_id, mailbox=mailbox)
    return run_id


def clear_cycle() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "mailbox")

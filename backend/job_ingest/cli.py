"""Command line entry point: ``job-ingest``."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Callable, Optional, Sequence

import structlog

from job_ingest.config import AppConfig, get_config
from job_ingest.errors import IngestError
from job_ingest.ingest.backfill import promote_headers
from job_ingest.ingest.runner import IngestionRunner
from job_ingest.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def _cmd_run(runner: IngestionRunner, args: argparse.Namespace) -> int:
    try:
        summary = runner.run_once()
    except Exception as exc:
        print(f"Ingest failed: {exc}", file=sys.stderr)
        return 1
    if summary.aborted:
        print(f"Ingest aborted ({summary.aborted}); see ingestion_log for details")
        return 0
    print(
        f"processed={summary.processed} stored={summary.stored} skipped={summary.skipped} "
        f"errors={summary.errors} dead_lettered={summary.dead_lettered} "
        f"last_uid={summary.last_uid} enriched={summary.enriched} "
        f"backfill_inserted={summary.backfill_inserted}"
    )
    return 0


def _cmd_backfill(runner: IngestionRunner, args: argparse.Namespace) -> int:
    mailbox = runner.config.imap_mailbox
    if args.action in ("start", "pause"):
        runner.store.ensure_mailbox(mailbox)
        active = args.action == "start"
        runner.store.set_backfill_active(mailbox, active)
        runner.log.event("backfill", "activated" if active else "paused", detail="cli")
    elif args.action == "promote":
        try:
            stored = promote_headers(
                runner.store, runner.log, runner.config, limit=args.limit,
                mailbox_factory=runner.mailbox_factory,
            )
        except IngestError as exc:
            print(f"Promotion failed: {exc}", file=sys.stderr)
            return 1
        print(f"promoted_and_stored={stored}")
        return 0

    state = runner.store.get_backfill_state(mailbox)
    out = {
        "mailbox": mailbox,
        "active": bool(state and state.active),
        "highest_uid_seen": state.highest_uid_seen if state else None,
        "lowest_uid_processed": state.lowest_uid_processed if state else None,
        "decisions": runner.store.header_decision_counts(),
    }
    print(json.dumps(out, indent=2))
    return 0


def _cmd_reclassify(runner: IngestionRunner, args: argparse.Namespace) -> int:
    updated = runner.store.reclassify_existing(
        limit=args.limit, include_alerts=runner.config.email_include_alerts
    )
    print(f"reclassified={updated}")
    return 0


def _cmd_purge(runner: IngestionRunner, args: argparse.Namespace) -> int:
    removed = runner.store.purge_irrelevant()
    print(f"purged={removed}")
    return 0


def _cmd_serve(config: AppConfig, args: argparse.Namespace) -> int:
    import uvicorn

    from job_ingest.main import create_app

    uvicorn.run(create_app(config), host=args.host or config.host, port=args.port or config.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="job-ingest",
        description="IMAP ingestion of job-application email",
    )
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--mailbox", help="Override IMAP_MAILBOX")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run one ingestion cycle")

    serve = sub.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    backfill = sub.add_parser("backfill", help="Control the historical header crawl")
    backfill.add_argument("action", choices=["start", "pause", "status", "promote"])
    backfill.add_argument(
        "--limit", type=int, default=20, help="Relevant headers to promote (promote only)"
    )

    reclassify = sub.add_parser("reclassify", help="Re-run the classifier over stored emails")
    reclassify.add_argument("--limit", type=int, default=1000)

    sub.add_parser("purge", help="Delete stored emails without a lifecycle class")
    return parser


_COMMANDS: dict[str, Callable[[IngestionRunner, argparse.Namespace], int]] = {
    "run": _cmd_run,
    "backfill": _cmd_backfill,
    "reclassify": _cmd_reclassify,
    "purge": _cmd_purge,
}


def main(argv: Optional[Sequence[str]] = None, runner: Optional[IngestionRunner] = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.mailbox:
        overrides["imap_mailbox"] = args.mailbox
    if args.log_level:
        overrides["log_level"] = args.log_level
    config = runner.config if runner is not None else get_config(**overrides)
    setup_logging(level=config.log_level, log_file=config.log_file, json_console=config.log_json)

    if args.command == "serve":
        return _cmd_serve(config, args)

    runner = runner or IngestionRunner(config)
    logger.debug("cli_command", command=args.command)
    return _COMMANDS[args.command](runner, args)


if __name__ == "__main__":
    sys.exit(main())

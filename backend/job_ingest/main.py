"""FastAPI application entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI

from job_ingest.api.backfill import router as backfill_router
from job_ingest.api.emails import router as emails_router
from job_ingest.api.ingest import IngestTrigger
from job_ingest.api.ingest import router as ingest_router
from job_ingest.config import AppConfig, get_config
from job_ingest.ingest.runner import IngestionRunner
from job_ingest.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    *,
    runner: Optional[IngestionRunner] = None,
) -> FastAPI:
    """Application factory. The runner is built on startup unless one is given."""
    app_config = config or (runner.config if runner is not None else get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(
            level=app_config.log_level,
            log_file=app_config.log_file,
            json_console=app_config.log_json,
        )
        ingest_runner = runner or IngestionRunner(app_config)
        app.state.config = app_config
        app.state.runner = ingest_runner
        app.state.session_factory = ingest_runner.session_factory
        app.state.trigger = IngestTrigger(ingest_runner)
        logger.info(
            "server_starting",
            host=app_config.host,
            port=app_config.port,
            mailbox=app_config.imap_mailbox,
            enrichment_enabled=app_config.enrichment_enabled,
        )
        yield
        app.state.trigger.wait(timeout=30)
        logger.info("server_shutting_down")

    app = FastAPI(
        title="Job Email Ingest",
        description="IMAP ingestion of job-application email with rule-based classification",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(ingest_router)
    app.include_router(backfill_router)
    app.include_router(emails_router)

    @app.get("/api/health", tags=["health"])
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    _config = get_config()
    uvicorn.run(create_app(_config), host=_config.host, port=_config.port)

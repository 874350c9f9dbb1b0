"""scanrelay Relay Service — FastAPI application factory + lifespan.

  - create_app() — testable application factory
  - lifespan     — startup/shutdown of the result store, HTTP clients and workers
  - /            — service discovery root
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()             → app.state.config
  2. create_result_store()     → app.state.results
  3. create_fetch_client()     → app.state.fetch_client (limit = relay.workers)
  4. DownstreamImporter(...)   → app.state.importer
  5. RelayWorkerPool.start()   → app.state.worker_pool
  6. app.state.ready = True

Shutdown (reverse):
  ready = False → stop workers → close importer → close fetch client →
  close result store

Uvicorn hardened defaults (see scanrelay/relay/run.py):
  uvicorn scanrelay.relay.main:app \\
    --host 127.0.0.1 --port 8080 \\
    --limit-concurrency 100 --backlog 50 --timeout-keep-alive 5
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter

from scanrelay import __version__
from scanrelay.config import Config, load_config
from scanrelay.downstream.importer import DownstreamImporter
from scanrelay.relay.fetcher import ArtifactFetcher, create_fetch_client
from scanrelay.relay.health import router as health_router
from scanrelay.relay.intake import router as intake_router
from scanrelay.relay.middleware import BodySizeLimitMiddleware
from scanrelay.relay.results import ResultStore, create_result_store
from scanrelay.relay.workers import RelayWorkerPool
from scanrelay.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint — service identity / discovery."""
    return {
        "service": "scanrelay",
        "version": __version__,
        "import": "POST /import",
        "jobs": "/jobs",
        "health": "/health",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    Objects injected through create_app() (config, importer, fetch client)
    are used as-is and, for the clients, left open on shutdown: their owner
    closes them.
    """
    logger.info("scanrelay starting up...")

    # load_config() raises SystemExit on invalid config, before ready=True.
    config: Config = app.state.config_override or load_config()
    app.state.config = config
    relay = config.relay

    results: ResultStore = await create_result_store(relay)
    app.state.results = results

    injected_fetch_client: Optional[httpx.AsyncClient] = app.state.fetch_client_override
    fetch_client = injected_fetch_client or create_fetch_client(relay.workers, relay.fetch_timeout_s)
    app.state.fetch_client = fetch_client
    fetcher = ArtifactFetcher(
        fetch_client,
        timeout_s=relay.fetch_timeout_s,
        max_bytes=relay.max_artifact_bytes,
    )

    injected_importer: Optional[DownstreamImporter] = app.state.importer_override
    importer = injected_importer or DownstreamImporter(config.downstream)
    app.state.importer = importer

    pool = RelayWorkerPool(
        fetcher=fetcher,
        importer=importer,
        results=results,
        workers=relay.workers,
        capacity=relay.queue_capacity,
        watchdog_timeout_s=relay.watchdog_timeout_s,
        fetch_max_attempts=relay.fetch_max_attempts,
        import_max_attempts=relay.import_max_attempts,
        backoff_base_s=relay.backoff_base_s,
        backoff_cap_s=relay.backoff_cap_s,
    )
    pool.start()
    app.state.worker_pool = pool

    app.state.ready = True
    logger.info(
        "scanrelay ready",
        workers=relay.workers,
        queue_capacity=relay.queue_capacity,
        watchdog_timeout_s=relay.watchdog_timeout_s,
        downstream_mode=config.downstream.mode,
    )

    yield

    logger.info("scanrelay shutting down...")
    app.state.ready = False

    await pool.stop()

    if injected_importer is None:
        try:
            await importer.close()
        except Exception as exc:
            logger.warning("Downstream client close error (non-fatal)", error=str(exc))

    if injected_fetch_client is None:
        try:
            await fetch_client.aclose()
        except Exception as exc:
            logger.warning("Fetch client close error (non-fatal)", error=str(exc))

    await results.close()
    logger.info("scanrelay shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(
    config: Optional[Config] = None,
    *,
    importer: Optional[DownstreamImporter] = None,
    fetch_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Create and configure the relay FastAPI application.

    In tests, pass ``config`` (skips config file discovery) and an
    ``importer`` / ``fetch_client`` wired to httpx.MockTransport.
    """
    application = FastAPI(
        title="scanrelay",
        description="Relay service importing scan reports into vulnerability management",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    # /health and require_ready return 503 until lifespan startup completes.
    application.state.ready = False
    application.state.config_override = config
    application.state.importer_override = importer
    application.state.fetch_client_override = fetch_client

    application.add_middleware(BodySizeLimitMiddleware)

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(intake_router)

    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return application


app = create_app()
